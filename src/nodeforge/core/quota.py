"""
Quota allocation: per-cell pioneer counts to per-rarity node counts.

Rounding policy: expected counts ``pioneer_count * p`` are floored, and the
cell's remaining units go to the tiers with the largest fractional parts,
ties broken in tier order (Common first). Counts are non-negative integers
that sum to the cell's pioneer count.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

import numpy as np

from nodeforge.core.errors import InvalidInputError
from nodeforge.core.region_metrics import RegionMetric, largest_remainder


class Rarity(str, Enum):
    COMMON = "Common"
    UNCOMMON = "Uncommon"
    RARE = "Rare"
    EPIC = "Epic"
    LEGENDARY = "Legendary"

    @property
    def rank(self) -> int:
        """1-based position in the tier order."""
        return RARITY_ORDER.index(self) + 1


RARITY_ORDER: list[Rarity] = [
    Rarity.COMMON, Rarity.UNCOMMON, Rarity.RARE, Rarity.EPIC, Rarity.LEGENDARY,
]

RARITY_PROBABILITIES: dict[Rarity, float] = {
    Rarity.COMMON: 0.50,
    Rarity.UNCOMMON: 0.25,
    Rarity.RARE: 0.15,
    Rarity.EPIC: 0.09,
    Rarity.LEGENDARY: 0.01,
}


@dataclass
class RarityQuota:
    """Integer node counts per rarity for one cell."""

    cell_id: str
    pioneer_count: int
    counts: dict[Rarity, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def entries(self) -> list[tuple[Rarity, int]]:
        """Non-zero (rarity, count) pairs in tier order."""
        return [(r, self.counts.get(r, 0)) for r in RARITY_ORDER if self.counts.get(r, 0) > 0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "cell_id": self.cell_id,
            "pioneer_count": self.pioneer_count,
            "counts": {r.value: self.counts.get(r, 0) for r in RARITY_ORDER},
        }


def normalize_probabilities(probabilities: Mapping[Any, float]) -> dict[Rarity, float]:
    """Coerce a ``{name_or_rarity: p}`` table to ``{Rarity: p}`` in tier order."""
    table: dict[Rarity, float] = {}
    for key, p in probabilities.items():
        try:
            table[Rarity(key)] = float(p)
        except ValueError:
            raise InvalidInputError(f"Unknown rarity tier '{key}'") from None
    return {r: table.get(r, 0.0) for r in RARITY_ORDER}


def split_count(count: int, probabilities: Mapping[Rarity, float]) -> dict[Rarity, int]:
    """Distribute ``count`` units over the tiers of ``probabilities``."""
    tiers = list(probabilities.keys())
    shares = np.array([count * probabilities[r] for r in tiers], dtype=np.float64)
    allocated = largest_remainder(shares, count)
    return {r: int(allocated[i]) for i, r in enumerate(tiers)}


def allocate_quotas(
    metrics: list[RegionMetric],
    probabilities: Mapping[Any, float] | None = None,
) -> list[RarityQuota]:
    """One :class:`RarityQuota` per metric, in the metrics' order."""
    table = normalize_probabilities(probabilities or RARITY_PROBABILITIES)
    return [
        RarityQuota(
            cell_id=m.cell_id,
            pioneer_count=m.pioneer_count,
            counts=split_count(m.pioneer_count, table),
        )
        for m in metrics
    ]


def quota_totals(quotas: list[RarityQuota]) -> dict[Rarity, int]:
    """Global node count per rarity across all cells."""
    totals = {r: 0 for r in RARITY_ORDER}
    for quota in quotas:
        for rarity, count in quota.counts.items():
            totals[rarity] += count
    return totals


# ---------------------------------------------------------------------------
# Phase budget
# ---------------------------------------------------------------------------

def effective_pioneers_for_phase(phase: int, total_population: int) -> int:
    """Pioneer budget for a phase: 50% of the population, halving each phase."""
    if phase < 1:
        raise InvalidInputError("phase must be at least 1")
    if total_population <= 0:
        raise InvalidInputError("total population must be positive")
    halving = 0.5 / (2 ** (phase - 1))
    return max(1, math.floor(total_population * halving))


def phase_threshold(phase: int, base: int = 1_000, growth: float = 2.0) -> int:
    """Completed mining sessions required before ``phase`` may open."""
    if phase < 2:
        return 0
    return int(math.ceil(base * growth ** (phase - 2)))
