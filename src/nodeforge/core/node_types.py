"""
Node types: one rarity-linked type per (phase, rarity).

Type ids are UUIDv5 over ``phase:rarity`` so regenerating a phase's types
produces the same keys and the persistence layer skips them as duplicates.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import asdict, dataclass
from typing import Any

from nodeforge.core.lore import generate_lore
from nodeforge.core.quota import RARITY_ORDER, Rarity

NODE_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "https://nodeforge.dev/nodes")

BASE_LOCK_IN = 2      # minutes
BASE_YIELD = 10.0     # shares per minute

# Miner capacity by rarity: BASE_UNIT * score, clamped.
RARITY_SCORE: dict[Rarity, int] = {
    Rarity.COMMON: 1,
    Rarity.UNCOMMON: 2,
    Rarity.RARE: 6,
    Rarity.EPIC: 12,
    Rarity.LEGENDARY: 24,
}
BASE_UNIT = 5
MIN_MINERS = 4
MAX_MINERS = 60
DENSITY_FACTOR = 20


@dataclass(frozen=True)
class NodeTypeRecord:
    id: str
    name: str
    rarity: Rarity
    phase: int
    base_yield_per_minute: float
    lock_in_minutes: int
    max_miners: int
    description: str
    extended_lore: str

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["rarity"] = self.rarity.value
        return d


def node_type_id(phase: int, rarity: Rarity) -> str:
    return str(uuid.uuid5(NODE_NAMESPACE, f"type:{phase}:{rarity.value}"))


def lock_in_minutes(rarity: Rarity, phase: int) -> int:
    return round(BASE_LOCK_IN * rarity.rank * (1 + (phase - 1) * 0.2))


def base_yield_per_minute(rarity: Rarity, phase: int) -> float:
    """Log-scaled by rarity rank and halved each phase."""
    multiplier = 1 + math.log2(rarity.rank + 1) * 10
    return BASE_YIELD * multiplier / 2 ** (phase - 1)


def max_miners(rarity: Rarity, local_pioneer_count: int = 0) -> int:
    cap = BASE_UNIT * RARITY_SCORE[rarity]
    cap += int(math.sqrt(max(0, local_pioneer_count)) // DENSITY_FACTOR)
    return max(MIN_MINERS, min(MAX_MINERS, cap))


def generate_node_type(rarity: Rarity, phase: int) -> NodeTypeRecord:
    text = generate_lore(rarity, phase, seed=phase * 31 + rarity.rank)
    return NodeTypeRecord(
        id=node_type_id(phase, rarity),
        name=text.name,
        rarity=rarity,
        phase=phase,
        base_yield_per_minute=base_yield_per_minute(rarity, phase),
        lock_in_minutes=lock_in_minutes(rarity, phase),
        max_miners=max_miners(rarity),
        description=text.lore,
        extended_lore=text.extended_lore,
    )


def generate_node_types(phase: int, rarities: list[Rarity] | None = None) -> list[NodeTypeRecord]:
    """One type per rarity (all tiers by default) in tier order."""
    wanted = rarities if rarities is not None else RARITY_ORDER
    return [generate_node_type(r, phase) for r in RARITY_ORDER if r in wanted]
