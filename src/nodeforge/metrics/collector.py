"""
Placement telemetry: per-cycle statistics on land-validated point search.

Each fan-out task records into its own :class:`PlacementTelemetry` and the
job merges them, so no locking is needed on the hot path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from nodeforge.core.points import Placement


@dataclass
class PlacementTelemetry:
    """Attempt counts and centroid-fallback triggers for one spawn cycle."""

    placements: int = 0
    fallbacks: int = 0
    total_attempts: int = 0
    max_attempts_seen: int = 0
    attempt_histogram: dict[int, int] = field(default_factory=dict)
    fallback_regions: list[str] = field(default_factory=list)

    def record(self, placement: Placement, region_id: str) -> None:
        self.placements += 1
        self.total_attempts += placement.attempts
        self.max_attempts_seen = max(self.max_attempts_seen, placement.attempts)
        self.attempt_histogram[placement.attempts] = (
            self.attempt_histogram.get(placement.attempts, 0) + 1
        )
        if placement.fallback:
            self.fallbacks += 1
            self.fallback_regions.append(region_id)

    def merge(self, other: PlacementTelemetry) -> None:
        self.placements += other.placements
        self.fallbacks += other.fallbacks
        self.total_attempts += other.total_attempts
        self.max_attempts_seen = max(self.max_attempts_seen, other.max_attempts_seen)
        for attempts, count in other.attempt_histogram.items():
            self.attempt_histogram[attempts] = self.attempt_histogram.get(attempts, 0) + count
        self.fallback_regions.extend(other.fallback_regions)

    @property
    def mean_attempts(self) -> float:
        return self.total_attempts / self.placements if self.placements else 0.0

    @property
    def fallback_rate(self) -> float:
        return self.fallbacks / self.placements if self.placements else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "placements": self.placements,
            "fallbacks": self.fallbacks,
            "total_attempts": self.total_attempts,
            "mean_attempts": self.mean_attempts,
            "max_attempts_seen": self.max_attempts_seen,
            "fallback_rate": self.fallback_rate,
            "attempt_histogram": {str(k): v for k, v in sorted(self.attempt_histogram.items())},
            "fallback_regions": sorted(set(self.fallback_regions)),
        }
