"""
Activity store: the read-only collaborator supplying observed player activity.

The main pipeline reads historical mining yield binned by coarse lat/lng
(``bin_activity``); the surge pipeline reads per-hex daily scores
(``hex_scores``). Phase transitions consult ``completed_session_count``
and surge spawning consults ``controlled_territories``.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from nodeforge.core.grid import Bounds


@dataclass(frozen=True)
class ActivityBin:
    """Aggregated mining yield for one ``bin_size`` x ``bin_size`` degree bin.

    Bin indices are ``floor(lat / bin_size)`` and ``floor(lng / bin_size)``.
    """

    lat_bin: int
    lng_bin: int
    activity: float

    @property
    def bin_id(self) -> str:
        return f"{self.lat_bin}_{self.lng_bin}"

    def bounds(self, bin_size: float = 1.0) -> Bounds:
        lat_min = self.lat_bin * bin_size
        lng_min = self.lng_bin * bin_size
        return Bounds(
            lat_min=max(-90.0, lat_min),
            lat_max=min(90.0, lat_min + bin_size),
            lon_min=max(-180.0, lng_min),
            lon_max=min(180.0, lng_min + bin_size),
        )

    def center(self, bin_size: float = 1.0) -> tuple[float, float]:
        return ((self.lat_bin + 0.5) * bin_size, (self.lng_bin + 0.5) * bin_size)


def bin_for(lat: float, lng: float, bin_size: float = 1.0) -> tuple[int, int]:
    """Bin indices containing a coordinate."""
    return (int(math.floor(lat / bin_size)), int(math.floor(lng / bin_size)))


class ActivityStore(ABC):
    """Read-only source of player activity aggregates."""

    @abstractmethod
    def bin_activity(self) -> list[ActivityBin]:
        """Historical mining yield per lat/lng bin."""

    @abstractmethod
    def hex_scores(self, cycle: str) -> dict[str, float]:
        """Activity score per hex id for a surge cycle (``YYYY-MM-DD``)."""

    @abstractmethod
    def completed_session_count(self) -> int:
        """Number of completed mining sessions, for phase thresholds."""

    @abstractmethod
    def controlled_territories(self) -> dict[str, str]:
        """Guild-controlled hexes as ``{hex_id: guild_id}``."""


@dataclass
class StaticActivityStore(ActivityStore):
    """In-memory activity store for tests, demos and replays."""

    bins: list[ActivityBin] = field(default_factory=list)
    scores_by_cycle: dict[str, dict[str, float]] = field(default_factory=dict)
    completed_sessions: int = 0
    territories: dict[str, str] = field(default_factory=dict)

    def bin_activity(self) -> list[ActivityBin]:
        return list(self.bins)

    def hex_scores(self, cycle: str) -> dict[str, float]:
        return dict(self.scores_by_cycle.get(cycle, {}))

    def completed_session_count(self) -> int:
        return self.completed_sessions

    def controlled_territories(self) -> dict[str, str]:
        return dict(self.territories)
