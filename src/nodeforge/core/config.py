"""
Master configuration for the node distribution engine.

ALL tunable parameters live here. Nothing in the spawn pipelines is hardcoded.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any

from nodeforge.core.digits import DEFAULT_SAFETY_MARGIN
from nodeforge.core.errors import InvalidInputError


@dataclass
class SpawnConfig:
    """
    Master configuration: every constant used by the placement, metrics,
    quota and surge pipelines.

    Use ``to_dict()`` / ``from_dict()`` for serialization and comparison.
    """

    # === Digit stream ===
    chunk_size: int = 10          # digits per coordinate fraction
    chunk_stride: int = 10        # distance between the lng and lat chunks
    hash_offsets: bool = True     # Knuth multiplicative spacing of offsets
    offset_step: int = 1          # offset advance per rejected candidate
    echo_digits: int = 5          # digits read for uniform echo intensity

    # === Placement ===
    max_placement_attempts: int = 50

    # === World grid ===
    lat_step: float = 10.0
    lon_step: float = 10.0
    activity_bin_size: float = 1.0

    # === Region metrics ===
    neighbor_boost_threshold: float = 10.0
    neighbor_boost_factor: float = 0.10
    cell_noise_salt: str = "harmonic-lattice-v1"
    cell_noise_amplitude: float = 0.5   # weight factor in [1.0, 1.0 + amplitude)
    environmental_fraction: float = 0.05
    environmental_jitter: float = 0.20
    region_cache_ttl: int = 3600

    # === Rarity ===
    rarity_probabilities: dict[str, float] = field(default_factory=lambda: {
        "Common": 0.50,
        "Uncommon": 0.25,
        "Rare": 0.15,
        "Epic": 0.09,
        "Legendary": 0.01,
    })
    adaptive_fraction: float = 0.7

    # === Offsets ===
    # Each grid cell (per phase) and each surge hex (per cycle) reads its own
    # contiguous stretch of offsets; a stretch must hold every candidate its
    # nodes can consume, pioneers * (max_placement_attempts + 1).
    region_offset_span: int = 2 ** 32
    surge_hex_slots: int = 65_536

    # === Phases ===
    max_phases: int = 6
    total_population: int = 12_000_000
    phase_threshold_base: int = 1_000
    phase_threshold_growth: float = 2.0

    # === Surge ===
    hex_resolution: int = 7
    surge_rarity_probabilities: dict[str, float] = field(default_factory=lambda: {
        "Rare": 0.80,
        "Epic": 0.15,
        "Legendary": 0.05,
    })
    diversity_ratio: float = 0.15
    zero_activity_baseline: int = 50
    surge_min_nodes: int = 50
    surge_max_nodes: int = 500
    surge_score_scale: float = 250_000.0
    surge_base_multiplier: float = 2.0
    surge_lifetime_days: int = 1
    surge_offset_base: int = 2 ** 64
    top_hex_count: int = 10

    # === Jobs ===
    max_workers: int = 8
    step_timeout_seconds: float = 120.0
    # Steps whose runtime grows with the population get their own timeout
    long_step_timeout_seconds: float = 1800.0
    long_running_steps: list[str] = field(default_factory=lambda: [
        "load-sources", "spawn-nodes", "persist-nodes", "spawn-surge", "persist-surge",
    ])
    retry_limit: int = 3
    retry_base_delay: float = 1.0

    # ------------------------------------------------------------------
    # Derived sizes
    # ------------------------------------------------------------------
    @property
    def grid_cell_count(self) -> int:
        n_lat = max(1, math.ceil(180.0 / self.lat_step - 1e-9))
        n_lon = max(1, math.ceil(360.0 / self.lon_step - 1e-9))
        return n_lat * n_lon

    def max_offsets_per_region(self, node_count: int) -> int:
        """Upper bound on offsets ``node_count`` placements in one region consume."""
        return node_count * (self.max_placement_attempts + 1) * self.offset_step

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(self) -> None:
        """Raise InvalidInputError for configurations no pipeline can run."""
        if self.chunk_size <= 0 or self.chunk_size > 15:
            raise InvalidInputError(f"chunk_size must be in 1..15, got {self.chunk_size}")
        if self.chunk_stride < 0 or self.chunk_size + self.chunk_stride > DEFAULT_SAFETY_MARGIN:
            raise InvalidInputError(
                f"chunk_size + chunk_stride must fit the {DEFAULT_SAFETY_MARGIN}-digit read window, "
                f"got {self.chunk_size} + {self.chunk_stride}"
            )
        if not (0 < self.echo_digits <= DEFAULT_SAFETY_MARGIN):
            raise InvalidInputError(f"echo_digits must be in 1..{DEFAULT_SAFETY_MARGIN}")
        if self.step_timeout_seconds <= 0 or self.long_step_timeout_seconds <= 0:
            raise InvalidInputError("step timeouts must be positive")
        if self.max_placement_attempts < 1:
            raise InvalidInputError("max_placement_attempts must be at least 1")
        if self.offset_step < 1:
            raise InvalidInputError("offset_step must be at least 1")
        if not (0 < self.lat_step <= 180) or not (0 < self.lon_step <= 360):
            raise InvalidInputError("grid steps must divide the globe")
        if self.max_offsets_per_region(self.total_population) > self.region_offset_span:
            raise InvalidInputError(
                f"region_offset_span {self.region_offset_span} cannot hold the candidates of "
                f"{self.total_population} pioneers"
            )
        if self.max_phases * self.grid_cell_count * self.region_offset_span > self.surge_offset_base:
            raise InvalidInputError("surge_offset_base overlaps the phase offsets")
        for name, table in (
            ("rarity_probabilities", self.rarity_probabilities),
            ("surge_rarity_probabilities", self.surge_rarity_probabilities),
        ):
            total = sum(table.values())
            if abs(total - 1.0) > 1e-9 or any(p < 0 for p in table.values()):
                raise InvalidInputError(f"{name} must be non-negative and sum to 1.0")
        if not (0.0 < self.diversity_ratio <= 1.0):
            raise InvalidInputError("diversity_ratio must be in (0, 1]")
        if not (0.0 <= self.adaptive_fraction <= 1.0):
            raise InvalidInputError("adaptive_fraction must be in [0, 1]")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SpawnConfig:
        """Deserialize from a dict."""
        return cls(**{k: v for k, v in d.items() if not k.startswith("_")})

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @classmethod
    def from_json(cls, s: str) -> SpawnConfig:
        return cls.from_dict(json.loads(s))

    def diff(self, other: SpawnConfig) -> dict[str, tuple[Any, Any]]:
        """Return parameters that differ between two configs."""
        diffs: dict[str, tuple[Any, Any]] = {}
        for k in self.to_dict():
            v1 = getattr(self, k)
            v2 = getattr(other, k)
            if v1 != v2:
                diffs[k] = (v1, v2)
        return diffs
