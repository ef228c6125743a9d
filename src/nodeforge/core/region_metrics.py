"""
Region metrics: per-cell pioneer weights over the fixed world grid.

Weight pipeline for one (total, phase, layers) request:

1. Base weight: 1.0 per cell in phase 1; ``activity + 1`` in later phases,
   with historical activity rebinned from the activity store into cells.
2. Neighbor boost: every neighbor of a cell whose activity exceeds the
   threshold gains ``factor`` times its own weight, once per such cell.
3. Cell noise: multiply by ``1 + amplitude * cell_noise(cell_id, salt)``.
4. Lore layers, in request order.
5. Integer conversion: floor proportional shares, then hand the global
   deficit to the largest fractional remainders (ties by grid order).

The result sums to ``total_pioneers`` exactly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

from nodeforge.core.activity import ActivityStore
from nodeforge.core.cache import LayeredCache
from nodeforge.core.config import SpawnConfig
from nodeforge.core.errors import InvalidInputError
from nodeforge.core.grid import Bounds, WorldGrid, cell_noise
from nodeforge.core.layers import LayerRegistry, LoreLayer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegionMetric:
    """Pioneer allocation for one grid cell."""

    cell_id: str
    bounds: Bounds
    pioneer_count: int
    echo_intensity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "cell_id": self.cell_id,
            "bounds": self.bounds.to_dict(),
            "pioneer_count": self.pioneer_count,
            "echo_intensity": self.echo_intensity,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RegionMetric:
        return cls(
            cell_id=d["cell_id"],
            bounds=Bounds.from_dict(d["bounds"]),
            pioneer_count=int(d["pioneer_count"]),
            echo_intensity=float(d["echo_intensity"]),
        )


def largest_remainder(shares: np.ndarray, total: int) -> np.ndarray:
    """Round non-negative real shares summing to ``total`` into integers.

    Floors every share, then adds one to the entries with the largest
    fractional parts until the sum is exact. Ties go to the lower index.
    """
    counts = np.floor(shares).astype(np.int64)
    deficit = int(total - counts.sum())
    if deficit > 0:
        remainders = shares - counts
        order = np.argsort(-remainders, kind="stable")
        counts[order[:deficit]] += 1
    return counts


def cache_key(total_pioneers: int, phase: int, layers: Sequence[str]) -> str:
    return f"region_metrics:{total_pioneers}:{phase}:{','.join(sorted(set(layers)))}"


def filter_target_region(metrics: list[RegionMetric], target_region: str | None) -> list[RegionMetric]:
    """Keep only the metric for ``target_region`` (a cell id), if one is given."""
    if not target_region:
        return metrics
    filtered = [m for m in metrics if m.cell_id == target_region]
    if not filtered:
        raise InvalidInputError(f"Unknown target region '{target_region}'")
    return filtered


class RegionMetricsGenerator:
    """Compute :class:`RegionMetric` lists with a layered result cache.

    Parameters
    ----------
    grid : WorldGrid
        The fixed partition every phase shares.
    activity_store : ActivityStore | None
        Source of historical bin activity for phase > 1.
    layers : LayerRegistry | None
        Named lore layers; defaults to the built-in set.
    cache : LayeredCache | None
        Result cache. Results involving a non-deterministic layer bypass it.
    """

    def __init__(
        self,
        grid: WorldGrid,
        activity_store: ActivityStore | None = None,
        layers: LayerRegistry | None = None,
        cache: LayeredCache | None = None,
        config: SpawnConfig | None = None,
    ) -> None:
        self.grid = grid
        self.activity_store = activity_store
        self.layers = layers if layers is not None else LayerRegistry.with_defaults()
        self.cache = cache
        self.config = config or SpawnConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def generate(
        self,
        total_pioneers: int,
        phase: int = 1,
        layers: Sequence[str] = (),
    ) -> list[RegionMetric]:
        if total_pioneers <= 0:
            raise InvalidInputError(f"total_pioneers must be positive, got {total_pioneers}")
        if phase < 1 or phase > self.config.max_phases:
            raise InvalidInputError(
                f"phase must be in 1..{self.config.max_phases}, got {phase}"
            )
        resolved = self.layers.resolve(list(layers))
        cacheable = self.cache is not None and all(layer.deterministic for layer in resolved)
        key = cache_key(total_pioneers, phase, layers)

        if cacheable:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Region metrics cache hit for %s", key)
                return [RegionMetric.from_dict(d) for d in cached]

        weights = self.compute_weights(phase, resolved)
        metrics = self._to_metrics(weights, total_pioneers)

        if cacheable:
            self.cache.put(
                key, [m.to_dict() for m in metrics], ttl=self.config.region_cache_ttl,
            )
        logger.info(
            "Region metrics: %d pioneers over %d cells (phase %d, layers=%s)",
            total_pioneers, len(metrics), phase, list(layers),
        )
        return metrics

    def compute_weights(self, phase: int, layers: Sequence[LoreLayer] = ()) -> np.ndarray:
        """Real-valued weight per cell in grid order."""
        cells = self.grid.cells
        if phase == 1:
            weights = np.ones(len(cells), dtype=np.float64)
        else:
            activity = self.cell_activity()
            weights = self._boost_neighbors(activity + 1.0, activity)

        amplitude = self.config.cell_noise_amplitude
        salt = self.config.cell_noise_salt
        noise = np.array([cell_noise(c.cell_id, salt) for c in cells], dtype=np.float64)
        weights = weights * (1.0 + amplitude * noise)

        for layer in layers:
            weights = layer.apply(weights, cells, self.config)
        return weights

    def cell_activity(self) -> np.ndarray:
        """Historical activity rebinned from coarse bins into grid cells."""
        activity = np.zeros(len(self.grid), dtype=np.float64)
        if self.activity_store is None:
            return activity
        bin_size = self.config.activity_bin_size
        for b in self.activity_store.bin_activity():
            lat, lng = b.center(bin_size)
            cell = self.grid.cell_for(lat, lng)
            activity[self.grid.index_of(cell.cell_id)] += b.activity
        return activity

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _boost_neighbors(self, weights: np.ndarray, activity: np.ndarray) -> np.ndarray:
        boosted = weights.copy()
        threshold = self.config.neighbor_boost_threshold
        factor = self.config.neighbor_boost_factor
        cells = self.grid.cells
        for idx in np.flatnonzero(activity > threshold):
            for neighbor_id in self.grid.neighbors(cells[idx].cell_id):
                n_idx = self.grid.index_of(neighbor_id)
                boosted[n_idx] += weights[n_idx] * factor
        return boosted

    def _to_metrics(self, weights: np.ndarray, total_pioneers: int) -> list[RegionMetric]:
        shares = weights / weights.sum() * total_pioneers
        counts = largest_remainder(shares, total_pioneers)
        echo = weights / weights.max()
        return [
            RegionMetric(
                cell_id=cell.cell_id,
                bounds=cell.bounds,
                pioneer_count=int(counts[i]),
                echo_intensity=float(echo[i]),
            )
            for i, cell in enumerate(self.grid.cells)
        ]
