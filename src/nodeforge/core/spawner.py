"""
Node spawner: materializes rarity quotas into concrete node records.

Every cell reads its own stretch of the offset space, starting at
``((phase - 1) * len(grid) + cell_index) * region_offset_span``. Within a
cell the rarity entries run in tier order on one cursor, each continuing
where the previous one stopped, so no two candidates in a cell share an
offset and offsets never repeat across cells or phases. Cells fan out over
a bounded thread pool; results are concatenated in cell order for one bulk
write.

Placement paths:
    uniform:  phase 1, or no recorded activity: land points anywhere in
               the cell; echo intensity read straight from the digit stream.
    adaptive: phase > 1 with activity: ``adaptive_fraction`` of the points
               go to activity-weighted sub-bins (bin ∩ cell), the rest are
               uniform; echo intensity is the source bin's relative activity.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np

from nodeforge.core.activity import ActivityBin
from nodeforge.core.config import SpawnConfig
from nodeforge.core.digits import DigitCursor, DigitStream, DigitStreamSource
from nodeforge.core.errors import InvalidInputError
from nodeforge.core.grid import Bounds, WorldGrid
from nodeforge.core.land_mask import LandMask, LandMaskSource
from nodeforge.core.lore import generate_lore, generate_node_name
from nodeforge.core.node_types import NODE_NAMESPACE, node_type_id
from nodeforge.core.points import Placement, generate_point_in_cell
from nodeforge.core.quota import RARITY_ORDER, Rarity, RarityQuota
from nodeforge.core.region_metrics import RegionMetric
from nodeforge.metrics.collector import PlacementTelemetry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeRecord:
    """A spawned node ready for bulk persistence.

    ``fallback`` marks a centroid placement whose coordinate may be ocean.
    Surge-only fields are None for phase nodes.
    """

    id: str
    name: str
    latitude: float
    longitude: float
    type_id: str
    phase: int | None
    echo_intensity: float
    lore: str
    rarity: Rarity
    cell_id: str | None = None
    fallback: bool = False
    attempts: int = 1
    gen_event: str = "PhaseSpawn"
    # Surge metadata
    hex_id: str | None = None
    spawn_cycle: str | None = None
    activity_score: float | None = None
    hex_rank: int | None = None
    expires_at: str | None = None
    base_multiplier: float | None = None
    territory_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["rarity"] = self.rarity.value
        return d


def node_id(*parts: Any) -> str:
    """Deterministic node key; replays of the same task collide on purpose."""
    return str(uuid.uuid5(NODE_NAMESPACE, "node:" + ":".join(str(p) for p in parts)))


@dataclass(frozen=True)
class SpawnEntry:
    """``count`` nodes of one rarity in one cell."""

    cell_id: str
    bounds: Bounds
    rarity: Rarity
    count: int


@dataclass
class SubBin:
    bin: ActivityBin
    bounds: Bounds


@dataclass
class SpawnBatch:
    """All records of one spawn cycle plus its placement telemetry."""

    nodes: list[NodeRecord] = field(default_factory=list)
    telemetry: PlacementTelemetry = field(default_factory=PlacementTelemetry)

    @property
    def fallback_count(self) -> int:
        return sum(1 for n in self.nodes if n.fallback)


def build_entries(quotas: list[RarityQuota], metrics: list[RegionMetric]) -> list[list[SpawnEntry]]:
    """Group non-zero quota entries by cell, in cell order then tier order."""
    bounds_by_cell = {m.cell_id: m.bounds for m in metrics}
    cells: list[list[SpawnEntry]] = []
    for quota in quotas:
        bounds = bounds_by_cell[quota.cell_id]
        entries = [
            SpawnEntry(quota.cell_id, bounds, rarity, quota.counts[rarity])
            for rarity in RARITY_ORDER
            if quota.counts.get(rarity, 0) > 0
        ]
        if entries:
            cells.append(entries)
    return cells


class NodeSpawner:
    """Generates node records for quota entries."""

    def __init__(
        self,
        digits: DigitStreamSource,
        land: LandMaskSource,
        config: SpawnConfig | None = None,
        grid: WorldGrid | None = None,
    ) -> None:
        self.digits = digits
        self.land = land
        self.config = config or SpawnConfig()
        self.grid = grid or WorldGrid(self.config.lat_step, self.config.lon_step)

    def cell_offset(self, phase: int, cell_id: str) -> int:
        """First offset of a cell's stretch of the stream in ``phase``."""
        slot = (phase - 1) * len(self.grid) + self.grid.index_of(cell_id)
        return slot * self.config.region_offset_span

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    def spawn_all(
        self,
        quotas: list[RarityQuota],
        metrics: list[RegionMetric],
        phase: int,
        bins: list[ActivityBin] | None = None,
    ) -> SpawnBatch:
        """Spawn every quota entry; records come back in cell then tier order.

        Raises InvalidInputError when a cell holds more pioneers than its
        stretch of offsets can place.
        """
        for quota in quotas:
            needed = self.config.max_offsets_per_region(quota.pioneer_count)
            if needed > self.config.region_offset_span:
                raise InvalidInputError(
                    f"Cell {quota.cell_id}: {quota.pioneer_count} pioneers exceed the "
                    f"region offset span {self.config.region_offset_span}"
                )
        stream = self.digits.get()
        mask = self.land.get()
        cells = build_entries(quotas, metrics)
        adaptive_bins = bins if phase > 1 and bins else None

        def run(entries: list[SpawnEntry]) -> tuple[list[NodeRecord], PlacementTelemetry]:
            telemetry = PlacementTelemetry()
            nodes = self.spawn_cell(entries, phase, stream, mask, adaptive_bins, telemetry)
            return nodes, telemetry

        batch = SpawnBatch()
        if not cells:
            return batch
        workers = max(1, min(self.config.max_workers, len(cells)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            for nodes, telemetry in pool.map(run, cells):
                batch.nodes.extend(nodes)
                batch.telemetry.merge(telemetry)

        logger.info(
            "Spawned %d nodes in %d cells (phase %d, %s path, %d fallbacks)",
            len(batch.nodes), len(cells), phase,
            "adaptive" if adaptive_bins else "uniform", batch.fallback_count,
        )
        return batch

    # ------------------------------------------------------------------
    # One cell
    # ------------------------------------------------------------------
    def spawn_cell(
        self,
        entries: list[SpawnEntry],
        phase: int,
        stream: DigitStream,
        mask: LandMask,
        bins: list[ActivityBin] | None = None,
        telemetry: PlacementTelemetry | None = None,
    ) -> list[NodeRecord]:
        """Spawn one cell's entries on a single cursor."""
        cell_id = entries[0].cell_id
        start = self.cell_offset(phase, cell_id)
        cursor = DigitCursor(start)
        nodes: list[NodeRecord] = []
        for entry in entries:
            entry_nodes, cursor = self.spawn_entry(entry, phase, cursor, stream, mask, bins, telemetry)
            nodes.extend(entry_nodes)

        consumed = cursor.offset - start
        if consumed > stream.usable_length:
            logger.warning(
                "Cell %s read %d offsets from a stream of %d positions; coordinates may repeat",
                cell_id, consumed, stream.usable_length,
            )
        return nodes

    def spawn_entry(
        self,
        entry: SpawnEntry,
        phase: int,
        cursor: DigitCursor,
        stream: DigitStream,
        mask: LandMask,
        bins: list[ActivityBin] | None = None,
        telemetry: PlacementTelemetry | None = None,
    ) -> tuple[list[NodeRecord], DigitCursor]:
        """Spawn one entry from ``cursor``; returns the records and the next free cursor."""
        sub_bins = self._sub_bins(entry.bounds, bins) if bins else []
        if not sub_bins:
            return self._spawn_uniform(entry, phase, entry.count, 0, cursor, stream, mask, telemetry)

        max_activity = max(b.activity for b in bins)
        n_adaptive = int(entry.count * self.config.adaptive_fraction)
        nodes, cursor = self._spawn_adaptive(
            entry, phase, n_adaptive, sub_bins, max_activity, cursor, stream, mask, telemetry,
        )
        uniform, cursor = self._spawn_uniform(
            entry, phase, entry.count - n_adaptive, n_adaptive, cursor, stream, mask, telemetry,
        )
        return nodes + uniform, cursor

    def _spawn_uniform(
        self,
        entry: SpawnEntry,
        phase: int,
        count: int,
        first_index: int,
        cursor: DigitCursor,
        stream: DigitStream,
        mask: LandMask,
        telemetry: PlacementTelemetry | None,
    ) -> tuple[list[NodeRecord], DigitCursor]:
        nodes: list[NodeRecord] = []
        for i in range(count):
            placement = generate_point_in_cell(
                entry.bounds, cursor, stream, mask, self.config, entry.cell_id, telemetry,
            )
            cursor = DigitCursor(placement.next_offset)
            echo = int(stream.digits_at(cursor.offset, self.config.echo_digits)) / (
                10 ** self.config.echo_digits - 1
            )
            nodes.append(self._record(entry, phase, first_index + i, placement, echo))
        return nodes, cursor

    def _spawn_adaptive(
        self,
        entry: SpawnEntry,
        phase: int,
        count: int,
        sub_bins: list[SubBin],
        max_activity: float,
        cursor: DigitCursor,
        stream: DigitStream,
        mask: LandMask,
        telemetry: PlacementTelemetry | None,
    ) -> tuple[list[NodeRecord], DigitCursor]:
        activities = np.array([s.bin.activity for s in sub_bins], dtype=np.float64)
        weights = (activities + 1.0) / (activities.sum() + len(sub_bins))
        cumulative = np.cumsum(weights)
        cumulative[-1] = 1.0

        nodes: list[NodeRecord] = []
        for i in range(count):
            u = stream.fraction_at(cursor.offset, self.config.chunk_size)
            chosen = sub_bins[min(int(np.searchsorted(cumulative, u, side="right")), len(sub_bins) - 1)]
            cursor = cursor.advance()
            placement = generate_point_in_cell(
                chosen.bounds, cursor, stream, mask, self.config,
                f"{entry.cell_id}/{chosen.bin.bin_id}", telemetry,
            )
            cursor = DigitCursor(placement.next_offset)
            echo = (chosen.bin.activity + 1.0) / (max_activity + 1.0)
            nodes.append(self._record(entry, phase, i, placement, echo))
        return nodes, cursor

    def _sub_bins(self, bounds: Bounds, bins: list[ActivityBin]) -> list[SubBin]:
        size = self.config.activity_bin_size
        result: list[SubBin] = []
        for b in bins:
            overlap = b.bounds(size).intersect(bounds)
            if overlap is not None:
                result.append(SubBin(bin=b, bounds=overlap))
        return result

    def _record(
        self, entry: SpawnEntry, phase: int, index: int, placement: Placement, echo: float,
    ) -> NodeRecord:
        return NodeRecord(
            id=node_id(phase, entry.cell_id, entry.rarity.value, index),
            name=generate_node_name(entry.rarity, placement.offset),
            latitude=placement.point.lat,
            longitude=placement.point.lng,
            type_id=node_type_id(phase, entry.rarity),
            phase=phase,
            echo_intensity=echo,
            lore=generate_lore(entry.rarity, phase, seed=placement.offset).lore,
            rarity=entry.rarity,
            cell_id=entry.cell_id,
            fallback=placement.fallback,
            attempts=placement.attempts,
        )
