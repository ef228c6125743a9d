"""
Resonance surge: the daily, hex-keyed spawn cycle.

Steps for one ``YYYY-MM-DD`` cycle:

1. Read per-hex activity scores. With no activity, substitute the seed-hex
   list (guild territories first, then fixed major-city hexes) and flag
   the cycle as a zero-activity fallback.
2. Size the day's budget from the total score (monotonic, saturating).
3. Allocate the budget across hexes proportionally to score, or evenly
   over seed hexes.
4. Diversity penalty: clamp hexes above the per-hex cap and spread the
   excess evenly over hexes still under it.
5. Place land-validated points in each hex and draw a rarity per node
   from the surge table using the digit stream.

Persistence of the nodes and the audit record is one transaction, done
by the caller.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Sequence, TypeVar

import numpy as np

from nodeforge.core.activity import ActivityStore
from nodeforge.core.config import SpawnConfig
from nodeforge.core.digits import DigitCursor, DigitStream, DigitStreamSource
from nodeforge.core.errors import InvalidInputError
from nodeforge.core.hex_index import HexIndex
from nodeforge.core.land_mask import LandMask, LandMaskSource
from nodeforge.core.lore import generate_surge_lore
from nodeforge.core.node_types import node_type_id
from nodeforge.core.points import generate_point_in_hex
from nodeforge.core.quota import Rarity, normalize_probabilities
from nodeforge.core.region_metrics import largest_remainder
from nodeforge.core.spawner import NodeRecord, node_id
from nodeforge.metrics.collector import PlacementTelemetry

logger = logging.getLogger(__name__)

T = TypeVar("T")

SURGE_EVENT = "ResonanceSurge"

# (name, lat, lng)
MAJOR_CITY_COORDINATES: list[tuple[str, float, float]] = [
    ("Tokyo", 35.6762, 139.6503),
    ("Delhi", 28.7041, 77.1025),
    ("Shanghai", 31.2304, 121.4737),
    ("Sao Paulo", -23.5505, -46.6333),
    ("Mexico City", 19.4326, -99.1332),
    ("Cairo", 30.0444, 31.2357),
    ("Mumbai", 19.0760, 72.8777),
    ("Beijing", 39.9042, 116.4074),
    ("Dhaka", 23.8103, 90.4125),
    ("Osaka", 34.6937, 135.5023),
    ("New York", 40.7128, -74.0060),
    ("Karachi", 24.8607, 67.0011),
    ("Buenos Aires", -34.6037, -58.3816),
    ("Istanbul", 41.0082, 28.9784),
    ("Lagos", 6.5244, 3.3792),
    ("Manila", 14.5995, 120.9842),
    ("Moscow", 55.7558, 37.6173),
    ("London", 51.5074, -0.1278),
    ("Paris", 48.8566, 2.3522),
    ("Jakarta", -6.2088, 106.8456),
    ("Seoul", 37.5665, 126.9780),
    ("Lima", -12.0464, -77.0428),
    ("Nairobi", -1.2921, 36.8219),
    ("Sydney", -33.8688, 151.2093),
    ("Los Angeles", 34.0522, -118.2437),
]


@dataclass(frozen=True)
class ActivitySnapshot:
    hex_id: str
    score: float


@dataclass
class SurgePlan:
    """Per-hex node counts for one cycle, before points are placed.

    ``allocation`` is ordered by descending score (seed-list order on
    fallback); that order defines node ranks.
    """

    spawn_cycle: str
    snapshots: list[ActivitySnapshot]
    allocation: dict[str, int]
    total_nodes: int
    zero_activity_fallback: bool
    penalized_hex_count: int

    @property
    def scores(self) -> dict[str, float]:
        return {s.hex_id: s.score for s in self.snapshots}


@dataclass
class SurgeAuditRecord:
    """The persisted per-cycle log entry."""

    spawn_cycle: str
    total_spawned: int
    hexes_considered: int
    zero_activity_fallback: bool
    diversity_penalty_hex_count: int
    top_hexes: list[dict[str, Any]] = field(default_factory=list)
    hexes_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "spawn_cycle": self.spawn_cycle,
            "total_spawned": self.total_spawned,
            "hexes_considered": self.hexes_considered,
            "zero_activity_fallback": self.zero_activity_fallback,
            "diversity_penalty_hex_count": self.diversity_penalty_hex_count,
            "top_hexes": list(self.top_hexes),
            "hexes_used": self.hexes_used,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SurgeAuditRecord:
        return cls(
            spawn_cycle=d["spawn_cycle"],
            total_spawned=int(d["total_spawned"]),
            hexes_considered=int(d["hexes_considered"]),
            zero_activity_fallback=bool(d["zero_activity_fallback"]),
            diversity_penalty_hex_count=int(d["diversity_penalty_hex_count"]),
            top_hexes=list(d.get("top_hexes", [])),
            hexes_used=int(d.get("hexes_used", 0)),
        )


@dataclass
class SurgeResult:
    nodes: list[NodeRecord]
    audit: SurgeAuditRecord
    telemetry: PlacementTelemetry


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def parse_spawn_cycle(spawn_cycle: str) -> date:
    """Parse a ``YYYY-MM-DD`` cycle id. Raises InvalidInputError."""
    try:
        return datetime.strptime(spawn_cycle, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise InvalidInputError(f"spawn_cycle must be YYYY-MM-DD, got {spawn_cycle!r}") from None


def city_seed_hexes(hex_index: HexIndex) -> list[str]:
    return [hex_index.latlng_to_hex(lat, lng) for _, lat, lng in MAJOR_CITY_COORDINATES]


def build_seed_hex_list(territory_hexes: Sequence[str], hex_index: HexIndex) -> list[str]:
    """Territory hexes first, then major-city hexes, without duplicates."""
    seeds: list[str] = []
    for hex_id in list(territory_hexes) + city_seed_hexes(hex_index):
        if hex_id not in seeds:
            seeds.append(hex_id)
    return seeds


def daily_node_count(total_score: float, config: SpawnConfig | None = None) -> int:
    """Budget for a cycle: baseline on zero activity, otherwise a saturating curve."""
    config = config or SpawnConfig()
    if total_score <= 0:
        return config.zero_activity_baseline
    curve = config.surge_max_nodes * (1.0 - math.exp(-total_score / config.surge_score_scale))
    return max(config.surge_min_nodes, int(math.floor(curve)))


def allocate_even(hexes: Sequence[str], total: int) -> dict[str, int]:
    """Split ``total`` evenly; the first ``total % n`` hexes get one extra."""
    if not hexes:
        return {}
    share, remainder = divmod(total, len(hexes))
    return {h: share + (1 if i < remainder else 0) for i, h in enumerate(hexes)}


def allocate_proportional(snapshots: Sequence[ActivitySnapshot], total: int) -> dict[str, int]:
    """Largest-remainder split of ``total`` by score, in snapshot order."""
    if not snapshots:
        return {}
    scores = np.array([max(0.0, s.score) for s in snapshots], dtype=np.float64)
    if scores.sum() <= 0:
        return allocate_even([s.hex_id for s in snapshots], total)
    counts = largest_remainder(scores / scores.sum() * total, total)
    return {s.hex_id: int(counts[i]) for i, s in enumerate(snapshots)}


def diversity_cap(total: int, hex_count: int, ratio: float) -> int:
    """Per-hex cap; never below the even split, so the total always fits."""
    if hex_count <= 0:
        return 0
    return max(int(math.floor(total * ratio)), math.ceil(total / hex_count))


def apply_diversity_penalty(
    allocation: dict[str, int], total: int, ratio: float = 0.15,
) -> tuple[dict[str, int], int]:
    """Clamp over-cap hexes and redistribute the excess.

    Returns the rebalanced allocation (same key order) and the number of
    hexes that were clamped. The sum of the allocation is unchanged.
    """
    if not allocation:
        return {}, 0
    cap = diversity_cap(total, len(allocation), ratio)
    result = dict(allocation)
    penalized = [h for h, c in result.items() if c > cap]
    excess = 0
    for h in penalized:
        excess += result[h] - cap
        result[h] = cap

    while excess > 0:
        under = [h for h, c in result.items() if c < cap]
        if not under:
            logger.warning("Diversity penalty could not place %d nodes", excess)
            break
        share, remainder = divmod(excess, len(under))
        excess = 0
        for i, h in enumerate(under):
            value = result[h] + share + (1 if i < remainder else 0)
            if value > cap:
                excess += value - cap
                value = cap
            result[h] = value

    if penalized:
        logger.info("Diversity penalty clamped %d hexes to %d nodes", len(penalized), cap)
    return result, len(penalized)


def choose_weighted(items: Sequence[T], weights: Sequence[float], u: float) -> T:
    """Pick from ``items`` by cumulative weight using a fraction ``u`` in [0, 1)."""
    if not items:
        raise ValueError("choose_weighted needs at least one item")
    cumulative = np.cumsum(np.asarray(weights, dtype=np.float64))
    target = u * cumulative[-1]
    index = int(np.searchsorted(cumulative, target, side="right"))
    return items[min(index, len(items) - 1)]


# ---------------------------------------------------------------------------
# Spawner
# ---------------------------------------------------------------------------

class SurgeSpawner:
    """Plans and generates one surge cycle.

    ``node_count_fn`` maps the cycle's total score to a node budget and
    defaults to :func:`daily_node_count`.
    """

    def __init__(
        self,
        digits: DigitStreamSource,
        land: LandMaskSource,
        activity_store: ActivityStore,
        config: SpawnConfig | None = None,
        hex_index: HexIndex | None = None,
        node_count_fn: Callable[[float], int] | None = None,
    ) -> None:
        self.digits = digits
        self.land = land
        self.activity_store = activity_store
        self.config = config or SpawnConfig()
        self.hex_index = hex_index or HexIndex(self.config.hex_resolution)
        self.node_count_fn = node_count_fn or (lambda score: daily_node_count(score, self.config))
        table = normalize_probabilities(self.config.surge_rarity_probabilities)
        self._rarities = [r for r, p in table.items() if p > 0]
        self._rarity_weights = [table[r] for r in self._rarities]

    # ---- Planning ----

    def snapshots(self, spawn_cycle: str) -> list[ActivitySnapshot]:
        scores = self.activity_store.hex_scores(spawn_cycle)
        snaps = [ActivitySnapshot(h, float(s)) for h, s in scores.items() if s > 0]
        snaps.sort(key=lambda s: (-s.score, s.hex_id))
        return snaps

    def plan(self, spawn_cycle: str) -> SurgePlan:
        parse_spawn_cycle(spawn_cycle)
        snaps = self.snapshots(spawn_cycle)
        total_score = sum(s.score for s in snaps)
        total = self.node_count_fn(total_score)

        if snaps:
            allocation = allocate_proportional(snaps, total)
            zero_fallback = False
        else:
            territories = sorted(self.activity_store.controlled_territories())
            seeds = build_seed_hex_list(territories, self.hex_index)
            logger.warning(
                "No activity for surge cycle %s; seeding %d nodes over %d seed hexes",
                spawn_cycle, total, len(seeds),
            )
            allocation = allocate_even(seeds, total)
            zero_fallback = True

        allocation, penalized = apply_diversity_penalty(
            allocation, total, self.config.diversity_ratio,
        )
        return SurgePlan(
            spawn_cycle=spawn_cycle,
            snapshots=snaps,
            allocation=allocation,
            total_nodes=total,
            zero_activity_fallback=zero_fallback,
            penalized_hex_count=penalized,
        )

    # ---- Generation ----

    def spawn(self, spawn_cycle: str, type_phase: int = 1) -> SurgeResult:
        """Plan the cycle and generate its node records (not persisted)."""
        plan = self.plan(spawn_cycle)
        if len(plan.allocation) > self.config.surge_hex_slots:
            raise InvalidInputError(
                f"Surge cycle {spawn_cycle} allocates {len(plan.allocation)} hexes, "
                f"more than surge_hex_slots={self.config.surge_hex_slots}"
            )
        stream = self.digits.get()
        mask = self.land.get()
        territories = self.activity_store.controlled_territories()
        cycle_date = parse_spawn_cycle(spawn_cycle)

        tasks: list[tuple[int, str, int, int]] = []
        rank = 1
        for position, (hex_id, count) in enumerate(plan.allocation.items()):
            if count > 0:
                tasks.append((position, hex_id, count, rank))
                rank += count

        def run(task: tuple[int, str, int, int]) -> tuple[list[NodeRecord], PlacementTelemetry]:
            telemetry = PlacementTelemetry()
            nodes = self._spawn_hex(
                plan, cycle_date, task, stream, mask, territories, type_phase, telemetry,
            )
            return nodes, telemetry

        nodes: list[NodeRecord] = []
        telemetry = PlacementTelemetry()
        if tasks:
            workers = max(1, min(self.config.max_workers, len(tasks)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                for hex_nodes, hex_telemetry in pool.map(run, tasks):
                    nodes.extend(hex_nodes)
                    telemetry.merge(hex_telemetry)

        audit = self.audit(plan, len(nodes))
        logger.info(
            "Surge cycle %s: %d nodes over %d hexes (fallback=%s, penalized=%d)",
            spawn_cycle, len(nodes), audit.hexes_used,
            plan.zero_activity_fallback, plan.penalized_hex_count,
        )
        return SurgeResult(nodes=nodes, audit=audit, telemetry=telemetry)

    def audit(self, plan: SurgePlan, total_spawned: int) -> SurgeAuditRecord:
        scores = plan.scores
        snapshot_rank = {s.hex_id: i + 1 for i, s in enumerate(plan.snapshots)}
        top = [
            {
                "hex_id": hex_id,
                "score": scores.get(hex_id, 0.0),
                "rank": snapshot_rank.get(hex_id, 0),
                "nodes_spawned": count,
            }
            for hex_id, count in list(plan.allocation.items())[: self.config.top_hex_count]
        ]
        return SurgeAuditRecord(
            spawn_cycle=plan.spawn_cycle,
            total_spawned=total_spawned,
            hexes_considered=len(plan.snapshots),
            zero_activity_fallback=plan.zero_activity_fallback,
            diversity_penalty_hex_count=plan.penalized_hex_count,
            top_hexes=top,
            hexes_used=sum(1 for c in plan.allocation.values() if c > 0),
        )

    def hex_offset(self, cycle_date: date, hex_position: int) -> int:
        """First offset of a hex's stretch of the stream in a cycle.

        Surge offsets start above every phase offset; each hex slot of each
        day gets ``region_offset_span`` offsets.
        """
        slot = cycle_date.toordinal() * self.config.surge_hex_slots + hex_position
        return self.config.surge_offset_base + slot * self.config.region_offset_span

    def _spawn_hex(
        self,
        plan: SurgePlan,
        cycle_date: date,
        task: tuple[int, str, int, int],
        stream: DigitStream,
        mask: LandMask,
        territories: dict[str, str],
        type_phase: int,
        telemetry: PlacementTelemetry,
    ) -> list[NodeRecord]:
        hex_position, hex_id, count, first_rank = task
        score = plan.scores.get(hex_id, 0.0)
        total = max(1, plan.total_nodes)
        expires_at = (cycle_date + timedelta(days=self.config.surge_lifetime_days)).isoformat()
        cursor = DigitCursor(self.hex_offset(cycle_date, hex_position))

        nodes: list[NodeRecord] = []
        for i in range(count):
            rank = first_rank + i
            u = stream.fraction_at(cursor.offset, self.config.chunk_size)
            rarity: Rarity = choose_weighted(self._rarities, self._rarity_weights, u)
            placement = generate_point_in_hex(
                hex_id, cursor.advance(), stream, mask, self.hex_index, self.config, telemetry,
            )
            cursor = DigitCursor(placement.next_offset)
            nodes.append(
                NodeRecord(
                    id=node_id("surge", plan.spawn_cycle, rank),
                    name=f"Surge Node {cycle_date:%m%d}-{rank:03d}",
                    latitude=placement.point.lat,
                    longitude=placement.point.lng,
                    type_id=node_type_id(type_phase, rarity),
                    phase=None,
                    echo_intensity=0.8 + 0.4 * rank / total,
                    lore=generate_surge_lore(score, rank),
                    rarity=rarity,
                    fallback=placement.fallback,
                    attempts=placement.attempts,
                    gen_event=SURGE_EVENT,
                    hex_id=hex_id,
                    spawn_cycle=plan.spawn_cycle,
                    activity_score=score,
                    hex_rank=rank,
                    expires_at=expires_at,
                    base_multiplier=self.config.surge_base_multiplier,
                    territory_id=territories.get(hex_id),
                )
            )
        return nodes
