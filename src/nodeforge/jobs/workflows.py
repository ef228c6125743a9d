"""
Spawn workflows: genesis, phase transitions, generic node spawns and daily
surge cycles.

Each workflow is a sequence of named steps on a :class:`Job`. Inputs are
validated before the job acquires its key, so invalid triggers never hold a
single-flight slot. Genesis and phase transitions delegate the actual
spawning to :func:`node_spawn_workflow` inside their own job.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from nodeforge.core.activity import ActivityStore
from nodeforge.core.cache import LayeredCache
from nodeforge.core.config import SpawnConfig
from nodeforge.core.digits import DigitStreamSource
from nodeforge.core.errors import InvalidInputError, ThresholdNotMetError
from nodeforge.core.grid import WorldGrid
from nodeforge.core.land_mask import LandMaskSource
from nodeforge.core.node_types import generate_node_types
from nodeforge.core.quota import (
    Rarity,
    allocate_quotas,
    effective_pioneers_for_phase,
    normalize_probabilities,
    phase_threshold,
    quota_totals,
)
from nodeforge.core.region_metrics import RegionMetricsGenerator, filter_target_region
from nodeforge.core.spawner import NodeSpawner
from nodeforge.core.surge import SurgeAuditRecord, SurgeSpawner, parse_spawn_cycle
from nodeforge.api.persistence import NodeStore
from nodeforge.jobs.events import LORE_BOOST, NODES_SPAWNED, SURGE_SPAWNED, EventSink
from nodeforge.jobs.retry import RetryPolicy
from nodeforge.jobs.runner import Job, JobRunner
from nodeforge.llm.client import LLMClient
from nodeforge.llm.narrator import AwakeningNarrator, LoreBoostEvent, LoreBooster

logger = logging.getLogger(__name__)

GENESIS = "GENESIS"
THRESHOLD = "THRESHOLD"
GAME_EVENT_TYPES = (GENESIS, THRESHOLD)

LORE_BOOST_THEME = "cosmic expansion"


# ---------------------------------------------------------------------------
# Inputs and results
# ---------------------------------------------------------------------------

@dataclass
class SpawnTrigger:
    """Inputs of one node-spawn job."""

    total_pioneers: int
    phase: int = 1
    target_region: str | None = None
    spawn_time: datetime | None = None
    layers: list[str] = field(default_factory=list)
    game_event_type: str = GENESIS
    lore_boost: bool = False

    @property
    def region(self) -> str:
        return self.target_region or "global"

    @property
    def job_key(self) -> str:
        return f"spawn:{self.phase}:{self.region}"

    def validate(self, config: SpawnConfig) -> None:
        if self.total_pioneers <= 0:
            raise InvalidInputError(f"total_pioneers must be positive, got {self.total_pioneers}")
        if self.phase < 1 or self.phase > config.max_phases:
            raise InvalidInputError(f"phase must be in 1..{config.max_phases}, got {self.phase}")
        if self.game_event_type not in GAME_EVENT_TYPES:
            raise InvalidInputError(
                f"game_event_type must be one of {GAME_EVENT_TYPES}, got {self.game_event_type!r}"
            )


@dataclass
class NodesSpawnedResult:
    phase: int
    nodes_spawned: int
    narrative: str
    node_types_stored: int
    nodes_stored: int
    fallback_count: int
    rarity_totals: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SurgeCycleResult:
    spawn_cycle: str
    nodes_spawned: int
    nodes_stored: int
    fallback_count: int
    audit: SurgeAuditRecord
    cleanup: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "spawn_cycle": self.spawn_cycle,
            "nodes_spawned": self.nodes_spawned,
            "nodes_stored": self.nodes_stored,
            "fallback_count": self.fallback_count,
            "audit": self.audit.to_dict(),
            "cleanup": dict(self.cleanup),
        }


# ---------------------------------------------------------------------------
# Dependency bundle
# ---------------------------------------------------------------------------

@dataclass
class SpawnEngine:
    """Everything a workflow needs, wired once per process."""

    config: SpawnConfig
    digits: DigitStreamSource
    land: LandMaskSource
    store: NodeStore
    activity_store: ActivityStore
    metrics: RegionMetricsGenerator
    spawner: NodeSpawner
    surge: SurgeSpawner
    narrator: AwakeningNarrator
    lore_booster: LoreBooster
    runner: JobRunner
    events: EventSink

    @classmethod
    def build(
        cls,
        config: SpawnConfig,
        digits: DigitStreamSource,
        land: LandMaskSource,
        store: NodeStore,
        activity_store: ActivityStore,
        cache: LayeredCache | None = None,
        llm_client: LLMClient | None = None,
        runner: JobRunner | None = None,
        events: EventSink | None = None,
    ) -> SpawnEngine:
        config.validate()
        grid = WorldGrid(config.lat_step, config.lon_step)
        if runner is None:
            runner = JobRunner(
                policy=RetryPolicy(config.retry_limit, "exponential", config.retry_base_delay),
                step_timeout=config.step_timeout_seconds,
                step_timeouts={name: config.long_step_timeout_seconds for name in config.long_running_steps},
            )
        return cls(
            config=config,
            digits=digits,
            land=land,
            store=store,
            activity_store=activity_store,
            metrics=RegionMetricsGenerator(grid, activity_store, cache=cache, config=config),
            spawner=NodeSpawner(digits, land, config, grid),
            surge=SurgeSpawner(digits, land, activity_store, config),
            narrator=AwakeningNarrator(llm_client),
            lore_booster=LoreBooster(llm_client),
            runner=runner,
            events=events or EventSink(),
        )


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------

def check_threshold(engine: SpawnEngine, phase: int) -> int:
    """Return the phase's threshold, or raise if activity has not reached it."""
    cfg = engine.config
    threshold = phase_threshold(phase, cfg.phase_threshold_base, cfg.phase_threshold_growth)
    completed = engine.activity_store.completed_session_count()
    if completed < threshold:
        raise ThresholdNotMetError(phase, completed, threshold)
    return threshold


def load_sources(engine: SpawnEngine) -> None:
    engine.digits.get()
    engine.land.get()


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

def node_spawn_workflow(engine: SpawnEngine, trigger: SpawnTrigger, job: Job | None = None) -> NodesSpawnedResult:
    """Spawn one phase's nodes end to end.

    Runs inside ``job`` when given (genesis and phase transitions), otherwise
    under its own single-flight key ``spawn:<phase>:<region>``.
    """
    trigger.validate(engine.config)
    engine.metrics.layers.resolve(trigger.layers)
    if job is not None:
        return _spawn_nodes(engine, trigger, job)
    with engine.runner.job(trigger.job_key) as own:
        return _spawn_nodes(engine, trigger, own)


def _spawn_nodes(engine: SpawnEngine, trigger: SpawnTrigger, job: Job) -> NodesSpawnedResult:
    cfg = engine.config
    phase = trigger.phase

    if trigger.game_event_type == THRESHOLD:
        job.step("calculate-threshold", check_threshold, engine, phase)

    job.step("load-sources", load_sources, engine)
    metrics = job.step(
        "generate-regions", engine.metrics.generate, trigger.total_pioneers, phase, trigger.layers,
    )
    metrics = filter_target_region(metrics, trigger.target_region)

    if trigger.spawn_time is not None:
        job.sleep_until("wait-for-time", trigger.spawn_time.timestamp())

    quotas = job.step("calculate-quotas", allocate_quotas, metrics, cfg.rarity_probabilities)
    totals = quota_totals(quotas)
    rarities = [r for r, count in totals.items() if count > 0]
    node_types = job.step("generate-node-types", generate_node_types, phase, rarities)

    bins = engine.activity_store.bin_activity() if phase > 1 else None
    batch = job.step("spawn-nodes", engine.spawner.spawn_all, quotas, metrics, phase, bins)

    types_stored = job.step("persist-node-types", engine.store.insert_node_types, node_types)
    nodes_stored = job.step("persist-nodes", engine.store.insert_nodes, batch.nodes)

    narrative = job.step(
        "trigger-awakening",
        engine.narrator.narrate,
        [{"name": t.name, "lore": t.description} for t in node_types],
        phase,
        len(batch.nodes),
        trigger.region,
    )

    result = NodesSpawnedResult(
        phase=phase,
        nodes_spawned=len(batch.nodes),
        narrative=narrative,
        node_types_stored=types_stored,
        nodes_stored=nodes_stored,
        fallback_count=batch.fallback_count,
        rarity_totals={r.value: c for r, c in totals.items()},
    )
    if batch.telemetry.fallbacks:
        logger.warning(
            "Phase %d: %d of %d placements fell back to a centroid",
            phase, batch.telemetry.fallbacks, batch.telemetry.placements,
        )
    engine.events.emit(NODES_SPAWNED, result.to_dict())
    if trigger.lore_boost:
        event = LoreBoostEvent(region=trigger.region, rarity=Rarity.EPIC, story_theme=LORE_BOOST_THEME)
        engine.events.emit(LORE_BOOST, event.to_dict())
    return result


def genesis_workflow(engine: SpawnEngine) -> NodesSpawnedResult:
    """Open phase 1: half the population, equal weights, environmental layer."""
    phase = 1
    with engine.runner.job(f"phase:{phase}") as job:
        pioneers = job.step(
            "calculate-effective-pioneers",
            effective_pioneers_for_phase, phase, engine.config.total_population,
        )
        trigger = SpawnTrigger(
            total_pioneers=pioneers,
            phase=phase,
            layers=["environmental"],
            game_event_type=GENESIS,
            lore_boost=True,
        )
        result = node_spawn_workflow(engine, trigger, job=job)
        job.step(
            "record-genesis-phase",
            engine.store.record_phase, phase, pioneers, result.nodes_spawned, GENESIS, result.narrative,
        )
    return result


def next_phase_workflow(engine: SpawnEngine, phase: int) -> NodesSpawnedResult:
    """Open ``phase`` once completed mining sessions reach its threshold."""
    if phase <= 1 or phase > engine.config.max_phases:
        raise InvalidInputError(f"Invalid phase: {phase}")
    with engine.runner.job(f"phase:{phase}") as job:
        job.step("calculate-threshold", check_threshold, engine, phase)
        pioneers = job.step(
            "calculate-effective-pioneers",
            effective_pioneers_for_phase, phase, engine.config.total_population,
        )
        trigger = SpawnTrigger(
            total_pioneers=pioneers,
            phase=phase,
            layers=["environmental"],
            game_event_type=THRESHOLD,
            lore_boost=True,
        )
        result = node_spawn_workflow(engine, trigger, job=job)
        job.step(
            "record-phase",
            engine.store.record_phase, phase, pioneers, result.nodes_spawned, THRESHOLD, result.narrative,
        )
    return result


def surge_workflow(engine: SpawnEngine, spawn_cycle: str) -> SurgeCycleResult:
    """Clean up expired surge data, then spawn and persist one surge cycle."""
    cycle_date = parse_spawn_cycle(spawn_cycle)
    with engine.runner.job(f"surge:{spawn_cycle}") as job:
        cleanup = job.step("cleanup-expired", engine.store.cleanup_expired_surges, cycle_date)
        job.step("load-sources", load_sources, engine)
        type_phase = max(1, job.step("current-phase", engine.store.latest_phase))
        surge_table = normalize_probabilities(engine.config.surge_rarity_probabilities)
        surge_rarities = [r for r, p in surge_table.items() if p > 0]
        job.step(
            "persist-surge-node-types",
            engine.store.insert_node_types, generate_node_types(type_phase, surge_rarities),
        )
        result = job.step("spawn-surge", engine.surge.spawn, spawn_cycle, type_phase)
        stored = job.step("persist-surge", engine.store.insert_surge_cycle, result.nodes, result.audit)

    fallback_count = sum(1 for n in result.nodes if n.fallback)
    outcome = SurgeCycleResult(
        spawn_cycle=spawn_cycle,
        nodes_spawned=len(result.nodes),
        nodes_stored=stored,
        fallback_count=fallback_count,
        audit=result.audit,
        cleanup=cleanup,
    )
    engine.events.emit(SURGE_SPAWNED, outcome.to_dict())
    return outcome
