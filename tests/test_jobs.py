"""Tests for the job runner, retry policy and spawn workflows."""

import threading
import time
from datetime import datetime, timedelta

import pytest

from nodeforge.api.persistence import NodeStore
from nodeforge.core.activity import StaticActivityStore
from nodeforge.core.digits import DigitStreamSource
from nodeforge.core.errors import (
    InvalidInputError,
    JobAlreadyRunningError,
    PersistenceError,
    SourceLoadError,
    StepTimeoutError,
    ThresholdNotMetError,
)
from nodeforge.core.land_mask import LandMask, LandMaskSource
from nodeforge.jobs import (
    GENESIS,
    THRESHOLD,
    EventSink,
    JobRunner,
    RetryPolicy,
    SpawnEngine,
    SpawnTrigger,
    genesis_workflow,
    next_phase_workflow,
    node_spawn_workflow,
    run_with_retry,
    surge_workflow,
)
from nodeforge.jobs.events import LORE_BOOST, NODES_SPAWNED, SURGE_SPAWNED
from nodeforge.llm.client import LLMClient, NarrativeText


class Flaky:
    """Callable that raises ``error`` for the first ``failures`` calls."""

    def __init__(self, failures, error=SourceLoadError("not yet")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

class TestRetryPolicy:
    def test_unknown_backoff(self):
        with pytest.raises(ValueError):
            RetryPolicy(backoff="linear")

    def test_delays(self):
        assert RetryPolicy(backoff="fixed", base_delay=2.0).get_delay(3) == 2.0
        assert RetryPolicy(backoff="exponential", base_delay=1.0).get_delay(3) == 8.0
        jitter = RetryPolicy(backoff="jitter", base_delay=1.0).get_delay(3)
        assert 1.0 <= jitter <= 8.0

    def test_should_retry(self):
        policy = RetryPolicy(retry_limit=2)
        assert policy.should_retry(1)
        assert not policy.should_retry(2)

    def test_retryable_error_retried(self):
        sleeps = []
        func = Flaky(2)
        assert run_with_retry(RetryPolicy(3, "exponential", 1.0), func, sleep=sleeps.append) == "ok"
        assert func.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_gives_up(self):
        sleeps = []
        func = Flaky(10)
        with pytest.raises(SourceLoadError):
            run_with_retry(RetryPolicy(2, "fixed", 0.5), func, sleep=sleeps.append)
        assert func.calls == 3
        assert sleeps == [0.5, 0.5]

    def test_non_retryable_not_retried(self):
        sleeps = []
        func = Flaky(1, InvalidInputError("bad"))
        with pytest.raises(InvalidInputError):
            run_with_retry(RetryPolicy(3), func, sleep=sleeps.append)
        assert func.calls == 1
        assert sleeps == []

    def test_foreign_errors_propagate(self):
        func = Flaky(1, KeyError("x"))
        with pytest.raises(KeyError):
            run_with_retry(RetryPolicy(3), func, sleep=lambda d: None)
        assert func.calls == 1


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class TestJobRunner:
    def test_single_flight(self):
        runner = JobRunner()
        with runner.job("phase:1"):
            assert runner.is_running("phase:1")
            with pytest.raises(JobAlreadyRunningError):
                with runner.job("phase:1"):
                    pass
            with runner.job("phase:2"):
                pass
        assert not runner.is_running("phase:1")

    def test_key_released_on_error(self):
        runner = JobRunner()
        with pytest.raises(RuntimeError):
            with runner.job("k"):
                raise RuntimeError("boom")
        assert not runner.is_running("k")

    def test_step_log(self):
        sleeps = []
        runner = JobRunner(RetryPolicy(2, "fixed", 0.5), sleep=sleeps.append)
        with runner.job("k") as job:
            assert job.step("flaky", Flaky(1)) == "ok"
            assert job.step("add", lambda a, b: a + b, 2, b=3) == 5
        assert [(r.name, r.status, r.attempts) for r in runner.history] == [
            ("flaky", "completed", 2), ("add", "completed", 1),
        ]
        assert sleeps == [0.5]

    def test_failed_step_recorded(self):
        runner = JobRunner(RetryPolicy(1, "fixed", 0.0), sleep=lambda d: None)
        with pytest.raises(PersistenceError):
            with runner.job("k") as job:
                job.step("write", Flaky(5, PersistenceError("locked")))
        record = runner.history[-1]
        assert record.status == "failed"
        assert record.attempts == 2
        assert record.error == "locked"
        assert record.to_dict()["job_key"] == "k"

    def test_step_timeout_not_retried(self):
        release = threading.Event()
        calls = []

        def slow():
            calls.append(1)
            release.wait(5)

        sleeps = []
        runner = JobRunner(RetryPolicy(3, "fixed", 0.0), step_timeout=0.05, sleep=sleeps.append)
        with pytest.raises(StepTimeoutError):
            with runner.job("k") as job:
                job.step("slow", slow)
        release.set()
        assert calls == [1]
        assert sleeps == []
        assert (runner.history[-1].status, runner.history[-1].attempts) == ("failed", 1)

    def test_key_held_until_abandoned_step_ends(self):
        release = threading.Event()
        runner = JobRunner(RetryPolicy(0), step_timeout=0.05)
        with pytest.raises(StepTimeoutError):
            with runner.job("phase:1") as job:
                job.step("spawn-nodes", release.wait, 5)
        assert runner.is_running("phase:1")
        with pytest.raises(JobAlreadyRunningError):
            with runner.job("phase:1"):
                pass
        release.set()
        deadline = time.monotonic() + 5
        while runner.is_running("phase:1") and time.monotonic() < deadline:
            time.sleep(0.01)
        assert not runner.is_running("phase:1")
        with runner.job("phase:1"):
            pass

    def test_per_step_timeouts(self):
        runner = JobRunner(RetryPolicy(0), step_timeout=0.05, step_timeouts={"slow": 5.0, "inline": None})
        assert runner.timeout_for("other") == 0.05
        with runner.job("k") as job:
            assert job.step("slow", time.sleep, 0.2) is None
            assert job.step("inline", threading.current_thread) is threading.current_thread()
        assert not runner.is_running("k")

    def test_engine_long_step_timeouts(self, two_cell_config, store):
        two_cell_config.long_step_timeout_seconds = 900.0
        eng = SpawnEngine.build(
            config=two_cell_config,
            digits=DigitStreamSource.from_digits("1" * 100),
            land=LandMaskSource.from_mask(LandMask.unit_square()),
            store=store,
            activity_store=StaticActivityStore(),
        )
        assert eng.runner.timeout_for("spawn-nodes") == 900.0
        assert eng.runner.timeout_for("persist-surge") == 900.0
        assert eng.runner.timeout_for("calculate-quotas") == two_cell_config.step_timeout_seconds

    def test_sleep_until(self):
        sleeps = []
        runner = JobRunner(sleep=sleeps.append)
        with runner.job("k") as job:
            job.sleep_until("wait", 110.0, clock=lambda: 100.0)
            job.sleep_until("past", 90.0, clock=lambda: 100.0)
        assert sleeps == [10.0]
        assert [r.name for r in runner.history] == ["wait", "past"]


class TestEventSink:
    def test_emit_and_subscribe(self):
        sink = EventSink()
        seen = []
        sink.subscribe("a", seen.append)
        sink.emit("a", {"x": 1})
        sink.emit("b", {})
        assert [e.data for e in seen] == [{"x": 1}]
        assert len(sink.of("a")) == 1
        assert len(sink.events) == 2


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

class TestNodeSpawnWorkflow:
    def test_spawn(self, engine):
        result = node_spawn_workflow(engine, SpawnTrigger(total_pioneers=100))
        assert result.nodes_spawned == 100
        assert result.nodes_stored == 100
        assert result.node_types_stored == 4
        assert result.rarity_totals == {
            "Common": 50, "Uncommon": 26, "Rare": 16, "Epic": 8, "Legendary": 0,
        }
        assert engine.store.count_nodes(phase=1) == 100
        assert result.narrative == (
            "The Genesis Awakening has begun! Across global, 100 new cosmic frequencies "
            "have crystallized into the Lattice, marking the first stirring of mathematical "
            "consciousness. Pioneers, the ancient echoes call to you: venture forth and "
            "discover the infinite patterns that bind reality itself!"
        )

    def test_step_order(self, engine):
        node_spawn_workflow(engine, SpawnTrigger(total_pioneers=10))
        assert [r.name for r in engine.runner.history] == [
            "load-sources", "generate-regions", "calculate-quotas", "generate-node-types",
            "spawn-nodes", "persist-node-types", "persist-nodes", "trigger-awakening",
        ]
        assert all(r.job_key == "spawn:1:global" for r in engine.runner.history)

    def test_target_region(self, engine):
        result = node_spawn_workflow(engine, SpawnTrigger(total_pioneers=100, target_region="0_1"))
        assert result.nodes_spawned == 50
        rows = engine.store.list_nodes()
        assert {r["cell_id"] for r in rows} == {"0_1"}
        assert "0_1" in result.narrative

    def test_replay_stores_nothing_new(self, engine):
        node_spawn_workflow(engine, SpawnTrigger(total_pioneers=100))
        again = node_spawn_workflow(engine, SpawnTrigger(total_pioneers=100))
        assert again.nodes_spawned == 100
        assert again.nodes_stored == 0
        assert again.node_types_stored == 0

    @pytest.mark.parametrize("trigger", [
        SpawnTrigger(total_pioneers=0),
        SpawnTrigger(total_pioneers=10, phase=0),
        SpawnTrigger(total_pioneers=10, phase=9),
        SpawnTrigger(total_pioneers=10, game_event_type="METEOR"),
        SpawnTrigger(total_pioneers=10, layers=["volcanic"]),
    ])
    def test_invalid_trigger_holds_no_key(self, engine, trigger):
        with pytest.raises(InvalidInputError):
            node_spawn_workflow(engine, trigger)
        assert engine.runner.history == []

    def test_threshold_event_checks_sessions(self, engine):
        trigger = SpawnTrigger(total_pioneers=10, phase=2, game_event_type=THRESHOLD)
        with pytest.raises(ThresholdNotMetError):
            node_spawn_workflow(engine, trigger)
        assert engine.store.count_nodes() == 0

    def test_spawn_time_waits(self, engine, sleeps):
        when = datetime.now() + timedelta(hours=1)
        node_spawn_workflow(engine, SpawnTrigger(total_pioneers=10, spawn_time=when))
        assert len(sleeps) == 1
        assert 3500 < sleeps[0] <= 3600
        assert "wait-for-time" in [r.name for r in engine.runner.history]

    def test_events(self, engine):
        node_spawn_workflow(engine, SpawnTrigger(total_pioneers=10, lore_boost=True))
        assert engine.events.of(NODES_SPAWNED)[0].data["nodes_spawned"] == 10
        assert engine.events.of(LORE_BOOST)[0].data == {
            "region": "global", "rarity": "Epic", "story_theme": "cosmic expansion",
        }

    def test_no_lore_boost_by_default(self, engine):
        node_spawn_workflow(engine, SpawnTrigger(total_pioneers=10))
        assert engine.events.of(LORE_BOOST) == []

    def test_llm_narrative(self, two_cell_config, make_engine):
        from unittest.mock import MagicMock

        client = MagicMock(spec=LLMClient)
        client.generate.return_value = NarrativeText("The Lattice wakes.", "mock", "mock")
        eng = make_engine(two_cell_config, llm_client=client)
        result = node_spawn_workflow(eng, SpawnTrigger(total_pioneers=10))
        assert result.narrative == "The Lattice wakes."


class TestGenesisWorkflow:
    def test_genesis(self, engine):
        result = genesis_workflow(engine)
        assert result.phase == 1
        assert result.nodes_spawned == 100
        assert engine.store.latest_phase() == 1
        phase = engine.store.get_phase(1)
        assert phase["game_event_type"] == GENESIS
        assert phase["total_pioneers"] == 100
        names = [r.name for r in engine.runner.history]
        assert names[0] == "calculate-effective-pioneers"
        assert names[-1] == "record-genesis-phase"
        assert {r.job_key for r in engine.runner.history} == {"phase:1"}
        assert len(engine.events.of(LORE_BOOST)) == 1

    def test_single_flight(self, engine):
        with engine.runner.job("phase:1"):
            with pytest.raises(JobAlreadyRunningError):
                genesis_workflow(engine)
        assert engine.store.count_nodes() == 0

    def test_source_failure_retried_then_raised(self, two_cell_config, tmp_path):
        sleeps = []
        store = NodeStore(":memory:")
        eng = SpawnEngine.build(
            config=two_cell_config,
            digits=DigitStreamSource(path=tmp_path / "missing.txt"),
            land=LandMaskSource.from_mask(LandMask.unit_square()),
            store=store,
            activity_store=StaticActivityStore(),
            runner=JobRunner(RetryPolicy(2, "exponential", 1.0), sleep=sleeps.append),
        )
        with pytest.raises(SourceLoadError):
            genesis_workflow(eng)
        assert sleeps == [1.0, 2.0]
        failed = eng.runner.history[-1]
        assert (failed.name, failed.status, failed.attempts) == ("load-sources", "failed", 3)
        assert store.latest_phase() == 0
        store.close()


class TestNextPhaseWorkflow:
    def test_threshold_not_met(self, engine):
        genesis_workflow(engine)
        with pytest.raises(ThresholdNotMetError) as info:
            next_phase_workflow(engine, 2)
        assert info.value.threshold == 1000
        assert engine.store.latest_phase() == 1

    def test_threshold_met(self, two_cell_config, make_engine):
        two_cell_config.total_population = 200
        eng = make_engine(two_cell_config, activity=StaticActivityStore(completed_sessions=1000))
        genesis_workflow(eng)
        result = next_phase_workflow(eng, 2)
        assert result.phase == 2
        assert result.nodes_spawned == 50
        assert eng.store.latest_phase() == 2
        assert eng.store.get_phase(2)["game_event_type"] == THRESHOLD
        assert eng.store.count_nodes(phase=2) == 50
        assert result.narrative.startswith("Harmonic Awakening 2 resonates across global!")

    @pytest.mark.parametrize("phase", [1, 0, 7])
    def test_invalid_phase(self, engine, phase):
        with pytest.raises(InvalidInputError):
            next_phase_workflow(engine, phase)


class TestSurgeWorkflow:
    def test_zero_activity_cycle(self, engine):
        result = surge_workflow(engine, "2025-01-15")
        assert result.nodes_spawned == 50
        assert result.nodes_stored == 50
        assert result.audit.zero_activity_fallback
        assert engine.store.get_surge_log("2025-01-15").total_spawned == 50
        assert engine.store.count_node_types() == 3
        assert engine.events.of(SURGE_SPAWNED)[0].data["nodes_spawned"] == 50

    def test_step_order(self, engine):
        surge_workflow(engine, "2025-01-15")
        assert [r.name for r in engine.runner.history] == [
            "cleanup-expired", "load-sources", "current-phase", "persist-surge-node-types",
            "spawn-surge", "persist-surge",
        ]

    def test_next_cycle_cleans_previous(self, engine):
        surge_workflow(engine, "2025-01-15")
        result = surge_workflow(engine, "2025-01-16")
        assert result.cleanup["nodes_deleted"] == 50
        assert engine.store.count_nodes(spawn_cycle="2025-01-15") == 0
        assert engine.store.count_nodes(spawn_cycle="2025-01-16") == 50

    def test_replay_same_cycle(self, engine):
        surge_workflow(engine, "2025-01-15")
        again = surge_workflow(engine, "2025-01-15")
        assert again.nodes_stored == 0
        assert engine.store.count_nodes(spawn_cycle="2025-01-15") == 50

    def test_bad_cycle(self, engine):
        with pytest.raises(InvalidInputError):
            surge_workflow(engine, "tomorrow")
        assert engine.runner.history == []

    def test_node_types_follow_current_phase(self, two_cell_config, make_engine):
        eng = make_engine(two_cell_config, activity=StaticActivityStore(completed_sessions=1000))
        eng.store.record_phase(2, 10, 10, THRESHOLD)
        surge_workflow(eng, "2025-01-15")
        assert eng.store.count_node_types(phase=2) == 3
