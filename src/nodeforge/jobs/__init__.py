"""Job orchestration: step runner, retry policy, events and spawn workflows."""

from nodeforge.jobs.events import Event, EventSink
from nodeforge.jobs.retry import RetryPolicy, run_with_retry
from nodeforge.jobs.runner import Job, JobRunner, StepRecord
from nodeforge.jobs.workflows import (
    GENESIS,
    THRESHOLD,
    NodesSpawnedResult,
    SpawnEngine,
    SpawnTrigger,
    SurgeCycleResult,
    genesis_workflow,
    next_phase_workflow,
    node_spawn_workflow,
    surge_workflow,
)

__all__ = [
    "Event",
    "EventSink",
    "RetryPolicy",
    "run_with_retry",
    "Job",
    "JobRunner",
    "StepRecord",
    "GENESIS",
    "THRESHOLD",
    "NodesSpawnedResult",
    "SpawnEngine",
    "SpawnTrigger",
    "SurgeCycleResult",
    "genesis_workflow",
    "next_phase_workflow",
    "node_spawn_workflow",
    "surge_workflow",
]
