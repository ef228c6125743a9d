"""Job trigger endpoints: phase spawns, genesis, phase transitions and surge cycles."""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from fastapi import APIRouter, HTTPException, Request

from nodeforge.api.schemas import (
    NextPhaseRequest,
    NodesSpawnedResponse,
    PhaseResponse,
    SpawnRequest,
    SurgeAuditResponse,
    SurgeCycleResponse,
    SurgeRequest,
)
from nodeforge.core.errors import (
    InvalidInputError,
    JobAlreadyRunningError,
    PersistenceError,
    SourceLoadError,
    SpawnError,
    StepTimeoutError,
    ThresholdNotMetError,
)
from nodeforge.core.surge import parse_spawn_cycle
from nodeforge.jobs import (
    SpawnTrigger,
    genesis_workflow,
    next_phase_workflow,
    node_spawn_workflow,
    surge_workflow,
)

router = APIRouter()

T = TypeVar("T")

_STATUS_BY_ERROR: list[tuple[type[SpawnError], int]] = [
    (InvalidInputError, 422),
    (ThresholdNotMetError, 409),
    (JobAlreadyRunningError, 409),
    (SourceLoadError, 503),
    (PersistenceError, 503),
    (StepTimeoutError, 503),
]


def status_for(exc: SpawnError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def _run(func: Callable[..., T], *args: Any) -> T:
    """Call a workflow, translating pipeline errors into HTTP errors."""
    try:
        return func(*args)
    except SpawnError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

@router.post("/spawn", response_model=NodesSpawnedResponse)
def trigger_spawn(req: SpawnRequest, request: Request):
    engine = request.app.state.engine
    trigger = SpawnTrigger(
        total_pioneers=req.total_pioneers,
        phase=req.phase,
        target_region=req.target_region,
        spawn_time=req.spawn_time,
        layers=list(req.layers),
        game_event_type=req.game_event_type,
        lore_boost=req.lore_boost,
    )
    return _run(node_spawn_workflow, engine, trigger).to_dict()


@router.post("/genesis", response_model=NodesSpawnedResponse)
def trigger_genesis(request: Request):
    return _run(genesis_workflow, request.app.state.engine).to_dict()


@router.post("/next-phase", response_model=NodesSpawnedResponse)
def trigger_next_phase(req: NextPhaseRequest, request: Request):
    return _run(next_phase_workflow, request.app.state.engine, req.phase).to_dict()


@router.post("/surge", response_model=SurgeCycleResponse)
def trigger_surge(req: SurgeRequest, request: Request):
    return _run(surge_workflow, request.app.state.engine, req.spawn_cycle).to_dict()


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

@router.get("/surge/{cycle}", response_model=SurgeAuditResponse)
def get_surge_log(cycle: str, request: Request):
    _run(parse_spawn_cycle, cycle)
    audit = _run(request.app.state.engine.store.get_surge_log, cycle)
    if audit is None:
        raise HTTPException(status_code=404, detail=f"No surge log for cycle '{cycle}'")
    return audit.to_dict()


@router.get("/phases/{phase}", response_model=PhaseResponse)
def get_phase(phase: int, request: Request):
    record = _run(request.app.state.engine.store.get_phase, phase)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Phase {phase} has not started")
    return record
