"""
Shared test configuration.

Sets NODEFORGE_DB_PATH to a temporary file for each test session to
prevent SQLite database accumulation and cross-test contamination, and
provides small fixtures (short digit streams, tiny land masks, coarse
grids) in place of world-scale assets.
"""

import os

import pytest

from nodeforge.api.persistence import NodeStore
from nodeforge.core.activity import StaticActivityStore
from nodeforge.core.config import SpawnConfig
from nodeforge.core.digits import DigitStream, DigitStreamSource, compute_pi_digits
from nodeforge.core.land_mask import LandMask, LandMaskSource
from nodeforge.jobs import EventSink, JobRunner, RetryPolicy, SpawnEngine

PI_DIGITS = compute_pi_digits(4_000)

WHOLE_WORLD = [[(-180.0, -90.0), (180.0, -90.0), (180.0, 90.0), (-180.0, 90.0)]]


@pytest.fixture(autouse=True, scope="session")
def _isolate_db(tmp_path_factory):
    """Use a temp DB path for all tests to avoid polluting the project dir."""
    tmp_dir = tmp_path_factory.mktemp("nodeforge_test_data")
    db_path = str(tmp_dir / "test_nodeforge.db")
    os.environ["NODEFORGE_DB_PATH"] = db_path
    yield
    os.environ.pop("NODEFORGE_DB_PATH", None)


@pytest.fixture
def stream() -> DigitStream:
    return DigitStream(PI_DIGITS)


@pytest.fixture
def world_mask() -> LandMask:
    """Every coordinate is land."""
    return LandMask.from_polygons(WHOLE_WORLD)


@pytest.fixture
def unit_square() -> LandMask:
    return LandMask.unit_square()


@pytest.fixture
def two_cell_config() -> SpawnConfig:
    """Two hemispheric cells with no per-cell noise."""
    return SpawnConfig(lat_step=180.0, lon_step=180.0, cell_noise_amplitude=0.0, max_workers=2)


@pytest.fixture
def store() -> NodeStore:
    s = NodeStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def sleeps() -> list[float]:
    return []


def _build_engine(
    config: SpawnConfig,
    store: NodeStore,
    activity: StaticActivityStore | None = None,
    land: LandMask | None = None,
    sleeps: list[float] | None = None,
    llm_client=None,
) -> SpawnEngine:
    recorded = sleeps if sleeps is not None else []
    return SpawnEngine.build(
        config=config,
        digits=DigitStreamSource.from_digits(PI_DIGITS),
        land=LandMaskSource.from_mask(land if land is not None else LandMask.from_polygons(WHOLE_WORLD)),
        store=store,
        activity_store=activity if activity is not None else StaticActivityStore(),
        llm_client=llm_client,
        runner=JobRunner(RetryPolicy(2, "fixed", 0.5), step_timeout=30.0, sleep=recorded.append),
        events=EventSink(),
    )


@pytest.fixture
def engine(two_cell_config, store, sleeps) -> SpawnEngine:
    cfg = two_cell_config
    cfg.total_population = 200
    return _build_engine(cfg, store, sleeps=sleeps)


@pytest.fixture
def make_engine(store, sleeps):
    """Factory for engines with a custom config, activity store or land mask."""
    def factory(config, activity=None, land=None, llm_client=None):
        return _build_engine(config, store, activity, land, sleeps, llm_client)
    return factory
