"""
FastAPI application factory for the nodeforge job trigger API.

The API is orchestrator-facing: each endpoint runs one spawn job to
completion and returns its result.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nodeforge.api.persistence import NodeStore, SqliteActivityStore
from nodeforge.api.routers import jobs
from nodeforge.core.cache import DurableCache, LayeredCache
from nodeforge.core.config import SpawnConfig
from nodeforge.core.digits import DigitStreamSource
from nodeforge.core.land_mask import LandMaskSource
from nodeforge.jobs import SpawnEngine
from nodeforge.llm.client import client_from_env

logger = logging.getLogger(__name__)

# Load .env from the project root first, then CWD (handles Docker volume mount)
_project_root = Path(__file__).resolve().parents[3]  # src/nodeforge/api/app.py → project root
load_dotenv(_project_root / ".env")
load_dotenv(Path.cwd() / ".env")

DEFAULT_DB_PATH = "data/nodeforge.db"
DEFAULT_LAND_PATH = _project_root / "data" / "land-coarse.geojson"
DEFAULT_COMPUTED_DIGITS = 100_000


def build_engine_from_env(config: SpawnConfig | None = None) -> SpawnEngine:
    """Wire a :class:`SpawnEngine` from ``NODEFORGE_*`` environment variables.

    Sources are loaded lazily by the first job, so a missing digit or land
    file surfaces as a job failure rather than a startup crash.
    """
    db_path = os.environ.get("NODEFORGE_DB_PATH", DEFAULT_DB_PATH)
    os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)

    cfg = config or SpawnConfig()
    durable = DurableCache(db_path)
    cache = LayeredCache(durable, default_ttl=cfg.region_cache_ttl)
    store = NodeStore(db_path)

    digits_path = os.environ.get("NODEFORGE_DIGITS_PATH")
    if digits_path:
        digits = DigitStreamSource(path=digits_path, cache=durable)
    else:
        count = int(os.environ.get("NODEFORGE_COMPUTED_DIGITS", DEFAULT_COMPUTED_DIGITS))
        digits = DigitStreamSource(computed_digits=count, cache=durable)

    land = LandMaskSource(os.environ.get("NODEFORGE_LAND_PATH", str(DEFAULT_LAND_PATH)), cache=durable)

    return SpawnEngine.build(
        config=cfg,
        digits=digits,
        land=land,
        store=store,
        activity_store=SqliteActivityStore(store),
        cache=cache,
        llm_client=client_from_env(),
    )


def create_app(engine: SpawnEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="nodeforge API",
        description="Job triggers for the deterministic node distribution engine",
        version="0.1.0",
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.state.engine = engine or build_engine_from_env()

    application.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])

    @application.get("/api/health")
    def health_check():
        return {"status": "ok"}

    return application


app = create_app()
