"""
mvkeeper.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn mvkeeper.api.main:app --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from mvkeeper import __version__  # noqa: E402
from mvkeeper.api.deps import get_engine, get_maintenance  # noqa: E402
from mvkeeper.api.routes.db_optimization import router as db_optimization_router  # noqa: E402
from mvkeeper.database.engine import init_db  # noqa: E402
from mvkeeper.jobs.scheduler import start_scheduler  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


def _scheduler_enabled() -> bool:
    return os.getenv("MVKEEPER_SCHEDULER", "1").strip().lower() not in {"0", "false", "no"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — ledger tables, then the scheduler."""
    engine = get_engine()
    init_db(engine)
    service = get_maintenance()

    app.state.scheduler = None
    if _scheduler_enabled():
        app.state.scheduler = await start_scheduler(service)
    logger.info("mvkeeper API started — engine ready (%s)", engine.url.database)
    yield
    if app.state.scheduler is not None:
        app.state.scheduler.shutdown(wait=False)
    logger.info("mvkeeper API shutting down")


app = FastAPI(
    title="mvkeeper Maintenance API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(db_optimization_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
