"""
FastAPI Read-Only Scoring API Server

Exposes the results of batch score runs: stored scores per list date,
run status and the list dates that have scores. Writing happens only
through ingestion and score runs, never through this API.

Usage:
    uvicorn api.server:app --port 8000
"""

import os
import time
import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.responses import RedirectResponse

from api.models import (
    HealthResponse,
    ListDatesResponse,
    ScorePageResponse,
    ScoreRecordResponse,
    ScoreRunResponse,
    SnapshotSummary,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from config_manager import get_config, ConfigManager, ConfigurationError, setup_logging
from database import DatabaseSessionProvider, DatabaseSettings, SqlAlchemyStore
from store import ScoreStore, StoreError

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")

# Global state
_store: Optional[ScoreStore] = None
_provider: Optional[DatabaseSessionProvider] = None
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None


def get_store() -> ScoreStore:
    """Dependency to get the score store."""
    if _store is None:
        raise HTTPException(
            status_code=503, detail="Score store not initialized. Service is starting up."
        )
    return _store


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


# Create FastAPI application
app = FastAPI(
    title="Watchlist Scoring API",
    description="Read-only access to customer watchlist scores per list date",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Connect to the score store on startup."""
    global _store, _provider, _startup_time

    logger.info("🚀 Starting Watchlist Scoring API...")
    start_time = time.time()

    try:
        config = get_config_instance()
        setup_logging(config.logging)
        logger.info(f"✓ Configuration loaded from {config.config_path}")

        if _store is None:
            _provider = DatabaseSessionProvider(DatabaseSettings.from_config(config.database))
            _provider.init()
            _store = SqlAlchemyStore(_provider)

        _startup_time = datetime.now(timezone.utc)
        logger.info("✓ API ready in %.2f seconds", time.time() - start_time)

    except ConfigurationError as e:
        logger.error(f"✗ Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"✗ Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Watchlist Scoring API...")
    if _provider is not None:
        _provider.close()


@app.get(
    "/api/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Store connectivity and the snapshot new score runs would use",
)
def health_check(
    store: ScoreStore = Depends(get_store),
    config: ConfigManager = Depends(get_config_instance),
):
    store_healthy = store.ping()
    current = None
    if store_healthy:
        try:
            snapshot = store.current_snapshot()
        except StoreError as e:
            logger.warning(f"⚠ Could not read current snapshot: {e}")
            snapshot = None
        if snapshot is not None:
            current = SnapshotSummary.from_snapshot(snapshot)

    uptime = None
    if _startup_time is not None:
        uptime = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    return HealthResponse(
        status="healthy" if store_healthy else "degraded",
        store_healthy=store_healthy,
        current_snapshot=current,
        algorithm_version=config.algorithm.version,
        uptime_seconds=uptime,
    )


@app.get(
    "/api/list-dates",
    response_model=ListDatesResponse,
    responses={503: {"model": ErrorResponse, "description": "Store unavailable"}},
    summary="List dates with scores",
)
def list_dates(store: ScoreStore = Depends(get_store)):
    """Distinct list dates that have score records, newest first."""
    return ListDatesResponse(list_dates=[d.isoformat() for d in store.list_dates()])


@app.get(
    "/api/runs/{list_date}",
    response_model=ScoreRunResponse,
    responses={
        404: {"model": ErrorResponse, "description": "No run for this list date"},
        422: {"model": ErrorResponse, "description": "Malformed list date"},
    },
    summary="Score run status",
)
def get_run(list_date: date, store: ScoreStore = Depends(get_store)):
    run = store.get_run(list_date)
    if run is None:
        raise HTTPException(status_code=404, detail=f"No score run for {list_date.isoformat()}")
    return ScoreRunResponse.from_run(run)


@app.get(
    "/api/scores/{list_date}",
    response_model=ScorePageResponse,
    responses={
        422: {"model": ErrorResponse, "description": "Malformed list date or paging"},
        503: {"model": ErrorResponse, "description": "Store unavailable"},
    },
    summary="Scores for a list date",
    description="Stored scores for a list date, highest score first",
)
def get_scores(
    list_date: date,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    store: ScoreStore = Depends(get_store),
    config: ConfigManager = Depends(get_config_instance),
):
    size = min(page_size or config.api.default_page_size, config.api.max_page_size)
    records, total = store.scores_page(list_date, offset=(page - 1) * size, limit=size)

    return ScorePageResponse(
        list_date=list_date.isoformat(),
        page=page,
        page_size=size,
        total=total,
        items=[ScoreRecordResponse.from_record(r) for r in records],
    )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
