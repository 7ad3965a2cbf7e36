"""
Card Sync — HTTP Trigger

The external scheduler (platform cron) calls GET or POST /cron/market-sync
with "Authorization: Bearer <CRON_SECRET>". Each call runs at most one
cron-gated cycle; calling more often than the cadence is a cheap no-op
(nothing due, or the gate says not yet).

Responses:
    401  missing or wrong secret, or no secret configured
    200  cycle report (including skipped cycles)
    500  cycle aborted (policy or due-source query unreadable)
"""

from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status

from src.config import settings
from src.pipeline.errors import CycleAbortedError
from src.pipeline.orchestrator import run_triggered_cycle
from src.pipeline.scraper_client import MarketScraperClient
from src.pipeline.store import SqlSyncStore, SyncStore

logger = structlog.get_logger(__name__)

ScraperFactory = Callable[[], Any]


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI) -> AsyncIterator[None]:
    """Wire the SQL store at startup unless one was injected."""
    engine = None
    if getattr(fastapi_app.state, "store", None) is None:
        from src.main import configure_logging, create_db_engine

        configure_logging(settings.LOG_LEVEL)
        engine, session_factory = await create_db_engine()
        fastapi_app.state.store = SqlSyncStore(session_factory)
    if getattr(fastapi_app.state, "scraper_factory", None) is None:
        fastapi_app.state.scraper_factory = MarketScraperClient

    yield

    if engine is not None:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_store(request: Request) -> SyncStore:
    return request.app.state.store


def get_scraper_factory(request: Request) -> ScraperFactory:
    return request.app.state.scraper_factory


def verify_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """Reject the call unless it carries the configured bearer secret."""
    expected = settings.CRON_SECRET
    if not expected:
        logger.warning("trigger_rejected", reason="cron_secret_not_configured")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), expected):
        logger.warning("trigger_rejected", reason="bad_credentials")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter(tags=["cron"])


@router.api_route("/cron/market-sync", methods=["GET", "POST"])
async def trigger_market_sync(
    _: None = Depends(verify_cron_secret),
    store: SyncStore = Depends(get_store),
    scraper_factory: ScraperFactory = Depends(get_scraper_factory),
) -> dict[str, Any]:
    """Run one cron-gated sync cycle and return its report."""
    try:
        async with scraper_factory() as scraper:
            report = await run_triggered_cycle(store, scraper)
    except CycleAbortedError as e:
        logger.error("trigger_cycle_aborted", error=str(e), details=e.details)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=e.to_dict(),
        ) from e

    return report.model_dump(mode="json")


def create_app(
    store: SyncStore | None = None,
    scraper_factory: ScraperFactory | None = None,
) -> FastAPI:
    """Build the app; tests inject a fake store and scraper."""
    fastapi_app = FastAPI(
        title="Card Sync",
        description="Adaptive marketplace sync trigger",
        version="0.1.0",
        lifespan=lifespan,
    )
    fastapi_app.state.store = store
    fastapi_app.state.scraper_factory = scraper_factory
    fastapi_app.include_router(router)

    @fastapi_app.get("/")
    def health() -> dict[str, str]:
        """Return health check status."""
        return {"status": "ok"}

    return fastapi_app


app = create_app()
