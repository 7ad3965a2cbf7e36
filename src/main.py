"""
Card Sync — Application Entrypoint

Wires logging and the database, then runs one of the two trigger surfaces:

    python -m src.main run            # in-process trigger loop (default)
    python -m src.main serve          # HTTP trigger for the platform cron
    python -m src.main once           # a single cron-gated cycle, report to stdout

The console script `card-sync` takes the same subcommands.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import structlog
import uvicorn
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.config import settings
from src.pipeline.errors import CycleAbortedError
from src.pipeline.orchestrator import run_triggered_cycle
from src.pipeline.scheduler import run_scheduler
from src.pipeline.scraper_client import MarketScraperClient
from src.pipeline.store import SqlSyncStore

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def configure_logging(log_level: str = "INFO") -> None:
    """JSON lines on stdout; third-party stdlib loggers share the level."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


async def create_db_engine() -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """
    Create the async engine and session factory from settings.DATABASE_URL.

    Returns:
        (engine, session_factory) tuple.
    """
    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.info("database_engine_ready")
    return engine, session_factory


async def _open_database() -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """Engine plus a SELECT 1 health check; the engine is disposed on failure."""
    engine, session_factory = await create_db_engine()
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        await engine.dispose()
        raise
    logger.info("database_health_check_passed")
    return engine, session_factory


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def run_loop() -> None:
    """Trigger loop until SIGTERM/SIGINT."""
    if not settings.SCRAPER_API_KEY:
        logger.warning("config_scraper_api_key_missing", note="requests are unauthenticated")

    engine, session_factory = await _open_database()
    logger.info(
        "card_sync_startup_complete",
        scraper_base_url=settings.SCRAPER_BASE_URL,
        trigger_interval_minutes=settings.SYNC_TRIGGER_INTERVAL_MINUTES,
        adaptive_strategy=settings.ADAPTIVE_STRATEGY.value,
        backoff_strategy=settings.BACKOFF_STRATEGY.value,
    )

    try:
        await run_scheduler(session_factory)
    except Exception as e:
        logger.error("card_sync_fatal_error", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        await engine.dispose()
        logger.info("card_sync_shutdown_complete")


async def run_once() -> int:
    """One cron-gated cycle. Exit code 1 when the cycle aborted."""
    engine, session_factory = await _open_database()
    try:
        async with MarketScraperClient() as scraper:
            report = await run_triggered_cycle(SqlSyncStore(session_factory), scraper)
    except CycleAbortedError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1
    finally:
        await engine.dispose()

    print(report.model_dump_json(indent=2))
    return 0


def serve() -> None:
    """HTTP trigger; the app builds its own engine in its lifespan."""
    if not settings.CRON_SECRET:
        logger.warning("config_cron_secret_missing", note="every trigger call will be rejected")
    uvicorn.run("src.api.app:app", host=settings.API_HOST, port=settings.API_PORT)


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


def cli(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="card-sync", description="Card Sync scheduler")
    parser.add_argument("command", nargs="?", choices=["run", "serve", "once"], default="run")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    logger.info("card_sync_startup_begin", command=args.command, version="0.1.0")

    if args.command == "serve":
        serve()
        return 0
    if args.command == "once":
        return asyncio.run(run_once())

    try:
        asyncio.run(run_loop())
    except KeyboardInterrupt:
        logger.info("card_sync_interrupted_by_user")
    return 0


if __name__ == "__main__":
    sys.exit(cli())
