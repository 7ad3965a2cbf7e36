"""
Card Sync — Local Trigger Loop

In-process stand-in for the platform cron: fires a cron-gated sync cycle
every SYNC_TRIGGER_INTERVAL_MINUTES until shutdown. Deployments that use
the HTTP trigger (src/api/app.py) do not need this loop; running both is
safe because the ledger's unique constraint absorbs overlapping cycles.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.pipeline.errors import CycleAbortedError
from src.pipeline.orchestrator import CycleReport, run_triggered_cycle
from src.pipeline.scraper_client import MarketScraperClient
from src.pipeline.store import SqlSyncStore, SyncStore

logger = structlog.get_logger(__name__)


class Scheduler:
    """
    Periodic trigger for sync cycles.

    One cycle at a time: the next tick is measured from the end of the
    previous cycle, so a slow cycle delays rather than overlaps the next.
    """

    def __init__(
        self,
        store: SyncStore,
        scraper_factory: Callable[[], Any] = MarketScraperClient,
        interval_minutes: float | None = None,
    ):
        self.store = store
        self.scraper_factory = scraper_factory
        self.interval_seconds = (
            interval_minutes if interval_minutes is not None else settings.SYNC_TRIGGER_INTERVAL_MINUTES
        ) * 60
        self._shutdown_event = asyncio.Event()
        self.last_report: CycleReport | None = None

    async def shutdown(self) -> None:
        """Signal graceful shutdown to the scheduler loop."""
        logger.info("scheduler_shutdown_requested")
        self._shutdown_event.set()

    async def tick(self) -> CycleReport | None:
        """
        Run one triggered cycle.

        Returns:
            The cycle report, or None when the cycle aborted (already logged).
        """
        started = datetime.now(timezone.utc)
        try:
            async with self.scraper_factory() as scraper:
                report = await run_triggered_cycle(self.store, scraper, now=started)
        except CycleAbortedError as e:
            logger.error("scheduler_cycle_aborted", error=str(e), details=e.details)
            return None

        self.last_report = report
        logger.info(
            "scheduler_tick_complete",
            status=report.status,
            skip_reason=report.skip_reason,
            processed=report.processed,
            failed=report.failed,
        )
        return report

    async def run(self) -> None:
        """
        Main scheduler loop. Runs indefinitely until shutdown is signaled.

        A failing tick is logged and the loop continues.
        """
        logger.info("scheduler_started", interval_seconds=self.interval_seconds)

        try:
            while not self._shutdown_event.is_set():
                try:
                    await self.tick()

                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.interval_seconds,
                    )
                except asyncio.TimeoutError:
                    # No shutdown signal within the interval; next tick.
                    continue
                except Exception as e:
                    logger.error(
                        "scheduler_unknown_error",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    await asyncio.sleep(self.interval_seconds)

        except asyncio.CancelledError:
            logger.info("scheduler_cancelled")
            raise
        finally:
            logger.info("scheduler_stopped")


async def run_scheduler(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """
    Initialize and run the scheduler with graceful shutdown handling.

    Registers SIGTERM/SIGINT handlers to trigger shutdown.

    Args:
        session_factory: SQLAlchemy async session factory.
    """
    scheduler = Scheduler(SqlSyncStore(session_factory))

    def handle_signal(_signum: int, _frame: Any) -> None:
        """Called by SIGTERM/SIGINT."""
        logger.info("scheduler_signal_received")
        asyncio.create_task(scheduler.shutdown())

    loop = asyncio.get_running_loop()

    try:
        loop.add_signal_handler(signal.SIGTERM, handle_signal, signal.SIGTERM, None)
        loop.add_signal_handler(signal.SIGINT, handle_signal, signal.SIGINT, None)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler for all signals
        logger.warning("signal_handlers_not_supported_on_platform")

    try:
        await scheduler.run()
    except Exception as e:
        logger.error("scheduler_fatal_error", error=str(e), error_type=type(e).__name__)
        raise
