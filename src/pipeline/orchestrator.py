"""
Card Sync — Sync Orchestrator

One bounded synchronization cycle, invoked by the external trigger:

1. Load the policy and blackout windows (failure aborts the cycle).
   Globally disabled or globally blacked out -> skipped report.
2. Select up to batch_size_per_cycle due sources (never-polled first, then
   oldest next_poll_at), excluding venues inside a scoped blackout.
3. Poll each source sequentially:
       resolve ref -> classify (once) -> fetch sales + listings
       -> normalize -> dedup against the ledger -> write
       -> listing snapshot -> next poll time
   and persist the source row whatever happened.

Per-source failures never abort the batch. A bad external_ref disables the
source (mode='off') instead of backing off: it will not fix itself.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, NamedTuple, Protocol

import structlog
from pydantic import BaseModel, Field, computed_field

from src.config import AdaptiveStrategy, BackoffStrategy, ProductType, SyncMode, SyncStatus, settings
from src.models.tracked_source import TrackedSource
from src.pipeline.errors import (
    ConfigurationError,
    CycleAbortedError,
    StoreWriteError,
    SyncError,
)
from src.pipeline.ingestion import IngestionWriter
from src.pipeline.normalize import (
    RawListing,
    RawSale,
    extract_product_ref,
    normalize_sales,
    summarize_listings,
)
from src.pipeline.store import SyncStore
from src.schedule.blackout import BlackoutCalendar, to_local
from src.schedule.cron_gate import should_run
from src.schedule.dedup import DedupEngine
from src.schedule.interval import IntervalPolicy
from src.schedule.policy import PolicyConfig

logger = structlog.get_logger(__name__)

_MAX_ERROR_LENGTH = 500


class ScraperCollaborator(Protocol):
    """The scraper calls a cycle makes (see MarketScraperClient)."""

    async def classify(self, ref: str) -> ProductType: ...

    async def fetch_recent_transactions(self, ref: str) -> list[RawSale]: ...

    async def fetch_current_listings(
        self, ref: str, product_type: ProductType | str | None = None
    ) -> list[RawListing]: ...


# ---------------------------------------------------------------------------
# Cycle report
# ---------------------------------------------------------------------------


class SourceOutcome(BaseModel):
    """What happened to one source in one cycle."""

    source_id: int | None
    item_id: str
    venue: str
    status: Literal["succeeded", "failed"]
    fetched: int = 0
    inserted: int = 0
    skipped: int = Field(default=0, description="Duplicates: dedup pass plus write-time collisions")
    dropped: int = Field(default=0, description="Rows that could not be normalized")
    errors: int = 0
    error_kind: str | None = None
    error: str | None = None
    next_poll_at: datetime | None = None
    delay_minutes: int | None = None
    disabled: bool = False


class SkippedSource(BaseModel):
    venue: str
    reason: str = "blackout"


class CycleReport(BaseModel):
    """
    Result of one cycle. A cycle with failed sources is still "completed";
    only CycleAbortedError makes the cycle itself fail.
    """

    status: Literal["completed", "skipped"] = "completed"
    skip_reason: str | None = None
    started_at: datetime
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_sources: list[SkippedSource] = Field(default_factory=list)
    sources: list[SourceOutcome] = Field(default_factory=list)

    @computed_field
    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    @classmethod
    def skipped_cycle(cls, reason: str, started_at: datetime) -> CycleReport:
        return cls(status="skipped", skip_reason=reason, started_at=started_at)


class _SyncCounts(NamedTuple):
    errors: int
    failures: list[dict[str, Any]]
    observed_events: int
    changed: bool


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SyncOrchestrator:
    """
    Runs sync cycles against an explicitly passed store and scraper.

    Usage:
        async with MarketScraperClient() as scraper:
            orchestrator = SyncOrchestrator(SqlSyncStore(session_factory), scraper)
            report = await orchestrator.run_cycle()
    """

    def __init__(
        self,
        store: SyncStore,
        scraper: ScraperCollaborator,
        dedup: DedupEngine | None = None,
        strategy: AdaptiveStrategy | None = None,
        backoff: BackoffStrategy | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.scraper = scraper
        self.dedup = dedup or DedupEngine()
        self.writer = IngestionWriter(store)
        self.strategy = strategy
        self.backoff = backoff
        self._rng = rng

    async def run_cycle(self, now: datetime | None = None) -> CycleReport:
        """
        Execute one cycle.

        Args:
            now: Cycle clock (aware UTC). Defaults to the current time.

        Raises:
            CycleAbortedError: Policy, blackout windows or the due-source
                query could not be read.
        """
        now = now or datetime.now(timezone.utc)
        logger.info("orchestrator_cycle_start", now=now.isoformat())

        try:
            config = await self.store.load_policy()
            windows = await self.store.load_blackout_windows()
        except Exception as e:
            logger.error("orchestrator_cycle_aborted", stage="load_config", error=str(e))
            raise CycleAbortedError(
                "Could not load sync configuration",
                details={"stage": "load_config"},
                cause=e,
            ) from e

        if not config.globally_enabled:
            logger.info("orchestrator_cycle_skipped", reason="globally_disabled")
            return CycleReport.skipped_cycle("globally_disabled", now)

        blackout = BlackoutCalendar(windows).blocked_sources(to_local(now))
        if blackout.global_blocked:
            logger.info("orchestrator_cycle_skipped", reason="global_blackout")
            return CycleReport.skipped_cycle("global_blackout", now)

        try:
            sources = await self.store.select_due_sources(
                now,
                config.batch_size_per_cycle,
                exclude_venues=blackout.scoped_sources,
            )
        except Exception as e:
            logger.error("orchestrator_cycle_aborted", stage="select_due", error=str(e))
            raise CycleAbortedError(
                "Could not select due sources",
                details={"stage": "select_due"},
                cause=e,
            ) from e

        report = CycleReport(
            started_at=now,
            skipped_sources=[SkippedSource(venue=venue) for venue in sorted(blackout.scoped_sources)],
        )
        policy = self._build_policy(config)

        for source in sources:
            outcome = await self._poll_source(source, policy, now)
            report.sources.append(outcome)
            report.processed += 1
            if outcome.status == "succeeded":
                report.succeeded += 1
            else:
                report.failed += 1

        logger.info(
            "orchestrator_cycle_complete",
            processed=report.processed,
            succeeded=report.succeeded,
            failed=report.failed,
            skipped_venues=[s.venue for s in report.skipped_sources],
        )
        return report

    def _build_policy(self, config: PolicyConfig) -> IntervalPolicy:
        return IntervalPolicy(config, strategy=self.strategy, backoff=self.backoff, rng=self._rng)

    # -----------------------------------------------------------------------
    # Per-source
    # -----------------------------------------------------------------------

    async def _poll_source(
        self,
        source: TrackedSource,
        policy: IntervalPolicy,
        now: datetime,
    ) -> SourceOutcome:
        """Poll one source; always returns an outcome and persists the row."""
        log = logger.bind(source_id=source.id, item_id=source.item_id, venue=source.venue)
        log.info("orchestrator_source_polling", error_count=source.error_count)

        outcome = SourceOutcome(
            source_id=source.id,
            item_id=source.item_id,
            venue=source.venue,
            status="succeeded",
        )

        try:
            counts = await self._sync_source(source, now, outcome)
        except ConfigurationError as e:
            self._disable(source, e, now)
            outcome.status = "failed"
            outcome.error_kind = e.code
            outcome.error = str(e)
            outcome.disabled = True
            log.error("orchestrator_source_disabled", error=str(e), details=e.details)
        except SyncError as e:
            self._schedule_error(source, policy, e, now)
            outcome.status = "failed"
            outcome.error_kind = e.code
            outcome.error = str(e)
            log.warning("orchestrator_source_failed", error_kind=e.code, error=str(e))
        except Exception as e:
            self._schedule_error(source, policy, e, now)
            outcome.status = "failed"
            outcome.error_kind = "unexpected"
            outcome.error = str(e)
            log.error(
                "orchestrator_source_unexpected_error",
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            if counts.errors:
                error = StoreWriteError(
                    f"{counts.errors} ledger row(s) failed to write",
                    details={"failures": counts.failures},
                )
                self._schedule_error(source, policy, error, now)
                outcome.status = "failed"
                outcome.error_kind = error.code
                outcome.error = str(error)
                log.warning("orchestrator_source_write_errors", errors=counts.errors)
            else:
                self._schedule_success(source, policy, counts, now)

        outcome.next_poll_at = source.next_poll_at
        if source.next_poll_at is not None:
            outcome.delay_minutes = round((source.next_poll_at - now).total_seconds() / 60)

        try:
            await self.store.save_source(source)
        except SyncError as e:
            outcome.status = "failed"
            outcome.error_kind = e.code
            outcome.error = str(e)
            log.error("orchestrator_source_save_failed", error=str(e))

        log.info(
            "orchestrator_source_done",
            status=outcome.status,
            inserted=outcome.inserted,
            skipped=outcome.skipped,
            next_poll_at=source.next_poll_at.isoformat() if source.next_poll_at else None,
        )
        return outcome

    async def _sync_source(
        self,
        source: TrackedSource,
        now: datetime,
        outcome: SourceOutcome,
    ) -> _SyncCounts:
        """
        Fetch, ingest and observe one source.

        Ledger counts are copied onto `outcome` as soon as the write returns:
        the rows are committed even if a later step raises.
        """
        ref = extract_product_ref(source.external_ref)

        product_type = source.cached_product_type
        if not product_type:
            product_type = (await self.scraper.classify(ref)).value
            source.cached_product_type = product_type

        raw_sales = await self.scraper.fetch_recent_transactions(ref)
        raw_listings = await self.scraper.fetch_current_listings(ref, product_type)

        records, dropped = normalize_sales(raw_sales, product_type, now)
        existing = await self.store.load_ledger(source.item_id, settings.DEDUP_LEDGER_LOOKBACK)
        partition = self.dedup.partition(existing, records)
        written = await self.writer.write(source.item_id, partition.new, product_type)

        outcome.fetched = len(raw_sales)
        outcome.inserted = written.inserted
        outcome.skipped = written.skipped + len(partition.duplicate)
        outcome.dropped = dropped + partition.malformed
        outcome.errors = written.errors

        summary = summarize_listings(raw_listings, product_type)
        await self.store.record_listings(source.item_id, source.venue, summary, now)

        changed = written.inserted > 0
        if summary.overall_min is not None:
            changed = changed or (
                summary.overall_min != source.last_price or summary.total_depth != source.last_stock
            )
            source.last_price = summary.overall_min
            source.last_stock = summary.total_depth

        window_start = now - timedelta(hours=settings.ACTIVITY_WINDOW_HOURS)
        observed = await self.store.count_transactions_since(source.item_id, window_start)

        return _SyncCounts(
            errors=written.errors,
            failures=written.failures,
            observed_events=observed,
            changed=changed,
        )

    # -----------------------------------------------------------------------
    # Schedule transitions
    # -----------------------------------------------------------------------

    @staticmethod
    def _schedule_success(
        source: TrackedSource,
        policy: IntervalPolicy,
        counts: _SyncCounts,
        now: datetime,
    ) -> None:
        decision = policy.plan_success(source, counts.observed_events, counts.changed)
        source.last_polled_at = now
        source.last_status = SyncStatus.SUCCESS.value
        source.last_error = None
        source.error_count = 0
        source.interval_minutes = decision.base_minutes
        source.unchanged_polls = decision.unchanged_polls
        source.next_poll_at = now + timedelta(minutes=decision.delay_minutes)

    @staticmethod
    def _schedule_error(
        source: TrackedSource,
        policy: IntervalPolicy,
        error: Exception,
        now: datetime,
    ) -> None:
        source.error_count = (source.error_count or 0) + 1
        delay = policy.next_delay_minutes_after_error(source, source.error_count)
        source.last_polled_at = now
        source.last_status = SyncStatus.ERROR.value
        source.last_error = str(error)[:_MAX_ERROR_LENGTH]
        source.next_poll_at = now + timedelta(minutes=delay)

    @staticmethod
    def _disable(source: TrackedSource, error: ConfigurationError, now: datetime) -> None:
        source.error_count = (source.error_count or 0) + 1
        source.mode = SyncMode.OFF.value
        source.last_polled_at = now
        source.last_status = SyncStatus.ERROR.value
        source.last_error = str(error)[:_MAX_ERROR_LENGTH]
        source.next_poll_at = now


# ---------------------------------------------------------------------------
# Triggered entry point
# ---------------------------------------------------------------------------


async def run_triggered_cycle(
    store: SyncStore,
    scraper: ScraperCollaborator,
    job_name: str | None = None,
    now: datetime | None = None,
    **orchestrator_kwargs: Any,
) -> CycleReport:
    """
    Cron-gated cycle: consult the job's cron_schedules row, run, then stamp
    the row. Used by both the HTTP trigger and the in-process loop.

    Raises:
        CycleAbortedError: As SyncOrchestrator.run_cycle (the row is stamped
            with status 'error' first).
    """
    now = now or datetime.now(timezone.utc)
    job_name = job_name or settings.SYNC_JOB_NAME

    try:
        schedule = await store.get_cron_schedule(job_name)
    except Exception as e:
        raise CycleAbortedError(
            "Could not read cron schedule",
            details={"job_name": job_name},
            cause=e,
        ) from e

    gate = should_run(schedule, now)
    if not gate.should_run:
        logger.info("cron_gate_skipped", job_name=job_name, reason=gate.reason)
        return CycleReport.skipped_cycle(f"cron_gate:{gate.reason}", now)
    logger.info("cron_gate_passed", job_name=job_name, reason=gate.reason)

    orchestrator = SyncOrchestrator(store, scraper, **orchestrator_kwargs)
    try:
        report = await orchestrator.run_cycle(now)
    except CycleAbortedError as e:
        await _mark_cron_run(store, job_name, now, SyncStatus.ERROR.value, str(e)[:_MAX_ERROR_LENGTH])
        raise

    await _mark_cron_run(store, job_name, now, SyncStatus.SUCCESS.value)
    return report


async def _mark_cron_run(
    store: SyncStore,
    job_name: str,
    now: datetime,
    status: str,
    error: str | None = None,
) -> None:
    """Stamp the gate row; a failure here never replaces the cycle's result."""
    try:
        await store.mark_cron_run(job_name, now, status, error)
    except Exception as e:
        logger.error(
            "cron_mark_failed",
            job_name=job_name,
            status=status,
            error=str(e),
            error_type=type(e).__name__,
        )
