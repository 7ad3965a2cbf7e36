"""
Card Sync — Sync Store

Persistence boundary of the orchestrator. SyncStore is the protocol the
orchestrator and ingestion writer depend on; SqlSyncStore implements it over
an explicitly passed async_sessionmaker (Postgres/asyncpg in production,
SQLite/aiosqlite in tests).

Every method opens and commits its own short session, so one source's
failed write never poisons the next source's transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

import structlog
from pydantic import ValidationError
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import SyncMode
from src.models.blackout_window import BlackoutWindow
from src.models.cron_schedule import CronSchedule
from src.models.listing_snapshot import ListingSnapshot
from src.models.sync_setting import SyncSetting
from src.models.tracked_source import TrackedSource
from src.models.transaction_record import TransactionRecord
from src.pipeline.errors import DuplicateRecordError, StoreWriteError
from src.pipeline.normalize import ListingSummary
from src.schedule.blackout import BlackoutWindowSpec
from src.schedule.dedup import SaleRecord
from src.schedule.policy import PolicyConfig

logger = structlog.get_logger(__name__)

_UNIQUE_VIOLATION = "23505"


class SyncStore(Protocol):
    """What a sync cycle needs from persistence."""

    async def load_policy(self) -> PolicyConfig: ...

    async def save_policy(self, config: PolicyConfig) -> None: ...

    async def load_blackout_windows(self) -> list[BlackoutWindowSpec]: ...

    async def add_blackout_window(self, spec: BlackoutWindowSpec) -> int: ...

    async def select_due_sources(
        self,
        now: datetime,
        limit: int,
        exclude_venues: Iterable[str] = (),
    ) -> list[TrackedSource]: ...

    async def load_ledger(self, item_id: str, limit: int) -> list[SaleRecord]: ...

    async def count_transactions_since(self, item_id: str, since: datetime) -> int: ...

    async def insert_transactions(
        self,
        item_id: str,
        records: list[SaleRecord],
        product_type: str | None = None,
    ) -> int: ...

    async def insert_transaction(
        self,
        item_id: str,
        record: SaleRecord,
        product_type: str | None = None,
    ) -> None: ...

    async def record_listings(
        self,
        item_id: str,
        venue: str,
        summary: ListingSummary,
        recorded_at: datetime,
    ) -> int: ...

    async def save_source(self, source: TrackedSource) -> None: ...

    async def get_cron_schedule(self, job_name: str) -> CronSchedule | None: ...

    async def mark_cron_run(
        self,
        job_name: str,
        now: datetime,
        status: str,
        error: str | None = None,
    ) -> None: ...


def is_unique_violation(error: IntegrityError) -> bool:
    """True when an IntegrityError comes from a uniqueness constraint."""
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == _UNIQUE_VIOLATION:
        return True
    return "unique" in str(orig).lower()


def _ledger_row(item_id: str, record: SaleRecord, product_type: str | None) -> dict:
    return {
        "item_id": item_id,
        "grade": record.grade,
        "price": record.price,
        "occurred_at": record.occurred_at,
        "identity_hint": record.identity_hint,
        "sequence": record.sequence,
        "product_type": product_type,
    }


class SqlSyncStore:
    """
    SQLAlchemy implementation of SyncStore.

    Usage:
        store = SqlSyncStore(session_factory)
        due = await store.select_due_sources(now, limit=15)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # -----------------------------------------------------------------------
    # Policy & blackout configuration
    # -----------------------------------------------------------------------

    async def load_policy(self) -> PolicyConfig:
        """Read sync_settings into a frozen PolicyConfig (ValidationError on bad rows)."""
        async with self.session_factory() as session:
            result = await session.execute(select(SyncSetting))
            rows = {row.key: row.value for row in result.scalars()}
        return PolicyConfig.from_rows(rows)

    async def save_policy(self, config: PolicyConfig) -> None:
        async with self.session_factory() as session:
            for key, value in config.to_rows().items():
                await session.merge(SyncSetting(key=key, value=value))
            await session.commit()
        logger.info("store_policy_saved", **config.to_rows())

    async def load_blackout_windows(self) -> list[BlackoutWindowSpec]:
        """Active windows only. Rows that fail validation are logged and skipped."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(BlackoutWindow).where(BlackoutWindow.active.is_(True))
            )
            rows = list(result.scalars())

        windows = []
        for row in rows:
            try:
                windows.append(BlackoutWindowSpec.model_validate(row))
            except ValidationError as e:
                logger.warning("store_blackout_window_invalid", window_id=row.id, error=str(e))
        return windows

    async def add_blackout_window(self, spec: BlackoutWindowSpec) -> int:
        async with self.session_factory() as session:
            window = BlackoutWindow(**spec.model_dump())
            session.add(window)
            await session.commit()
            window_id = window.id

        logger.info(
            "store_blackout_window_added",
            window_id=window_id,
            day_of_week=spec.day_of_week,
            scoped_source=spec.scoped_source,
        )
        return window_id

    # -----------------------------------------------------------------------
    # Tracked sources
    # -----------------------------------------------------------------------

    async def select_due_sources(
        self,
        now: datetime,
        limit: int,
        exclude_venues: Iterable[str] = (),
    ) -> list[TrackedSource]:
        """
        Due sources in poll order: never-scheduled first, then oldest
        next_poll_at. Sources with mode='off' are never selected.
        """
        stmt = (
            select(TrackedSource)
            .where(
                TrackedSource.mode != SyncMode.OFF.value,
                (TrackedSource.next_poll_at.is_(None)) | (TrackedSource.next_poll_at <= now),
            )
            .order_by(
                TrackedSource.next_poll_at.is_(None).desc(),
                TrackedSource.next_poll_at.asc(),
                TrackedSource.id.asc(),
            )
            .limit(limit)
        )
        excluded = list(exclude_venues)
        if excluded:
            stmt = stmt.where(TrackedSource.venue.not_in(excluded))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def save_source(self, source: TrackedSource) -> None:
        """Persist the source's schedule state. Last writer wins."""
        try:
            async with self.session_factory() as session:
                await session.merge(source)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreWriteError(
                "Failed to save tracked source",
                details={"source_id": source.id, "item_id": source.item_id},
                cause=e,
            ) from e

    async def add_source(
        self,
        item_id: str,
        external_ref: str,
        venue: str = "snkrdunk",
        mode: SyncMode = SyncMode.AUTO,
        manual_interval_minutes: int | None = None,
    ) -> TrackedSource:
        """Link a catalog item to a marketplace listing; due on the next cycle."""
        source = TrackedSource(
            item_id=item_id,
            external_ref=external_ref,
            venue=venue,
            mode=mode.value,
            manual_interval_minutes=manual_interval_minutes,
        )
        async with self.session_factory() as session:
            session.add(source)
            await session.commit()
            await session.refresh(source)

        logger.info("store_source_added", source_id=source.id, item_id=item_id, venue=venue)
        return source

    # -----------------------------------------------------------------------
    # Ledger
    # -----------------------------------------------------------------------

    async def load_ledger(self, item_id: str, limit: int) -> list[SaleRecord]:
        """Most recent `limit` ledger rows of one item, newest first."""
        stmt = (
            select(TransactionRecord)
            .where(TransactionRecord.item_id == item_id)
            .order_by(TransactionRecord.occurred_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [SaleRecord.model_validate(row) for row in result.scalars()]

    async def count_transactions_since(self, item_id: str, since: datetime) -> int:
        stmt = select(func.count()).select_from(TransactionRecord).where(
            TransactionRecord.item_id == item_id,
            TransactionRecord.occurred_at >= since,
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def insert_transactions(
        self,
        item_id: str,
        records: list[SaleRecord],
        product_type: str | None = None,
    ) -> int:
        """
        Insert all records in one statement (all or nothing).

        Raises:
            DuplicateRecordError: Any row hit the ledger's unique constraint.
            StoreWriteError: Any other failure.
        """
        if not records:
            return 0
        rows = [_ledger_row(item_id, record, product_type) for record in records]
        await self._insert_rows(item_id, rows)
        return len(rows)

    async def insert_transaction(
        self,
        item_id: str,
        record: SaleRecord,
        product_type: str | None = None,
    ) -> None:
        """Insert one record. Raises as insert_transactions."""
        await self._insert_rows(item_id, [_ledger_row(item_id, record, product_type)])

    async def _insert_rows(self, item_id: str, rows: list[dict]) -> None:
        async with self.session_factory() as session:
            try:
                await session.execute(insert(TransactionRecord), rows)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if is_unique_violation(e):
                    raise DuplicateRecordError(
                        "Ledger unique constraint violated",
                        details={"item_id": item_id, "rows": len(rows)},
                        cause=e,
                    ) from e
                raise StoreWriteError(
                    "Ledger integrity error",
                    details={"item_id": item_id, "rows": len(rows)},
                    cause=e,
                ) from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreWriteError(
                    "Ledger insert failed",
                    details={"item_id": item_id, "rows": len(rows)},
                    cause=e,
                ) from e

    # -----------------------------------------------------------------------
    # Listing snapshots
    # -----------------------------------------------------------------------

    async def record_listings(
        self,
        item_id: str,
        venue: str,
        summary: ListingSummary,
        recorded_at: datetime,
    ) -> int:
        """
        Append the overall cheapest ask (grade NULL) plus one row per grade
        bucket. Returns the number of rows written.
        """
        rows = []
        if summary.overall_min is not None:
            rows.append({
                "item_id": item_id,
                "venue": venue,
                "grade": None,
                "price": summary.overall_min,
                "depth": summary.total_depth,
                "top_prices": None,
                "recorded_at": recorded_at,
            })
        for bucket in summary.grade_prices:
            rows.append({
                "item_id": item_id,
                "venue": venue,
                "grade": bucket.grade,
                "price": bucket.price,
                "depth": bucket.depth,
                "top_prices": list(bucket.top_prices),
                "recorded_at": recorded_at,
            })
        if not rows:
            return 0

        try:
            async with self.session_factory() as session:
                await session.execute(insert(ListingSnapshot), rows)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreWriteError(
                "Failed to record listing snapshot",
                details={"item_id": item_id, "venue": venue},
                cause=e,
            ) from e
        return len(rows)

    # -----------------------------------------------------------------------
    # Cron gate bookkeeping
    # -----------------------------------------------------------------------

    async def get_cron_schedule(self, job_name: str) -> CronSchedule | None:
        async with self.session_factory() as session:
            return await session.get(CronSchedule, job_name)

    async def mark_cron_run(
        self,
        job_name: str,
        now: datetime,
        status: str,
        error: str | None = None,
    ) -> None:
        """Stamp last_run_at/status on an existing schedule row; no row, no-op."""
        async with self.session_factory() as session:
            await session.execute(
                update(CronSchedule)
                .where(CronSchedule.job_name == job_name)
                .values(last_run_at=now, last_status=status, last_error=error)
            )
            await session.commit()
