"""
Card Sync — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- In-memory SQLite session factory (aiosqlite) with the full schema
- In-memory fake SyncStore and fake scraper for orchestrator tests
- TrackedSource factory and a fixed cycle clock
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Iterable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.config import ProductType, SyncMode, SyncStatus
from src.models.base import Base
from src.models.cron_schedule import CronSchedule
from src.models.tracked_source import TrackedSource
from src.pipeline.errors import (
    DuplicateRecordError,
    StoreWriteError,
    TransientFetchError,
)
from src.pipeline.normalize import ListingSummary, RawListing, RawSale
from src.schedule.blackout import BlackoutWindowSpec
from src.schedule.dedup import SaleRecord
from src.schedule.policy import PolicyConfig


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)

# Sunday 2026-10-18 12:00 in Asia/Tokyo
CYCLE_NOW = datetime(2026, 10, 18, 3, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    """Fixed cycle clock (aware UTC)."""
    return CYCLE_NOW


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Fresh in-memory database per test, schema from the models.

    StaticPool keeps every session on the same connection, so all sessions
    see the same in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeSyncStore:
    """In-memory SyncStore honoring the ledger's unique constraint."""

    def __init__(self) -> None:
        self.policy = PolicyConfig()
        self.windows: list[BlackoutWindowSpec] = []
        self.sources: dict[int, TrackedSource] = {}
        self.ledger: list[tuple[str, SaleRecord]] = []
        self.snapshots: list[dict[str, Any]] = []
        self.cron: dict[str, CronSchedule] = {}
        self.cron_marks: list[tuple[str, datetime, str, str | None]] = []
        self.saved: list[int | None] = []
        self.failing_prices: set[int] = set()
        self.policy_error: Exception | None = None
        self.batch_calls = 0

    # --- configuration ---
    async def load_policy(self) -> PolicyConfig:
        if self.policy_error is not None:
            raise self.policy_error
        return self.policy

    async def save_policy(self, config: PolicyConfig) -> None:
        self.policy = config

    async def load_blackout_windows(self) -> list[BlackoutWindowSpec]:
        return [w for w in self.windows if w.active]

    async def add_blackout_window(self, spec: BlackoutWindowSpec) -> int:
        self.windows.append(spec)
        return len(self.windows)

    # --- sources ---
    async def select_due_sources(
        self,
        now: datetime,
        limit: int,
        exclude_venues: Iterable[str] = (),
    ) -> list[TrackedSource]:
        excluded = set(exclude_venues)
        due = [
            s for s in self.sources.values()
            if s.mode != SyncMode.OFF.value
            and s.venue not in excluded
            and (s.next_poll_at is None or s.next_poll_at <= now)
        ]
        due.sort(key=lambda s: (s.next_poll_at is not None, s.next_poll_at or now, s.id))
        return due[:limit]

    async def save_source(self, source: TrackedSource) -> None:
        self.saved.append(source.id)
        self.sources[source.id] = source

    # --- ledger ---
    def _key(self, item_id: str, r: SaleRecord) -> tuple:
        return (item_id, r.grade, r.price, r.occurred_at, r.sequence)

    def rows_for(self, item_id: str) -> list[SaleRecord]:
        return [r for i, r in self.ledger if i == item_id]

    async def load_ledger(self, item_id: str, limit: int) -> list[SaleRecord]:
        rows = sorted(self.rows_for(item_id), key=lambda r: r.occurred_at, reverse=True)
        return rows[:limit]

    async def count_transactions_since(self, item_id: str, since: datetime) -> int:
        return sum(1 for r in self.rows_for(item_id) if r.occurred_at >= since)

    async def insert_transactions(
        self,
        item_id: str,
        records: list[SaleRecord],
        product_type: str | None = None,
    ) -> int:
        self.batch_calls += 1
        existing = {self._key(i, r) for i, r in self.ledger}
        keys = [self._key(item_id, r) for r in records]
        if any(k in existing for k in keys) or len(set(keys)) != len(keys):
            raise DuplicateRecordError("duplicate in batch")
        if any(r.price in self.failing_prices for r in records):
            raise StoreWriteError("batch write failed")
        self.ledger.extend((item_id, r) for r in records)
        return len(records)

    async def insert_transaction(
        self,
        item_id: str,
        record: SaleRecord,
        product_type: str | None = None,
    ) -> None:
        if self._key(item_id, record) in {self._key(i, r) for i, r in self.ledger}:
            raise DuplicateRecordError("duplicate row")
        if record.price in self.failing_prices:
            raise StoreWriteError("row write failed")
        self.ledger.append((item_id, record))

    async def record_listings(
        self,
        item_id: str,
        venue: str,
        summary: ListingSummary,
        recorded_at: datetime,
    ) -> int:
        self.snapshots.append({"item_id": item_id, "venue": venue, "summary": summary})
        return 1

    # --- cron ---
    async def get_cron_schedule(self, job_name: str) -> CronSchedule | None:
        return self.cron.get(job_name)

    async def mark_cron_run(
        self,
        job_name: str,
        now: datetime,
        status: str,
        error: str | None = None,
    ) -> None:
        self.cron_marks.append((job_name, now, status, error))


class FakeScraper:
    """Scripted scraper: per-ref sales, listings, types and errors."""

    def __init__(self) -> None:
        self.sales: dict[str, list[dict[str, Any]]] = {}
        self.listings: dict[str, list[dict[str, Any]]] = {}
        self.product_types: dict[str, ProductType] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []

    async def __aenter__(self) -> FakeScraper:
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None

    def _check(self, op: str, ref: str) -> None:
        self.calls.append((op, ref))
        if ref in self.errors:
            raise self.errors[ref]

    async def classify(self, ref: str) -> ProductType:
        self._check("classify", ref)
        return self.product_types.get(ref, ProductType.SINGLE)

    async def fetch_recent_transactions(self, ref: str) -> list[RawSale]:
        self._check("transactions", ref)
        return [RawSale.model_validate(row) for row in self.sales.get(ref, [])]

    async def fetch_current_listings(
        self, ref: str, product_type: ProductType | str | None = None
    ) -> list[RawListing]:
        self._check("listings", ref)
        return [RawListing.model_validate(row) for row in self.listings.get(ref, [])]


@pytest.fixture
def fake_store() -> FakeSyncStore:
    return FakeSyncStore()


@pytest.fixture
def fake_scraper() -> FakeScraper:
    return FakeScraper()


@pytest.fixture
def transient_error() -> TransientFetchError:
    return TransientFetchError("upstream 503")


@pytest.fixture
def make_source(fake_store: FakeSyncStore) -> Callable[..., TrackedSource]:
    """
    Build a TrackedSource and register it with the fake store.

    ORM column defaults only apply on INSERT, so every schedule field is set
    explicitly here.
    """
    counter = {"next_id": 1}

    def _make(**overrides: Any) -> TrackedSource:
        source_id = counter["next_id"]
        counter["next_id"] += 1
        fields: dict[str, Any] = {
            "id": source_id,
            "item_id": f"item-{source_id}",
            "venue": "snkrdunk",
            "external_ref": str(90000 + source_id),
            "mode": SyncMode.AUTO.value,
            "manual_interval_minutes": None,
            "last_polled_at": None,
            "last_status": SyncStatus.NEVER.value,
            "last_error": None,
            "next_poll_at": None,
            "error_count": 0,
            "interval_minutes": None,
            "unchanged_polls": 0,
            "cached_product_type": ProductType.SINGLE.value,
            "last_price": None,
            "last_stock": None,
        }
        fields.update(overrides)
        source = TrackedSource(**fields)
        fake_store.sources[source.id] = source
        return source

    return _make
