"""
Card Sync — Dedup Engine

Partitions freshly scraped sales into new and duplicate against the item's
existing ledger. The upstream feed reports coarse relative times, so two
scrapes of the same sale rarely agree on the timestamp.

Identity rule, chosen by the incoming record's identity:

    ByHint(value)  grade, price and hint equal. Time is NOT compared.
    ByWindow       grade and price equal, the existing record is also
                   ByWindow, and the timestamps are less than the
                   same-transaction window apart (default 10 minutes).

Records ingested before hints existed stay matchable through ByWindow, so
both rules run against the full existing set.
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, NamedTuple, Union

import structlog
from pydantic import BaseModel, ConfigDict

from src.config import settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ByHint:
    """Identity carried by an opaque per-seller marker."""
    value: str


@dataclass(frozen=True)
class ByWindow:
    """No marker: identity falls back to grade, price and time proximity."""


RecordIdentity = Union[ByHint, ByWindow]

BY_WINDOW = ByWindow()


class SaleRecord(BaseModel):
    """
    A transaction as seen by the dedup pass: either normalized from a scrape
    or read back from the ledger.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    grade: str
    price: int
    occurred_at: datetime | None
    identity_hint: str | None = None
    sequence: int = 0

    @property
    def identity(self) -> RecordIdentity:
        if self.identity_hint:
            return ByHint(self.identity_hint)
        return BY_WINDOW

    def is_well_formed(self) -> bool:
        return bool(self.grade and self.grade.strip()) and self.price > 0 and self.occurred_at is not None


class Partition(NamedTuple):
    """Outcome of one dedup pass."""
    new: list[SaleRecord]
    duplicate: list[SaleRecord]
    malformed: int


class DedupEngine:
    """
    Pure, stateless partitioner.

    Usage:
        engine = DedupEngine()
        result = engine.partition(existing=ledger, incoming=scraped)
    """

    def __init__(self, window: timedelta | None = None):
        self.window = window or timedelta(minutes=settings.SAME_TRANSACTION_WINDOW_MINUTES)

    def partition(
        self,
        existing: Iterable[SaleRecord],
        incoming: Iterable[SaleRecord],
    ) -> Partition:
        """
        Split incoming records into (new, duplicate), dropping malformed ones.

        Malformed records (blank grade, non-positive price, missing time)
        are counted and skipped; they never abort the batch.
        """
        well_formed: list[SaleRecord] = []
        malformed = 0
        for record in incoming:
            if record.is_well_formed():
                well_formed.append(record)
            else:
                malformed += 1

        if malformed:
            logger.warning("dedup_malformed_dropped", count=malformed)

        if not well_formed:
            return Partition([], [], malformed)

        hint_index, window_index = self._index_existing(existing, well_formed)

        new: list[SaleRecord] = []
        duplicate: list[SaleRecord] = []
        for record in well_formed:
            if self._matches(record, hint_index, window_index):
                duplicate.append(record)
            else:
                new.append(record)

        logger.debug(
            "dedup_partitioned",
            incoming=len(well_formed),
            new=len(new),
            duplicate=len(duplicate),
            malformed=malformed,
        )
        return Partition(new, duplicate, malformed)

    def _index_existing(
        self,
        existing: Iterable[SaleRecord],
        incoming: list[SaleRecord],
    ) -> tuple[set[tuple[str, int, str]], dict[tuple[str, int], list[datetime]]]:
        """
        Build lookup structures for both rules.

        Hinted rows go into a set regardless of time. Hint-less rows are
        kept only inside the incoming batch's time span widened by the
        window, sorted per (grade, price) for bisection.
        """
        times = [r.occurred_at for r in incoming if r.occurred_at is not None]
        earliest = min(times) - self.window
        latest = max(times) + self.window

        hint_index: set[tuple[str, int, str]] = set()
        window_index: dict[tuple[str, int], list[datetime]] = {}
        for record in existing:
            identity = record.identity
            if isinstance(identity, ByHint):
                hint_index.add((record.grade, record.price, identity.value))
            elif isinstance(identity, ByWindow):
                if record.occurred_at is None or not earliest <= record.occurred_at <= latest:
                    continue
                window_index.setdefault((record.grade, record.price), []).append(record.occurred_at)

        for stamps in window_index.values():
            stamps.sort()
        return hint_index, window_index

    def _matches(
        self,
        record: SaleRecord,
        hint_index: set[tuple[str, int, str]],
        window_index: dict[tuple[str, int], list[datetime]],
    ) -> bool:
        identity = record.identity
        if isinstance(identity, ByHint):
            return (record.grade, record.price, identity.value) in hint_index

        if isinstance(identity, ByWindow):
            stamps = window_index.get((record.grade, record.price))
            if not stamps or record.occurred_at is None:
                return False
            # strict: |delta| < window
            lo = bisect_right(stamps, record.occurred_at - self.window)
            hi = bisect_left(stamps, record.occurred_at + self.window)
            return lo < hi

        raise TypeError(f"unknown record identity: {identity!r}")
