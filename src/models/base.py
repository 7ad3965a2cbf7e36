"""
SQLAlchemy 2.0 async DeclarativeBase for Card Sync.

All models inherit from this Base.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import TIMESTAMP
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp.

    Postgres round-trips TIMESTAMPTZ as aware datetimes; SQLite (tests) hands
    back naive ones. Values are normalized to aware UTC in both directions so
    scheduling comparisons never mix naive and aware datetimes.
    """

    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all Card Sync database models."""
    pass
