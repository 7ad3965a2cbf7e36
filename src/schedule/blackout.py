"""
Card Sync — Blackout Calendar

Answers "is polling allowed for source X at time T?" from recurring weekly
no-poll windows. A window with no scoped_source blocks every source; a scoped
window blocks only its venue. Overlapping windows are allowed and any single
match blocks.

Weekdays follow the settings screen: 0=Sunday .. 6=Saturday. Times are
business-local wall clock (settings.BUSINESS_TIMEZONE), start inclusive,
end exclusive.
"""

from __future__ import annotations

from datetime import datetime, time
from typing import Iterable, NamedTuple
from zoneinfo import ZoneInfo

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.config import settings

logger = structlog.get_logger(__name__)


class BlackoutWindowSpec(BaseModel):
    """
    Validated blackout window.

    Malformed windows are rejected here, at configuration-write time, so the
    calendar never has to second-guess its input.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    day_of_week: int = Field(..., ge=0, le=6, description="0=Sunday .. 6=Saturday")
    start_time: time
    end_time: time
    scoped_source: str | None = Field(default=None, description="Venue id, None = all")
    reason: str = ""
    active: bool = True

    @field_validator("scoped_source", mode="before")
    @classmethod
    def blank_scope_is_global(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @model_validator(mode="after")
    def check_range(self) -> BlackoutWindowSpec:
        if self.start_time >= self.end_time:
            raise ValueError(
                f"start_time {self.start_time} must be before end_time {self.end_time}"
            )
        return self

    def contains(self, now_local: datetime) -> bool:
        """True if now_local falls on this window's weekday within [start, end)."""
        if business_weekday(now_local) != self.day_of_week:
            return False
        current = now_local.time().replace(tzinfo=None)
        return self.start_time <= current < self.end_time


class BlackoutStatus(NamedTuple):
    """Which sources are blocked at one instant."""
    global_blocked: bool
    scoped_sources: frozenset[str]


def business_weekday(moment: datetime) -> int:
    """Weekday with Sunday as 0 (Python's weekday() has Monday as 0)."""
    return (moment.weekday() + 1) % 7


def to_local(moment: datetime, tz_name: str | None = None) -> datetime:
    """Convert an aware timestamp to the business time zone."""
    return moment.astimezone(ZoneInfo(tz_name or settings.BUSINESS_TIMEZONE))


class BlackoutCalendar:
    """
    Pure lookup over a fixed set of windows.

    Usage:
        calendar = BlackoutCalendar(windows)
        if calendar.is_blocked("snkrdunk", to_local(now)):
            ...
    """

    def __init__(self, windows: Iterable[BlackoutWindowSpec]):
        self._windows = [w for w in windows if w.active]

    def __len__(self) -> int:
        return len(self._windows)

    def is_blocked(self, source: str | None, now_local: datetime) -> bool:
        """
        Check whether polling `source` is blocked at `now_local`.

        Args:
            source: Venue id, or None for the global check (only unscoped
                windows apply).
            now_local: Timestamp already normalized to business-local time.

        Returns:
            True if any active matching window contains now_local.
        """
        for window in self._windows:
            if window.scoped_source is not None and window.scoped_source != source:
                continue
            if window.contains(now_local):
                logger.debug(
                    "blackout_match",
                    source=source,
                    day_of_week=window.day_of_week,
                    start=window.start_time.isoformat(),
                    end=window.end_time.isoformat(),
                    reason=window.reason,
                )
                return True
        return False

    def blocked_sources(self, now_local: datetime) -> BlackoutStatus:
        """Evaluate every window once: the global flag plus blocked venues."""
        global_blocked = False
        scoped: set[str] = set()
        for window in self._windows:
            if not window.contains(now_local):
                continue
            if window.scoped_source is None:
                global_blocked = True
            else:
                scoped.add(window.scoped_source)
        return BlackoutStatus(global_blocked=global_blocked, scoped_sources=frozenset(scoped))
