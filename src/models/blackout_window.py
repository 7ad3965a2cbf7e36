"""
Card Sync — Blackout Window Model

Recurring weekly no-poll windows, global or scoped to one venue.
Rows are validated on write (src/schedule/blackout.py BlackoutWindowSpec);
queries trust them.
"""

from __future__ import annotations

from datetime import datetime, time

from sqlalchemy import BOOLEAN, INTEGER, String, Time, func, true
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime


class BlackoutWindow(Base):
    """day_of_week uses 0=Sunday .. 6=Saturday; times are business-local."""

    __tablename__ = "blackout_windows"

    id: Mapped[int] = mapped_column(INTEGER, primary_key=True, autoincrement=True)
    day_of_week: Mapped[int] = mapped_column(INTEGER, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    scoped_source: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Venue id; NULL applies to every source"
    )
    reason: Mapped[str] = mapped_column(String, nullable=False, default="", server_default="")
    active: Mapped[bool] = mapped_column(
        BOOLEAN, nullable=False, default=True, server_default=true()
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<BlackoutWindow day={self.day_of_week} {self.start_time}-{self.end_time} "
            f"source={self.scoped_source!r} active={self.active}>"
        )
