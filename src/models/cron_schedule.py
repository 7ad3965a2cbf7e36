"""
Card Sync — Cron Schedule Model

Per-job run gate consulted by the trigger before a cycle starts. Lets an
operator pause a job or slow its cadence without touching the external cron.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BOOLEAN, INTEGER, JSON, String, func, true
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime


class CronSchedule(Base):
    """
    schedule_type 'interval' runs once interval_minutes have elapsed since
    last_run_at; 'daily' runs once per listed UTC hour near run_at_minute.
    """

    __tablename__ = "cron_schedules"

    job_name: Mapped[str] = mapped_column(String, primary_key=True)
    enabled: Mapped[bool] = mapped_column(
        BOOLEAN, nullable=False, default=True, server_default=true()
    )
    schedule_type: Mapped[str] = mapped_column(
        String, nullable=False, default="interval", server_default="interval"
    )
    interval_minutes: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    run_at_hours: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    run_at_minute: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_status: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CronSchedule {self.job_name!r} enabled={self.enabled} "
            f"type={self.schedule_type} last_run_at={self.last_run_at}>"
        )
