"""
Card Sync — Cron Gate

Decides whether a triggered job should actually run. The external trigger
fires on its own cadence; the gate lets an operator disable a job or space it
out from the cron_schedules table.

Rules:
- no schedule row            -> run ("no_schedule_found")
- enabled is false           -> skip ("disabled")
- interval: run once interval_minutes elapsed since last_run_at
- daily: run when the current UTC hour is listed, the minute is within
  +/-4 of run_at_minute (wrapping across the hour), and the job has not run
  in this hour already
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import NamedTuple

import structlog

from src.models.cron_schedule import CronSchedule

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL_MINUTES = 20
MINUTE_TOLERANCE = 4


class GateResult(NamedTuple):
    should_run: bool
    reason: str


def should_run(schedule: CronSchedule | None, now: datetime) -> GateResult:
    """Evaluate the gate for one job at `now` (aware UTC)."""
    if schedule is None:
        return GateResult(True, "no_schedule_found")
    if not schedule.enabled:
        return GateResult(False, "disabled")
    if schedule.schedule_type == "interval":
        return _check_interval(schedule, now)
    return _check_daily(schedule, now)


def _check_interval(schedule: CronSchedule, now: datetime) -> GateResult:
    interval_seconds = (schedule.interval_minutes or DEFAULT_INTERVAL_MINUTES) * 60
    if schedule.last_run_at is None:
        return GateResult(True, "first_run")

    elapsed = (now - schedule.last_run_at).total_seconds()
    if elapsed >= interval_seconds:
        return GateResult(True, "interval_elapsed")

    remaining = math.ceil((interval_seconds - elapsed) / 60)
    return GateResult(False, f"interval_not_reached ({remaining}min remaining)")


def _check_daily(schedule: CronSchedule, now: datetime) -> GateResult:
    hours = schedule.run_at_hours or []
    minute = schedule.run_at_minute or 0

    if now.hour not in hours:
        return GateResult(False, f"not_scheduled_hour (current={now.hour})")

    diff = abs(now.minute - minute)
    if MINUTE_TOLERANCE < diff < 60 - MINUTE_TOLERANCE:
        return GateResult(False, f"not_scheduled_minute (current=:{now.minute:02d})")

    last = schedule.last_run_at
    if last is not None and (last.date(), last.hour) == (now.date(), now.hour):
        return GateResult(False, "already_run_this_hour")

    return GateResult(True, "scheduled_time_match")
