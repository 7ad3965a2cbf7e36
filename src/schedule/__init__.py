"""Card Sync — pure scheduling components (blackouts, intervals, dedup, gate)."""

from src.schedule.blackout import BlackoutCalendar, BlackoutWindowSpec, to_local
from src.schedule.dedup import ByHint, ByWindow, DedupEngine, Partition, SaleRecord
from src.schedule.interval import IntervalPolicy, ScheduleDecision
from src.schedule.policy import PolicyConfig

__all__ = [
    "BlackoutCalendar",
    "BlackoutWindowSpec",
    "ByHint",
    "ByWindow",
    "DedupEngine",
    "IntervalPolicy",
    "Partition",
    "PolicyConfig",
    "SaleRecord",
    "ScheduleDecision",
    "to_local",
]
