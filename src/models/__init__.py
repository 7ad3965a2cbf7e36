"""
Models package — export all SQLAlchemy models.
"""

from src.models.base import Base
from src.models.blackout_window import BlackoutWindow
from src.models.cron_schedule import CronSchedule
from src.models.listing_snapshot import ListingSnapshot
from src.models.sync_setting import SyncSetting
from src.models.tracked_source import TrackedSource
from src.models.transaction_record import TransactionRecord

__all__ = [
    "Base",
    "BlackoutWindow",
    "CronSchedule",
    "ListingSnapshot",
    "SyncSetting",
    "TrackedSource",
    "TransactionRecord",
]
