"""
Card Sync — Sync Settings Model

Process-wide policy tunables stored as key/value rows, edited from the
settings screen. Keys absent from the table fall back to src.config defaults.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime


class SyncSetting(Base):
    """One policy key (e.g. 'batch_size_per_cycle') and its string value."""

    __tablename__ = "sync_settings"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<SyncSetting {self.key}={self.value!r}>"
