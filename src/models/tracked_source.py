"""
Card Sync — Tracked Source Model

One polling target: a product listing on an external marketplace, linked to
one internal catalog item. Mutated every orchestrator cycle that selects it.
Never hard-deleted; disabled with mode='off'.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import INTEGER, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.config import SyncMode, SyncStatus
from src.models.base import Base, UTCDateTime


class TrackedSource(Base):
    """
    Schedule state for one (catalog item, marketplace listing) pair.

    next_poll_at NULL means "poll immediately". error_count counts
    consecutive failures and resets to 0 on any success.

    Index: (mode, next_poll_at) supports the due-source scan.
    """

    __tablename__ = "tracked_sources"

    id: Mapped[int] = mapped_column(INTEGER, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(
        String, nullable=False, comment="Internal catalog item id"
    )
    venue: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default="snkrdunk",
        server_default="snkrdunk",
        comment="Marketplace identifier; the scope of per-source blackout windows",
    )
    external_ref: Mapped[str] = mapped_column(
        String, nullable=False, comment="Product locator: listing URL or numeric id"
    )

    # --- Schedule configuration ---
    mode: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default=SyncMode.AUTO.value,
        server_default=SyncMode.AUTO.value,
        comment="off | manual | auto",
    )
    manual_interval_minutes: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Fixed interval, used only when mode='manual'"
    )

    # --- Schedule state ---
    last_polled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_status: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default=SyncStatus.NEVER.value,
        server_default=SyncStatus.NEVER.value,
        comment="never | success | error",
    )
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    next_poll_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="NULL = due immediately"
    )
    error_count: Mapped[int] = mapped_column(
        INTEGER, nullable=False, default=0, server_default="0"
    )
    interval_minutes: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Base interval chosen at the last successful poll"
    )
    unchanged_polls: Mapped[int] = mapped_column(
        INTEGER,
        nullable=False,
        default=0,
        server_default="0",
        comment="Consecutive successful polls with no new sales and no price change",
    )

    # --- Cached classification / last observation ---
    cached_product_type: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="single | box, fetched once and reused"
    )
    last_price: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Cheapest listing at the last poll"
    )
    last_stock: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Total listing depth at the last poll"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_tracked_sources_mode_next_poll", "mode", "next_poll_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TrackedSource id={self.id} item_id={self.item_id!r} venue={self.venue!r} "
            f"mode={self.mode} next_poll_at={self.next_poll_at}>"
        )
