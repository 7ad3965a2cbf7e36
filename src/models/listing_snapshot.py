"""
Card Sync — Listing Snapshot Model

Point-in-time best-price observations per item and venue. Insert-only time
series: every successful poll appends one overall row (grade NULL) plus one
row per grade bucket.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import INTEGER, JSON, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime


class ListingSnapshot(Base):
    """Cheapest asking price and listing depth for one grade bucket."""

    __tablename__ = "listing_snapshots"

    id: Mapped[int] = mapped_column(INTEGER, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String, nullable=False)
    venue: Mapped[str] = mapped_column(String, nullable=False)
    grade: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="NULL = overall cheapest across grades"
    )
    price: Mapped[int] = mapped_column(INTEGER, nullable=False)
    depth: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Number of active listings in the bucket"
    )
    top_prices: Mapped[list[int] | None] = mapped_column(
        JSON, nullable=True, comment="Up to three cheapest asking prices"
    )
    recorded_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_listing_snapshots_item_venue_recorded", "item_id", "venue", "recorded_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ListingSnapshot item_id={self.item_id!r} venue={self.venue!r} "
            f"grade={self.grade!r} price={self.price} depth={self.depth}>"
        )
