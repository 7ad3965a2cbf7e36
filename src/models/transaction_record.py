"""
Card Sync — Transaction Record Model

Append-only ledger of observed sales per catalog item.
Never updated: rows are inserted once, after the dedup pass qualifies them.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import INTEGER, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime


class TransactionRecord(Base):
    """
    One observed sale/trade event.

    The unique constraint is the only cross-process guard against duplicate
    rows: concurrent cycles race on it and the loser's insert is counted as
    skipped by the ingestion writer.

    Index: (item_id, occurred_at) supports the trailing-24h activity count
    and the recent-ledger scan.
    """

    __tablename__ = "transaction_records"

    id: Mapped[int] = mapped_column(INTEGER, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String, nullable=False)
    grade: Mapped[str] = mapped_column(
        String, nullable=False, comment="Normalized grade, e.g. 'PSA10', 'A', '1個'"
    )
    price: Mapped[int] = mapped_column(
        INTEGER, nullable=False, comment="Smallest currency unit (JPY)"
    )
    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, comment="Marketplace-reported sale time, absolute"
    )
    identity_hint: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Per-seller icon id when the marketplace exposes one"
    )
    sequence: Mapped[int] = mapped_column(
        INTEGER, nullable=False, default=0, server_default="0"
    )
    product_type: Mapped[str | None] = mapped_column(String, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "item_id",
            "grade",
            "price",
            "occurred_at",
            "sequence",
            name="uq_transaction_records_identity",
        ),
        Index("ix_transaction_records_item_occurred", "item_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionRecord item_id={self.item_id!r} grade={self.grade!r} "
            f"price={self.price} at={self.occurred_at} hint={self.identity_hint!r}>"
        )
