"""Sync core: tracked_sources, transaction_records, listing_snapshots

Revision ID: 001_sync_core
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001_sync_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- tracked_sources: one polling target per (item, listing) ---
    op.create_table(
        "tracked_sources",
        sa.Column("id", sa.INTEGER(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.String(), nullable=False, comment="Internal catalog item id"),
        sa.Column("venue", sa.String(), nullable=False, server_default="snkrdunk"),
        sa.Column("external_ref", sa.String(), nullable=False, comment="Listing URL or numeric id"),
        sa.Column("mode", sa.String(), nullable=False, server_default="auto", comment="off | manual | auto"),
        sa.Column("manual_interval_minutes", sa.INTEGER(), nullable=True),
        sa.Column("last_polled_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_status", sa.String(), nullable=False, server_default="never"),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("next_poll_at", sa.TIMESTAMP(timezone=True), nullable=True, comment="NULL = due immediately"),
        sa.Column("error_count", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("interval_minutes", sa.INTEGER(), nullable=True),
        sa.Column("unchanged_polls", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("cached_product_type", sa.String(), nullable=True),
        sa.Column("last_price", sa.INTEGER(), nullable=True),
        sa.Column("last_stock", sa.INTEGER(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_tracked_sources_mode_next_poll", "tracked_sources", ["mode", "next_poll_at"]
    )

    # --- transaction_records: append-only sales ledger ---
    op.create_table(
        "transaction_records",
        sa.Column("id", sa.INTEGER(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("grade", sa.String(), nullable=False),
        sa.Column("price", sa.INTEGER(), nullable=False, comment="Smallest currency unit (JPY)"),
        sa.Column("occurred_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("identity_hint", sa.String(), nullable=True),
        sa.Column("sequence", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("product_type", sa.String(), nullable=True),
        sa.Column(
            "recorded_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "item_id",
            "grade",
            "price",
            "occurred_at",
            "sequence",
            name="uq_transaction_records_identity",
        ),
    )
    op.create_index(
        "ix_transaction_records_item_occurred",
        "transaction_records",
        ["item_id", "occurred_at"],
    )

    # --- listing_snapshots: best-ask time series ---
    op.create_table(
        "listing_snapshots",
        sa.Column("id", sa.INTEGER(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("venue", sa.String(), nullable=False),
        sa.Column("grade", sa.String(), nullable=True, comment="NULL = overall cheapest"),
        sa.Column("price", sa.INTEGER(), nullable=False),
        sa.Column("depth", sa.INTEGER(), nullable=True),
        sa.Column("top_prices", sa.JSON(), nullable=True),
        sa.Column(
            "recorded_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_listing_snapshots_item_venue_recorded",
        "listing_snapshots",
        ["item_id", "venue", "recorded_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_listing_snapshots_item_venue_recorded", table_name="listing_snapshots")
    op.drop_table("listing_snapshots")
    op.drop_index("ix_transaction_records_item_occurred", table_name="transaction_records")
    op.drop_table("transaction_records")
    op.drop_index("ix_tracked_sources_mode_next_poll", table_name="tracked_sources")
    op.drop_table("tracked_sources")
