"""Operator configuration: blackout_windows, sync_settings, cron_schedules

Revision ID: 002_sync_settings
Revises: 001_sync_core
Create Date: 2026-10-19

Adds:
  - blackout_windows (weekly no-poll windows, 0=Sunday)
  - sync_settings    (policy key/value rows; missing keys use defaults)
  - cron_schedules   (per-job trigger gate), seeded with the market-sync job
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "002_sync_settings"
down_revision: Union[str, None] = "001_sync_core"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "blackout_windows",
        sa.Column("id", sa.INTEGER(), primary_key=True, autoincrement=True),
        sa.Column("day_of_week", sa.INTEGER(), nullable=False, comment="0=Sunday .. 6=Saturday"),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("scoped_source", sa.String(), nullable=True, comment="NULL = all venues"),
        sa.Column("reason", sa.String(), nullable=False, server_default=""),
        sa.Column("active", sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_blackout_windows_day"),
        sa.CheckConstraint("start_time < end_time", name="ck_blackout_windows_range"),
    )

    op.create_table(
        "sync_settings",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("value", sa.String(), nullable=False),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    cron_schedules = op.create_table(
        "cron_schedules",
        sa.Column("job_name", sa.String(), primary_key=True),
        sa.Column("enabled", sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        sa.Column("schedule_type", sa.String(), nullable=False, server_default="interval"),
        sa.Column("interval_minutes", sa.INTEGER(), nullable=True),
        sa.Column("run_at_hours", sa.JSON(), nullable=True),
        sa.Column("run_at_minute", sa.INTEGER(), nullable=True),
        sa.Column("last_run_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_status", sa.String(), nullable=True),
        sa.Column("last_error", sa.String(), nullable=True),
    )
    op.bulk_insert(
        cron_schedules,
        [{"job_name": "market-sync", "enabled": True, "schedule_type": "interval", "interval_minutes": 10}],
    )


def downgrade() -> None:
    op.drop_table("cron_schedules")
    op.drop_table("sync_settings")
    op.drop_table("blackout_windows")
