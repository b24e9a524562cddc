"""Create mv_refresh_history and mv_refresh_schedule

Revision ID: 3c5e9a1f7b20
Revises:
Create Date: 2026-10-18 09:12:31.118204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '3c5e9a1f7b20'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the refresh ledger and the per-organisation schedule."""

    # --- mv_refresh_history ---
    op.create_table(
        "mv_refresh_history",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("view_name", sa.String(128), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("trigger", sa.String(16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column("row_count_before", sa.BigInteger, nullable=True),
        sa.Column("row_count_after", sa.BigInteger, nullable=True),
        sa.Column("row_delta", sa.BigInteger, nullable=True),
        sa.Column("was_blocking", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("initiated_by", sa.String(128), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.CheckConstraint(
            "status IN ('SUCCESS', 'FAILED', 'RUNNING')",
            name="ck_mv_refresh_history_status",
        ),
        sa.CheckConstraint(
            "completed_at IS NULL OR completed_at >= started_at",
            name="ck_mv_refresh_history_completed_after_started",
        ),
    )
    op.create_index(
        "idx_mv_refresh_history_view_completed",
        "mv_refresh_history",
        ["view_name", "completed_at"],
    )
    op.create_index(
        "idx_mv_refresh_history_started",
        "mv_refresh_history",
        ["started_at"],
    )

    # --- mv_refresh_schedule ---
    op.create_table(
        "mv_refresh_schedule",
        sa.Column("organisation_id", sa.String(64), primary_key=True),
        sa.Column("schedule_time", sa.String(5), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False,
                  server_default="Europe/London"),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("post_ingestion_enabled", sa.Boolean, nullable=False,
                  server_default=sa.false()),
        sa.Column("stale_threshold_hours", sa.Integer, nullable=False, server_default="6"),
        sa.Column("refresh_all", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("target_views", postgresql.JSONB, nullable=True),
        sa.Column("updated_by", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True,
                  server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True,
                  server_default=sa.func.now()),
        sa.CheckConstraint(
            "NOT refresh_all OR target_views IS NULL",
            name="ck_mv_refresh_schedule_targets_exclusive",
        ),
    )


def downgrade() -> None:
    op.drop_table("mv_refresh_schedule")
    op.drop_index("idx_mv_refresh_history_started", table_name="mv_refresh_history")
    op.drop_index("idx_mv_refresh_history_view_completed", table_name="mv_refresh_history")
    op.drop_table("mv_refresh_history")
