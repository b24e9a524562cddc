"""
mvkeeper.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables owned by the maintenance subsystem:

- mv_refresh_history   — Append-only ledger, one row per refresh attempt
- mv_refresh_schedule  — One refresh schedule per organisation

``audit_events_archive`` is also owned here, but its columns mirror the
external ``audit_events`` table, so its DDL comes from the schema module
rather than from an ORM model.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all mvkeeper ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class RefreshStatus(enum.StrEnum):
    """Outcome of one physical refresh attempt."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    RUNNING = "RUNNING"


class RefreshTrigger(enum.StrEnum):
    """Why a refresh was started."""
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    POST_INGESTION = "POST_INGESTION"
    SYSTEM = "SYSTEM"



# ---------------------------------------------------------------------------
# RefreshHistory — append-only ledger
# ---------------------------------------------------------------------------
class RefreshHistory(Base):
    """One row per refresh attempt.

    A row is inserted ``RUNNING`` at attempt start and finalized exactly
    once.  After that it is never updated, so
    ``row_delta == row_count_after - row_count_before`` and
    ``completed_at >= started_at`` hold for the rest of its lifetime.
    """
    __tablename__ = "mv_refresh_history"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    view_name: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[RefreshStatus] = mapped_column(
        Enum(RefreshStatus, name="mv_refresh_status", native_enum=False, length=16),
        nullable=False,
    )
    trigger: Mapped[RefreshTrigger] = mapped_column(
        Enum(RefreshTrigger, name="mv_refresh_trigger", native_enum=False, length=16),
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    row_count_before: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    row_count_after: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    row_delta: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    was_blocking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    initiated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_mv_refresh_history_view_completed", "view_name", "completed_at"),
        Index("idx_mv_refresh_history_started", "started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RefreshHistory id={self.id} view={self.view_name!r} "
            f"status={self.status} trigger={self.trigger}>"
        )


# ---------------------------------------------------------------------------
# RefreshSchedule — one row per organisation
# ---------------------------------------------------------------------------
class RefreshSchedule(Base):
    """Nightly refresh configuration.

    ``refresh_all`` and ``target_views`` are mutually exclusive: when the
    former is true the latter is always NULL.  The schedule service enforces
    this on every write.
    """
    __tablename__ = "mv_refresh_schedule"

    organisation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    schedule_time: Mapped[str] = mapped_column(String(5), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="Europe/London")
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    post_ingestion_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    stale_threshold_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=6)
    refresh_all: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    target_views: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<RefreshSchedule org={self.organisation_id!r} "
            f"at={self.schedule_time} tz={self.timezone!r} enabled={self.is_enabled}>"
        )
