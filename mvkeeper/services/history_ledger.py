"""
mvkeeper.services.history_ledger — Refresh Ledger & Freshness Monitor
======================================================================

Every refresh attempt lands in ``mv_refresh_history`` as one row.  The row
is inserted as ``RUNNING`` when the attempt starts and finalized exactly
once, to ``SUCCESS`` or ``FAILED``, when it ends; a finalized row is never
touched again.  An attempt that dies mid-refresh leaves its ``RUNNING``
row behind.

Freshness is answered from this ledger alone: a view is *fresh* only if
its most recent **successful** refresh is within the staleness threshold.
Failed and running attempts never make a view fresh.

Writing to the ledger must never break a maintenance run.  If a write
fails (table missing, connection hiccup) the error is logged and the
refresh result is returned to the caller untouched.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, func, select

from mvkeeper.database.engine import get_session, run_db
from mvkeeper.database.models import RefreshHistory, RefreshStatus, RefreshTrigger

module_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LastRefresh:
    """Most recent successful refresh of one view."""

    completed_at: datetime
    duration_ms: int | None


@dataclass(slots=True)
class FreshnessSnapshot:
    """Derived, never persisted."""

    is_stale: bool
    oldest_refresh: datetime | None
    stale_threshold_hours: float
    checked_at: datetime
    views_never_refreshed: list[str] = field(default_factory=list)
    stale_views: list[str] = field(default_factory=list)
    fresh_views: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["oldest_refresh"] = (
            self.oldest_refresh.isoformat() if self.oldest_refresh else None
        )
        data["checked_at"] = self.checked_at.isoformat()
        return data


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; the ledger always writes UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def classify_freshness(
    view_names: list[str],
    last_refresh: dict[str, LastRefresh],
    stale_threshold_hours: float,
    now: datetime | None = None,
) -> FreshnessSnapshot:
    """Bucket every view into never-refreshed / stale / fresh.

    Staleness is strict: a view whose age equals the threshold exactly is
    still fresh.
    """
    now = _as_utc(now or datetime.now(UTC))
    threshold = timedelta(hours=stale_threshold_hours)

    snapshot = FreshnessSnapshot(
        is_stale=False,
        oldest_refresh=None,
        stale_threshold_hours=stale_threshold_hours,
        checked_at=now,
    )
    for view in view_names:
        last = last_refresh.get(view)
        if last is None:
            snapshot.views_never_refreshed.append(view)
            continue

        completed = _as_utc(last.completed_at)
        if snapshot.oldest_refresh is None or completed < snapshot.oldest_refresh:
            snapshot.oldest_refresh = completed

        if now - completed > threshold:
            snapshot.stale_views.append(view)
        else:
            snapshot.fresh_views.append(view)

    snapshot.is_stale = bool(snapshot.views_never_refreshed or snapshot.stale_views)
    return snapshot


def _history_to_dict(row: RefreshHistory) -> dict:
    return {
        "id": row.id,
        "view_name": row.view_name,
        "category": row.category,
        "status": str(row.status),
        "trigger": str(row.trigger),
        "started_at": _as_utc(row.started_at).isoformat() if row.started_at else None,
        "completed_at": (
            _as_utc(row.completed_at).isoformat() if row.completed_at else None
        ),
        "duration_ms": row.duration_ms,
        "row_count_before": row.row_count_before,
        "row_count_after": row.row_count_after,
        "row_delta": row.row_delta,
        "was_blocking": row.was_blocking,
        "initiated_by": row.initiated_by,
        "error_message": row.error_message,
    }


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------
class HistoryLedger:
    """Append-only store of :class:`RefreshHistory` rows."""

    def __init__(self, engine: Engine, logger: logging.Logger | None = None) -> None:
        self.engine = engine
        self.logger = logger or module_logger

    # --- writes ---------------------------------------------------------------
    def _insert(self, row: RefreshHistory) -> int:
        with get_session(self.engine) as session:
            session.add(row)
            session.flush()
            return row.id

    def _finalize(self, attempt_id: int, values: dict) -> bool:
        with get_session(self.engine) as session:
            row = session.get(RefreshHistory, attempt_id)
            if row is None or row.status != RefreshStatus.RUNNING:
                return False
            for key, value in values.items():
                setattr(row, key, value)
            return True

    async def start_attempt(
        self,
        *,
        view_name: str,
        trigger: RefreshTrigger,
        started_at: datetime,
        category: str | None = None,
        row_count_before: int | None = None,
        initiated_by: str | None = None,
    ) -> int | None:
        """Insert a ``RUNNING`` row and return its id (``None`` on failure)."""
        row = RefreshHistory(
            view_name=view_name,
            category=category,
            status=RefreshStatus.RUNNING,
            trigger=trigger,
            started_at=started_at,
            row_count_before=row_count_before,
            was_blocking=False,
            initiated_by=initiated_by,
        )
        try:
            return await run_db(self._insert, row)
        except Exception:
            self.logger.exception("Failed to record start of refresh for %s", view_name)
            return None

    async def finish_attempt(
        self,
        attempt_id: int | None,
        *,
        view_name: str,
        status: RefreshStatus,
        trigger: RefreshTrigger,
        started_at: datetime,
        completed_at: datetime | None = None,
        category: str | None = None,
        row_count_before: int | None = None,
        row_count_after: int | None = None,
        was_blocking: bool = False,
        initiated_by: str | None = None,
        error_message: str | None = None,
    ) -> int | None:
        """Finalize the ``RUNNING`` row *attempt_id*.

        If the start row was never written, the finalized attempt is
        appended instead so the outcome is still recorded.  Failures are
        logged, never raised.
        """
        if attempt_id is None:
            return await self.log_attempt(
                view_name=view_name, status=status, trigger=trigger,
                started_at=started_at, completed_at=completed_at, category=category,
                row_count_before=row_count_before, row_count_after=row_count_after,
                was_blocking=was_blocking, initiated_by=initiated_by,
                error_message=error_message,
            )

        completed_at = completed_at or datetime.now(UTC)
        if completed_at < started_at:
            completed_at = started_at
        row_delta = None
        if row_count_before is not None and row_count_after is not None:
            row_delta = row_count_after - row_count_before
        values = {
            "status": status,
            "completed_at": completed_at,
            "duration_ms": int((completed_at - started_at).total_seconds() * 1000),
            "row_count_before": row_count_before,
            "row_count_after": row_count_after,
            "row_delta": row_delta,
            "was_blocking": was_blocking,
            "error_message": error_message,
        }
        try:
            finalized = await run_db(self._finalize, attempt_id, values)
        except Exception:
            self.logger.exception(
                "Failed to finalize refresh attempt %d for %s (status=%s)",
                attempt_id, view_name, status,
            )
            return None
        if not finalized:
            self.logger.warning(
                "Refresh attempt %d for %s is not running; left unchanged", attempt_id, view_name,
            )
            return None
        return attempt_id

    async def log_attempt(
        self,
        *,
        view_name: str,
        status: RefreshStatus,
        trigger: RefreshTrigger,
        started_at: datetime,
        completed_at: datetime | None = None,
        category: str | None = None,
        row_count_before: int | None = None,
        row_count_after: int | None = None,
        was_blocking: bool = False,
        initiated_by: str | None = None,
        error_message: str | None = None,
    ) -> int | None:
        """Append one finalized attempt.  Returns the row id, or ``None`` if
        the write failed (the failure is logged, never raised).
        """
        completed_at = completed_at or datetime.now(UTC)
        if completed_at < started_at:
            completed_at = started_at
        duration_ms = int((completed_at - started_at).total_seconds() * 1000)

        row_delta = None
        if row_count_before is not None and row_count_after is not None:
            row_delta = row_count_after - row_count_before

        row = RefreshHistory(
            view_name=view_name,
            category=category,
            status=status,
            trigger=trigger,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
            row_count_before=row_count_before,
            row_count_after=row_count_after,
            row_delta=row_delta,
            was_blocking=was_blocking,
            initiated_by=initiated_by,
            error_message=error_message,
        )
        try:
            return await run_db(self._insert, row)
        except Exception:
            self.logger.exception(
                "Failed to record refresh attempt for %s (status=%s)", view_name, status,
            )
            return None

    # --- reads ----------------------------------------------------------------
    def _last_refresh_sync(self) -> dict[str, LastRefresh]:
        successful = (
            RefreshHistory.status == RefreshStatus.SUCCESS,
            RefreshHistory.completed_at.isnot(None),
        )
        if self.engine.dialect.name == "postgresql":
            stmt = (
                select(
                    RefreshHistory.view_name,
                    RefreshHistory.completed_at,
                    RefreshHistory.duration_ms,
                )
                .where(*successful)
                .distinct(RefreshHistory.view_name)
                .order_by(RefreshHistory.view_name, RefreshHistory.completed_at.desc())
            )
        else:
            ranked = (
                select(
                    RefreshHistory.view_name,
                    RefreshHistory.completed_at,
                    RefreshHistory.duration_ms,
                    func.row_number().over(
                        partition_by=RefreshHistory.view_name,
                        order_by=(RefreshHistory.completed_at.desc(),
                                  RefreshHistory.id.desc()),
                    ).label("rn"),
                )
                .where(*successful)
                .subquery()
            )
            stmt = select(
                ranked.c.view_name, ranked.c.completed_at, ranked.c.duration_ms,
            ).where(ranked.c.rn == 1)

        with get_session(self.engine) as session:
            return {
                row.view_name: LastRefresh(
                    completed_at=_as_utc(row.completed_at),
                    duration_ms=row.duration_ms,
                )
                for row in session.execute(stmt)
            }

    async def get_last_refresh_times(self) -> dict[str, LastRefresh]:
        """Latest successful completion time + duration, keyed by view."""
        return await run_db(self._last_refresh_sync)

    async def get_freshness_status(
        self,
        view_names: list[str],
        stale_threshold_hours: float,
        now: datetime | None = None,
    ) -> FreshnessSnapshot:
        last = await self.get_last_refresh_times()
        return classify_freshness(view_names, last, stale_threshold_hours, now)

    def _history_sync(self, limit: int, view_name: str | None) -> list[dict]:
        stmt = select(RefreshHistory).order_by(
            RefreshHistory.started_at.desc(), RefreshHistory.id.desc(),
        )
        if view_name:
            stmt = stmt.where(RefreshHistory.view_name == view_name)
        with get_session(self.engine) as session:
            rows = session.scalars(stmt.limit(limit)).all()
            return [_history_to_dict(r) for r in rows]

    async def get_refresh_history(
        self, limit: int = 50, view_name: str | None = None,
    ) -> list[dict]:
        """Most recent attempts first, every status included."""
        return await run_db(self._history_sync, limit, view_name)
