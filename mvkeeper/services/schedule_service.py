"""
mvkeeper.services.schedule_service — Refresh Schedule CRUD
===========================================================

One ``mv_refresh_schedule`` row per organisation.  Writes are upserts:
the first write creates the row, later writes only change the fields they
pass (``None`` means "leave as is").

Whenever the resulting row has ``refresh_all=True`` its ``target_views`` is
cleared, whatever the caller sent.
"""

from __future__ import annotations

import logging
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import Engine

from mvkeeper.database.engine import get_session
from mvkeeper.database.models import RefreshSchedule

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_schedule_time(value: str) -> tuple[int, int]:
    """``"HH:MM"`` → ``(hour, minute)``; raises :class:`ValueError`."""
    match = _TIME_RE.match(value or "")
    if not match:
        raise ValueError(f"schedule_time must be HH:MM (24h), got {value!r}")
    return int(match.group(1)), int(match.group(2))


def _validate_timezone(name: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {name!r}") from None


def schedule_to_dict(row: RefreshSchedule) -> dict:
    return {
        "organisation_id": row.organisation_id,
        "schedule_time": row.schedule_time,
        "timezone": row.timezone,
        "is_enabled": row.is_enabled,
        "post_ingestion_enabled": row.post_ingestion_enabled,
        "stale_threshold_hours": row.stale_threshold_hours,
        "refresh_all": row.refresh_all,
        "target_views": list(row.target_views) if row.target_views is not None else None,
        "updated_by": row.updated_by,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_refresh_schedule(engine: Engine, organisation_id: str) -> dict | None:
    """Return the organisation's schedule as a plain dict, or ``None``."""
    with get_session(engine) as session:
        row = session.get(RefreshSchedule, organisation_id)
        if row is None:
            return None
        return schedule_to_dict(row)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def upsert_refresh_schedule(
    engine: Engine,
    organisation_id: str,
    *,
    schedule_time: str | None = None,
    timezone: str | None = None,
    is_enabled: bool | None = None,
    post_ingestion_enabled: bool | None = None,
    stale_threshold_hours: int | None = None,
    refresh_all: bool | None = None,
    target_views: list[str] | None = None,
    updated_by: str | None = None,
) -> dict:
    """Create or update the schedule row.

    Raises
    ------
    ValueError
        On a malformed time or timezone, a non-positive threshold, a first
        write without ``schedule_time``, or a schedule that would refresh
        nothing (``refresh_all=False`` with no target views).
    """
    if schedule_time is not None:
        parse_schedule_time(schedule_time)
    if timezone is not None:
        _validate_timezone(timezone)
    if stale_threshold_hours is not None and stale_threshold_hours <= 0:
        raise ValueError("stale_threshold_hours must be positive")

    with get_session(engine) as session:
        row = session.get(RefreshSchedule, organisation_id)
        if row is None:
            if schedule_time is None:
                raise ValueError("schedule_time is required for a new schedule")
            row = RefreshSchedule(
                organisation_id=organisation_id,
                schedule_time=schedule_time,
                timezone=timezone or "Europe/London",
                is_enabled=True if is_enabled is None else is_enabled,
                post_ingestion_enabled=bool(post_ingestion_enabled),
                stale_threshold_hours=stale_threshold_hours or 6,
                refresh_all=True if refresh_all is None else refresh_all,
                target_views=list(target_views) if target_views else None,
                updated_by=updated_by,
            )
            session.add(row)
            action = "Created"
        else:
            if schedule_time is not None:
                row.schedule_time = schedule_time
            if timezone is not None:
                row.timezone = timezone
            if is_enabled is not None:
                row.is_enabled = is_enabled
            if post_ingestion_enabled is not None:
                row.post_ingestion_enabled = post_ingestion_enabled
            if stale_threshold_hours is not None:
                row.stale_threshold_hours = stale_threshold_hours
            if refresh_all is not None:
                row.refresh_all = refresh_all
            if target_views is not None:
                row.target_views = list(target_views) or None
            if updated_by is not None:
                row.updated_by = updated_by
            action = "Updated"

        # refresh_all and target_views are mutually exclusive
        if row.refresh_all:
            row.target_views = None
        elif not row.target_views:
            raise ValueError("target_views is required when refresh_all is false")

        session.flush()
        session.refresh(row)
        result = schedule_to_dict(row)

    logger.info(
        "%s refresh schedule for %s: %s %s enabled=%s refresh_all=%s",
        action, organisation_id, result["schedule_time"], result["timezone"],
        result["is_enabled"], result["refresh_all"],
    )
    return result
