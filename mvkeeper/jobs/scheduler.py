"""Recurring maintenance jobs (APScheduler)

Purpose
-------
Run the nightly view refresh and the daily audit archival inside the API
process, without a separate worker stack.

How it works
------------
- `build_scheduler(service, schedule)` creates an `AsyncIOScheduler` and adds
  two cron jobs:
    * `mv_refresh`   → at the stored `schedule_time` in the stored timezone,
      runs `MaintenanceService.refresh_scheduled()` (skipped when the
      schedule is disabled).
    * `audit_archive` → at `archival.job_hour:job_minute` UTC, archives old
      audit events then purges the archive.
- `start_scheduler(service)` reads the stored schedule, builds and starts.
  The FastAPI lifespan calls it (see `mvkeeper/api/main.py`).
- `update_refresh_schedule(sched, service, schedule)` replaces the refresh
  job after the schedule row is upserted.

Jobs never overlap with themselves (`max_instances=1`); a run missed by
less than an hour still fires (`misfire_grace_time`).
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from mvkeeper.services.maintenance import MaintenanceService
from mvkeeper.services.schedule_service import parse_schedule_time

log = logging.getLogger(__name__)

REFRESH_JOB_ID = "mv_refresh"
ARCHIVE_JOB_ID = "audit_archive"

_MISFIRE_GRACE_SECONDS = 3600


# -----------------------------
# Job functions
# -----------------------------

async def scheduled_refresh_job(service: MaintenanceService) -> None:
    log.info("[jobs] scheduled refresh start")
    result = await service.refresh_scheduled(initiated_by="scheduler")
    if result.get("skipped"):
        log.info("[jobs] scheduled refresh skipped")
        return
    log.info(
        "[jobs] scheduled refresh done: success=%s ok=%s failed=%s",
        result.get("success"), result.get("succeeded"), result.get("failed"),
    )


async def audit_archival_job(service: MaintenanceService) -> None:
    """Archive old audit events, then purge the oldest archived ones."""
    log.info("[jobs] audit archival start")
    archived = await service.archive_old_audit_events(initiated_by="scheduler")
    purged = await service.purge_old_archived_events()
    log.info(
        "[jobs] audit archival done: archived=%s purged=%s",
        archived.get("archived_count"), purged.get("purged_count"),
    )


# -----------------------------
# Scheduler lifecycle
# -----------------------------

def _refresh_trigger(schedule: dict) -> CronTrigger:
    hour, minute = parse_schedule_time(schedule["schedule_time"])
    return CronTrigger(hour=hour, minute=minute, timezone=schedule["timezone"])


def update_refresh_schedule(
    sched: AsyncIOScheduler, service: MaintenanceService, schedule: dict,
) -> None:
    """Replace (or remove) the refresh job to match *schedule*."""
    if sched.get_job(REFRESH_JOB_ID) is not None:
        sched.remove_job(REFRESH_JOB_ID)
    if not schedule.get("is_enabled"):
        log.info("[jobs] refresh schedule disabled; job removed")
        return
    sched.add_job(
        scheduled_refresh_job,
        _refresh_trigger(schedule),
        args=[service],
        id=REFRESH_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=_MISFIRE_GRACE_SECONDS,
    )
    log.info(
        "[jobs] refresh scheduled at %s %s",
        schedule["schedule_time"], schedule["timezone"],
    )


def build_scheduler(service: MaintenanceService, schedule: dict) -> AsyncIOScheduler:
    """Create a scheduler with the refresh and archival jobs (not started)."""
    sched = AsyncIOScheduler(timezone="UTC")
    update_refresh_schedule(sched, service, schedule)

    archival = service.cfg.archival
    sched.add_job(
        audit_archival_job,
        CronTrigger(hour=archival.job_hour, minute=archival.job_minute, timezone="UTC"),
        args=[service],
        id=ARCHIVE_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=_MISFIRE_GRACE_SECONDS,
    )
    return sched


async def start_scheduler(service: MaintenanceService) -> AsyncIOScheduler:
    """Build from the stored schedule and start on the running loop."""
    schedule = await service.get_refresh_schedule()
    sched = build_scheduler(service, schedule)
    sched.start()
    log.info("[jobs] scheduler started with %d jobs", len(sched.get_jobs()))
    return sched


def list_jobs(sched: AsyncIOScheduler | None) -> list[dict]:
    if sched is None:
        return []
    return [
        {
            "id": job.id,
            "next_run": (
                job.next_run_time.isoformat()
                if getattr(job, "next_run_time", None) else None
            ),
            "trigger": str(job.trigger),
        }
        for job in sched.get_jobs()
    ]
