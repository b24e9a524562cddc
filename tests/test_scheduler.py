"""
tests/test_scheduler.py — APScheduler Job Wiring Tests
========================================================

The scheduler is built but never started, so no event loop is needed and
no job actually fires.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

from conftest import run_async
from mvkeeper.config import ArchivalDefaults
from mvkeeper.jobs.scheduler import (
    ARCHIVE_JOB_ID,
    REFRESH_JOB_ID,
    audit_archival_job,
    build_scheduler,
    list_jobs,
    scheduled_refresh_job,
    update_refresh_schedule,
)


def _service():
    return SimpleNamespace(
        cfg=SimpleNamespace(archival=ArchivalDefaults(job_hour=3, job_minute=45)),
        refresh_scheduled=AsyncMock(return_value={"success": True, "succeeded": 2, "failed": 0}),
        archive_old_audit_events=AsyncMock(return_value={"success": True, "archived_count": 5}),
        purge_old_archived_events=AsyncMock(return_value={"success": True, "purged_count": 1}),
    )


def _schedule(**overrides) -> dict:
    schedule = {"schedule_time": "04:15", "timezone": "Europe/London", "is_enabled": True}
    schedule.update(overrides)
    return schedule


def _fields(job) -> dict[str, str]:
    return {f.name: str(f) for f in job.trigger.fields}


class TestBuildScheduler:
    def test_refresh_job_follows_schedule(self):
        sched = build_scheduler(_service(), _schedule())

        job = sched.get_job(REFRESH_JOB_ID)
        assert job is not None
        assert _fields(job)["hour"] == "4"
        assert _fields(job)["minute"] == "15"
        assert str(job.trigger.timezone) == "Europe/London"

    def test_archival_job_uses_config_time(self):
        sched = build_scheduler(_service(), _schedule())

        job = sched.get_job(ARCHIVE_JOB_ID)
        assert _fields(job)["hour"] == "3"
        assert _fields(job)["minute"] == "45"

    def test_disabled_schedule_has_no_refresh_job(self):
        sched = build_scheduler(_service(), _schedule(is_enabled=False))

        assert sched.get_job(REFRESH_JOB_ID) is None
        assert sched.get_job(ARCHIVE_JOB_ID) is not None

    def test_update_replaces_refresh_job(self):
        service = _service()
        sched = build_scheduler(service, _schedule())

        update_refresh_schedule(sched, service, _schedule(schedule_time="22:05", timezone="UTC"))

        job = sched.get_job(REFRESH_JOB_ID)
        assert _fields(job)["hour"] == "22"
        assert _fields(job)["minute"] == "5"
        assert [j.id for j in sched.get_jobs()].count(REFRESH_JOB_ID) == 1

    def test_update_to_disabled_removes_job(self):
        service = _service()
        sched = build_scheduler(service, _schedule())

        update_refresh_schedule(sched, service, _schedule(is_enabled=False))

        assert sched.get_job(REFRESH_JOB_ID) is None

    def test_list_jobs(self):
        sched = build_scheduler(_service(), _schedule())
        ids = {j["id"] for j in list_jobs(sched)}
        assert ids == {REFRESH_JOB_ID, ARCHIVE_JOB_ID}
        assert list_jobs(None) == []


class TestJobFunctions:
    def test_refresh_job_calls_service(self):
        service = _service()
        run_async(scheduled_refresh_job(service))
        service.refresh_scheduled.assert_awaited_once_with(initiated_by="scheduler")

    def test_archival_job_archives_then_purges(self):
        service = _service()
        run_async(audit_archival_job(service))
        service.archive_old_audit_events.assert_awaited_once_with(initiated_by="scheduler")
        service.purge_old_archived_events.assert_awaited_once_with()
