"""
mvkeeper.api.routes.db_optimization — Maintenance Admin Endpoints
===================================================================

JWT-protected admin routes for:
    - Optimization inventory and view categories
    - Single / all / per-category / staggered refreshes
    - Provisioning (indexes, views, tables)
    - Refresh history and freshness
    - Refresh schedule read / upsert
    - Audit event stats, archive and purge
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from mvkeeper.api.deps import Admin, Maintenance, admin_identity, get_scheduler
from mvkeeper.database.models import RefreshTrigger
from mvkeeper.jobs.scheduler import list_jobs, update_refresh_schedule
from mvkeeper.services.maintenance import RefreshOptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/db-optimization", tags=["db-optimization"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RefreshViewRequest(BaseModel):
    view_name: str
    allow_blocking_refresh: bool | None = None


class RefreshAllRequest(BaseModel):
    stagger_delay_ms: int | None = Field(None, ge=0, le=600_000)
    allow_blocking_refresh: bool | None = None


class RefreshCategoryRequest(BaseModel):
    category: str
    allow_blocking_refresh: bool | None = None


class RefreshStaggeredRequest(BaseModel):
    delay_between_categories_ms: int | None = Field(None, ge=0, le=600_000)
    allow_blocking_refresh: bool | None = None


class ScheduleUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""
    schedule_time: str | None = None
    timezone: str | None = None
    is_enabled: bool | None = None
    post_ingestion_enabled: bool | None = None
    stale_threshold_hours: int | None = Field(None, ge=1, le=720)
    refresh_all: bool | None = None
    target_views: list[str] | None = None


class ArchiveRequest(BaseModel):
    days_old: int | None = Field(None, ge=0)


class PurgeRequest(BaseModel):
    days_old: int | None = Field(None, ge=0)


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------
@router.get("/status")
async def optimization_status(service: Maintenance, _admin: Admin):
    return await service.get_optimization_status()


@router.get("/categories")
def view_categories(service: Maintenance, _admin: Admin):
    return {"categories": service.get_view_categories()}


@router.get("/jobs")
def scheduled_jobs(_admin: Admin, scheduler=Depends(get_scheduler)):
    return {"running": scheduler is not None, "jobs": list_jobs(scheduler)}


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------
@router.post("/refresh-view")
async def refresh_view(body: RefreshViewRequest, service: Maintenance, admin: Admin):
    if not service.is_registered(body.view_name):
        raise HTTPException(404, f"Unknown view: {body.view_name}")
    return await service.refresh_view(
        body.view_name,
        RefreshTrigger.MANUAL,
        admin_identity(admin),
        body.allow_blocking_refresh,
    )


@router.post("/refresh-all")
async def refresh_all(service: Maintenance, admin: Admin, body: RefreshAllRequest | None = None):
    body = body or RefreshAllRequest()
    return await service.refresh_all_materialized_views(
        RefreshTrigger.MANUAL,
        admin_identity(admin),
        RefreshOptions(
            stagger_delay_ms=body.stagger_delay_ms,
            allow_blocking_refresh=body.allow_blocking_refresh,
        ),
    )


@router.post("/refresh-category")
async def refresh_category(body: RefreshCategoryRequest, service: Maintenance, admin: Admin):
    if body.category not in service.cfg.category_keys:
        raise HTTPException(404, f"Unknown category: {body.category}")
    return await service.refresh_views_by_category(
        body.category,
        RefreshTrigger.MANUAL,
        admin_identity(admin),
        body.allow_blocking_refresh,
    )


@router.post("/refresh-staggered")
async def refresh_staggered(
    service: Maintenance, admin: Admin, body: RefreshStaggeredRequest | None = None,
):
    body = body or RefreshStaggeredRequest()
    return await service.refresh_views_staggered_by_category(
        RefreshTrigger.MANUAL,
        admin_identity(admin),
        body.delay_between_categories_ms,
        body.allow_blocking_refresh,
    )


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------
@router.post("/apply-all")
async def apply_all(service: Maintenance, admin: Admin):
    logger.info("Provisioning requested by %s", admin_identity(admin))
    return await service.apply_all_optimizations()


# ---------------------------------------------------------------------------
# History & freshness
# ---------------------------------------------------------------------------
@router.get("/refresh-history")
async def refresh_history(
    service: Maintenance,
    _admin: Admin,
    limit: int = Query(50, ge=1, le=500),
    view_name: str | None = Query(None),
):
    result = await service.get_refresh_history(limit, view_name)
    if not result["success"]:
        raise HTTPException(500, "Failed to read refresh history")
    return result


@router.get("/freshness")
async def freshness(
    service: Maintenance,
    _admin: Admin,
    threshold_hours: Annotated[float | None, Query(gt=0)] = None,
):
    result = await service.get_freshness_status(threshold_hours)
    if not result["success"]:
        raise HTTPException(500, "Failed to compute freshness")
    return result


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------
@router.get("/schedule")
async def get_schedule(service: Maintenance, _admin: Admin):
    return await service.get_refresh_schedule()


@router.post("/schedule")
async def upsert_schedule(
    body: ScheduleUpdate,
    service: Maintenance,
    admin: Admin,
    scheduler=Depends(get_scheduler),
):
    try:
        schedule = await service.upsert_refresh_schedule(
            **body.model_dump(exclude_none=True),
            updated_by=admin_identity(admin),
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    if scheduler is not None:
        update_refresh_schedule(scheduler, service, schedule)
    return schedule


# ---------------------------------------------------------------------------
# Audit archival
# ---------------------------------------------------------------------------
@router.get("/audit/stats")
async def audit_stats(service: Maintenance, _admin: Admin):
    result = await service.get_audit_event_stats()
    if not result["success"]:
        raise HTTPException(500, "Failed to read audit event stats")
    return result


@router.post("/audit/archive")
async def audit_archive(service: Maintenance, admin: Admin, body: ArchiveRequest | None = None):
    body = body or ArchiveRequest()
    return await service.archive_old_audit_events(body.days_old, admin_identity(admin))


@router.post("/audit/purge")
async def audit_purge(service: Maintenance, admin: Admin, body: PurgeRequest | None = None):
    body = body or PurgeRequest()
    logger.warning("Archive purge requested by %s", admin_identity(admin))
    return await service.purge_old_archived_events(body.days_old)
