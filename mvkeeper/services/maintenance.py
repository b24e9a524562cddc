"""
mvkeeper.services.maintenance — Operational Surface
====================================================

One object wiring the executor, ledger, refresh engine, orchestrator,
provisioning and archival together.  The API routes, the CLI and the
scheduler jobs all go through :class:`MaintenanceService`.

Every public coroutine returns a plain dict with a ``success`` flag.
Expected failures are reported inside that dict; unexpected exceptions are
caught here, logged with a traceback, and converted into the same shape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import Engine

from mvkeeper.config import MvKeeperConfig
from mvkeeper.database.engine import run_db
from mvkeeper.database.executor import SqlExecutor
from mvkeeper.database.models import RefreshTrigger
from mvkeeper.schema.provider import SchemaProvider
from mvkeeper.services import schedule_service
from mvkeeper.services.archival import ArchivalManager
from mvkeeper.services.batch_orchestrator import BatchOrchestrator, BatchResult
from mvkeeper.services.history_ledger import HistoryLedger
from mvkeeper.services.provisioning import ProvisioningApplier
from mvkeeper.services.refresh_engine import RefreshEngine

module_logger = logging.getLogger(__name__)

_INDEX_INVENTORY_SQL = """
    SELECT i.indexname AS name,
           i.tablename AS table_name,
           pg_size_pretty(pg_relation_size(c.oid)) AS size
    FROM pg_indexes i
    JOIN pg_class c ON c.relname = i.indexname
    WHERE i.schemaname = 'public'
      AND i.indexname LIKE 'idx_%'
    ORDER BY i.tablename, i.indexname
"""

_VIEW_INVENTORY_SQL = """
    SELECT m.matviewname AS name,
           m.ispopulated AS is_populated,
           COALESCE(s.n_live_tup, 0) AS row_count,
           pg_size_pretty(pg_total_relation_size(c.oid)) AS size
    FROM pg_matviews m
    JOIN pg_class c ON c.relname = m.matviewname
    LEFT JOIN pg_stat_user_tables s ON s.relname = m.matviewname
    WHERE m.schemaname = 'public'
    ORDER BY m.matviewname
"""

_TABLE_INVENTORY_SQL = """
    SELECT relname AS name, n_live_tup AS row_count
    FROM pg_stat_user_tables
    WHERE relname = ANY(:names)
    ORDER BY relname
"""


@dataclass(frozen=True, slots=True)
class RefreshOptions:
    stagger_delay_ms: int | None = None
    allow_blocking_refresh: bool | None = None


class MaintenanceService:
    """Facade over every maintenance component."""

    def __init__(
        self,
        engine: Engine,
        cfg: MvKeeperConfig,
        schema: SchemaProvider | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.engine = engine
        self.cfg = cfg
        self.logger = logger or module_logger
        self.schema = schema or SchemaProvider.from_config(cfg)
        self.executor = SqlExecutor(engine)
        self.ledger = HistoryLedger(engine, logger=self.logger)
        self.refresher = RefreshEngine(self.executor, self.ledger, self.schema,
                                       logger=self.logger)
        self.orchestrator = BatchOrchestrator(self.refresher, self.schema, logger=self.logger)
        self.provisioning = ProvisioningApplier(self.executor, self.schema, logger=self.logger)
        self.archival = ArchivalManager(self.executor, self.schema, logger=self.logger)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _failure(self, operation: str, exc: Exception, **extra) -> dict:
        self.logger.exception("%s failed", operation)
        return {"success": False, "error": str(exc), **extra}

    def _blocking(self, value: bool | None) -> bool:
        if value is None:
            return self.cfg.refresh.allow_blocking_refresh
        return value

    def is_registered(self, view_name: str) -> bool:
        return view_name in self.schema.all_view_names()

    def get_view_categories(self) -> list[dict]:
        """Categories in refresh order."""
        return [
            {
                "key": cat.key,
                "name": cat.name,
                "description": cat.description,
                "views": list(cat.views),
            }
            for cat in self.schema.categories
        ]

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    async def apply_all_optimizations(self) -> dict:
        try:
            return await self.provisioning.apply_all()
        except Exception as exc:
            return self._failure("apply_all_optimizations", exc)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------
    async def refresh_view(
        self,
        view_name: str,
        trigger: RefreshTrigger = RefreshTrigger.MANUAL,
        initiated_by: str | None = None,
        allow_blocking_refresh: bool | None = None,
    ) -> dict:
        if not self.is_registered(view_name):
            return {"success": False, "view_name": view_name, "error": "Unknown view"}
        try:
            result = await self.refresher.refresh_view(
                view_name, trigger, initiated_by, self._blocking(allow_blocking_refresh),
            )
            return result.to_dict()
        except Exception as exc:
            return self._failure("refresh_view", exc, view_name=view_name)

    async def refresh_all_materialized_views(
        self,
        trigger: RefreshTrigger = RefreshTrigger.MANUAL,
        initiated_by: str | None = None,
        options: RefreshOptions | None = None,
    ) -> dict:
        options = options or RefreshOptions()
        stagger = options.stagger_delay_ms
        if stagger is None:
            stagger = self.cfg.refresh.stagger_delay_ms
        try:
            batch = await self.orchestrator.refresh_all(
                trigger, initiated_by,
                stagger_delay_ms=stagger,
                allow_blocking_refresh=self._blocking(options.allow_blocking_refresh),
            )
            return batch.to_dict()
        except Exception as exc:
            return self._failure("refresh_all_materialized_views", exc, results=[])

    async def refresh_views_by_category(
        self,
        category: str,
        trigger: RefreshTrigger = RefreshTrigger.MANUAL,
        initiated_by: str | None = None,
        allow_blocking_refresh: bool | None = None,
    ) -> dict:
        try:
            batch = await self.orchestrator.refresh_by_category(
                category, trigger, initiated_by,
                allow_blocking_refresh=self._blocking(allow_blocking_refresh),
            )
            return batch.to_dict()
        except Exception as exc:
            return self._failure("refresh_views_by_category", exc,
                                 category=category, results=[])

    async def refresh_views_staggered_by_category(
        self,
        trigger: RefreshTrigger = RefreshTrigger.SCHEDULED,
        initiated_by: str | None = None,
        delay_between_categories_ms: int | None = None,
        allow_blocking_refresh: bool | None = None,
    ) -> dict:
        if delay_between_categories_ms is None:
            delay_between_categories_ms = self.cfg.refresh.delay_between_categories_ms
        try:
            batch = await self.orchestrator.refresh_staggered_by_category(
                trigger, initiated_by, delay_between_categories_ms,
                allow_blocking_refresh=self._blocking(allow_blocking_refresh),
            )
            return batch.to_dict()
        except Exception as exc:
            return self._failure("refresh_views_staggered_by_category", exc, results=[])

    async def _refresh_per_schedule(
        self, schedule: dict, trigger: RefreshTrigger, initiated_by: str,
    ) -> BatchResult:
        if schedule.get("refresh_all", True) or not schedule.get("target_views"):
            return await self.orchestrator.refresh_staggered_by_category(
                trigger, initiated_by, self.cfg.refresh.delay_between_categories_ms,
                allow_blocking_refresh=self.cfg.refresh.allow_blocking_refresh,
            )
        return await self.orchestrator.refresh_views(
            schedule["target_views"], trigger, initiated_by,
            stagger_delay_ms=self.cfg.refresh.stagger_delay_ms,
            allow_blocking_refresh=self.cfg.refresh.allow_blocking_refresh,
        )

    async def refresh_scheduled(self, initiated_by: str = "scheduler") -> dict:
        """Run the refresh described by the stored schedule."""
        try:
            schedule = await self.get_refresh_schedule()
            if not schedule["is_enabled"]:
                self.logger.info("Scheduled refresh skipped: schedule disabled")
                return {"success": True, "skipped": True, "results": []}
            batch = await self._refresh_per_schedule(
                schedule, RefreshTrigger.SCHEDULED, initiated_by,
            )
            return batch.to_dict()
        except Exception as exc:
            return self._failure("refresh_scheduled", exc, results=[])

    async def on_ingestion_complete(self, initiated_by: str = "ingestion") -> dict:
        """Post-ingestion hook: refresh only if the schedule enables it."""
        try:
            schedule = await self.get_refresh_schedule()
            if not schedule["post_ingestion_enabled"]:
                return {"success": True, "skipped": True, "results": []}
            batch = await self._refresh_per_schedule(
                schedule, RefreshTrigger.POST_INGESTION, initiated_by,
            )
            return batch.to_dict()
        except Exception as exc:
            return self._failure("on_ingestion_complete", exc, results=[])

    # ------------------------------------------------------------------
    # Freshness & history
    # ------------------------------------------------------------------
    async def get_freshness_status(self, stale_threshold_hours: float | None = None) -> dict:
        try:
            if stale_threshold_hours is None:
                schedule = await self.get_refresh_schedule()
                stale_threshold_hours = schedule["stale_threshold_hours"]
            snapshot = await self.ledger.get_freshness_status(
                self.schema.all_view_names(), stale_threshold_hours,
            )
            return {"success": True, **snapshot.to_dict()}
        except Exception as exc:
            return self._failure("get_freshness_status", exc)

    async def get_refresh_history(self, limit: int = 50, view_name: str | None = None) -> dict:
        try:
            history = await self.ledger.get_refresh_history(limit, view_name)
            return {"success": True, "history": history}
        except Exception as exc:
            return self._failure("get_refresh_history", exc, history=[])

    async def get_optimization_status(self) -> dict:
        """Inventory of indexes, materialized views and optimization tables."""
        try:
            indexes = await self.executor.query(_INDEX_INVENTORY_SQL)
            views = await self.executor.query(_VIEW_INVENTORY_SQL)
            tables = []
            if self.schema.optimization_table_names:
                tables = await self.executor.query(
                    _TABLE_INVENTORY_SQL, {"names": list(self.schema.optimization_table_names)},
                )
            last = await self.ledger.get_last_refresh_times()
        except Exception:
            self.logger.exception("Failed to get optimization status")
            return {"indexes": [], "materialized_views": [], "optimization_tables": []}

        registered = set(self.schema.all_view_names())
        return {
            "indexes": [
                {"name": r["name"], "table_name": r["table_name"], "size": r["size"] or "unknown"}
                for r in indexes
            ],
            "materialized_views": [
                {
                    "name": r["name"],
                    "category": self.schema.category_of(r["name"]),
                    "registered": r["name"] in registered,
                    "is_populated": bool(r.get("is_populated")),
                    "row_count": int(r["row_count"] or 0),
                    "size": r.get("size"),
                    "last_refresh": (
                        last[r["name"]].completed_at.isoformat() if r["name"] in last else None
                    ),
                }
                for r in views
            ],
            "optimization_tables": [
                {"name": r["name"], "row_count": int(r["row_count"] or 0)} for r in tables
            ],
        }

    # ------------------------------------------------------------------
    # Audit archival
    # ------------------------------------------------------------------
    async def archive_old_audit_events(
        self, days_old: int | None = None, initiated_by: str | None = None,
    ) -> dict:
        days = days_old if days_old is not None else self.cfg.archival.archive_after_days
        try:
            result = await self.archival.archive_old_audit_events(days, initiated_by)
            return result.to_dict()
        except Exception as exc:
            return self._failure("archive_old_audit_events", exc)

    async def purge_old_archived_events(self, days_old: int | None = None) -> dict:
        days = days_old if days_old is not None else self.cfg.archival.purge_after_days
        try:
            result = await self.archival.purge_old_archived_events(days)
            return result.to_dict()
        except Exception as exc:
            return self._failure("purge_old_archived_events", exc)

    async def get_audit_event_stats(self) -> dict:
        try:
            return {"success": True, **await self.archival.get_audit_event_stats()}
        except Exception as exc:
            return self._failure("get_audit_event_stats", exc)

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------
    def _default_schedule(self) -> dict:
        defaults = self.cfg.schedule
        return {
            "organisation_id": self.cfg.organisation_id,
            "schedule_time": defaults.schedule_time,
            "timezone": defaults.timezone,
            "is_enabled": defaults.is_enabled,
            "post_ingestion_enabled": defaults.post_ingestion_enabled,
            "stale_threshold_hours": self.cfg.refresh.stale_threshold_hours,
            "refresh_all": True,
            "target_views": None,
            "updated_by": None,
            "created_at": None,
            "updated_at": None,
        }

    async def get_refresh_schedule(self) -> dict:
        """Stored schedule, or the configured defaults if none was written."""
        stored = await run_db(
            schedule_service.get_refresh_schedule, self.engine, self.cfg.organisation_id,
        )
        return stored or self._default_schedule()

    async def upsert_refresh_schedule(self, **fields) -> dict:
        """Validate target views, then upsert.  Raises ``ValueError`` on bad input."""
        targets = fields.get("target_views")
        refresh_all = fields.get("refresh_all")
        if targets and refresh_all is None:
            # unchanged: the stored flag decides whether targets are kept
            refresh_all = (await self.get_refresh_schedule())["refresh_all"]
        if targets and not refresh_all:
            unknown = [v for v in targets if not self.is_registered(v)]
            if unknown:
                raise ValueError(f"Unknown target views: {', '.join(unknown)}")
        return await run_db(
            lambda: schedule_service.upsert_refresh_schedule(
                self.engine, self.cfg.organisation_id, **fields,
            )
        )
