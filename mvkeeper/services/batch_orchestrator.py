"""
mvkeeper.services.batch_orchestrator — Multi-View Refresh
==========================================================

Runs the :class:`~mvkeeper.services.refresh_engine.RefreshEngine` over many
views, strictly one at a time.  Parallel refreshes against the same
database would defeat staggering and still saturate I/O.

Load shaping is two-tier:

* ``stagger_delay_ms`` — fine delay between consecutive views;
* ``delay_between_categories_ms`` — coarse delay between categories.

Delays go *between* items, never before the first.  A failing view is
recorded and the batch moves on; ``success`` is true only if every view
refreshed.

Category order is the configured order.  It is assumed to be dependency
order (base facts before rollups) but nothing here checks that the SQL of a
later category actually reads only from earlier ones.

There is no cancellation: once started a batch runs to completion.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from mvkeeper.database.models import RefreshTrigger
from mvkeeper.schema.provider import SchemaProvider
from mvkeeper.services.refresh_engine import RefreshEngine, RefreshResult

module_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchResult:
    """Per-view results of one batch, in execution order."""

    success: bool
    results: list[RefreshResult] = field(default_factory=list)
    total_duration_ms: int = 0
    category: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "category": self.category,
            "results": [r.to_dict() for r in self.results],
            "succeeded": self.succeeded,
            "failed": self.failed,
            "total_duration_ms": self.total_duration_ms,
            "error": self.error,
        }


class BatchOrchestrator:
    """Sequential, staggered refresh of registered views."""

    def __init__(
        self,
        engine: RefreshEngine,
        schema: SchemaProvider,
        logger: logging.Logger | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.schema = schema
        self.logger = logger or module_logger
        self._sleep = sleep

    async def _pause(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)

    async def _refresh_one(
        self,
        view_name: str,
        trigger: RefreshTrigger,
        initiated_by: str | None,
        allow_blocking_refresh: bool,
    ) -> RefreshResult:
        """Refresh one view; anything unexpected becomes a failed result."""
        try:
            return await self.engine.refresh_view(
                view_name, trigger, initiated_by, allow_blocking_refresh,
            )
        except Exception as exc:
            self.logger.exception("Unexpected error refreshing %s", view_name)
            return RefreshResult(view_name=view_name, success=False, duration_ms=0,
                                 error=str(exc))

    async def _run_sequence(
        self,
        view_names: list[str],
        trigger: RefreshTrigger,
        initiated_by: str | None,
        stagger_delay_ms: int,
        allow_blocking_refresh: bool,
    ) -> list[RefreshResult]:
        results: list[RefreshResult] = []
        for index, view_name in enumerate(view_names):
            if index:
                await self._pause(stagger_delay_ms)
            results.append(await self._refresh_one(
                view_name, trigger, initiated_by, allow_blocking_refresh,
            ))
        return results

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def refresh_all(
        self,
        trigger: RefreshTrigger = RefreshTrigger.MANUAL,
        initiated_by: str | None = None,
        *,
        stagger_delay_ms: int = 0,
        allow_blocking_refresh: bool = False,
    ) -> BatchResult:
        """Refresh every registered view in registration order."""
        views = self.schema.all_view_names()
        self.logger.info(
            "Refreshing all %d materialized views (trigger=%s, stagger=%dms)",
            len(views), trigger, stagger_delay_ms,
        )
        start = time.perf_counter()
        results = await self._run_sequence(
            views, trigger, initiated_by, stagger_delay_ms, allow_blocking_refresh,
        )
        batch = BatchResult(
            success=all(r.success for r in results),
            results=results,
            total_duration_ms=int((time.perf_counter() - start) * 1000),
        )
        self.logger.info(
            "Refreshed all views in %dms — %d ok, %d failed",
            batch.total_duration_ms, batch.succeeded, batch.failed,
        )
        return batch

    async def refresh_views(
        self,
        view_names: list[str],
        trigger: RefreshTrigger = RefreshTrigger.MANUAL,
        initiated_by: str | None = None,
        *,
        stagger_delay_ms: int = 0,
        allow_blocking_refresh: bool = False,
    ) -> BatchResult:
        """Refresh an explicit subset, reordered into registration order.

        Names that are not registered are reported as failed results
        without touching the database.
        """
        wanted = set(view_names)
        registered = self.schema.all_view_names()
        ordered = [v for v in registered if v in wanted]
        known = set(registered)
        unknown = [v for v in view_names if v not in known]

        start = time.perf_counter()
        results = await self._run_sequence(
            ordered, trigger, initiated_by, stagger_delay_ms, allow_blocking_refresh,
        )
        for view_name in unknown:
            self.logger.warning("Skipping unregistered view %s", view_name)
            results.append(RefreshResult(view_name=view_name, success=False,
                                         duration_ms=0, error="Unknown view"))
        return BatchResult(
            success=all(r.success for r in results),
            results=results,
            total_duration_ms=int((time.perf_counter() - start) * 1000),
        )

    async def refresh_by_category(
        self,
        category: str,
        trigger: RefreshTrigger = RefreshTrigger.MANUAL,
        initiated_by: str | None = None,
        *,
        allow_blocking_refresh: bool = False,
    ) -> BatchResult:
        """Refresh exactly the views registered under *category*."""
        cat = self.schema.get_category(category)
        if cat is None:
            self.logger.warning("Unknown view category %r", category)
            return BatchResult(success=False, category=category,
                               error=f"Unknown category: {category}")

        self.logger.info("Refreshing %d views in category: %s", len(cat.views), category)
        start = time.perf_counter()
        results = await self._run_sequence(
            list(cat.views), trigger, initiated_by, 0, allow_blocking_refresh,
        )
        return BatchResult(
            success=all(r.success for r in results),
            results=results,
            total_duration_ms=int((time.perf_counter() - start) * 1000),
            category=category,
        )

    async def refresh_staggered_by_category(
        self,
        trigger: RefreshTrigger = RefreshTrigger.SCHEDULED,
        initiated_by: str | None = None,
        delay_between_categories_ms: int = 5_000,
        *,
        allow_blocking_refresh: bool = False,
    ) -> BatchResult:
        """Refresh category by category with a pause between categories."""
        self.logger.info(
            "Staggered refresh of %d categories (delay=%dms)",
            len(self.schema.categories), delay_between_categories_ms,
        )
        start = time.perf_counter()
        results: list[RefreshResult] = []
        for index, cat in enumerate(self.schema.categories):
            if index:
                await self._pause(delay_between_categories_ms)
            self.logger.info("Category %s: %d views", cat.key, len(cat.views))
            results.extend(await self._run_sequence(
                list(cat.views), trigger, initiated_by, 0, allow_blocking_refresh,
            ))

        batch = BatchResult(
            success=all(r.success for r in results),
            results=results,
            total_duration_ms=int((time.perf_counter() - start) * 1000),
        )
        self.logger.info(
            "Staggered refresh finished in %dms — %d ok, %d failed",
            batch.total_duration_ms, batch.succeeded, batch.failed,
        )
        return batch
