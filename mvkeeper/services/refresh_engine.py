"""
mvkeeper.services.refresh_engine — Single-View Refresh
=======================================================

Refreshes one materialized view and records the attempt.

Strategy, in order:

1. Count rows before (a view that does not exist yet counts as absent),
   then open a ``RUNNING`` ledger row.
2. ``REFRESH MATERIALIZED VIEW CONCURRENTLY`` — readers keep reading.
3. If PostgreSQL refuses because the view has no qualifying unique index:

   * ``allow_blocking_refresh=True`` → plain ``REFRESH MATERIALIZED VIEW``
     (takes an ACCESS EXCLUSIVE lock) and report ``was_blocking``;
   * otherwise fail loudly.  Quietly falling back to a blocking refresh on
     a large view is how a nightly job turns into an outage.

4. Any other error fails the attempt.  Retrying is a batch-level decision.
5. On success, count rows after.  Either way the ``RUNNING`` row is
   finalized once with the outcome.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from mvkeeper.database.executor import (
    MissingUniqueIndex,
    SqlExecutor,
    StatementFailed,
    quote_view_name,
)
from mvkeeper.database.models import RefreshStatus, RefreshTrigger
from mvkeeper.schema.provider import SchemaProvider
from mvkeeper.services.history_ledger import HistoryLedger

module_logger = logging.getLogger(__name__)

BLOCKING_DISABLED_MESSAGE = (
    "Concurrent refresh of {view} requires a unique index; blocking refresh "
    "is disabled to avoid lock contention in production. Create a unique "
    "index on the view or pass allow_blocking_refresh=True."
)


@dataclass(slots=True)
class RefreshResult:
    """Outcome of one :meth:`RefreshEngine.refresh_view` call."""

    view_name: str
    success: bool
    duration_ms: int
    row_count: int | None = None
    was_blocking: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class RefreshEngine:
    """Refreshes one view at a time and writes each attempt to the ledger."""

    def __init__(
        self,
        executor: SqlExecutor,
        ledger: HistoryLedger,
        schema: SchemaProvider,
        logger: logging.Logger | None = None,
    ) -> None:
        self.executor = executor
        self.ledger = ledger
        self.schema = schema
        self.logger = logger or module_logger

    async def count_rows(self, view_name: str) -> int | None:
        """``COUNT(*)`` of *view_name*, or ``None`` when it cannot be read.

        ``None`` means "absent": the view may not exist yet or may never
        have been populated.  Accounting treats an absent count as 0 rows.
        """
        try:
            value = await self.executor.scalar(
                f"SELECT COUNT(*) AS count FROM {quote_view_name(view_name)}"
            )
        except StatementFailed as exc:
            self.logger.debug("Row count unavailable for %s: %s", view_name, exc.message)
            return None
        return int(value or 0)

    async def refresh_view(
        self,
        view_name: str,
        trigger: RefreshTrigger = RefreshTrigger.MANUAL,
        initiated_by: str | None = None,
        allow_blocking_refresh: bool = False,
    ) -> RefreshResult:
        """Refresh *view_name* and record the attempt.

        Never raises for database failures; the returned
        :class:`RefreshResult` carries ``success`` and ``error`` instead.
        """
        try:
            quoted = quote_view_name(view_name)
        except ValueError as exc:
            self.logger.error("Refusing to refresh %r: %s", view_name, exc)
            return RefreshResult(view_name=view_name, success=False, duration_ms=0,
                                 error=str(exc))

        category = self.schema.category_of(view_name)
        before = await self.count_rows(view_name)
        started_at = datetime.now(UTC)
        attempt_id = await self.ledger.start_attempt(
            view_name=view_name,
            category=category,
            trigger=trigger,
            started_at=started_at,
            row_count_before=before,
            initiated_by=initiated_by,
        )
        start = time.perf_counter()

        was_blocking = False
        error: str | None = None
        try:
            await self.executor.execute(f"REFRESH MATERIALIZED VIEW CONCURRENTLY {quoted}")
        except MissingUniqueIndex as exc:
            if allow_blocking_refresh:
                self.logger.warning(
                    "%s has no unique index; falling back to blocking refresh", view_name,
                )
                try:
                    await self.executor.execute(f"REFRESH MATERIALIZED VIEW {quoted}")
                    was_blocking = True
                except StatementFailed as retry_exc:
                    error = retry_exc.message
                    self.logger.error("Blocking refresh of %s failed: %s", view_name, error)
            else:
                error = BLOCKING_DISABLED_MESSAGE.format(view=view_name)
                self.logger.error("%s (%s)", error, exc.message)
        except StatementFailed as exc:
            error = exc.message
            self.logger.error("Failed to refresh %s: %s", view_name, error)

        if error is not None:
            duration_ms = int((time.perf_counter() - start) * 1000)
            await self.ledger.finish_attempt(
                attempt_id,
                view_name=view_name,
                category=category,
                status=RefreshStatus.FAILED,
                trigger=trigger,
                started_at=started_at,
                completed_at=datetime.now(UTC),
                row_count_before=before,
                initiated_by=initiated_by,
                error_message=error,
            )
            return RefreshResult(view_name=view_name, success=False,
                                 duration_ms=duration_ms, error=error)

        duration_ms = int((time.perf_counter() - start) * 1000)
        completed_at = datetime.now(UTC)
        after = await self.count_rows(view_name)
        row_count_before = before or 0
        row_count_after = after or 0

        await self.ledger.finish_attempt(
            attempt_id,
            view_name=view_name,
            category=category,
            status=RefreshStatus.SUCCESS,
            trigger=trigger,
            started_at=started_at,
            completed_at=completed_at,
            row_count_before=row_count_before,
            row_count_after=row_count_after,
            was_blocking=was_blocking,
            initiated_by=initiated_by,
        )
        self.logger.info(
            "Refreshed %s in %dms (%d → %d rows%s)",
            view_name, duration_ms, row_count_before, row_count_after,
            ", blocking" if was_blocking else "",
        )
        return RefreshResult(
            view_name=view_name,
            success=True,
            duration_ms=duration_ms,
            row_count=row_count_after,
            was_blocking=was_blocking,
        )
