"""
mvkeeper.services.archival — Audit Event Archive & Purge
=========================================================

Keeps ``audit_events`` small by moving old rows into
``audit_events_archive``, and eventually purging the archive.

Every archive run computes **one** cutoff and uses it for the count, the
``INSERT … SELECT`` and the ``DELETE``, all inside a single transaction.
A row is therefore either still in the main table or in the archive, never
in both and never lost, so::

    main_after + archive_after == main_before + archive_before

The INSERT and DELETE rowcounts are compared before commit; if they
differ (a row committed between the two statements, a trigger dropping
an insert) the transaction is rolled back and the run reports failure.

A missing archive table is not an error for the read paths: it is treated
as absent (zero rows, no oldest timestamp).
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta

from mvkeeper.database.executor import RelationMissing, SqlExecutor, StatementFailed
from mvkeeper.schema.provider import SchemaProvider

module_logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_DAYS = 365
DEFAULT_PURGE_DAYS = 2_555  # ~7 years


@dataclass(slots=True)
class ArchiveResult:
    success: bool
    eligible_count: int = 0
    archived_count: int = 0
    deleted_count: int = 0
    cutoff: str | None = None
    initiated_by: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(slots=True)
class PurgeResult:
    success: bool
    purged_count: int = 0
    cutoff: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(slots=True)
class TableStats:
    """Row count and oldest timestamp of one audit table.

    ``exists=False`` means the table is absent; counts are then reported as
    zero rather than raised.
    """

    row_count: int | None
    oldest_event: str | None
    exists: bool = True


def _isoformat(value) -> str | None:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _require_balanced(counts: list[int]) -> None:
    """Abort the archive transaction unless every deleted row was copied."""
    archived, deleted = counts
    if archived != deleted:
        raise StatementFailed(
            f"Archive aborted and rolled back: inserted {archived} rows "
            f"but deleted {deleted}"
        )


class ArchivalManager:
    """Archive, purge and inspect audit events."""

    def __init__(
        self,
        executor: SqlExecutor,
        schema: SchemaProvider,
        logger: logging.Logger | None = None,
    ) -> None:
        self.executor = executor
        self.schema = schema
        self.logger = logger or module_logger

    @staticmethod
    def cutoff_for(days_old: int, now: datetime | None = None) -> datetime:
        if days_old < 0:
            raise ValueError("days_old must be >= 0")
        return (now or datetime.now(UTC)) - timedelta(days=days_old)

    async def archive_old_audit_events(
        self,
        days_old: int = DEFAULT_ARCHIVE_DAYS,
        initiated_by: str | None = None,
    ) -> ArchiveResult:
        """Move audit events older than *days_old* days into the archive."""
        try:
            cutoff = self.cutoff_for(days_old)
            script = self.schema.archive_script()
            params = {"cutoff": cutoff}

            eligible = int(await self.executor.scalar(script.count_sql, params) or 0)
            if eligible == 0:
                self.logger.info("No audit events older than %d days to archive", days_old)
                return ArchiveResult(success=True, cutoff=cutoff.isoformat(),
                                     initiated_by=initiated_by)

            archived, deleted = await self.executor.execute_in_transaction(
                [script.insert_sql, script.delete_sql], params, validate=_require_balanced,
            )
            self.logger.info(
                "Archived %d audit events older than %d days (cutoff=%s, by=%s)",
                archived, days_old, cutoff.isoformat(), initiated_by or "system",
            )
            return ArchiveResult(
                success=True,
                eligible_count=eligible,
                archived_count=archived,
                deleted_count=deleted,
                cutoff=cutoff.isoformat(),
                initiated_by=initiated_by,
            )
        except (StatementFailed, ValueError) as exc:
            message = exc.message if isinstance(exc, StatementFailed) else str(exc)
            self.logger.error("Failed to archive audit events: %s", message)
            return ArchiveResult(success=False, initiated_by=initiated_by, error=message)

    async def purge_old_archived_events(
        self, days_old: int = DEFAULT_PURGE_DAYS,
    ) -> PurgeResult:
        """Irreversibly delete archived events older than *days_old* days."""
        try:
            cutoff = self.cutoff_for(days_old)
            purged = await self.executor.execute(self.schema.purge_sql(), {"cutoff": cutoff})
        except RelationMissing:
            self.logger.info("Archive table does not exist yet; nothing to purge")
            return PurgeResult(success=True, purged_count=0)
        except (StatementFailed, ValueError) as exc:
            message = exc.message if isinstance(exc, StatementFailed) else str(exc)
            self.logger.error("Failed to purge archived audit events: %s", message)
            return PurgeResult(success=False, error=message)

        self.logger.info(
            "Purged %d archived audit events older than %d days", purged, days_old,
        )
        return PurgeResult(success=True, purged_count=purged, cutoff=cutoff.isoformat())

    async def _table_stats(self, table: str) -> TableStats:
        ts = self.schema.timestamp_column
        try:
            rows = await self.executor.query(
                f"SELECT COUNT(*) AS row_count, MIN({ts}) AS oldest FROM {table}"
            )
        except RelationMissing:
            return TableStats(row_count=None, oldest_event=None, exists=False)
        row = rows[0] if rows else {}
        return TableStats(
            row_count=int(row.get("row_count") or 0),
            oldest_event=_isoformat(row.get("oldest")),
        )

    async def get_audit_event_stats(self) -> dict:
        """Row counts and oldest timestamps of the main and archive tables."""
        main = await self._table_stats(self.schema.audit_table)
        archive = await self._table_stats(self.schema.archive_table)
        return {
            "main": {
                "table": self.schema.audit_table,
                "row_count": main.row_count or 0,
                "oldest_event": main.oldest_event,
                "exists": main.exists,
            },
            "archive": {
                "table": self.schema.archive_table,
                "row_count": archive.row_count or 0,
                "oldest_event": archive.oldest_event,
                "exists": archive.exists,
            },
        }
