"""
mvkeeper.services.provisioning — Idempotent Schema Application
================================================================

Applies the schema module's performance indexes, materialized views (plus
their indexes) and optimization tables.  Safe to run on every deploy:

* a statement failing because the object **already exists** is a no-op;
* any other failure is collected into ``errors`` and the next statement is
  still attempted.

``success`` only says the operation ran to completion.  Callers must look
at ``errors`` to know whether every statement applied.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from mvkeeper.database.executor import ObjectAlreadyExists, SqlExecutor, StatementFailed
from mvkeeper.schema.provider import SchemaProvider, SchemaStatement

module_logger = logging.getLogger(__name__)

_ERROR_PREFIX = {
    "index": "Index error",
    "view": "View error",
    "view_index": "View index error",
    "table": "Table error",
}


@dataclass(slots=True)
class ApplyResult:
    success: bool
    applied_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class ProvisioningApplier:
    """Runs pre-parsed DDL statements one by one."""

    def __init__(
        self,
        executor: SqlExecutor,
        schema: SchemaProvider,
        logger: logging.Logger | None = None,
    ) -> None:
        self.executor = executor
        self.schema = schema
        self.logger = logger or module_logger

    async def _apply(self, label: str, statements: list[SchemaStatement]) -> ApplyResult:
        result = ApplyResult(success=True)
        try:
            self.logger.info("Applying %s (%d statements)...", label, len(statements))
            for stmt in statements:
                try:
                    await self.executor.execute(stmt.sql)
                    result.applied_count += 1
                except ObjectAlreadyExists:
                    result.skipped_count += 1
                except StatementFailed as exc:
                    prefix = _ERROR_PREFIX.get(stmt.kind, "Statement error")
                    result.errors.append(f"{prefix}: {exc.message}")
            self.logger.info(
                "Applied %d %s (%d already present, %d errors)",
                result.applied_count, label, result.skipped_count, len(result.errors),
            )
        except Exception as exc:
            self.logger.exception("Failed to apply %s", label)
            result.success = False
            result.errors.append(str(exc))
        return result

    async def apply_performance_indexes(self) -> ApplyResult:
        return await self._apply("performance indexes", self.schema.performance_indexes)

    async def create_materialized_views(self) -> ApplyResult:
        """Create views first, then the indexes that live on them."""
        return await self._apply(
            "materialized views",
            [*self.schema.materialized_views, *self.schema.view_indexes],
        )

    async def create_optimization_tables(self) -> ApplyResult:
        """Optimization tables plus the audit archive table."""
        return await self._apply(
            "optimization tables",
            [*self.schema.optimization_tables, self.schema.archive_table_statement()],
        )

    async def apply_all(self) -> dict:
        """Indexes, then views, then tables; aggregated into one dict."""
        self.logger.info("Applying all database optimizations...")
        indexes = await self.apply_performance_indexes()
        views = await self.create_materialized_views()
        tables = await self.create_optimization_tables()
        success = indexes.success and views.success and tables.success
        self.logger.info("Database optimizations complete. Success: %s", success)
        return {
            "success": success,
            "indexes": indexes.to_dict(),
            "views": views.to_dict(),
            "tables": tables.to_dict(),
        }
