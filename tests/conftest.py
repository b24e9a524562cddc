"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of mvkeeper.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from mvkeeper.config import config_from_dict  # noqa: E402
from mvkeeper.database.executor import StatementFailed  # noqa: E402
from mvkeeper.database.models import Base, RefreshTrigger  # noqa: E402
from mvkeeper.schema.provider import SchemaProvider, SchemaStatement  # noqa: E402
from mvkeeper.services.refresh_engine import RefreshResult  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


# Helper to run async code without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def sqlite_engine() -> Engine:
    """In-memory SQLite shared across threads (``asyncio.to_thread``)."""
    return create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


SAMPLE_CONFIG = {
    "organisation_id": "org-test",
    "categories": [
        {"key": "core", "name": "Core Dashboard", "views": ["mv_stats", "mv_compliance"]},
        {"key": "hierarchy", "name": "Hierarchy", "views": ["mv_scheme_rollup"]},
        {"key": "contractor", "name": "Contractor", "views": ["mv_contractor_sla"]},
    ],
    "refresh": {"delay_between_categories_ms": 0, "stale_threshold_hours": 6},
}


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with the ledger tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = sqlite_engine()
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def cfg():
    return config_from_dict(SAMPLE_CONFIG)


@pytest.fixture
def schema(cfg) -> SchemaProvider:
    return SchemaProvider(
        cfg.categories,
        performance_indexes=[
            SchemaStatement("index", "CREATE INDEX idx_a ON t(a)"),
            SchemaStatement("index", "CREATE INDEX idx_b ON t(b)"),
        ],
        materialized_views=[
            SchemaStatement("view", "CREATE MATERIALIZED VIEW mv_stats AS SELECT 1"),
        ],
        view_indexes=[
            SchemaStatement("view_index", "CREATE UNIQUE INDEX mv_stats_idx ON mv_stats(x)"),
        ],
        optimization_tables=[
            SchemaStatement("table", "CREATE TABLE risk_snapshots (id INTEGER)"),
        ],
    )


# ---------------------------------------------------------------------------
# Scripted executor for DB-less unit tests
# ---------------------------------------------------------------------------
class FakeExecutor:
    """Stands in for :class:`SqlExecutor`.

    ``failures`` maps an exact statement to the exception it raises (or to a
    list of exceptions/``None`` consumed one call at a time).  ``counts``
    maps a view to the successive values its ``COUNT(*)`` returns; an
    exception in that list is raised instead.
    """

    def __init__(self, failures=None, counts=None):
        self.failures = dict(failures or {})
        self.counts = {k: list(v) for k, v in (counts or {}).items()}
        self.executed: list[str] = []

    def _maybe_fail(self, statement: str) -> None:
        failure = self.failures.get(statement)
        if isinstance(failure, list):
            failure = failure.pop(0) if failure else None
        if failure is not None:
            raise failure

    async def execute(self, statement, params=None):
        self.executed.append(statement)
        self._maybe_fail(statement)
        return 0

    async def scalar(self, statement, params=None):
        view = statement.rsplit(" FROM ", 1)[-1].strip()
        values = self.counts.get(view)
        if not values:
            raise StatementFailed(f'relation "{view}" does not exist')
        value = values.pop(0)
        if isinstance(value, BaseException):
            raise value
        return value

    async def query(self, statement, params=None):
        self.executed.append(statement)
        self._maybe_fail(statement)
        return []

    async def execute_in_transaction(self, statements, params=None, validate=None):
        counts = [await self.execute(s, params) for s in statements]
        if validate is not None:
            validate(counts)
        return counts


class FakeRefreshEngine:
    """Records calls; views in ``failing`` fail, ``exploding`` raise."""

    def __init__(self, failing=(), exploding=()):
        self.failing = set(failing)
        self.exploding = set(exploding)
        self.calls: list[tuple[str, RefreshTrigger, str | None, bool]] = []

    async def refresh_view(self, view_name, trigger, initiated_by, allow_blocking_refresh):
        self.calls.append((view_name, trigger, initiated_by, allow_blocking_refresh))
        if view_name in self.exploding:
            raise RuntimeError("connection reset")
        if view_name in self.failing:
            return RefreshResult(view_name=view_name, success=False, duration_ms=1,
                                 error="boom")
        return RefreshResult(view_name=view_name, success=True, duration_ms=1, row_count=1)
