"""
mvkeeper.database.executor — Generic SQL Primitives
====================================================

The maintenance services never touch ORM sessions for view work.  They talk
to the database through four awaitable primitives:

* :meth:`SqlExecutor.execute` — run one statement, return its rowcount.
* :meth:`SqlExecutor.query` — run one statement, return rows as dicts.
* :meth:`SqlExecutor.scalar` — run one statement, return the first column.
* :meth:`SqlExecutor.execute_in_transaction` — several statements, one
  transaction, one rowcount each, optionally checked before commit.

Driver errors are translated into a small taxonomy so callers can apply
policy by *kind* of failure instead of by string matching:

========================  ===================================================
``ObjectAlreadyExists``   idempotent no-op during provisioning
``MissingUniqueIndex``    ``REFRESH … CONCURRENTLY`` on a view without a
                          qualifying unique index (or not yet populated)
``RelationMissing``       table / view not created yet
``StatementFailed``       anything else
========================  ===================================================
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Engine, TextClause, bindparam, text
from sqlalchemy.exc import DBAPIError

from mvkeeper.database.engine import run_db


# SQLSTATE codes (PostgreSQL Appendix A)
_DUPLICATE_CODES = frozenset({
    "42P07",  # duplicate_table (tables, views, indexes)
    "42710",  # duplicate_object
    "42P06",  # duplicate_schema
    "42723",  # duplicate_function
})
_UNDEFINED_TABLE = "42P01"
_PREREQUISITE_STATE = "55000"

_IDENTIFIER = re.compile(r"^(?:[A-Za-z_][A-Za-z0-9_$]*\.)?[A-Za-z_][A-Za-z0-9_$]*$")


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------
class StatementFailed(Exception):
    """A single SQL statement failed.

    ``sqlstate`` is the driver's SQLSTATE when available (psycopg2 exposes it
    as ``pgcode``); SQLite and mocked drivers leave it ``None``.
    """

    def __init__(self, message: str, *, statement: str | None = None,
                 sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.statement = statement
        self.sqlstate = sqlstate


class ObjectAlreadyExists(StatementFailed):
    """CREATE of an index/view/table that is already present."""


class MissingUniqueIndex(StatementFailed):
    """Concurrent refresh refused: the view has no usable unique index."""


class RelationMissing(StatementFailed):
    """The referenced table or view does not exist (yet)."""


def classify_db_error(exc: BaseException, statement: str | None = None) -> StatementFailed:
    """Map a driver / SQLAlchemy exception onto the taxonomy above."""
    if isinstance(exc, StatementFailed):
        return exc

    orig = getattr(exc, "orig", None) or exc
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    message = str(orig).strip().splitlines()[0] if str(orig).strip() else repr(orig)
    lowered = str(orig).lower()

    if sqlstate in _DUPLICATE_CODES or "already exists" in lowered:
        cls: type[StatementFailed] = ObjectAlreadyExists
    elif "concurrently" in lowered and (
        sqlstate == _PREREQUISITE_STATE or "unique index" in lowered
        or "cannot refresh" in lowered
    ):
        cls = MissingUniqueIndex
    elif sqlstate == _UNDEFINED_TABLE or "no such table" in lowered or (
        "does not exist" in lowered and "relation" in lowered
    ):
        cls = RelationMissing
    else:
        cls = StatementFailed
    return cls(message, statement=statement, sqlstate=sqlstate)


def quote_view_name(name: str) -> str:
    """Validate and return a view identifier safe to interpolate into SQL.

    ``REFRESH MATERIALIZED VIEW`` cannot take a bind parameter, so names are
    restricted to plain (optionally schema-qualified) identifiers.
    """
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid view identifier: {name!r}")
    return name


def _clause(statement: str, params: Mapping[str, Any] | None) -> TextClause:
    """Wrap *statement* in ``text()``, typing datetime binds as timestamptz."""
    clause = text(statement)
    typed = [
        bindparam(key, type_=DateTime(timezone=True))
        for key, value in (params or {}).items()
        if isinstance(value, datetime) and f":{key}" in statement
    ]
    return clause.bindparams(*typed) if typed else clause


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------
class SqlExecutor:
    """Async facade over a SQLAlchemy :class:`Engine`.

    Each call opens its own short transaction (``engine.begin()``) on a
    worker thread, so a failing statement never poisons the next one.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    # --- sync workers (run on a thread via run_db) -------------------------
    def _execute_sync(self, statement: str, params: Mapping[str, Any] | None) -> int:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_clause(statement, params), dict(params or {}))
                return max(result.rowcount or 0, 0)
        except DBAPIError as exc:
            raise classify_db_error(exc, statement) from exc

    def _query_sync(self, statement: str, params: Mapping[str, Any] | None) -> list[dict]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_clause(statement, params), dict(params or {}))
                return [dict(row) for row in result.mappings()]
        except DBAPIError as exc:
            raise classify_db_error(exc, statement) from exc

    def _transaction_sync(
        self,
        statements: Sequence[str],
        params: Mapping[str, Any] | None,
        validate: Callable[[list[int]], None] | None,
    ) -> list[int]:
        counts: list[int] = []
        current: str | None = None
        try:
            with self.engine.begin() as conn:
                for current in statements:
                    result = conn.execute(_clause(current, params), dict(params or {}))
                    counts.append(max(result.rowcount or 0, 0))
                if validate is not None:
                    # raising here leaves the block uncommitted
                    validate(counts)
        except DBAPIError as exc:
            raise classify_db_error(exc, current) from exc
        return counts

    # --- public async API ----------------------------------------------------
    async def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> int:
        """Run *statement* in its own transaction and return the rowcount."""
        return await run_db(self._execute_sync, statement, params)

    async def query(
        self, statement: str, params: Mapping[str, Any] | None = None,
    ) -> list[dict]:
        """Run *statement* and return every row as a plain dict."""
        return await run_db(self._query_sync, statement, params)

    async def scalar(self, statement: str, params: Mapping[str, Any] | None = None) -> Any:
        """Return the first column of the first row, or ``None``."""
        rows = await self.query(statement, params)
        if not rows:
            return None
        return next(iter(rows[0].values()), None)

    async def execute_in_transaction(
        self,
        statements: Sequence[str],
        params: Mapping[str, Any] | None = None,
        validate: Callable[[list[int]], None] | None = None,
    ) -> list[int]:
        """Run *statements* atomically; all commit or none do.

        *validate* receives the rowcounts before the commit.  Any exception
        it raises rolls the whole transaction back and propagates.
        """
        return await run_db(self._transaction_sync, list(statements), params, validate)
