"""
tests/test_refresh_engine.py — Single-View Refresh Tests
==========================================================

Covers the concurrent-first strategy, the blocking-refresh policy, row
accounting, and the ledger row written for every attempt.
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import FakeExecutor, run_async
from mvkeeper.database.executor import MissingUniqueIndex, StatementFailed
from mvkeeper.database.models import RefreshHistory, RefreshStatus, RefreshTrigger
from mvkeeper.services.history_ledger import HistoryLedger
from mvkeeper.services.refresh_engine import RefreshEngine

CONCURRENT = "REFRESH MATERIALIZED VIEW CONCURRENTLY mv_stats"
BLOCKING = "REFRESH MATERIALIZED VIEW mv_stats"


def _missing_index() -> MissingUniqueIndex:
    return MissingUniqueIndex(
        'cannot refresh materialized view "public.mv_stats" concurrently',
        sqlstate="55000",
    )


def _engine(db_engine, schema, executor) -> RefreshEngine:
    return RefreshEngine(executor, HistoryLedger(db_engine), schema)


def _ledger_rows(db_engine) -> list[RefreshHistory]:
    with Session(db_engine) as s:
        return list(s.scalars(select(RefreshHistory).order_by(RefreshHistory.id)))


class TestConcurrentRefresh:
    def test_success_records_counts_and_delta(self, db_engine, schema):
        executor = FakeExecutor(counts={"mv_stats": [10, 12]})
        engine = _engine(db_engine, schema, executor)

        result = run_async(engine.refresh_view("mv_stats", RefreshTrigger.MANUAL, "alice"))

        assert result.success
        assert result.row_count == 12
        assert not result.was_blocking
        assert executor.executed == [CONCURRENT]

        (row,) = _ledger_rows(db_engine)
        assert row.status == RefreshStatus.SUCCESS
        assert row.trigger == RefreshTrigger.MANUAL
        assert row.category == "core"
        assert row.row_count_before == 10
        assert row.row_count_after == 12
        assert row.row_delta == 2
        assert row.initiated_by == "alice"
        assert row.completed_at >= row.started_at

    def test_new_view_counts_as_zero_rows_before(self, db_engine, schema):
        executor = FakeExecutor(counts={"mv_stats": [StatementFailed("no such table"), 5]})
        engine = _engine(db_engine, schema, executor)

        result = run_async(engine.refresh_view("mv_stats"))

        assert result.success
        (row,) = _ledger_rows(db_engine)
        assert row.row_count_before == 0
        assert row.row_count_after == 5
        assert row.row_delta == 5

    def test_shrinking_view_has_negative_delta(self, db_engine, schema):
        executor = FakeExecutor(counts={"mv_stats": [40, 25]})
        run_async(_engine(db_engine, schema, executor).refresh_view("mv_stats"))

        (row,) = _ledger_rows(db_engine)
        assert row.row_delta == -15


class TestBlockingPolicy:
    def test_missing_index_without_permission_never_blocks(self, db_engine, schema):
        executor = FakeExecutor(
            failures={CONCURRENT: _missing_index()}, counts={"mv_stats": [3]},
        )
        engine = _engine(db_engine, schema, executor)

        result = run_async(engine.refresh_view("mv_stats", allow_blocking_refresh=False))

        assert not result.success
        assert "unique index" in result.error
        assert "blocking refresh is disabled" in result.error
        assert BLOCKING not in executor.executed

        (row,) = _ledger_rows(db_engine)
        assert row.status == RefreshStatus.FAILED
        assert row.error_message == result.error
        assert row.row_count_after is None

    def test_missing_index_with_permission_falls_back(self, db_engine, schema):
        executor = FakeExecutor(
            failures={CONCURRENT: _missing_index()}, counts={"mv_stats": [3, 4]},
        )
        engine = _engine(db_engine, schema, executor)

        result = run_async(engine.refresh_view("mv_stats", allow_blocking_refresh=True))

        assert result.success
        assert result.was_blocking
        assert executor.executed == [CONCURRENT, BLOCKING]
        (row,) = _ledger_rows(db_engine)
        assert row.was_blocking is True
        assert row.status == RefreshStatus.SUCCESS

    def test_blocking_fallback_failure_is_recorded(self, db_engine, schema):
        executor = FakeExecutor(
            failures={CONCURRENT: _missing_index(), BLOCKING: StatementFailed("lock timeout")},
            counts={"mv_stats": [3]},
        )
        result = run_async(
            _engine(db_engine, schema, executor).refresh_view(
                "mv_stats", allow_blocking_refresh=True,
            )
        )

        assert not result.success
        assert result.error == "lock timeout"

    def test_other_errors_do_not_trigger_fallback(self, db_engine, schema):
        executor = FakeExecutor(
            failures={CONCURRENT: StatementFailed("deadlock detected")},
            counts={"mv_stats": [3]},
        )
        result = run_async(
            _engine(db_engine, schema, executor).refresh_view(
                "mv_stats", allow_blocking_refresh=True,
            )
        )

        assert not result.success
        assert result.error == "deadlock detected"
        assert executor.executed == [CONCURRENT]


class TestInputValidation:
    def test_invalid_identifier_touches_nothing(self, db_engine, schema):
        executor = FakeExecutor()
        result = run_async(
            _engine(db_engine, schema, executor).refresh_view("mv_stats; DROP TABLE x")
        )

        assert not result.success
        assert "Invalid view identifier" in result.error
        assert executor.executed == []
        assert _ledger_rows(db_engine) == []


class TestLedgerFailure:
    def test_missing_ledger_table_does_not_fail_refresh(self, schema):
        from conftest import sqlite_engine

        bare = sqlite_engine()  # no mv_refresh_history table
        executor = FakeExecutor(counts={"mv_stats": [1, 2]})
        result = run_async(_engine(bare, schema, executor).refresh_view("mv_stats"))

        assert result.success
        assert result.row_count == 2


class TestAttemptLifecycle:
    def test_running_row_is_visible_while_refreshing(self, db_engine, schema):
        seen: list[RefreshStatus] = []

        class SpyExecutor(FakeExecutor):
            async def execute(self, statement, params=None):
                if statement == CONCURRENT:
                    seen.extend(r.status for r in _ledger_rows(db_engine))
                return await super().execute(statement, params)

        executor = SpyExecutor(counts={"mv_stats": [7, 8]})
        result = run_async(_engine(db_engine, schema, executor).refresh_view("mv_stats"))

        assert result.success
        assert seen == [RefreshStatus.RUNNING]
        (row,) = _ledger_rows(db_engine)
        assert row.status == RefreshStatus.SUCCESS
        assert row.row_count_before == 7

    def test_crashed_refresh_leaves_running_row(self, db_engine, schema):
        class CrashingExecutor(FakeExecutor):
            async def execute(self, statement, params=None):
                raise RuntimeError("worker killed")

        executor = CrashingExecutor(counts={"mv_stats": [3]})
        with pytest.raises(RuntimeError):
            run_async(_engine(db_engine, schema, executor).refresh_view("mv_stats"))

        (row,) = _ledger_rows(db_engine)
        assert row.status == RefreshStatus.RUNNING
        assert row.completed_at is None

    def test_duration_excludes_row_count(self, db_engine, schema):
        class SlowCountExecutor(FakeExecutor):
            async def scalar(self, statement, params=None):
                await asyncio.sleep(0.2)
                return await super().scalar(statement, params)

        executor = SlowCountExecutor(counts={"mv_stats": [1, 1]})
        result = run_async(_engine(db_engine, schema, executor).refresh_view("mv_stats"))

        assert result.success
        assert result.duration_ms < 150
