"""
tests/test_history_ledger.py — Refresh Ledger & Freshness Tests
=================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from conftest import run_async, sqlite_engine
from mvkeeper.database.models import RefreshStatus, RefreshTrigger
from mvkeeper.services.history_ledger import (
    HistoryLedger,
    LastRefresh,
    classify_freshness,
)

T0 = datetime(2026, 3, 1, 4, 0, tzinfo=UTC)


def _log(ledger, view, status, completed_at, **kw):
    return run_async(ledger.log_attempt(
        view_name=view,
        status=status,
        trigger=kw.pop("trigger", RefreshTrigger.SCHEDULED),
        started_at=completed_at - timedelta(seconds=2),
        completed_at=completed_at,
        **kw,
    ))


# ---------------------------------------------------------------------------
# classify_freshness — pure function
# ---------------------------------------------------------------------------
class TestClassifyFreshness:
    def test_exactly_at_threshold_is_fresh(self):
        last = {"mv_a": LastRefresh(completed_at=T0, duration_ms=10)}
        snap = classify_freshness(["mv_a"], last, 6, now=T0 + timedelta(hours=6))

        assert snap.fresh_views == ["mv_a"]
        assert snap.stale_views == []
        assert not snap.is_stale

    def test_one_microsecond_past_threshold_is_stale(self):
        last = {"mv_a": LastRefresh(completed_at=T0, duration_ms=10)}
        now = T0 + timedelta(hours=6, microseconds=1)
        snap = classify_freshness(["mv_a"], last, 6, now=now)

        assert snap.stale_views == ["mv_a"]
        assert snap.is_stale

    def test_never_refreshed_views_make_the_set_stale(self):
        last = {"mv_a": LastRefresh(completed_at=T0, duration_ms=10)}
        snap = classify_freshness(["mv_a", "mv_b"], last, 6, now=T0 + timedelta(hours=1))

        assert snap.views_never_refreshed == ["mv_b"]
        assert snap.fresh_views == ["mv_a"]
        assert snap.is_stale

    def test_oldest_refresh_is_the_minimum(self):
        last = {
            "mv_a": LastRefresh(completed_at=T0, duration_ms=1),
            "mv_b": LastRefresh(completed_at=T0 - timedelta(hours=3), duration_ms=1),
        }
        snap = classify_freshness(["mv_a", "mv_b"], last, 6, now=T0)
        assert snap.oldest_refresh == T0 - timedelta(hours=3)

    def test_naive_timestamps_are_treated_as_utc(self):
        last = {"mv_a": LastRefresh(completed_at=T0.replace(tzinfo=None), duration_ms=1)}
        snap = classify_freshness(["mv_a"], last, 6, now=T0 + timedelta(hours=6))
        assert snap.fresh_views == ["mv_a"]

    def test_to_dict_serialises_timestamps(self):
        snap = classify_freshness([], {}, 6, now=T0)
        data = snap.to_dict()
        assert data["checked_at"] == T0.isoformat()
        assert data["oldest_refresh"] is None
        assert data["is_stale"] is False


# ---------------------------------------------------------------------------
# HistoryLedger — SQLite-backed
# ---------------------------------------------------------------------------
class TestHistoryLedger:
    def test_log_attempt_computes_delta_and_duration(self, db_engine):
        ledger = HistoryLedger(db_engine)
        row_id = _log(ledger, "mv_a", RefreshStatus.SUCCESS, T0,
                      row_count_before=7, row_count_after=9, initiated_by="carol")

        assert row_id is not None
        (entry,) = run_async(ledger.get_refresh_history())
        assert entry["row_delta"] == 2
        assert entry["duration_ms"] == 2_000
        assert entry["status"] == "SUCCESS"
        assert entry["trigger"] == "SCHEDULED"
        assert entry["initiated_by"] == "carol"

    def test_completed_before_started_is_clamped(self, db_engine):
        ledger = HistoryLedger(db_engine)
        run_async(ledger.log_attempt(
            view_name="mv_a", status=RefreshStatus.FAILED, trigger=RefreshTrigger.MANUAL,
            started_at=T0, completed_at=T0 - timedelta(seconds=5), error_message="x",
        ))
        (entry,) = run_async(ledger.get_refresh_history())
        assert entry["duration_ms"] == 0
        assert entry["completed_at"] == entry["started_at"]

    def test_last_refresh_ignores_failures(self, db_engine):
        ledger = HistoryLedger(db_engine)
        _log(ledger, "mv_a", RefreshStatus.SUCCESS, T0)
        _log(ledger, "mv_a", RefreshStatus.FAILED, T0 + timedelta(hours=2),
             error_message="deadlock")

        last = run_async(ledger.get_last_refresh_times())
        assert last["mv_a"].completed_at == T0

    def test_last_refresh_picks_latest_success_per_view(self, db_engine):
        ledger = HistoryLedger(db_engine)
        _log(ledger, "mv_a", RefreshStatus.SUCCESS, T0 - timedelta(days=1))
        _log(ledger, "mv_a", RefreshStatus.SUCCESS, T0)
        _log(ledger, "mv_b", RefreshStatus.SUCCESS, T0 - timedelta(hours=1))

        last = run_async(ledger.get_last_refresh_times())
        assert set(last) == {"mv_a", "mv_b"}
        assert last["mv_a"].completed_at == T0
        assert last["mv_b"].completed_at == T0 - timedelta(hours=1)

    def test_failed_only_view_is_never_refreshed(self, db_engine):
        ledger = HistoryLedger(db_engine)
        _log(ledger, "mv_a", RefreshStatus.FAILED, T0, error_message="boom")

        snap = run_async(ledger.get_freshness_status(["mv_a"], 6, now=T0))
        assert snap.views_never_refreshed == ["mv_a"]
        assert snap.is_stale

    def test_history_is_newest_first_and_filterable(self, db_engine):
        ledger = HistoryLedger(db_engine)
        _log(ledger, "mv_a", RefreshStatus.SUCCESS, T0)
        _log(ledger, "mv_b", RefreshStatus.SUCCESS, T0 + timedelta(minutes=1))
        _log(ledger, "mv_a", RefreshStatus.FAILED, T0 + timedelta(minutes=2),
             error_message="x")

        history = run_async(ledger.get_refresh_history(limit=2))
        assert [h["view_name"] for h in history] == ["mv_a", "mv_b"]
        assert history[0]["status"] == "FAILED"

        only_a = run_async(ledger.get_refresh_history(view_name="mv_a"))
        assert {h["view_name"] for h in only_a} == {"mv_a"}
        assert len(only_a) == 2

    def test_write_failure_is_logged_not_raised(self, caplog):
        ledger = HistoryLedger(sqlite_engine())  # tables never created

        row_id = _log(ledger, "mv_a", RefreshStatus.SUCCESS, T0)

        assert row_id is None
        assert "Failed to record refresh attempt" in caplog.text


class TestAttemptLifecycle:
    def _start(self, ledger, view="mv_a"):
        return run_async(ledger.start_attempt(
            view_name=view, trigger=RefreshTrigger.MANUAL, started_at=T0,
            row_count_before=4, initiated_by="dana",
        ))

    def test_start_writes_running_row(self, db_engine):
        ledger = HistoryLedger(db_engine)
        attempt_id = self._start(ledger)

        (entry,) = run_async(ledger.get_refresh_history())
        assert entry["id"] == attempt_id
        assert entry["status"] == "RUNNING"
        assert entry["completed_at"] is None
        assert entry["row_count_before"] == 4

    def test_finish_finalizes_the_same_row(self, db_engine):
        ledger = HistoryLedger(db_engine)
        attempt_id = self._start(ledger)

        result = run_async(ledger.finish_attempt(
            attempt_id, view_name="mv_a", status=RefreshStatus.SUCCESS,
            trigger=RefreshTrigger.MANUAL, started_at=T0,
            completed_at=T0 + timedelta(seconds=3),
            row_count_before=4, row_count_after=6,
        ))

        assert result == attempt_id
        (entry,) = run_async(ledger.get_refresh_history())
        assert entry["status"] == "SUCCESS"
        assert entry["duration_ms"] == 3_000
        assert entry["row_delta"] == 2

    def test_finalized_row_is_never_changed_again(self, db_engine):
        ledger = HistoryLedger(db_engine)
        attempt_id = self._start(ledger)
        common = dict(view_name="mv_a", trigger=RefreshTrigger.MANUAL, started_at=T0)
        run_async(ledger.finish_attempt(attempt_id, status=RefreshStatus.FAILED,
                                        error_message="deadlock", **common))

        again = run_async(ledger.finish_attempt(attempt_id, status=RefreshStatus.SUCCESS,
                                                **common))

        assert again is None
        (entry,) = run_async(ledger.get_refresh_history())
        assert entry["status"] == "FAILED"
        assert entry["error_message"] == "deadlock"

    def test_running_attempt_does_not_count_as_refreshed(self, db_engine):
        ledger = HistoryLedger(db_engine)
        self._start(ledger)

        snap = run_async(ledger.get_freshness_status(["mv_a"], 6, now=T0))
        assert snap.views_never_refreshed == ["mv_a"]

    def test_finish_without_start_row_appends(self, db_engine):
        ledger = HistoryLedger(db_engine)

        row_id = run_async(ledger.finish_attempt(
            None, view_name="mv_a", status=RefreshStatus.SUCCESS,
            trigger=RefreshTrigger.MANUAL, started_at=T0, completed_at=T0,
        ))

        assert row_id is not None
        (entry,) = run_async(ledger.get_refresh_history())
        assert entry["status"] == "SUCCESS"
