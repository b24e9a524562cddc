"""
tests/test_schedule_service.py — Refresh Schedule CRUD Tests
==============================================================
"""

from __future__ import annotations

import pytest

from mvkeeper.services.schedule_service import (
    get_refresh_schedule,
    parse_schedule_time,
    upsert_refresh_schedule,
)

ORG = "org-test"


class TestParseScheduleTime:
    @pytest.mark.parametrize("value,expected", [
        ("00:00", (0, 0)),
        ("05:30", (5, 30)),
        ("23:59", (23, 59)),
    ])
    def test_valid(self, value, expected):
        assert parse_schedule_time(value) == expected

    @pytest.mark.parametrize("value", ["24:00", "5:30", "05:60", "", "noon"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_schedule_time(value)


class TestUpsert:
    def test_missing_schedule_reads_as_none(self, db_engine):
        assert get_refresh_schedule(db_engine, ORG) is None

    def test_first_write_creates_row_with_defaults(self, db_engine):
        row = upsert_refresh_schedule(db_engine, ORG, schedule_time="04:15", updated_by="dave")

        assert row["organisation_id"] == ORG
        assert row["schedule_time"] == "04:15"
        assert row["timezone"] == "Europe/London"
        assert row["is_enabled"] is True
        assert row["post_ingestion_enabled"] is False
        assert row["stale_threshold_hours"] == 6
        assert row["refresh_all"] is True
        assert row["target_views"] is None
        assert row["created_at"] is not None
        assert get_refresh_schedule(db_engine, ORG) == row

    def test_first_write_requires_schedule_time(self, db_engine):
        with pytest.raises(ValueError, match="schedule_time is required"):
            upsert_refresh_schedule(db_engine, ORG, is_enabled=False)
        assert get_refresh_schedule(db_engine, ORG) is None

    def test_partial_update_keeps_other_fields(self, db_engine):
        upsert_refresh_schedule(db_engine, ORG, schedule_time="04:15",
                                timezone="UTC", stale_threshold_hours=12)

        row = upsert_refresh_schedule(db_engine, ORG, is_enabled=False)

        assert row["is_enabled"] is False
        assert row["schedule_time"] == "04:15"
        assert row["timezone"] == "UTC"
        assert row["stale_threshold_hours"] == 12

    def test_target_views_stored_when_not_refreshing_all(self, db_engine):
        row = upsert_refresh_schedule(
            db_engine, ORG, schedule_time="03:00",
            refresh_all=False, target_views=["mv_stats", "mv_scheme_rollup"],
        )
        assert row["refresh_all"] is False
        assert row["target_views"] == ["mv_stats", "mv_scheme_rollup"]

    def test_refresh_all_clears_target_views(self, db_engine):
        upsert_refresh_schedule(db_engine, ORG, schedule_time="03:00",
                                refresh_all=False, target_views=["mv_stats"])

        row = upsert_refresh_schedule(db_engine, ORG, refresh_all=True,
                                      target_views=["mv_compliance"])

        assert row["refresh_all"] is True
        assert row["target_views"] is None
        assert get_refresh_schedule(db_engine, ORG)["target_views"] is None

    def test_refresh_all_false_without_targets_is_rejected(self, db_engine):
        upsert_refresh_schedule(db_engine, ORG, schedule_time="03:00")

        with pytest.raises(ValueError, match="target_views is required"):
            upsert_refresh_schedule(db_engine, ORG, refresh_all=False)

        # rolled back: the stored row is unchanged
        assert get_refresh_schedule(db_engine, ORG)["refresh_all"] is True

    @pytest.mark.parametrize("kwargs,message", [
        ({"schedule_time": "25:00"}, "HH:MM"),
        ({"schedule_time": "03:00", "timezone": "Mars/Olympus"}, "Unknown timezone"),
        ({"schedule_time": "03:00", "stale_threshold_hours": 0}, "positive"),
    ])
    def test_invalid_input_rejected(self, db_engine, kwargs, message):
        with pytest.raises(ValueError, match=message):
            upsert_refresh_schedule(db_engine, ORG, **kwargs)

    def test_schedules_are_per_organisation(self, db_engine):
        upsert_refresh_schedule(db_engine, "org-a", schedule_time="01:00")
        upsert_refresh_schedule(db_engine, "org-b", schedule_time="02:00")

        assert get_refresh_schedule(db_engine, "org-a")["schedule_time"] == "01:00"
        assert get_refresh_schedule(db_engine, "org-b")["schedule_time"] == "02:00"
