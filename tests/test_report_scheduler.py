# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Tests for calendar report scheduling and deduplication."""

import os
import sys
from datetime import datetime
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "monitor"))

from upswatch.report_scheduler import (
    ReportSchedule,
    ReportScheduler,
    parse_time_of_day,
    same_period,
)
from upswatch.state_store import ReportScheduleState, StateStore
from upswatch.ups_model import ReportKind, StableStatus, StatusSnapshot

# 2026-03-02 is a Monday
MONDAY = datetime(2026, 3, 2, 8, 0, 30)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def status_source():
    source = MagicMock()
    snap = StatusSnapshot(device_id="ups1", online=True, status="Online", battery_charge=100.0)
    source.stable_table.return_value = {"ups1": StableStatus(True, snap, 0.0)}
    source.device_names.return_value = {"ups1": "Rack UPS"}
    return source


def make_scheduler(sink=None, state_store=None, **schedule):
    schedule.setdefault("weekly", False)
    schedule.setdefault("monthly", False)
    return ReportScheduler(
        ReportSchedule(**schedule), status_source=status_source(),
        sink=sink or MagicMock(), state_store=state_store,
    )


def fired_kinds(reports):
    return [r.kind for r in reports]


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

class TestSchedule:
    def test_parse_time_of_day(self):
        assert parse_time_of_day("08:00") == (8, 0)
        assert parse_time_of_day(" 23:59 ") == (23, 59)

    @pytest.mark.parametrize("bad", ["8", "24:00", "12:60", "aa:bb", "1:2:3"])
    def test_parse_time_of_day_rejects(self, bad):
        with pytest.raises(ValueError):
            parse_time_of_day(bad)

    def test_invalid_weekday(self):
        with pytest.raises(ValueError):
            ReportSchedule(weekday=7)

    def test_monthly_day_clamps_to_month_length(self):
        schedule = ReportSchedule(day_of_month=31)
        assert schedule.matches_day(ReportKind.MONTHLY, datetime(2026, 2, 28))
        assert not schedule.matches_day(ReportKind.MONTHLY, datetime(2026, 2, 27))
        assert schedule.matches_day(ReportKind.MONTHLY, datetime(2026, 3, 31))

    def test_same_period(self):
        assert same_period(ReportKind.WEEKLY, datetime(2025, 12, 29), datetime(2026, 1, 1))
        assert not same_period(ReportKind.WEEKLY, datetime(2026, 3, 1), datetime(2026, 3, 2))
        assert same_period(ReportKind.MONTHLY, datetime(2026, 3, 1), datetime(2026, 3, 31))
        assert not same_period(ReportKind.DAILY, datetime(2026, 3, 1, 23), datetime(2026, 3, 2, 0))


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------

class TestTick:
    def test_daily_fires_once_per_window(self):
        sink = MagicMock()
        sched = make_scheduler(sink)
        reports = sched.tick(MONDAY)
        assert fired_kinds(reports) == [ReportKind.DAILY]
        assert reports[0].device_names == {"ups1": "Rack UPS"}
        assert sched.tick(MONDAY.replace(second=59)) == []
        assert sched.tick(MONDAY.replace(minute=1)) == []
        sink.on_report.assert_called_once()

    def test_outside_window(self):
        sched = make_scheduler()
        assert sched.tick(MONDAY.replace(hour=7, minute=59)) == []
        assert sched.tick(MONDAY.replace(minute=2, second=0)) == []

    def test_next_day_fires_again(self):
        sched = make_scheduler()
        sched.tick(MONDAY)
        assert fired_kinds(sched.tick(MONDAY.replace(day=3))) == [ReportKind.DAILY]

    def test_weekly_only_on_configured_weekday(self):
        sched = make_scheduler(daily=False, weekly=True, weekday=0)
        assert fired_kinds(sched.tick(MONDAY)) == [ReportKind.WEEKLY]
        assert sched.tick(MONDAY.replace(day=3)) == []
        assert fired_kinds(sched.tick(MONDAY.replace(day=9))) == [ReportKind.WEEKLY]

    def test_monthly_on_short_month(self):
        sched = make_scheduler(daily=False, monthly=True, day_of_month=31)
        assert fired_kinds(sched.tick(datetime(2026, 2, 28, 8, 0, 10))) == [ReportKind.MONTHLY]
        assert sched.tick(datetime(2026, 3, 1, 8, 0, 10)) == []

    def test_all_kinds_together(self):
        sched = make_scheduler(weekly=True, monthly=True, weekday=0, day_of_month=2)
        assert fired_kinds(sched.tick(MONDAY)) == [
            ReportKind.DAILY, ReportKind.WEEKLY, ReportKind.MONTHLY,
        ]

    def test_failing_sink_still_marks_sent(self):
        sink = MagicMock()
        sink.on_report.side_effect = RuntimeError("mail down")
        sched = make_scheduler(sink)
        assert len(sched.tick(MONDAY)) == 1
        assert sched.tick(MONDAY.replace(second=40)) == []

    def test_window_running_past_midnight(self):
        sched = make_scheduler(time_of_day="23:59")
        assert sched.tick(datetime(2026, 3, 2, 23, 58, 59)) == []
        # The only tick inside the window lands after midnight
        assert fired_kinds(sched.tick(datetime(2026, 3, 3, 0, 0, 5))) == [ReportKind.DAILY]
        assert sched.state.last_daily == datetime(2026, 3, 2, 23, 59).timestamp()
        assert sched.tick(datetime(2026, 3, 3, 0, 0, 50)) == []
        assert fired_kinds(sched.tick(datetime(2026, 3, 3, 23, 59, 10))) == [ReportKind.DAILY]

    def test_weekly_window_running_into_next_day(self):
        sched = make_scheduler(daily=False, weekly=True, weekday=0, time_of_day="23:59")
        assert fired_kinds(sched.tick(datetime(2026, 3, 3, 0, 0, 30))) == [ReportKind.WEEKLY]
        assert sched.tick(datetime(2026, 3, 3, 0, 1, 30)) == []

    def test_previous_day_outside_window_is_ignored(self):
        sched = make_scheduler(time_of_day="23:59")
        assert sched.tick(datetime(2026, 3, 3, 0, 1, 0)) == []

    def test_missing_status_source(self):
        sched = ReportScheduler(ReportSchedule(), status_source=None, sink=MagicMock())
        assert sched.tick(MONDAY) == []
        assert sched.tick(MONDAY) == []
        assert sched.send_now(ReportKind.DAILY) is None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:
    def test_sent_state_survives_restart(self, tmp_path):
        path = str(tmp_path / "state.json")
        store = StateStore(path)
        make_scheduler(state_store=store).tick(MONDAY)
        assert store.report_state.last_daily == MONDAY.replace(second=0).timestamp()

        reloaded = StateStore(path)
        sink = MagicMock()
        sched = make_scheduler(sink, state_store=reloaded)
        assert sched.tick(MONDAY.replace(minute=1)) == []
        sink.on_report.assert_not_called()

    def test_save_failure_does_not_stop_dispatch(self):
        store = MagicMock()
        store.report_state = ReportScheduleState()
        store.save.side_effect = OSError("read-only")
        sink = MagicMock()
        sched = make_scheduler(sink, state_store=store)
        assert len(sched.tick(MONDAY)) == 1
        sink.on_report.assert_called_once()


# ---------------------------------------------------------------------------
# Manual sends and status
# ---------------------------------------------------------------------------

class TestManual:
    def test_send_now_does_not_touch_schedule(self):
        sink = MagicMock()
        sched = make_scheduler(sink)
        report = sched.send_now(ReportKind.WEEKLY)
        assert report.manual is True
        assert report.to_dict()["devices"][0]["name"] == "Rack UPS"
        assert sched.state.last_weekly is None
        assert fired_kinds(sched.tick(MONDAY)) == [ReportKind.DAILY]

    def test_next_report_times(self):
        sched = make_scheduler(weekly=True, weekday=0)
        sched.tick(MONDAY)
        nxt = sched.next_report_times(MONDAY.replace(hour=9))
        assert nxt[ReportKind.DAILY] == datetime(2026, 3, 3, 8, 0)
        assert nxt[ReportKind.WEEKLY] == datetime(2026, 3, 9, 8, 0)

    def test_next_report_time_today_before_window(self):
        sched = make_scheduler()
        nxt = sched.next_report_times(MONDAY.replace(hour=6))
        assert nxt[ReportKind.DAILY] == datetime(2026, 3, 2, 8, 0)
