# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Tests for the status reconciler: debounce, edge alerts, maintenance."""

import asyncio
import os
import sys
import time
from datetime import date, datetime, timedelta
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "monitor"))

from upswatch.reconciler import (
    DebounceState,
    ReconcilerSettings,
    StatusReconciler,
)
from upswatch.ups_config import UPSDevice
from upswatch.ups_model import (
    SOURCE_BATTERY,
    SOURCE_NORMAL,
    SOURCE_UNKNOWN,
    WARNING_LOAD,
    WARNING_TEMPERATURE,
    AlertKind,
    StatusSnapshot,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def online(dev="ups1", **kw):
    kw.setdefault("status", "Online")
    kw.setdefault("output_source", SOURCE_NORMAL)
    kw.setdefault("battery_charge", 100.0)
    kw.setdefault("alarms_present", 0)
    return StatusSnapshot(device_id=dev, online=True, **kw)


def offline(dev="ups1", status="Error: Connection timeout"):
    return StatusSnapshot.offline(dev, status)


def make_reconciler(sink=None, **settings):
    settings.setdefault("offline_dwell", 30.0)
    settings.setdefault("online_dwell", 10.0)
    return StatusReconciler(ReconcilerSettings(**settings), sink=sink or MagicMock())


def fire(rec, dev, now):
    """Fire the pending dwell timer of ``dev`` as if it elapsed at ``now``."""
    return rec.handle_timer_fired(dev, rec.state_of(dev).pending.token, now=now)


def settle_online(rec, snap, t=0.0):
    """Feed one online reading and confirm it. Returns the alerts."""
    rec.handle_snapshot(snap, now=t)
    return fire(rec, snap.device_id, t + rec.settings.online_dwell)


def kinds(alerts):
    return [a.kind for a in alerts]


# ---------------------------------------------------------------------------
# Debounce
# ---------------------------------------------------------------------------

class TestDebounce:
    def test_unknown_until_first_snapshot(self):
        rec = make_reconciler()
        assert rec.state_of("ups1") is None
        rec.handle_snapshot(online(), now=0)
        assert rec.state_of("ups1").debounce_state is DebounceState.CONFIRMING_ONLINE

    def test_first_confirmation_has_no_online_alert(self):
        rec = make_reconciler()
        alerts = settle_online(rec, online())
        assert AlertKind.DEVICE_ONLINE not in kinds(alerts)
        assert rec.state_of("ups1").debounce_state is DebounceState.STABLE_ONLINE

    def test_first_observation_offline_is_silent(self):
        rec = make_reconciler()
        rec.handle_snapshot(offline(), now=0)
        alerts = fire(rec, "ups1", 30)
        assert alerts == []
        assert rec.stable_table()["ups1"].online is False

    def test_flapping_inside_dwell_emits_nothing(self):
        sink = MagicMock()
        rec = make_reconciler(sink)
        settle_online(rec, online())
        sink.on_alert.reset_mock()

        rec.handle_snapshot(offline(), now=20)
        stale = rec.state_of("ups1").pending.token
        rec.handle_snapshot(online(), now=25)
        assert rec.state_of("ups1").pending is None
        # The cancelled timer's event may still arrive
        assert rec.handle_timer_fired("ups1", stale, now=50) == []
        sink.on_alert.assert_not_called()
        assert rec.stable_table()["ups1"].online is True

    def test_offline_after_dwell_then_back_online(self):
        rec = make_reconciler()
        settle_online(rec, online())

        rec.handle_snapshot(offline(), now=100)
        assert rec.state_of("ups1").debounce_state is DebounceState.CONFIRMING_OFFLINE
        alerts = fire(rec, "ups1", 130)
        assert kinds(alerts) == [AlertKind.DEVICE_OFFLINE]
        assert "Connection timeout" in alerts[0].message

        rec.handle_snapshot(online(), now=200)
        alerts = fire(rec, "ups1", 210)
        assert kinds(alerts) == [AlertKind.DEVICE_ONLINE]

    def test_repeated_same_direction_keeps_original_timer(self):
        rec = make_reconciler()
        settle_online(rec, online())
        rec.handle_snapshot(offline(), now=100)
        first = rec.state_of("ups1").pending
        rec.handle_snapshot(offline(), now=110)
        assert rec.state_of("ups1").pending is first
        assert first.fires_at == 130

    def test_stale_token_is_ignored(self):
        rec = make_reconciler()
        rec.handle_snapshot(online(), now=0)
        assert rec.handle_timer_fired("ups1", 999, now=10) == []
        assert rec.state_of("ups1").stable is None

    def test_stable_snapshot_tracks_latest_reading(self):
        rec = make_reconciler()
        settle_online(rec, online(battery_charge=90.0))
        rec.handle_snapshot(online(battery_charge=80.0), now=20)
        assert rec.stable_table()["ups1"].snapshot.battery_charge == 80.0


# ---------------------------------------------------------------------------
# Edge alerts
# ---------------------------------------------------------------------------

class TestEdgeAlerts:
    def test_initial_on_battery_and_low_battery(self):
        rec = make_reconciler()
        alerts = settle_online(rec, online(
            output_source=SOURCE_BATTERY, status="On Battery", battery_charge=15.0,
        ))
        assert kinds(alerts) == [AlertKind.POWER_FAILURE, AlertKind.LOW_BATTERY]
        assert all(a.initial for a in alerts)

    def test_initial_alarm(self):
        rec = make_reconciler()
        alerts = settle_online(rec, online(alarms_present=2))
        assert kinds(alerts) == [AlertKind.CRITICAL_ALARM]

    def test_steady_state_does_not_repeat(self):
        rec = make_reconciler()
        settle_online(rec, online(output_source=SOURCE_BATTERY, battery_charge=15.0))
        for t in range(20, 200, 10):
            assert rec.handle_snapshot(
                online(output_source=SOURCE_BATTERY, battery_charge=15.0), now=t,
            ) == []

    def test_power_failure_and_restore(self):
        rec = make_reconciler()
        settle_online(rec, online())
        alerts = rec.handle_snapshot(online(output_source=SOURCE_BATTERY), now=20)
        assert kinds(alerts) == [AlertKind.POWER_FAILURE]
        assert not alerts[0].initial
        alerts = rec.handle_snapshot(online(output_source=SOURCE_NORMAL), now=30)
        assert kinds(alerts) == [AlertKind.POWER_RESTORED]

    def test_unknown_source_does_not_break_edge(self):
        rec = make_reconciler()
        settle_online(rec, online(output_source=SOURCE_BATTERY))
        assert rec.handle_snapshot(online(output_source=SOURCE_UNKNOWN), now=20) == []
        alerts = rec.handle_snapshot(online(output_source=SOURCE_NORMAL), now=30)
        assert kinds(alerts) == [AlertKind.POWER_RESTORED]

    def test_low_battery_fires_once_per_downward_crossing(self):
        rec = make_reconciler(low_battery_threshold=50.0)
        settle_online(rec, online(battery_charge=60.0))
        fired = []
        for t, charge in enumerate([55.0, 45.0, 50.0, 55.0], start=1):
            fired += rec.handle_snapshot(online(battery_charge=charge), now=20 + t)
        assert kinds(fired) == [AlertKind.LOW_BATTERY]
        assert fired[0].snapshot.battery_charge == 45.0

    def test_temperature_and_load_warnings(self):
        rec = make_reconciler()
        settle_online(rec, online(temperature=30.0, load=50.0))
        alerts = rec.handle_snapshot(online(temperature=36.0, load=85.0), now=20)
        assert kinds(alerts) == [AlertKind.WARNING, AlertKind.WARNING]
        assert {a.detail for a in alerts} == {WARNING_TEMPERATURE, WARNING_LOAD}
        assert rec.handle_snapshot(online(temperature=37.0, load=90.0), now=30) == []

    def test_alarm_edge_from_zero(self):
        rec = make_reconciler()
        settle_online(rec, online(alarms_present=0))
        alerts = rec.handle_snapshot(online(alarms_present=1), now=20)
        assert kinds(alerts) == [AlertKind.CRITICAL_ALARM]
        assert rec.handle_snapshot(online(alarms_present=2), now=30) == []

    def test_offline_readings_do_not_evaluate_edges(self):
        rec = make_reconciler()
        settle_online(rec, online(battery_charge=90.0))
        rec.handle_snapshot(offline(), now=100)
        fire(rec, "ups1", 130)
        assert rec.handle_snapshot(offline(), now=140) == []


# ---------------------------------------------------------------------------
# Preferences and sink isolation
# ---------------------------------------------------------------------------

class TestEmission:
    def test_muted_kind_is_not_delivered(self):
        sink = MagicMock()
        rec = make_reconciler(sink, muted=frozenset({AlertKind.POWER_FAILURE}))
        settle_online(rec, online())
        assert rec.handle_snapshot(online(output_source=SOURCE_BATTERY), now=20) == []
        sink.on_alert.assert_not_called()
        assert rec.get_status_detail()["alerts_muted"] == 1

    def test_alerts_disabled_globally(self):
        sink = MagicMock()
        rec = make_reconciler(sink, alerts_enabled=False)
        settle_online(rec, online(alarms_present=3))
        sink.on_alert.assert_not_called()

    def test_failing_sink_does_not_stop_reconciliation(self):
        sink = MagicMock()
        sink.on_alert.side_effect = RuntimeError("smtp down")
        rec = make_reconciler(sink)
        settle_online(rec, online())
        alerts = rec.handle_snapshot(online(output_source=SOURCE_BATTERY), now=20)
        assert kinds(alerts) == [AlertKind.POWER_FAILURE]
        assert rec.get_status_detail()["sink_errors"] == 1

    def test_settings_from_config_mutes(self):
        config = MagicMock(
            notify_on_battery=False, notify_power_restored=True,
            notify_low_battery=True, notify_device_offline=False,
            notify_critical_alarms=True, notify_warnings=True,
            notify_maintenance=True, offline_dwell=30.0, online_dwell=10.0,
            low_battery_threshold=25.0, temperature_warning=35.0,
            load_warning=80.0, alerts_enabled=True,
        )
        settings = ReconcilerSettings.from_config(config)
        assert not settings.allows(AlertKind.POWER_FAILURE)
        assert not settings.allows(AlertKind.DEVICE_OFFLINE)
        assert not settings.allows(AlertKind.DEVICE_ONLINE)
        assert settings.allows(AlertKind.LOW_BATTERY)
        assert settings.low_battery_threshold == 25.0


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------

class TestMembership:
    def test_removed_device_is_forgotten(self):
        rec = make_reconciler()
        rec.handle_devices_changed([UPSDevice("ups1", "10.0.0.1"), UPSDevice("ups2", "10.0.0.2")])
        settle_online(rec, online("ups1"))
        rec.handle_snapshot(offline("ups2"), now=0)
        token = rec.state_of("ups2").pending.token

        rec.handle_devices_changed([UPSDevice("ups1", "10.0.0.1")])
        assert rec.state_of("ups2") is None
        assert rec.handle_timer_fired("ups2", token, now=30) == []
        assert set(rec.stable_table()) == {"ups1"}

    def test_snapshot_for_unknown_device_is_discarded(self):
        rec = make_reconciler()
        rec.handle_devices_changed([UPSDevice("ups1", "10.0.0.1")])
        rec.handle_snapshot(online("ghost"), now=0)
        assert rec.state_of("ghost") is None

    def test_device_names_use_labels(self):
        rec = make_reconciler()
        rec.handle_devices_changed([UPSDevice("ups1", "10.0.0.1", name="Rack A")])
        assert rec.device_names() == {"ups1": "Rack A"}
        alerts = settle_online(rec, online("ups1", alarms_present=1))
        assert alerts[0].device_name == "Rack A"

    def test_reset_clears_state(self):
        rec = make_reconciler()
        settle_online(rec, online())
        rec.reset()
        assert rec.stable_table() == {}


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

class TestMaintenance:
    def _device(self, years_old: float, dev="ups1"):
        installed = date.today() - timedelta(days=int(years_old * 365.25))
        return UPSDevice(dev, "10.0.0.1", battery_install_date=installed.isoformat(),
                         battery_model="RBC7")

    def test_old_battery_reminder_once_per_interval(self):
        store = MagicMock()
        store.maintenance_sent = {}
        rec = StatusReconciler(ReconcilerSettings(), sink=MagicMock(), state_store=store)
        rec.handle_devices_changed([self._device(3.5)])

        now = time.time()
        alerts = rec.handle_maintenance_check(now)
        assert kinds(alerts) == [AlertKind.MAINTENANCE_DUE]
        assert "RBC7" in alerts[0].message
        store.save.assert_called_once()

        assert rec.handle_maintenance_check(now + 86400) == []
        assert kinds(rec.handle_maintenance_check(now + 31 * 86400)) == [AlertKind.MAINTENANCE_DUE]

    @pytest.mark.parametrize("installed, quiet_day, due_day", [
        ("2023-03-01", date(2026, 2, 28), date(2026, 3, 1)),
        ("2024-02-29", date(2027, 2, 28), date(2027, 3, 1)),
    ])
    def test_age_counts_calendar_years(self, installed, quiet_day, due_day):
        rec = make_reconciler()
        rec.handle_devices_changed([UPSDevice("ups1", "10.0.0.1", battery_install_date=installed)])

        def noon(day):
            return datetime(day.year, day.month, day.day, 12).timestamp()

        assert rec.handle_maintenance_check(noon(quiet_day)) == []
        assert kinds(rec.handle_maintenance_check(noon(due_day))) == [AlertKind.MAINTENANCE_DUE]

    def test_young_or_undated_battery_is_skipped(self):
        rec = make_reconciler()
        rec.handle_devices_changed([
            self._device(1.0, "ups1"),
            UPSDevice("ups2", "10.0.0.2"),
        ])
        assert rec.handle_maintenance_check() == []


# ---------------------------------------------------------------------------
# Stable status
# ---------------------------------------------------------------------------

class TestStableStatus:
    def test_first_stabilisation_reaches_sink(self):
        sink = MagicMock()
        rec = make_reconciler(sink)
        settle_online(rec, online())
        sink.on_alert.assert_not_called()
        sink.on_status.assert_called_once()
        dev_id, status = sink.on_status.call_args.args
        assert dev_id == "ups1"
        assert status.online is True
        assert status.since == 10.0

    def test_published_even_when_alerts_muted(self):
        sink = MagicMock()
        rec = make_reconciler(sink, muted=frozenset({
            AlertKind.DEVICE_ONLINE, AlertKind.DEVICE_OFFLINE,
        }))
        settle_online(rec, online())
        rec.handle_snapshot(offline(), now=20.0)
        fire(rec, "ups1", 50.0)

        sink.on_alert.assert_not_called()
        states = [c.args[1].online for c in sink.on_status.call_args_list]
        assert states == [True, False]

    def test_published_with_alerts_disabled(self):
        sink = MagicMock()
        rec = make_reconciler(sink, alerts_enabled=False)
        rec.handle_snapshot(offline(), now=0.0)
        fire(rec, "ups1", 30.0)
        assert sink.on_status.call_args.args[1].online is False

    def test_failing_status_sink_is_contained(self):
        sink = MagicMock()
        sink.on_status.side_effect = RuntimeError("broker gone")
        rec = make_reconciler(sink)
        settle_online(rec, online())
        assert rec.stable_table()["ups1"].online is True
        assert rec.get_status_detail()["sink_errors"] == 1

    def test_stable_table_is_a_copy(self):
        rec = make_reconciler()
        settle_online(rec, online(battery_charge=90.0))
        table = rec.stable_table()
        rec.handle_snapshot(online(battery_charge=80.0), now=20.0)
        assert table["ups1"].snapshot.battery_charge == 90.0
        assert rec.stable_table()["ups1"].snapshot.battery_charge == 80.0


# ---------------------------------------------------------------------------
# Owner loop
# ---------------------------------------------------------------------------

class TestRunLoop:
    @pytest.mark.asyncio
    async def test_timers_drive_transitions(self):
        sink = MagicMock()
        rec = make_reconciler(sink, online_dwell=0.05, offline_dwell=0.05)
        task = asyncio.get_running_loop().create_task(rec.run())

        rec.submit(online(alarms_present=1))
        await asyncio.sleep(0.2)
        assert rec.stable_table()["ups1"].online is True
        assert sink.on_alert.call_args[0][0].kind is AlertKind.CRITICAL_ALARM

        rec.submit(offline())
        await asyncio.sleep(0.2)
        assert rec.stable_table()["ups1"].online is False
        assert sink.on_alert.call_args[0][0].kind is AlertKind.DEVICE_OFFLINE

        rec.stop()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_timers(self):
        rec = make_reconciler(online_dwell=10.0)
        task = asyncio.get_running_loop().create_task(rec.run())
        rec.submit(online())
        await asyncio.sleep(0.05)
        pending = rec.state_of("ups1").pending
        assert pending.handle is not None

        rec.stop()
        await asyncio.wait_for(task, timeout=1)
        assert pending.handle is None
