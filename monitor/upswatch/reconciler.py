# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Status reconciler -- debounced online/offline state and edge alerts.

Raw poll snapshots flap.  A device only changes its stable direction once
the new raw direction has held for a dwell time (longer for offline than
for online), and alerts fire on transitions between consecutive stable
readings, never on a steady state.

All per-device state is owned by one task that drains an event queue;
dwell timers and the poller only ever enqueue events.  The ``handle_*``
methods are the synchronous core and can be driven directly in tests.
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date

from .transport import NotificationSink
from .ups_config import UPSDevice
from .ups_model import (
    SOURCE_BATTERY,
    SOURCE_UNKNOWN,
    WARNING_LOAD,
    WARNING_TEMPERATURE,
    Alert,
    AlertKind,
    StableStatus,
    StatusSnapshot,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class DebounceState(enum.Enum):
    UNKNOWN = "unknown"
    CONFIRMING_ONLINE = "confirming_online"
    CONFIRMING_OFFLINE = "confirming_offline"
    STABLE_ONLINE = "stable_online"
    STABLE_OFFLINE = "stable_offline"


@dataclass
class ReconcilerSettings:
    offline_dwell: float = 30.0
    online_dwell: float = 10.0
    low_battery_threshold: float = 20.0
    temperature_warning: float = 35.0
    load_warning: float = 80.0
    maintenance_age_years: int = 3
    maintenance_interval_days: int = 30
    alerts_enabled: bool = True
    # Kinds the user does not want to hear about
    muted: frozenset = frozenset()

    @classmethod
    def from_config(cls, config) -> "ReconcilerSettings":
        muted = set()
        if not config.notify_on_battery:
            muted.add(AlertKind.POWER_FAILURE)
        if not config.notify_power_restored:
            muted.add(AlertKind.POWER_RESTORED)
        if not config.notify_low_battery:
            muted.add(AlertKind.LOW_BATTERY)
        if not config.notify_device_offline:
            muted.update({AlertKind.DEVICE_OFFLINE, AlertKind.DEVICE_ONLINE})
        if not config.notify_critical_alarms:
            muted.add(AlertKind.CRITICAL_ALARM)
        if not config.notify_warnings:
            muted.add(AlertKind.WARNING)
        if not config.notify_maintenance:
            muted.add(AlertKind.MAINTENANCE_DUE)
        return cls(
            offline_dwell=config.offline_dwell,
            online_dwell=config.online_dwell,
            low_battery_threshold=config.low_battery_threshold,
            temperature_warning=config.temperature_warning,
            load_warning=config.load_warning,
            alerts_enabled=config.alerts_enabled,
            muted=frozenset(muted),
        )

    def allows(self, kind: AlertKind) -> bool:
        return self.alerts_enabled and kind not in self.muted


@dataclass
class PendingTransition:
    target: bool                  # True = going online
    started_at: float
    fires_at: float
    token: int
    handle: asyncio.TimerHandle | None = None

    def cancel(self):
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


@dataclass
class EdgeMemory:
    """Last known value of each edge-triggering reading while online."""
    output_source: str | None = None
    battery_charge: float | None = None
    temperature: float | None = None
    load: float | None = None
    alarms_present: int | None = None

    def absorb(self, snapshot: StatusSnapshot):
        if snapshot.output_source != SOURCE_UNKNOWN:
            self.output_source = snapshot.output_source
        if snapshot.battery_charge is not None:
            self.battery_charge = snapshot.battery_charge
        if snapshot.temperature is not None:
            self.temperature = snapshot.temperature
        if snapshot.load is not None:
            self.load = snapshot.load
        if snapshot.alarms_present is not None:
            self.alarms_present = snapshot.alarms_present


@dataclass
class ReconciliationState:
    device_id: str
    raw_online: bool | None = None
    latest: StatusSnapshot | None = None
    pending: PendingTransition | None = None
    stable: StableStatus | None = None
    edges: EdgeMemory | None = None       # None until the first stable online reading

    @property
    def debounce_state(self) -> DebounceState:
        if self.pending is not None:
            return (DebounceState.CONFIRMING_ONLINE if self.pending.target
                    else DebounceState.CONFIRMING_OFFLINE)
        if self.stable is None:
            return DebounceState.UNKNOWN
        return DebounceState.STABLE_ONLINE if self.stable.online else DebounceState.STABLE_OFFLINE


# ---------------------------------------------------------------------------
# Queue events
# ---------------------------------------------------------------------------

@dataclass
class SnapshotEvent:
    snapshot: StatusSnapshot


@dataclass
class TimerFired:
    device_id: str
    token: int


@dataclass
class DevicesChanged:
    devices: list[UPSDevice] = field(default_factory=list)


@dataclass
class MaintenanceCheck:
    now: float | None = None


_STOP = object()


class StatusReconciler:
    def __init__(self, settings: ReconcilerSettings | None = None,
                 sink: NotificationSink | None = None,
                 state_store=None):
        self.settings = settings or ReconcilerSettings()
        self._sink = sink
        self._state_store = state_store
        self._states: dict[str, ReconciliationState] = {}
        self._devices: dict[str, UPSDevice] = {}
        self._members: set[str] | None = None      # None until the first device sync
        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._next_token = 0
        self._maintenance_sent: dict[str, float] = (
            state_store.maintenance_sent if state_store is not None else {}
        )
        self._alerts_emitted = 0
        self._alerts_muted = 0
        self._sink_errors = 0
        self._stale_timers = 0

    # ------------------------------------------------------------------
    # Producer side (safe to call from any task)
    # ------------------------------------------------------------------

    def submit(self, snapshot: StatusSnapshot):
        self._queue.put_nowait(SnapshotEvent(snapshot))

    def sync_devices(self, devices: list[UPSDevice]):
        self._queue.put_nowait(DevicesChanged(list(devices)))

    def check_maintenance(self, now: float | None = None):
        self._queue.put_nowait(MaintenanceCheck(now))

    def stable_table(self) -> dict[str, StableStatus]:
        """Copy of the current stable status per device."""
        return {dev_id: replace(st.stable) for dev_id, st in self._states.items()
                if st.stable is not None}

    def device_names(self) -> dict[str, str]:
        return {dev_id: d.label for dev_id, d in self._devices.items()}

    def state_of(self, device_id: str) -> ReconciliationState | None:
        return self._states.get(device_id)

    # ------------------------------------------------------------------
    # Owner loop
    # ------------------------------------------------------------------

    async def run(self):
        """Drain the event queue until stop() is called."""
        self._loop = asyncio.get_running_loop()
        logger.info(
            "Reconciler running (offline dwell %.0fs, online dwell %.0fs)",
            self.settings.offline_dwell, self.settings.online_dwell,
        )
        try:
            while True:
                event = await self._queue.get()
                if event is _STOP:
                    break
                try:
                    self._dispatch(event)
                except Exception:
                    logger.exception("Reconciler failed handling %s", type(event).__name__)
        finally:
            self._cancel_all_timers()
            self._loop = None

    def stop(self):
        self._queue.put_nowait(_STOP)

    def _dispatch(self, event):
        if isinstance(event, SnapshotEvent):
            self.handle_snapshot(event.snapshot)
        elif isinstance(event, TimerFired):
            self.handle_timer_fired(event.device_id, event.token)
        elif isinstance(event, DevicesChanged):
            self.handle_devices_changed(event.devices)
        elif isinstance(event, MaintenanceCheck):
            self.handle_maintenance_check(event.now)
        else:
            logger.warning("Reconciler ignoring unknown event %r", event)

    # ------------------------------------------------------------------
    # Debounce
    # ------------------------------------------------------------------

    def handle_snapshot(self, snapshot: StatusSnapshot,
                        now: float | None = None) -> list[Alert]:
        """Apply one raw snapshot. Returns the alerts it emitted."""
        now = time.time() if now is None else now
        dev_id = snapshot.device_id
        if self._members is not None and dev_id not in self._members:
            logger.debug("Discarding snapshot for unconfigured device %s", dev_id)
            return []

        st = self._states.get(dev_id)
        if st is None:
            st = self._states[dev_id] = ReconciliationState(dev_id)
            logger.info("[%s] First observation (%s)", dev_id,
                        "online" if snapshot.online else "offline")
        st.raw_online = snapshot.online
        st.latest = snapshot

        if st.stable is not None and snapshot.online == st.stable.online:
            if st.pending is not None:
                logger.info("[%s] Raw status back to %s, dropping pending transition",
                            dev_id, _direction(snapshot.online))
                st.pending.cancel()
                st.pending = None
            st.stable.snapshot = snapshot
            if snapshot.online:
                return self._evaluate_online(st, snapshot, now)
            return []

        if st.pending is None or st.pending.target != snapshot.online:
            self._start_transition(st, snapshot.online, now)
        return []

    def _start_transition(self, st: ReconciliationState, target: bool, now: float):
        if st.pending is not None:
            st.pending.cancel()
        dwell = self.settings.online_dwell if target else self.settings.offline_dwell
        self._next_token += 1
        pending = PendingTransition(
            target=target, started_at=now, fires_at=now + dwell, token=self._next_token,
        )
        if self._loop is not None:
            pending.handle = self._loop.call_later(
                dwell, self._queue.put_nowait, TimerFired(st.device_id, pending.token),
            )
        st.pending = pending
        logger.debug("[%s] Confirming %s for %.0fs", st.device_id, _direction(target), dwell)

    def handle_timer_fired(self, device_id: str, token: int,
                           now: float | None = None) -> list[Alert]:
        """A dwell timer elapsed. Stale tokens (cancelled or removed) are ignored."""
        now = time.time() if now is None else now
        st = self._states.get(device_id)
        if st is None or st.pending is None or st.pending.token != token:
            self._stale_timers += 1
            return []

        target = st.pending.target
        st.pending = None
        snapshot = st.latest
        if snapshot is None or snapshot.online != target:
            return []

        previous = st.stable
        st.stable = StableStatus(online=target, snapshot=snapshot, since=now)
        logger.info("[%s] Stable %s (%s)", device_id, _direction(target), snapshot.status)
        self._publish_status(device_id, st.stable)

        alerts = []
        if previous is not None and previous.online != target:
            name = self._name(device_id)
            if target:
                alerts += self._emit(Alert(
                    AlertKind.DEVICE_ONLINE, device_id, name,
                    f"{name} is back online", timestamp=now, snapshot=snapshot,
                ))
            else:
                alerts += self._emit(Alert(
                    AlertKind.DEVICE_OFFLINE, device_id, name,
                    f"{name} is offline: {snapshot.status}", timestamp=now,
                    snapshot=snapshot,
                ))
        if target:
            alerts += self._evaluate_online(st, snapshot, now)
        return alerts

    # ------------------------------------------------------------------
    # Edge detection
    # ------------------------------------------------------------------

    def _evaluate_online(self, st: ReconciliationState, snapshot: StatusSnapshot,
                         now: float) -> list[Alert]:
        if st.edges is None:
            st.edges = EdgeMemory()
            alerts = self._initial_alerts(snapshot, now)
        else:
            alerts = self._edge_alerts(st.edges, snapshot, now)
        st.edges.absorb(snapshot)
        return alerts

    def _initial_alerts(self, snap: StatusSnapshot, now: float) -> list[Alert]:
        """Absolute checks for the first stable online reading of a device."""
        name = self._name(snap.device_id)
        threshold = self.settings.low_battery_threshold
        alerts = []
        if snap.on_battery:
            alerts += self._emit(Alert(
                AlertKind.POWER_FAILURE, snap.device_id, name,
                f"{name} is already running on battery{_battery_suffix(snap)}",
                timestamp=now, initial=True, snapshot=snap,
            ))
        if snap.battery_charge is not None and snap.battery_charge <= threshold:
            alerts += self._emit(Alert(
                AlertKind.LOW_BATTERY, snap.device_id, name,
                f"{name} battery at {snap.battery_charge:.0f}% "
                f"(threshold {threshold:.0f}%)",
                timestamp=now, initial=True, snapshot=snap,
            ))
        if snap.alarms_present:
            alerts += self._emit(Alert(
                AlertKind.CRITICAL_ALARM, snap.device_id, name,
                f"{name} reports {snap.alarms_present} active alarm(s)",
                timestamp=now, initial=True, snapshot=snap,
            ))
        return alerts

    def _edge_alerts(self, prev: EdgeMemory, snap: StatusSnapshot,
                     now: float) -> list[Alert]:
        dev_id = snap.device_id
        name = self._name(dev_id)
        s = self.settings
        alerts = []

        source = snap.output_source
        if source != SOURCE_UNKNOWN and prev.output_source is not None:
            if prev.output_source != SOURCE_BATTERY and source == SOURCE_BATTERY:
                alerts += self._emit(Alert(
                    AlertKind.POWER_FAILURE, dev_id, name,
                    f"{name} switched to battery power{_battery_suffix(snap)}",
                    timestamp=now, snapshot=snap,
                ))
            elif prev.output_source == SOURCE_BATTERY and source != SOURCE_BATTERY:
                alerts += self._emit(Alert(
                    AlertKind.POWER_RESTORED, dev_id, name,
                    f"Utility power restored for {name}",
                    timestamp=now, snapshot=snap,
                ))

        charge = snap.battery_charge
        if (charge is not None and prev.battery_charge is not None
                and prev.battery_charge > s.low_battery_threshold >= charge):
            alerts += self._emit(Alert(
                AlertKind.LOW_BATTERY, dev_id, name,
                f"{name} battery at {charge:.0f}% "
                f"(threshold {s.low_battery_threshold:.0f}%)",
                timestamp=now, snapshot=snap,
            ))

        temp = snap.temperature
        if (temp is not None and prev.temperature is not None
                and prev.temperature <= s.temperature_warning < temp):
            alerts += self._emit(Alert(
                AlertKind.WARNING, dev_id, name,
                f"{name} temperature {temp:.1f}°C exceeds {s.temperature_warning:.0f}°C",
                timestamp=now, detail=WARNING_TEMPERATURE, snapshot=snap,
            ))

        load = snap.load
        if (load is not None and prev.load is not None
                and prev.load <= s.load_warning < load):
            alerts += self._emit(Alert(
                AlertKind.WARNING, dev_id, name,
                f"{name} load {load:.0f}% exceeds {s.load_warning:.0f}%",
                timestamp=now, detail=WARNING_LOAD, snapshot=snap,
            ))

        alarms = snap.alarms_present
        if alarms and prev.alarms_present == 0:
            alerts += self._emit(Alert(
                AlertKind.CRITICAL_ALARM, dev_id, name,
                f"{name} reports {alarms} active alarm(s)",
                timestamp=now, snapshot=snap,
            ))
        return alerts

    # ------------------------------------------------------------------
    # Device membership and maintenance
    # ------------------------------------------------------------------

    def handle_devices_changed(self, devices: list[UPSDevice]):
        """Adopt the enabled device list; forget devices that left it."""
        self._devices = {d.device_id: d for d in devices}
        self._members = set(self._devices)
        for dev_id in list(self._states):
            if dev_id not in self._members:
                self.remove_device(dev_id)

    def remove_device(self, device_id: str):
        st = self._states.pop(device_id, None)
        if st is None:
            return
        if st.pending is not None:
            st.pending.cancel()
        logger.info("[%s] Removed from reconciliation", device_id)

    def handle_maintenance_check(self, now: float | None = None) -> list[Alert]:
        """MaintenanceDue for batteries at least three years old, once per 30 days."""
        now = time.time() if now is None else now
        today = date.fromtimestamp(now)
        interval = self.settings.maintenance_interval_days * SECONDS_PER_DAY
        alerts = []
        changed = False
        for dev_id, device in self._devices.items():
            installed = device.battery_installed_on
            if installed is None:
                continue
            if today < _years_after(installed, self.settings.maintenance_age_years):
                continue
            last = self._maintenance_sent.get(dev_id)
            if last is not None and now - last < interval:
                continue
            self._maintenance_sent[dev_id] = now
            changed = True
            years = (today - installed).days / 365.25
            battery = f" ({device.battery_model})" if device.battery_model else ""
            alerts += self._emit(Alert(
                AlertKind.MAINTENANCE_DUE, dev_id, device.label,
                f"{device.label} battery{battery} installed {installed.isoformat()} "
                f"is {years:.1f} years old; consider replacement",
                timestamp=now,
            ))
        if changed and self._state_store is not None:
            try:
                self._state_store.save()
            except Exception:
                logger.exception("Failed to persist maintenance reminders")
        return alerts

    def reset(self):
        """Forget all reconciliation state and maintenance reminders."""
        self._cancel_all_timers()
        self._states.clear()
        self._maintenance_sent.clear()
        logger.info("Reconciliation state reset")

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _emit(self, alert: Alert) -> list[Alert]:
        if not self.settings.allows(alert.kind):
            self._alerts_muted += 1
            logger.debug("[%s] %s muted", alert.device_id, alert.kind.value)
            return []
        self._alerts_emitted += 1
        logger.warning("[%s] ALERT %s: %s", alert.device_id, alert.title, alert.message)
        if self._sink is not None:
            try:
                self._sink.on_alert(alert)
            except Exception:
                self._sink_errors += 1
                if self._sink_errors <= 3 or self._sink_errors % 100 == 0:
                    logger.exception("Notification sink failed for %s", alert.kind.value)
        return [alert]

    def _publish_status(self, device_id: str, stable: StableStatus):
        """Every stabilisation reaches the sink, whatever the alert preferences."""
        if self._sink is None:
            return
        try:
            self._sink.on_status(device_id, replace(stable))
        except Exception:
            self._sink_errors += 1
            if self._sink_errors <= 3 or self._sink_errors % 100 == 0:
                logger.exception("Notification sink failed for %s status", device_id)

    def _name(self, device_id: str) -> str:
        device = self._devices.get(device_id)
        return device.label if device is not None else device_id

    def _cancel_all_timers(self):
        for st in self._states.values():
            if st.pending is not None:
                st.pending.cancel()

    def get_status_detail(self) -> dict:
        return {
            "devices": {
                dev_id: st.debounce_state.value for dev_id, st in self._states.items()
            },
            "alerts_emitted": self._alerts_emitted,
            "alerts_muted": self._alerts_muted,
            "sink_errors": self._sink_errors,
            "stale_timers": self._stale_timers,
            "queue_depth": self._queue.qsize(),
        }


def _years_after(day: date, years: int) -> date:
    """Same calendar day ``years`` later; Feb 29 rolls to Mar 1."""
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        return date(day.year + years, 3, 1)


def _direction(online: bool) -> str:
    return "online" if online else "offline"


def _battery_suffix(snap: StatusSnapshot) -> str:
    parts = []
    if snap.battery_charge is not None:
        parts.append(f"{snap.battery_charge:.0f}% charge")
    if snap.battery_runtime is not None:
        parts.append(f"{snap.formatted_runtime} remaining")
    return f" ({', '.join(parts)})" if parts else ""
