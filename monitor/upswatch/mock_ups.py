# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Simulated UPS for running the monitor without real hardware.

Each device cycles through mains operation, an occasional utility
outage that drains the battery, and a recharge once power returns.
"""

import logging
import math
import random
import time
from dataclasses import dataclass

from .ups_config import UPSDevice
from .ups_model import SOURCE_BATTERY, SOURCE_NORMAL, StatusSnapshot

logger = logging.getLogger(__name__)


@dataclass
class _SimState:
    charge: float = 100.0
    on_battery: bool = False
    outage_until: float = 0.0
    next_outage: float = 0.0
    last_update: float = 0.0


class MockUPSClient:
    """UPSClient that fabricates plausible readings per device."""

    def __init__(self, outage_interval: float = 1800.0, outage_duration: float = 240.0,
                 capacity_minutes: float = 45.0, seed: int | None = None):
        self._outage_interval = outage_interval
        self._outage_duration = outage_duration
        self._capacity_minutes = capacity_minutes
        self._random = random.Random(seed)
        self._states: dict[str, _SimState] = {}
        self._start_time = time.time()

    def _state(self, device_id: str, now: float) -> _SimState:
        st = self._states.get(device_id)
        if st is None:
            st = _SimState(
                last_update=now,
                next_outage=now + self._random.uniform(0.5, 1.5) * self._outage_interval,
            )
            self._states[device_id] = st
        return st

    def _advance(self, st: _SimState, now: float, load: float):
        elapsed_min = max(0.0, now - st.last_update) / 60.0
        st.last_update = now

        if not st.on_battery and now >= st.next_outage:
            st.on_battery = True
            st.outage_until = now + self._outage_duration
            logger.info("Mock: simulated utility outage for %.0fs", self._outage_duration)
        elif st.on_battery and now >= st.outage_until:
            st.on_battery = False
            st.next_outage = now + self._random.uniform(0.5, 1.5) * self._outage_interval
            logger.info("Mock: simulated utility power restored")

        if st.on_battery:
            # Higher load drains faster
            drain = 100.0 / self._capacity_minutes * (0.5 + load / 100.0)
            st.charge = max(0.0, st.charge - drain * elapsed_min)
        else:
            st.charge = min(100.0, st.charge + 2.0 * elapsed_min)

    async def query(self, device: UPSDevice) -> StatusSnapshot:
        now = time.time()
        st = self._state(device.device_id, now)
        t = now - self._start_time
        load = 35.0 + 10.0 * math.sin(t / 600.0) + self._random.uniform(-2, 2)
        self._advance(st, now, load)

        runtime = int(self._capacity_minutes * st.charge / 100.0 * (50.0 / max(load, 1.0)))
        charging = not st.on_battery and st.charge < 95.0
        mains = 120.0 + self._random.uniform(-1.5, 1.5)
        low = st.on_battery and st.charge <= 20.0
        return StatusSnapshot(
            device_id=device.device_id,
            online=True,
            status=("On Battery (Low)" if low else "On Battery") if st.on_battery else "Online",
            output_source=SOURCE_BATTERY if st.on_battery else SOURCE_NORMAL,
            battery_charge=round(st.charge, 1),
            battery_runtime=runtime,
            battery_voltage=round(24.0 + 3.2 * st.charge / 100.0, 2),
            battery_current=(-4.0 if st.on_battery else (1.5 if charging else 0.0)),
            battery_temperature=round(28.0 + self._random.uniform(-0.5, 0.5), 1),
            temperature=round(28.0 + self._random.uniform(-0.5, 0.5), 1),
            input_voltage=0.0 if st.on_battery else round(mains, 1),
            input_frequency=0.0 if st.on_battery else 60.0,
            output_voltage=round(mains, 1),
            output_frequency=60.0,
            output_power=round(900.0 * load / 100.0, 0),
            load=round(load, 1),
            alarms_present=1 if low else 0,
            is_charging=charging,
            manufacturer="UPS Watch",
            model="Simulated 1500VA",
            ups_name=device.ups_name or device.device_id,
        )
