# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""SNMP protocol client -- UPS-MIB polling with vendor fallbacks.

Works against any agent that speaks RFC 1628.  Every field is fetched
independently and a missing or garbled OID just leaves that field empty;
only the initial sysDescr liveness probe is strict.
"""

import asyncio
import logging
import time

from .transport import SnmpGetter, UPSNetworkError
from .ups_config import UPSDevice
from .ups_model import (
    BATTERY_STATUS_CHARGING,
    BATTERY_STATUS_DISCHARGING,
    OID_ALARMS_PRESENT,
    OID_BATTERY_CHARGE,
    OID_BATTERY_CURRENT,
    OID_BATTERY_RUNTIME,
    OID_BATTERY_STATUS,
    OID_BATTERY_TEMPERATURE,
    OID_BATTERY_VOLTAGE,
    OID_INPUT_FREQUENCY,
    OID_INPUT_LINE_BADS,
    OID_INPUT_VOLTAGE,
    OID_MANUFACTURER,
    OID_MODEL,
    OID_OUTPUT_FREQUENCY,
    OID_OUTPUT_LOAD,
    OID_OUTPUT_POWER,
    OID_OUTPUT_SOURCE,
    OID_OUTPUT_VOLTAGE,
    OID_SECONDS_ON_BATTERY,
    OID_SYS_DESCR,
    OID_UPS_NAME,
    RUNTIME_ALTERNATE_OIDS,
    SOURCE_BATTERY,
    SnmpType,
    SnmpValue,
    StatusSnapshot,
    parse_battery_status,
    parse_output_source,
    parse_ups_status,
)

logger = logging.getLogger(__name__)

FIELD_OIDS = (
    OID_MANUFACTURER,
    OID_MODEL,
    OID_UPS_NAME,
    OID_BATTERY_STATUS,
    OID_BATTERY_CHARGE,
    OID_BATTERY_RUNTIME,
    OID_BATTERY_VOLTAGE,
    OID_BATTERY_CURRENT,
    OID_BATTERY_TEMPERATURE,
    OID_INPUT_VOLTAGE,
    OID_INPUT_FREQUENCY,
    OID_INPUT_LINE_BADS,
    OID_OUTPUT_SOURCE,
    OID_OUTPUT_VOLTAGE,
    OID_OUTPUT_FREQUENCY,
    OID_OUTPUT_LOAD,
    OID_OUTPUT_POWER,
    OID_ALARMS_PRESENT,
    OID_SECONDS_ON_BATTERY,
)

# Tried in order; the first scaled value inside the range wins.
VOLTAGE_SCALES = (1.0, 0.1, 0.01, 10.0)
LINE_VOLTAGE_RANGE = (100.0, 300.0)
BATTERY_VOLTAGE_RANGE = (6.0, 60.0)

# Plain numeric runtimes below this are minutes, at or above it seconds.
RUNTIME_SECONDS_CUTOFF = 1000
CHARGING_RUNTIME_MINUTES = 10000
CHARGED_PERCENT = 95.0


# ---------------------------------------------------------------------------
# Decoding helpers
# ---------------------------------------------------------------------------

def classify_snmp_error(exc: BaseException) -> str:
    """Map a failed liveness probe to a human readable status string."""
    text = str(exc) or exc.__class__.__name__
    lowered = text.lower()
    if isinstance(exc, ConnectionRefusedError) or "connection refused" in lowered:
        return "SNMP service not running or port blocked"
    if (isinstance(exc, (asyncio.TimeoutError, TimeoutError))
            or "timeout" in lowered or "timed out" in lowered):
        return "SNMP timeout - check network connectivity"
    if "no route to host" in lowered:
        return "Host unreachable"
    if "network is unreachable" in lowered:
        return "Network unreachable"
    return f"SNMP error: {text}"


def decode_voltage(raw: int, valid_range: tuple[float, float] = LINE_VOLTAGE_RANGE) -> float:
    """Guess the unit of a raw voltage reading.

    Agents disagree on whether they report volts, decivolts or
    centivolts, so try each scale and keep the first plausible one.
    """
    low, high = valid_range
    for factor in VOLTAGE_SCALES:
        volts = raw * factor
        if low <= volts <= high:
            return round(volts, 2)
    return raw / 10.0


def runtime_minutes(value: SnmpValue | None) -> int | None:
    """Runtime in minutes from a runtime OID value, None if unusable."""
    if value is None or value.is_null:
        return None
    raw = value.as_int()
    if raw is None or raw < 0:
        return None
    if value.kind is SnmpType.TIMETICKS:
        return raw // 100 // 60
    if raw < RUNTIME_SECONDS_CUTOFF:
        return raw
    return raw // 60


def infer_charging(battery_status_code: int | None,
                   battery_current: float | None,
                   output_source: str,
                   charge: float | None,
                   runtime: int | None) -> bool | None:
    """Charging flag from the strongest signal the agent offers.

    Order: battery status code, then current sign, then a default
    derived from the power source and charge level.
    """
    if battery_status_code == BATTERY_STATUS_CHARGING:
        return True
    if battery_status_code == BATTERY_STATUS_DISCHARGING:
        return False
    if battery_current:
        return battery_current > 0
    if output_source == SOURCE_BATTERY:
        return False
    # Unverified against hardware: some agents report huge runtimes while
    # the battery is topping up.
    if runtime is not None and runtime > CHARGING_RUNTIME_MINUTES:
        return True
    if charge is not None:
        return charge < CHARGED_PERCENT
    return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SNMPClient:
    """UPS-MIB protocol client on top of an injected SNMP GET primitive."""

    def __init__(self, getter: SnmpGetter, batch_size: int = 10):
        self._getter = getter
        self._batch_size = batch_size
        self._last_poll_duration: float | None = None

    async def query(self, device: UPSDevice) -> StatusSnapshot:
        """Poll one UPS. Raises UPSNetworkError when the agent is unreachable."""
        await self._probe(device)

        start = time.monotonic()
        values = await self.get_many(device, FIELD_OIDS)
        snapshot = self._decode(device, values)
        snapshot.battery_runtime = await self._resolve_runtime(
            device, values.get(OID_BATTERY_RUNTIME),
        )
        snapshot.is_charging = infer_charging(
            self._int(values, OID_BATTERY_STATUS),
            snapshot.battery_current,
            snapshot.output_source,
            snapshot.battery_charge,
            snapshot.battery_runtime,
        )
        self._last_poll_duration = time.monotonic() - start
        return snapshot

    async def _probe(self, device: UPSDevice):
        try:
            await self._getter.get(
                device.host, device.community, OID_SYS_DESCR, port=device.port,
            )
        except Exception as e:
            detail = classify_snmp_error(e)
            logger.debug("SNMP %s: liveness probe failed: %s", device.host, e)
            raise UPSNetworkError(detail) from e

    async def _safe_get(self, device: UPSDevice, oid: str) -> SnmpValue | None:
        try:
            value = await self._getter.get(
                device.host, device.community, oid, port=device.port,
            )
        except Exception as e:
            logger.debug("SNMP %s: GET %s failed: %s", device.host, oid, e)
            return None
        return None if value.is_null else value

    async def get_many(self, device: UPSDevice,
                       oids: tuple[str, ...] | list[str]) -> dict[str, SnmpValue]:
        """GET each OID independently in parallel batches; misses are dropped."""
        results: dict[str, SnmpValue] = {}
        for i in range(0, len(oids), self._batch_size):
            batch = oids[i:i + self._batch_size]
            values = await asyncio.gather(
                *(self._safe_get(device, oid) for oid in batch),
                return_exceptions=True,
            )
            for oid, value in zip(batch, values):
                if isinstance(value, Exception):
                    logger.error("SNMP GET %s raised: %s", oid, value)
                elif value is not None:
                    results[oid] = value
        return results

    async def _resolve_runtime(self, device: UPSDevice,
                               primary: SnmpValue | None) -> int | None:
        minutes = runtime_minutes(primary)
        if minutes:
            return minutes
        for oid in RUNTIME_ALTERNATE_OIDS:
            alternate = runtime_minutes(await self._safe_get(device, oid))
            if alternate:
                logger.debug("SNMP %s: runtime from vendor OID %s", device.host, oid)
                return alternate
        return minutes

    @staticmethod
    def _int(values: dict[str, SnmpValue], oid: str) -> int | None:
        v = values.get(oid)
        return v.as_int() if v is not None else None

    @staticmethod
    def _str(values: dict[str, SnmpValue], oid: str) -> str:
        v = values.get(oid)
        return (v.as_str() or "") if v is not None else ""

    def _decode(self, device: UPSDevice, values: dict[str, SnmpValue]) -> StatusSnapshot:
        def i(oid: str) -> int | None:
            return self._int(values, oid)

        snapshot = StatusSnapshot(
            device_id=device.device_id,
            online=True,
            status="Online",
            manufacturer=self._str(values, OID_MANUFACTURER),
            model=self._str(values, OID_MODEL),
            ups_name=self._str(values, OID_UPS_NAME),
        )

        source_code = i(OID_OUTPUT_SOURCE)
        if source_code is not None:
            snapshot.status = parse_ups_status(source_code)
            snapshot.output_source = parse_output_source(source_code)

        battery_code = i(OID_BATTERY_STATUS)
        if battery_code is not None:
            snapshot.battery_status = parse_battery_status(battery_code)

        charge = i(OID_BATTERY_CHARGE)
        if charge is not None:
            snapshot.battery_charge = float(charge)

        raw = i(OID_BATTERY_VOLTAGE)
        if raw is not None:
            snapshot.battery_voltage = decode_voltage(raw, BATTERY_VOLTAGE_RANGE)
        raw = i(OID_BATTERY_CURRENT)
        if raw is not None:
            snapshot.battery_current = round(raw * 0.1, 2)
        raw = i(OID_BATTERY_TEMPERATURE)
        if raw is not None:
            snapshot.battery_temperature = float(raw)
            snapshot.temperature = float(raw)

        raw = i(OID_INPUT_VOLTAGE)
        if raw is not None:
            snapshot.input_voltage = decode_voltage(raw)
        raw = i(OID_OUTPUT_VOLTAGE)
        if raw is not None:
            snapshot.output_voltage = decode_voltage(raw)
        raw = i(OID_INPUT_FREQUENCY)
        if raw is not None:
            snapshot.input_frequency = raw / 10.0
        raw = i(OID_OUTPUT_FREQUENCY)
        if raw is not None:
            snapshot.output_frequency = raw / 10.0

        raw = i(OID_OUTPUT_LOAD)
        if raw is not None:
            snapshot.load = float(raw)
        raw = i(OID_OUTPUT_POWER)
        if raw is not None:
            snapshot.output_power = float(raw)

        snapshot.alarms_present = i(OID_ALARMS_PRESENT)
        snapshot.power_failures = i(OID_INPUT_LINE_BADS)
        snapshot.seconds_on_battery = i(OID_SECONDS_ON_BATTERY)
        return snapshot

    def get_health(self) -> dict:
        health = {
            "last_poll_duration_ms": (
                round(self._last_poll_duration * 1000, 1)
                if self._last_poll_duration is not None else None
            ),
        }
        getter_health = getattr(self._getter, "get_health", None)
        if callable(getter_health):
            health.update(getter_health())
        return health
