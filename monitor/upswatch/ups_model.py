# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""OID constants, lookup tables and data models for UPS monitoring."""

import enum
import time
from dataclasses import asdict, dataclass, field

# RFC 1628 UPS-MIB base
BASE_OID = "1.3.6.1.2.1.33.1"

OID_SYS_DESCR = "1.3.6.1.2.1.1.1.0"

# Identity
OID_MANUFACTURER = f"{BASE_OID}.1.1.0"
OID_MODEL = f"{BASE_OID}.1.3.0"
OID_UPS_NAME = f"{BASE_OID}.1.5.0"
OID_SECONDS_ON_BATTERY = f"{BASE_OID}.1.2.0"

# Battery
OID_BATTERY_STATUS = f"{BASE_OID}.2.1.0"
OID_BATTERY_RUNTIME = f"{BASE_OID}.2.3.0"        # minutes
OID_BATTERY_CHARGE = f"{BASE_OID}.2.4.0"         # percent
OID_BATTERY_VOLTAGE = f"{BASE_OID}.2.5.0"        # 0.1V
OID_BATTERY_CURRENT = f"{BASE_OID}.2.6.0"        # 0.1A, signed
OID_BATTERY_TEMPERATURE = f"{BASE_OID}.2.7.0"    # degrees C

# Input
OID_INPUT_LINE_BADS = f"{BASE_OID}.3.1.0"
OID_INPUT_FREQUENCY = f"{BASE_OID}.3.3.1.2.1"    # 0.1Hz
OID_INPUT_VOLTAGE = f"{BASE_OID}.3.3.1.3.1"

# Output
OID_OUTPUT_SOURCE = f"{BASE_OID}.4.1.0"
OID_UPS_STATUS = OID_OUTPUT_SOURCE
OID_OUTPUT_FREQUENCY = f"{BASE_OID}.4.2.0"       # 0.1Hz
OID_OUTPUT_VOLTAGE = f"{BASE_OID}.4.4.1.2.1"
OID_OUTPUT_POWER = f"{BASE_OID}.4.4.1.4.1"       # watts
OID_OUTPUT_LOAD = f"{BASE_OID}.4.4.1.5.1"        # percent

# Alarms
OID_ALARMS_PRESENT = f"{BASE_OID}.6.1.0"

# Vendor runtime alternates, tried in this order when the standard OID
# reports zero or nothing.
OID_RUNTIME_CYBERPOWER = "1.3.6.1.4.1.3808.1.1.1.2.2.4.0"   # TimeTicks
OID_RUNTIME_APC = "1.3.6.1.4.1.318.1.1.1.2.2.3.0"           # TimeTicks
OID_RUNTIME_EATON = "1.3.6.1.4.1.534.1.2.1.0"               # seconds
RUNTIME_ALTERNATE_OIDS = (
    OID_RUNTIME_CYBERPOWER,
    OID_RUNTIME_APC,
    OID_RUNTIME_EATON,
)

# upsOutputSource (RFC 1628): other(1) none(2) normal(3) bypass(4)
# battery(5) booster(6) reducer(7)
UPS_STATUS_MAP = {
    1: "Other",
    2: "No Output",
    3: "Online",
    4: "On Bypass",
    5: "On Battery",
    6: "Online (Boosting)",
    7: "Online (Reducing)",
}

OUTPUT_SOURCE_MAP = {
    3: "Normal",
    4: "Bypass",
    5: "Battery",
    6: "Normal",
    7: "Normal",
}

# upsBatteryStatus plus the vendor discharging/charging extensions
BATTERY_STATUS_UNKNOWN = 1
BATTERY_STATUS_NORMAL = 2
BATTERY_STATUS_LOW = 3
BATTERY_STATUS_DEPLETED = 4
BATTERY_STATUS_DISCHARGING = 5
BATTERY_STATUS_FAILURE = 6
BATTERY_STATUS_CHARGING = 7

BATTERY_STATUS_MAP = {
    BATTERY_STATUS_UNKNOWN: "Unknown",
    BATTERY_STATUS_NORMAL: "Normal",
    BATTERY_STATUS_LOW: "Low",
    BATTERY_STATUS_DEPLETED: "Depleted",
    BATTERY_STATUS_DISCHARGING: "Discharging",
    BATTERY_STATUS_FAILURE: "Failure",
    BATTERY_STATUS_CHARGING: "Charging",
}

SOURCE_NORMAL = "Normal"
SOURCE_BATTERY = "Battery"
SOURCE_BYPASS = "Bypass"
SOURCE_UNKNOWN = "Unknown"


def parse_ups_status(code: int) -> str:
    return UPS_STATUS_MAP.get(code, f"Status {code}")


def parse_output_source(code: int) -> str:
    return OUTPUT_SOURCE_MAP.get(code, f"Source {code}")


def parse_battery_status(code: int) -> str:
    return BATTERY_STATUS_MAP.get(code, f"Battery {code}")


# ---------------------------------------------------------------------------
# SNMP values
# ---------------------------------------------------------------------------

class SnmpType(enum.Enum):
    INTEGER = "integer"
    COUNTER = "counter"
    GAUGE = "gauge"
    TIMETICKS = "timeticks"
    OCTET_STRING = "octet_string"
    NULL = "null"


NUMERIC_SNMP_TYPES = frozenset({
    SnmpType.INTEGER, SnmpType.COUNTER, SnmpType.GAUGE, SnmpType.TIMETICKS,
})


@dataclass(frozen=True)
class SnmpValue:
    """A decoded SNMP varbind value tagged with its wire type."""
    kind: SnmpType
    value: int | str | None = None

    @classmethod
    def null(cls) -> "SnmpValue":
        return cls(SnmpType.NULL)

    @property
    def is_null(self) -> bool:
        return self.kind is SnmpType.NULL

    def as_int(self) -> int | None:
        """Integer view of the value, or None when it has none.

        Octet strings are accepted when they hold a plain number, since
        some agents report numeric readings as DisplayString.
        """
        if self.kind in NUMERIC_SNMP_TYPES:
            try:
                return int(self.value)
            except (TypeError, ValueError):
                return None
        if self.kind is SnmpType.OCTET_STRING and self.value is not None:
            text = str(self.value).strip()
            try:
                return int(float(text))
            except ValueError:
                return None
        return None

    def as_str(self) -> str | None:
        if self.kind is SnmpType.NULL or self.value is None:
            return None
        text = str(self.value).strip()
        return text or None


# ---------------------------------------------------------------------------
# Status snapshots
# ---------------------------------------------------------------------------

@dataclass
class StatusSnapshot:
    """One poll result for one device. Absent numbers mean "not reported"."""
    device_id: str
    timestamp: float = field(default_factory=time.time)
    online: bool = False
    status: str = "Unknown"
    battery_charge: float | None = None        # percent
    battery_runtime: int | None = None         # minutes
    battery_voltage: float | None = None       # volts
    battery_current: float | None = None       # amps, negative = discharging
    battery_temperature: float | None = None   # degrees C
    battery_status: str | None = None
    input_voltage: float | None = None
    input_frequency: float | None = None
    output_voltage: float | None = None
    output_frequency: float | None = None
    output_power: float | None = None          # watts
    load: float | None = None                  # percent
    temperature: float | None = None           # degrees C
    output_source: str = SOURCE_UNKNOWN
    alarms_present: int | None = None
    power_failures: int | None = None
    seconds_on_battery: int | None = None
    is_charging: bool | None = None
    manufacturer: str = ""
    model: str = ""
    ups_name: str = ""

    @classmethod
    def offline(cls, device_id: str, status: str) -> "StatusSnapshot":
        return cls(device_id=device_id, online=False, status=status)

    @property
    def on_battery(self) -> bool:
        return self.output_source == SOURCE_BATTERY

    @property
    def formatted_runtime(self) -> str:
        """Human runtime, or "∞" when the estimate is not meaningful.

        Agents report huge estimates while the load is tiny or the
        battery is topping up on mains.
        """
        if self.battery_runtime is None:
            return "N/A"
        minutes = self.battery_runtime
        if minutes > 600 or (minutes > 120 and self.is_charging and not self.on_battery):
            return "∞"
        if minutes >= 60:
            return f"{minutes // 60}h {minutes % 60}m"
        return f"{minutes}m"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StableStatus:
    """Debounced view of a device: confirmed direction plus backing snapshot."""
    online: bool
    snapshot: StatusSnapshot
    since: float

    def to_dict(self) -> dict:
        return {
            "online": self.online,
            "since": self.since,
            "snapshot": self.snapshot.to_dict(),
        }


# ---------------------------------------------------------------------------
# Alerts and reports
# ---------------------------------------------------------------------------

class AlertKind(enum.Enum):
    DEVICE_ONLINE = "device_online"
    DEVICE_OFFLINE = "device_offline"
    POWER_FAILURE = "power_failure"
    POWER_RESTORED = "power_restored"
    LOW_BATTERY = "low_battery"
    WARNING = "warning"
    CRITICAL_ALARM = "critical_alarm"
    MAINTENANCE_DUE = "maintenance_due"


ALERT_TITLES = {
    AlertKind.DEVICE_ONLINE: "UPS Back Online",
    AlertKind.DEVICE_OFFLINE: "UPS Offline",
    AlertKind.POWER_FAILURE: "Power Failure",
    AlertKind.POWER_RESTORED: "Power Restored",
    AlertKind.LOW_BATTERY: "Low Battery Warning",
    AlertKind.WARNING: "UPS Warning",
    AlertKind.CRITICAL_ALARM: "UPS Critical Alarm",
    AlertKind.MAINTENANCE_DUE: "Battery Maintenance Due",
}

WARNING_TEMPERATURE = "temperature"
WARNING_LOAD = "load"


@dataclass
class Alert:
    kind: AlertKind
    device_id: str
    device_name: str
    message: str
    timestamp: float = field(default_factory=time.time)
    detail: str | None = None        # warning kind for WARNING alerts
    initial: bool = False            # raised by the first-observation check
    snapshot: StatusSnapshot | None = None

    @property
    def title(self) -> str:
        return ALERT_TITLES[self.kind]

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "message": self.message,
            "timestamp": self.timestamp,
            "detail": self.detail,
            "initial": self.initial,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
        }


class ReportKind(enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass
class Report:
    kind: ReportKind
    generated_at: float
    statuses: dict[str, StableStatus] = field(default_factory=dict)
    device_names: dict[str, str] = field(default_factory=dict)
    manual: bool = False

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "generated_at": self.generated_at,
            "manual": self.manual,
            "devices": [
                {
                    "device_id": dev_id,
                    "name": self.device_names.get(dev_id, dev_id),
                    **stable.to_dict(),
                }
                for dev_id, stable in sorted(self.statuses.items())
            ],
        }
