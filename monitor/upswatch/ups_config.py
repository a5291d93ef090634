# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""UPS device configuration and the JSON-backed device store."""

import json
import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_DEVICES_FILE = "/data/devices.json"

PROTOCOL_NUT = "nut"
PROTOCOL_SNMP = "snmp"
VALID_PROTOCOLS = (PROTOCOL_NUT, PROTOCOL_SNMP)

DEFAULT_PORTS = {PROTOCOL_NUT: 3493, PROTOCOL_SNMP: 161}


@dataclass
class UPSDevice:
    """Configuration for a single UPS."""
    device_id: str                      # stable key, also the MQTT topic segment
    host: str
    protocol: str = PROTOCOL_NUT        # "nut" or "snmp"
    port: int = 0                       # 0 = protocol default
    name: str = ""                      # human-friendly label
    ups_name: str = "ups"               # NUT UPS name
    community: str = "public"           # SNMP read community
    username: str = ""                  # NUT login (optional)
    password: str = ""
    enabled: bool = True
    battery_install_date: str = ""      # ISO date, empty = unknown
    battery_model: str = ""
    battery_notes: str = ""

    def __post_init__(self):
        if not self.port:
            self.port = DEFAULT_PORTS.get(self.protocol, 0)

    @property
    def label(self) -> str:
        return self.name or self.device_id

    @property
    def battery_installed_on(self) -> date | None:
        if not self.battery_install_date:
            return None
        try:
            return date.fromisoformat(self.battery_install_date)
        except ValueError:
            return None

    def to_dict(self) -> dict:
        d = {
            "device_id": self.device_id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "protocol": self.protocol,
            "enabled": self.enabled,
        }
        if self.protocol == PROTOCOL_NUT:
            d["ups_name"] = self.ups_name
            if self.username:
                d["username"] = self.username
                d["password"] = self.password
        else:
            d["community"] = self.community
        if self.battery_install_date:
            d["battery_install_date"] = self.battery_install_date
        if self.battery_model:
            d["battery_model"] = self.battery_model
        if self.battery_notes:
            d["battery_notes"] = self.battery_notes
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "UPSDevice":
        protocol = str(d.get("protocol", PROTOCOL_NUT)).lower()
        return cls(
            device_id=d["device_id"],
            host=d.get("host", ""),
            protocol=protocol,
            port=int(d.get("port", 0) or 0),
            name=d.get("name", ""),
            ups_name=d.get("ups_name", "ups") or "ups",
            community=d.get("community", "public"),
            username=d.get("username", ""),
            password=d.get("password", ""),
            enabled=d.get("enabled", True),
            battery_install_date=d.get("battery_install_date", ""),
            battery_model=d.get("battery_model", ""),
            battery_notes=d.get("battery_notes", ""),
        )

    def validate(self):
        if not self.device_id or any(c in self.device_id for c in "/#+ "):
            raise ValueError(
                f"device_id contains invalid MQTT characters: {self.device_id!r}"
            )
        if not self.host:
            raise ValueError(f"UPS {self.device_id!r} has no host configured")
        if self.protocol not in VALID_PROTOCOLS:
            raise ValueError(
                f"UPS {self.device_id!r} protocol must be 'nut' or 'snmp', got {self.protocol!r}"
            )
        if not (1 <= self.port <= 65535):
            raise ValueError(f"UPS {self.device_id!r} port out of range: {self.port}")
        if self.battery_install_date and self.battery_installed_on is None:
            raise ValueError(
                f"UPS {self.device_id!r} battery_install_date must be YYYY-MM-DD, "
                f"got {self.battery_install_date!r}"
            )


class DeviceStore:
    """Device list persisted as ``{"devices": [...]}`` in a JSON file."""

    def __init__(self, path: str = DEFAULT_DEVICES_FILE):
        self._path = Path(path)
        self._devices: dict[str, UPSDevice] = {}
        self._mtime: float | None = None
        self.load()

    def load(self):
        self._devices.clear()
        if not self._path.exists():
            self._mtime = None
            logger.info("No devices file at %s, starting empty", self._path)
            return
        self._mtime = self._stat_mtime()
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed to load devices from %s", self._path)
            return
        for d in data.get("devices", []):
            try:
                device = UPSDevice.from_dict(d)
                device.validate()
            except (KeyError, ValueError, TypeError) as e:
                logger.error("Skipping invalid device %s: %s", d.get("device_id", "?"), e)
                continue
            self._devices[device.device_id] = device
        logger.info("Loaded %d UPS device(s) from %s", len(self._devices), self._path)

    def save(self):
        """Save devices atomically using temp file + rename."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(
            {"devices": [d.to_dict() for d in self._devices.values()]}, indent=2,
        )
        tmp = self._path.with_suffix(".tmp")
        try:
            tmp.write_text(data)
            tmp.rename(self._path)
            self._mtime = self._stat_mtime()
        except Exception:
            logger.exception("Failed to save devices to %s", self._path)
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise

    def _stat_mtime(self) -> float | None:
        try:
            return self._path.stat().st_mtime
        except OSError:
            return None

    def reload_if_changed(self) -> bool:
        """Reload when the file changed on disk since the last load or save."""
        if self._stat_mtime() == self._mtime:
            return False
        logger.info("Devices file %s changed, reloading", self._path)
        self.load()
        return True

    def list_devices(self) -> list[UPSDevice]:
        return list(self._devices.values())

    def list_enabled_devices(self) -> list[UPSDevice]:
        return [d for d in self._devices.values() if d.enabled]

    def get(self, device_id: str) -> UPSDevice | None:
        return self._devices.get(device_id)

    def add(self, device: UPSDevice) -> UPSDevice:
        device.validate()
        if device.device_id in self._devices:
            raise ValueError(f"Device '{device.device_id}' already exists")
        self._devices[device.device_id] = device
        self.save()
        logger.info("Added UPS %s (%s %s:%d)", device.device_id,
                    device.protocol, device.host, device.port)
        return device

    def update(self, device: UPSDevice) -> UPSDevice:
        if device.device_id not in self._devices:
            raise KeyError(f"Device '{device.device_id}' not found")
        device.validate()
        self._devices[device.device_id] = device
        self.save()
        logger.info("Updated UPS %s", device.device_id)
        return device

    def remove(self, device_id: str):
        if device_id not in self._devices:
            raise KeyError(f"Device '{device_id}' not found")
        del self._devices[device_id]
        self.save()
        logger.info("Removed UPS %s", device_id)

    def configured_hosts(self) -> set[str]:
        return {d.host for d in self._devices.values()}
