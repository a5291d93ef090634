# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Collaborator interfaces and the query error taxonomy.

The monitor talks to hardware through a UPSClient per protocol (NUT,
SNMP, mock) and to the outside world through a DeviceSource, an
SnmpGetter and a NotificationSink.  Everything is wired together in
MonitorManager so each piece can be swapped for a fake in tests.
"""

from typing import Protocol, runtime_checkable

from .ups_config import UPSDevice
from .ups_model import Alert, Report, SnmpValue, StableStatus, StatusSnapshot


class UPSError(Exception):
    """Base class for a failed UPS query."""

    description = "UPS error"

    def __str__(self) -> str:
        detail = super().__str__()
        return detail or self.description


class UPSTimeoutError(UPSError):
    description = "Connection timeout"


class UPSConnectionError(UPSError):
    description = "Failed to connect to UPS"


class UPSAuthenticationError(UPSError):
    description = "Authentication failed"


class UPSInvalidResponseError(UPSError):
    description = "Invalid response from UPS"


class UPSNetworkError(UPSError):
    """Network-level failure with a classified, human readable detail."""

    description = "Network error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        return f"Network error: {self.detail}"


class SnmpError(Exception):
    """Raised by an SnmpGetter when a GET yields no usable response."""


@runtime_checkable
class UPSClient(Protocol):
    """Protocol client that turns one device into one StatusSnapshot.

    Implementations: NUTClient, SNMPClient, MockUPSClient.
    """

    async def query(self, device: UPSDevice) -> StatusSnapshot:
        """Query the device. Raises UPSError on failure."""
        ...


@runtime_checkable
class SnmpGetter(Protocol):
    """Single-OID SNMP GET primitive."""

    async def get(self, host: str, community: str, oid: str,
                  port: int = 161) -> SnmpValue:
        """Return the tagged value. Raises SnmpError on failure."""
        ...


@runtime_checkable
class DeviceSource(Protocol):
    def list_enabled_devices(self) -> list[UPSDevice]:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    def on_alert(self, alert: Alert) -> None:
        ...

    def on_report(self, report: Report) -> None:
        ...

    def on_status(self, device_id: str, status: StableStatus) -> None:
        ...
