# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""pysnmp-backed SNMP GET primitive with health tracking.

Returns explicitly tagged SnmpValue objects so the decoding layer can
match on the wire type instead of guessing from printed text.
"""

import logging
import time

from pysnmp.hlapi.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    getCmd,
)
from pysnmp.proto import rfc1902, rfc1905

from .transport import SnmpError
from .ups_model import SnmpType, SnmpValue

logger = logging.getLogger(__name__)

_NULL_TYPES = (rfc1905.NoSuchObject, rfc1905.NoSuchInstance, rfc1905.EndOfMibView)


def to_snmp_value(value) -> SnmpValue:
    """Tag a pysnmp varbind value with its SNMP type."""
    if value is None or isinstance(value, _NULL_TYPES):
        return SnmpValue.null()
    if isinstance(value, rfc1902.TimeTicks):
        return SnmpValue(SnmpType.TIMETICKS, int(value))
    if isinstance(value, (rfc1902.Counter32, rfc1902.Counter64)):
        return SnmpValue(SnmpType.COUNTER, int(value))
    if isinstance(value, (rfc1902.Gauge32, rfc1902.Unsigned32)):
        return SnmpValue(SnmpType.GAUGE, int(value))
    if isinstance(value, rfc1902.Integer32):
        return SnmpValue(SnmpType.INTEGER, int(value))
    if isinstance(value, rfc1902.OctetString):
        return SnmpValue(SnmpType.OCTET_STRING, str(value))
    if isinstance(value, int):
        return SnmpValue(SnmpType.INTEGER, int(value))
    return SnmpValue(SnmpType.OCTET_STRING, str(value))


class PySnmpTransport:
    """SnmpGetter implementation using the pysnmp asyncio high-level API."""

    def __init__(self, timeout: float = 2.0, retries: int = 1):
        self.engine = SnmpEngine()
        self._timeout = timeout
        self._retries = retries
        self._targets: dict[tuple[str, int], UdpTransportTarget] = {}

        # Health tracking
        self._total_gets = 0
        self._failed_gets = 0
        self._consecutive_failures = 0
        self._last_success_time: float | None = None
        self._last_error_time: float | None = None
        self._last_error_msg: str | None = None

    def _target(self, host: str, port: int) -> UdpTransportTarget:
        key = (host, port)
        target = self._targets.get(key)
        if target is None:
            target = UdpTransportTarget(
                (host, port), timeout=self._timeout, retries=self._retries,
            )
            self._targets[key] = target
        return target

    async def get(self, host: str, community: str, oid: str,
                  port: int = 161) -> SnmpValue:
        """SNMP GET a single OID. Raises SnmpError when there is no answer."""
        self._total_gets += 1
        try:
            error_indication, error_status, error_index, var_binds = await getCmd(
                self.engine,
                CommunityData(community),
                self._target(host, port),
                ContextData(),
                ObjectType(ObjectIdentity(oid)),
            )
        except Exception as e:
            self._record_failure(f"GET {host} {oid}: {e}")
            raise SnmpError(str(e) or e.__class__.__name__) from e

        if error_indication:
            self._record_failure(f"GET {host} {oid}: {error_indication}")
            raise SnmpError(str(error_indication))
        if error_status:
            # The agent answered, so this is a per-OID miss, not an outage
            msg = (
                f"{error_status.prettyPrint()} at "
                f"{var_binds[int(error_index) - 1][0] if error_index else '?'}"
            )
            self._failed_gets += 1
            self._record_success()
            logger.debug("SNMP: GET %s %s: %s", host, oid, msg)
            raise SnmpError(msg)

        _oid, value = var_binds[0]
        self._record_success()
        return to_snmp_value(value)

    def get_health(self) -> dict:
        """Return SNMP GET health metrics."""
        return {
            "total_gets": self._total_gets,
            "failed_gets": self._failed_gets,
            "consecutive_failures": self._consecutive_failures,
            "last_success": self._last_success_time,
            "last_error": self._last_error_time,
            "last_error_msg": self._last_error_msg,
        }

    def _record_success(self):
        self._consecutive_failures = 0
        self._last_success_time = time.time()

    def _record_failure(self, msg: str):
        self._failed_gets += 1
        self._consecutive_failures += 1
        self._last_error_time = time.time()
        self._last_error_msg = msg
        # Log at different levels based on consecutive failures
        if self._consecutive_failures == 1:
            logger.warning("SNMP: %s", msg)
        elif self._consecutive_failures <= 5:
            logger.error("SNMP: %s (failure %d)", msg, self._consecutive_failures)
        elif self._consecutive_failures % 30 == 0:
            logger.error(
                "SNMP: %d consecutive failures, latest %s",
                self._consecutive_failures, msg,
            )

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def close(self):
        try:
            self.engine.close_dispatcher()
        except Exception:
            logger.debug("Error closing SNMP engine", exc_info=True)
