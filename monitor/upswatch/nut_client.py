# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Network UPS Tools (NUT) client over the upsd line protocol.

One TCP connection per query, one command in flight at a time.  The
whole query (connect, optional login, LIST UPS, the GET VAR batch) runs
under a single wall-clock budget.  Every way the connection can end
(reply, connection lost, timeout) reports through one ResultCell, so the
caller always sees exactly one outcome.
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable

from .completion import ResultCell
from .transport import (
    UPSAuthenticationError,
    UPSConnectionError,
    UPSError,
    UPSInvalidResponseError,
    UPSNetworkError,
    UPSTimeoutError,
)
from .ups_config import UPSDevice
from .ups_model import (
    SOURCE_BATTERY,
    SOURCE_BYPASS,
    SOURCE_NORMAL,
    SOURCE_UNKNOWN,
    StatusSnapshot,
)

logger = logging.getLogger(__name__)

NUT_PORT = 3493
DEFAULT_TIMEOUT = 15.0
DEFAULT_UPS_NAME = "ups"
MAX_LINE_BYTES = 64 * 1024

# Ordered GET VAR batch
NUT_STATUS_VARS = (
    "device.mfr",
    "device.model",
    "ups.id",
    "ups.status",
    "battery.charge",
    "battery.runtime",
    "battery.voltage",
    "battery.current",
    "input.voltage",
    "output.voltage",
    "ups.load",
)
NUT_EXTRA_VARS = (
    "input.frequency",
    "output.frequency",
    "ups.temperature",
    "battery.temperature",
    "ups.realpower",
)
NUT_QUERY_VARS = NUT_STATUS_VARS + NUT_EXTRA_VARS

CHARGED_PERCENT = 95.0

_VAR_RE = re.compile(r'^VAR\s+(\S+)\s+(\S+)\s+"(.*)"\s*$')


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def parse_var_line(line: str) -> tuple[str, str, str] | None:
    """Parse ``VAR <ups> <key> "<value>"`` into (ups, key, value)."""
    m = _VAR_RE.match(line.strip())
    if not m:
        return None
    value = m.group(3).replace('\\"', '"').replace("\\\\", "\\")
    return m.group(1), m.group(2), value


def parse_ups_list(lines: list[str]) -> list[str]:
    """Names from ``UPS <name> "<desc>"`` lines of a LIST UPS reply."""
    names = []
    for line in lines:
        parts = line.strip().split(None, 2)
        if len(parts) >= 2 and parts[0] == "UPS":
            names.append(parts[1])
    return names


def parse_var_list(lines: list[str]) -> dict[str, str]:
    values = {}
    for line in lines:
        parsed = parse_var_line(line)
        if parsed is not None:
            values[parsed[1]] = parsed[2]
    return values


def parse_nut_status(raw: str, charge: float | None = None
                     ) -> tuple[str, str, bool | None, int | None]:
    """Map ``ups.status`` flags to (status, output_source, charging, alarms).

    OB always means not charging, whatever else the flags say.  Without
    CHRG/DISCHRG the charge level decides: a battery below 95% on mains
    is assumed to be charging.
    """
    flags = raw.upper().split()
    if "OB" in flags:
        status = "On Battery (Low)" if "LB" in flags else "On Battery"
        source = SOURCE_BATTERY
    elif "BYPASS" in flags:
        status = "On Bypass"
        source = SOURCE_BYPASS
    elif "OL" in flags:
        status = "Online"
        source = SOURCE_NORMAL
    else:
        status = raw.strip() or "Unknown"
        source = SOURCE_UNKNOWN

    if source == SOURCE_BATTERY:
        charging: bool | None = False
    elif "CHRG" in flags:
        charging = True
    elif "DISCHRG" in flags:
        charging = False
    elif charge is not None:
        charging = charge < CHARGED_PERCENT and source == SOURCE_NORMAL
    else:
        charging = None

    alarms = (1 if "ALARM" in flags else 0) if flags else None
    return status, source, charging, alarms


def _num(values: dict[str, str], key: str) -> float | None:
    raw = values.get(key)
    if raw is None:
        return None
    try:
        return float(raw.strip())
    except ValueError:
        return None


def build_snapshot(device_id: str, ups_name: str,
                   values: dict[str, str]) -> StatusSnapshot:
    """Turn a NUT variable map into a StatusSnapshot."""
    charge = _num(values, "battery.charge")
    status, source, charging, alarms = parse_nut_status(
        values.get("ups.status", ""), charge,
    )
    runtime_s = _num(values, "battery.runtime")
    return StatusSnapshot(
        device_id=device_id,
        online=True,
        status=status,
        output_source=source,
        is_charging=charging,
        alarms_present=alarms,
        battery_charge=charge,
        battery_runtime=int(runtime_s // 60) if runtime_s is not None else None,
        battery_voltage=_num(values, "battery.voltage"),
        battery_current=_num(values, "battery.current"),
        battery_temperature=_num(values, "battery.temperature"),
        input_voltage=_num(values, "input.voltage"),
        input_frequency=_num(values, "input.frequency"),
        output_voltage=_num(values, "output.voltage"),
        output_frequency=_num(values, "output.frequency"),
        output_power=_num(values, "ups.realpower"),
        load=_num(values, "ups.load"),
        temperature=_num(values, "ups.temperature"),
        manufacturer=values.get("device.mfr", ""),
        model=values.get("device.model", ""),
        ups_name=values.get("ups.id", "") or ups_name,
    )


# ---------------------------------------------------------------------------
# Connection session
# ---------------------------------------------------------------------------

class _LineProtocol(asyncio.Protocol):
    """asyncio protocol that forwards connection events to a NUTSession."""

    def __init__(self, session: "NUTSession"):
        self._session = session

    def connection_made(self, transport):
        self._session.connection_made(transport)

    def data_received(self, data: bytes):
        self._session.data_received(data)

    def connection_lost(self, exc):
        self._session.connection_lost(exc)


class NUTSession:
    """State of one NUT connection, bound to the query's ResultCell."""

    def __init__(self, device: UPSDevice, cell: ResultCell,
                 loop: asyncio.AbstractEventLoop):
        self.device = device
        self.cell = cell
        self._loop = loop
        self._lines: asyncio.Queue = asyncio.Queue()
        self._buffer = b""
        self.transport: asyncio.Transport | None = None
        self._closed = False

    @property
    def target(self) -> str:
        return f"{self.device.host}:{self.device.port}"

    # -- callback paths ---------------------------------------------------

    def connection_made(self, transport):
        if self._closed:
            transport.abort()
            return
        self.transport = transport

    def data_received(self, data: bytes):
        self._buffer += data
        while b"\n" in self._buffer:
            raw, self._buffer = self._buffer.split(b"\n", 1)
            self._lines.put_nowait(raw.decode("utf-8", errors="replace").rstrip("\r"))
        if len(self._buffer) > MAX_LINE_BYTES:
            self.cell.try_fail(UPSInvalidResponseError(
                f"Line from {self.target} exceeds {MAX_LINE_BYTES} bytes"
            ))
            self.close()

    def connection_lost(self, exc):
        self.transport = None
        if exc is not None:
            self.cell.try_fail(UPSNetworkError(f"Connection lost: {exc}"))
        self._lines.put_nowait(None)

    def timed_out(self, timeout: float):
        if self.cell.try_fail(UPSTimeoutError(
            f"No answer from {self.target} within {timeout:g}s"
        )):
            logger.warning("NUT %s: query timed out after %.1fs", self.target, timeout)
        self.close()

    # -- command helpers --------------------------------------------------

    async def open(self):
        try:
            await self._loop.create_connection(
                lambda: _LineProtocol(self), self.device.host, self.device.port,
            )
        except ConnectionRefusedError as e:
            raise UPSConnectionError(f"Connection refused by {self.target}") from e
        except OSError as e:
            raise UPSNetworkError(str(e) or e.__class__.__name__) from e

    async def read_line(self) -> str:
        line = await self._lines.get()
        if line is None:
            raise UPSConnectionError(f"Connection closed by {self.target}")
        return line

    def send(self, line: str):
        if self.transport is None or self._closed:
            raise UPSConnectionError(f"Not connected to {self.target}")
        self.transport.write(f"{line}\n".encode("utf-8"))

    async def command(self, line: str, multiline: bool = False) -> list[str]:
        """Send one command and collect its reply.

        LIST replies run from BEGIN LIST to END LIST; everything else is a
        single line.  An ERR line always ends the reply.
        """
        self.send(line)
        lines = [await self.read_line()]
        if multiline and not lines[0].startswith("ERR"):
            while not lines[-1].startswith("END LIST"):
                lines.append(await self.read_line())
        return lines

    def close(self):
        self._closed = True
        if self.transport is not None:
            self.transport.abort()
            self.transport = None


SessionBody = Callable[[NUTSession], Awaitable]


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class NUTClient:
    """Protocol client for upsd servers."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    async def query(self, device: UPSDevice) -> StatusSnapshot:
        """Fetch the status variables of one UPS. Raises UPSError."""
        return await self._run(device, self._query_body, self.timeout)

    async def list_vars(self, device: UPSDevice) -> dict[str, str]:
        """Every variable the server exposes for the UPS (LIST VAR)."""
        return await self._run(device, self._list_vars_body, self.timeout)

    async def probe(self, host: str, port: int = NUT_PORT,
                    timeout: float = 2.0) -> list[str] | None:
        """UPS names served by ``host``, or None if it is not a NUT server.

        A server with no UPS configured still counts when its reply
        mentions UPS at all; the name list is then empty.
        """
        device = UPSDevice(device_id=host, host=host, port=port)
        try:
            reply = await self._run(device, self._probe_body, timeout)
        except UPSError:
            return None
        if "UPS" not in "\n".join(reply):
            return None
        return parse_ups_list(reply)

    # -- plumbing ---------------------------------------------------------

    async def _run(self, device: UPSDevice, body: SessionBody, timeout: float):
        loop = asyncio.get_running_loop()
        cell = ResultCell(f"NUT {device.host}:{device.port}", loop)
        session = NUTSession(device, cell, loop)
        timer = loop.call_later(timeout, session.timed_out, timeout)
        task = loop.create_task(self._drive(session, body))
        try:
            return await cell.wait()
        finally:
            timer.cancel()
            if not task.done():
                task.cancel()
            session.close()

    @staticmethod
    async def _drive(session: NUTSession, body: SessionBody):
        try:
            await session.open()
            result = await body(session)
        except UPSError as e:
            session.cell.try_fail(e)
        except OSError as e:
            session.cell.try_fail(UPSNetworkError(str(e) or e.__class__.__name__))
        except Exception as e:
            logger.exception("NUT %s: unexpected error", session.target)
            session.cell.try_fail(UPSInvalidResponseError(str(e)))
        else:
            session.cell.try_complete(result)

    # -- conversation bodies ----------------------------------------------

    async def _query_body(self, session: NUTSession) -> StatusSnapshot:
        device = session.device
        await self._login(session)
        ups_name = await self._resolve_ups_name(session)

        values: dict[str, str] = {}
        for key in NUT_QUERY_VARS:
            reply = (await session.command(f"GET VAR {ups_name} {key}"))[0]
            if reply.startswith("ERR ACCESS-DENIED"):
                raise UPSAuthenticationError(f"{session.target}: {reply}")
            parsed = parse_var_line(reply)
            if parsed is None:
                logger.debug("NUT %s: skipping %s -> %r", session.target, key, reply)
                continue
            values[parsed[1]] = parsed[2]

        self._logout(session)
        if not values:
            raise UPSInvalidResponseError(
                f"No variables returned for UPS {ups_name!r} on {session.target}"
            )
        return build_snapshot(device.device_id, ups_name, values)

    async def _list_vars_body(self, session: NUTSession) -> dict[str, str]:
        await self._login(session)
        ups_name = await self._resolve_ups_name(session)
        reply = await session.command(f"LIST VAR {ups_name}", multiline=True)
        if reply[0].startswith("ERR"):
            raise UPSInvalidResponseError(f"LIST VAR {ups_name}: {reply[0]}")
        self._logout(session)
        return parse_var_list(reply)

    @staticmethod
    async def _probe_body(session: NUTSession) -> list[str]:
        reply = await session.command("LIST UPS", multiline=True)
        NUTClient._logout(session)
        return reply

    @staticmethod
    async def _login(session: NUTSession):
        device = session.device
        if not device.username:
            return
        for cmd in (f"USERNAME {device.username}", f"PASSWORD {device.password}"):
            reply = (await session.command(cmd))[0]
            if not reply.startswith("OK"):
                raise UPSAuthenticationError(
                    f"{session.target} rejected {cmd.split()[0]}: {reply}"
                )

    @staticmethod
    async def _resolve_ups_name(session: NUTSession) -> str:
        """Configured UPS name, or the first listed one when it is missing."""
        configured = session.device.ups_name or DEFAULT_UPS_NAME
        reply = await session.command("LIST UPS", multiline=True)
        if reply[0].startswith("ERR"):
            if "ACCESS-DENIED" in reply[0]:
                raise UPSAuthenticationError(f"{session.target}: {reply[0]}")
            logger.debug("NUT %s: LIST UPS failed (%s), using %r",
                         session.target, reply[0], configured)
            return configured
        names = parse_ups_list(reply)
        if names and configured not in names:
            logger.info("NUT %s: UPS %r not found, using %r (available: %s)",
                        session.target, configured, names[0], ", ".join(names))
            return names[0]
        return configured

    @staticmethod
    def _logout(session: NUTSession):
        try:
            session.send("LOGOUT")
        except UPSError:
            pass
