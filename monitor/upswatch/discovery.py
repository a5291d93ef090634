# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Network discovery of NUT servers and SNMP UPS agents on a /24.

Probes run with at most ten in flight, a short pause before each, and a
hard per-probe timeout, so a sweep never floods the LAN and never hangs
on a silent host.  Results are yielded as they arrive.
"""

import argparse
import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from typing import AsyncIterator

from .nut_client import NUTClient
from .transport import SnmpGetter
from .ups_config import DEFAULT_PORTS, PROTOCOL_NUT, PROTOCOL_SNMP, VALID_PROTOCOLS, UPSDevice
from .ups_model import OID_MANUFACTURER, OID_MODEL

logger = logging.getLogger(__name__)

MAX_CONCURRENT_PROBES = 10
PROBE_DELAY = 0.1
PROBE_TIMEOUT = 2.0


@dataclass
class DiscoveredUPS:
    """A UPS endpoint found on the network."""
    host: str
    protocol: str
    port: int
    manufacturer: str = ""
    model: str = ""
    ups_names: list[str] = field(default_factory=list)
    already_configured: bool = False

    def to_device(self, device_id: str, community: str = "public") -> UPSDevice:
        """Starting configuration for this endpoint."""
        return UPSDevice(
            device_id=device_id,
            host=self.host,
            protocol=self.protocol,
            port=self.port,
            name=" ".join(p for p in (self.manufacturer, self.model) if p),
            ups_name=self.ups_names[0] if self.ups_names else "ups",
            community=community,
        )


def subnet_hosts(prefix: str) -> list[str]:
    """The 254 host addresses of a /24.

    Accepts ``192.168.1``, ``192.168.1.0/24`` or any address inside it.
    """
    text = prefix.strip()
    if "/" in text:
        network = ipaddress.IPv4Network(text, strict=False)
        if network.prefixlen != 24:
            raise ValueError(f"Only /24 subnets can be scanned, got {text!r}")
    else:
        parts = text.split(".")
        if len(parts) == 4:
            parts = parts[:3]
        if len(parts) != 3:
            raise ValueError(f"Invalid subnet prefix: {prefix!r}")
        network = ipaddress.IPv4Network(".".join(parts + ["0"]) + "/24")
    return [str(ip) for ip in network.hosts()]


def get_local_subnets() -> list[str]:
    """Best guess at the local /24, via the default-route socket trick."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            local_ip = s.getsockname()[0]
        finally:
            s.close()
        return [str(ipaddress.IPv4Network(f"{local_ip}/24", strict=False))]
    except OSError:
        return ["192.168.1.0/24"]


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

async def _probe_nut_host(host: str, port: int, timeout: float) -> DiscoveredUPS | None:
    """NUT: connect, LIST UPS, look for UPS in the reply."""
    names = await NUTClient(timeout=timeout).probe(host, port, timeout)
    if names is None:
        return None
    return DiscoveredUPS(host=host, protocol=PROTOCOL_NUT, port=port, ups_names=names)


async def _probe_snmp_host(getter: SnmpGetter, host: str, community: str,
                           port: int) -> DiscoveredUPS | None:
    """SNMP: the UPS-MIB manufacturer must come back non-empty."""
    try:
        value = await getter.get(host, community, OID_MANUFACTURER, port=port)
    except Exception:
        return None
    manufacturer = value.as_str()
    if not manufacturer or "nosuch" in manufacturer.lower().replace(" ", ""):
        return None

    model = ""
    try:
        model = (await getter.get(host, community, OID_MODEL, port=port)).as_str() or ""
    except Exception:
        pass
    return DiscoveredUPS(
        host=host, protocol=PROTOCOL_SNMP, port=port,
        manufacturer=manufacturer, model=model,
    )


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

async def scan_subnet(prefix: str, protocol: str = PROTOCOL_NUT,
                      community: str = "public", port: int | None = None, *,
                      getter: SnmpGetter | None = None,
                      max_concurrent: int = MAX_CONCURRENT_PROBES,
                      probe_delay: float = PROBE_DELAY,
                      probe_timeout: float = PROBE_TIMEOUT,
                      configured_hosts: set[str] | None = None,
                      ) -> AsyncIterator[DiscoveredUPS]:
    """Yield UPS endpoints on a /24 as their probes succeed.

    Closing the generator (or cancelling the task iterating it) cancels
    every probe still outstanding.
    """
    if protocol not in VALID_PROTOCOLS:
        raise ValueError(f"Unknown protocol: {protocol!r}")
    hosts = subnet_hosts(prefix)
    port = port or DEFAULT_PORTS[protocol]

    owns_getter = False
    if protocol == PROTOCOL_SNMP and getter is None:
        from .snmp_transport import PySnmpTransport
        getter = PySnmpTransport(timeout=probe_timeout, retries=0)
        owns_getter = True

    semaphore = asyncio.Semaphore(max_concurrent)

    async def _probe_with_limit(host: str) -> DiscoveredUPS | None:
        async with semaphore:
            await asyncio.sleep(probe_delay)
            if protocol == PROTOCOL_NUT:
                probe = _probe_nut_host(host, port, probe_timeout)
            else:
                probe = _probe_snmp_host(getter, host, community, port)
            try:
                return await asyncio.wait_for(probe, probe_timeout)
            except asyncio.TimeoutError:
                return None
            except Exception as e:
                logger.debug("Probe %s failed: %s", host, e)
                return None

    logger.info("Scanning %d hosts (%s, port %d)", len(hosts), protocol, port)
    tasks = [asyncio.ensure_future(_probe_with_limit(h)) for h in hosts]
    try:
        for next_done in asyncio.as_completed(tasks):
            result = await next_done
            if result is None:
                continue
            if configured_hosts and result.host in configured_hosts:
                result.already_configured = True
            logger.info("Found %s UPS at %s:%d", protocol, result.host, result.port)
            yield result
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if owns_getter:
            getter.close()


async def scan(prefix: str, protocol: str = PROTOCOL_NUT,
               **kwargs) -> list[DiscoveredUPS]:
    """Run a full sweep and return the results sorted by address."""
    found = [ups async for ups in scan_subnet(prefix, protocol, **kwargs)]
    found.sort(key=lambda u: ipaddress.IPv4Address(u.host))
    return found


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _format_table(found: list[DiscoveredUPS]) -> str:
    """Format discovered endpoints as an ASCII table."""
    if not found:
        return "  No UPS devices found."

    lines = []
    lines.append(f"  {'Host':<18} {'Proto':<6} {'Port':>5}  {'Device':<30} {'Status'}")
    lines.append(f"  {'─' * 18} {'─' * 6} {'─' * 5}  {'─' * 30} {'─' * 10}")
    for ups in found:
        status = "configured" if ups.already_configured else "new"
        if ups.protocol == PROTOCOL_NUT:
            device = ", ".join(ups.ups_names) or "(no UPS listed)"
        else:
            device = " ".join(p for p in (ups.manufacturer, ups.model) if p)
        lines.append(
            f"  {ups.host:<18} {ups.protocol:<6} {ups.port:>5}  {device:<30} {status}"
        )
    return "\n".join(lines)


async def _main_async(args):
    """Async entry point for CLI usage."""
    subnets = [args.subnet] if args.subnet else get_local_subnets()

    found: list[DiscoveredUPS] = []
    for subnet in subnets:
        print(f"Scanning {subnet} ({args.protocol}, timeout={args.timeout}s)...")
        found.extend(await scan(
            subnet, args.protocol,
            community=args.community,
            port=args.port,
            probe_timeout=args.timeout,
        ))

    print()
    if found:
        print(f"Found {len(found)} UPS endpoint(s):\n")
        print(_format_table(found))
    else:
        print("No UPS devices found on the network.")
        print()
        print("Troubleshooting:")
        print("  - NUT: check that upsd listens on the LAN (LISTEN in upsd.conf)")
        print("  - SNMP: verify the community string (default: public)")
        print("  - Try specifying the subnet: --subnet 192.168.x.0/24")
    print()
    return found


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Discover UPS devices on the network")
    parser.add_argument("--subnet", help="Subnet to scan (e.g., 192.168.1.0/24)")
    parser.add_argument("--protocol", choices=VALID_PROTOCOLS, default=PROTOCOL_NUT,
                        help="Protocol to probe with")
    parser.add_argument("--community", default="public", help="SNMP community string")
    parser.add_argument("--port", type=int, default=None, help="Override the protocol port")
    parser.add_argument("--timeout", type=float, default=PROBE_TIMEOUT, help="Per-host timeout")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)
    asyncio.run(_main_async(args))


if __name__ == "__main__":
    main()
