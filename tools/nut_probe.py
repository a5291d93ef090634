#!/usr/bin/env python3
# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""NUT probe -- dump every variable a upsd server exposes for a UPS.

Shows the raw LIST VAR output next to the snapshot the monitor would
build from it, which helps when a UPS reports odd status or runtime.

Usage:
    python3 tools/nut_probe.py 192.168.1.20
    python3 tools/nut_probe.py 192.168.1.20 --ups myups --user monuser --password secret
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add monitor source to path
MONITOR_DIR = Path(__file__).resolve().parent.parent / "monitor"
sys.path.insert(0, str(MONITOR_DIR))

from upswatch.nut_client import NUT_PORT, NUTClient, build_snapshot
from upswatch.transport import UPSError
from upswatch.ups_config import UPSDevice


async def probe(args) -> int:
    client = NUTClient(timeout=args.timeout)

    names = await client.probe(args.host, args.port, timeout=args.timeout)
    if names is None:
        print(f"{args.host}:{args.port} does not look like a NUT server")
        return 1
    print(f"UPS on {args.host}: {', '.join(names) or '(none listed)'}")

    device = UPSDevice(
        device_id="probe", host=args.host, port=args.port,
        ups_name=args.ups, username=args.user, password=args.password,
    )
    try:
        variables = await client.list_vars(device)
    except UPSError as e:
        print(f"LIST VAR failed: {e}")
        return 1

    print()
    width = max((len(k) for k in variables), default=0)
    for key in sorted(variables):
        print(f"  {key:<{width}}  {variables[key]}")

    snapshot = build_snapshot(device.device_id, args.ups, variables)
    print()
    print("Snapshot:")
    print(json.dumps(snapshot.to_dict(), indent=2))
    return 0


def main():
    parser = argparse.ArgumentParser(description="Dump NUT variables for a UPS")
    parser.add_argument("host", help="upsd host")
    parser.add_argument("--port", type=int, default=NUT_PORT)
    parser.add_argument("--ups", default="ups", help="UPS name on the server")
    parser.add_argument("--user", default="", help="upsd username")
    parser.add_argument("--password", default="", help="upsd password")
    parser.add_argument("--timeout", type=float, default=5.0)
    args = parser.parse_args()
    sys.exit(asyncio.run(probe(args)))


if __name__ == "__main__":
    main()
