# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Polling scheduler -- fixed-interval fan-out of per-device queries."""

import asyncio
import logging
import time

from .reconciler import StatusReconciler
from .transport import DeviceSource, UPSClient, UPSError
from .ups_config import UPSDevice
from .ups_model import StatusSnapshot

logger = logging.getLogger(__name__)


class PollingScheduler:
    """Every interval, query each enabled device on its own task.

    Results go to the reconciler's queue.  A slow device only delays its
    own result; a device whose previous query is still running is
    skipped for that cycle.
    """

    def __init__(self, devices: DeviceSource | None,
                 clients: dict[str, UPSClient],
                 reconciler: StatusReconciler,
                 interval: float = 30.0):
        self._devices = devices
        self._clients = clients
        self._reconciler = reconciler
        self.interval = interval
        self._running = False
        self._in_flight: dict[str, asyncio.Task] = {}
        self._last_results: dict[str, StatusSnapshot] = {}

        # Health tracking
        self._cycle_count = 0
        self._skipped = 0
        self._discarded = 0
        self._device_failures: dict[str, int] = {}
        self._last_cycle_time: float | None = None
        self._missing_source_logged = False

    async def run(self):
        """Main poll loop."""
        self._running = True
        logger.info("Polling every %.0fs", self.interval)
        while self._running:
            try:
                self.poll_cycle()
            except Exception:
                logger.exception("Error starting poll cycle")
            await asyncio.sleep(self.interval)

    def poll_cycle(self) -> list[asyncio.Task]:
        """Start one query task per enabled device. Returns the new tasks."""
        devices = self._enabled_devices()
        if devices is None:
            return []
        self._cycle_count += 1
        self._last_cycle_time = time.time()
        self._reconciler.sync_devices(devices)

        tasks = []
        for device in devices:
            dev_id = device.device_id
            if dev_id in self._in_flight:
                self._skipped += 1
                logger.debug("[%s] Previous query still running, skipping", dev_id)
                continue
            client = self._clients.get(device.protocol)
            if client is None:
                logger.error("[%s] No client for protocol %r", dev_id, device.protocol)
                continue
            task = asyncio.get_running_loop().create_task(
                self._poll_device(client, device), name=f"poll-{dev_id}",
            )
            self._in_flight[dev_id] = task
            task.add_done_callback(lambda _t, d=dev_id: self._in_flight.pop(d, None))
            tasks.append(task)
        return tasks

    def _enabled_devices(self) -> list[UPSDevice] | None:
        if self._devices is None:
            if not self._missing_source_logged:
                logger.warning("No device configuration loaded, nothing to poll")
                self._missing_source_logged = True
            return None
        try:
            return self._devices.list_enabled_devices()
        except Exception:
            logger.exception("Failed to list enabled devices")
            return None

    def _is_member(self, device_id: str) -> bool:
        devices = self._enabled_devices()
        return devices is not None and any(d.device_id == device_id for d in devices)

    async def _poll_device(self, client: UPSClient, device: UPSDevice):
        dev_id = device.device_id
        start = time.monotonic()
        try:
            snapshot = await client.query(device)
        except UPSError as e:
            snapshot = StatusSnapshot.offline(dev_id, f"Error: {e}")
            self._record_failure(dev_id, str(e))
        except Exception as e:
            logger.exception("[%s] Unexpected query failure", dev_id)
            snapshot = StatusSnapshot.offline(dev_id, f"Error: {e}")
            self._record_failure(dev_id, str(e))
        else:
            self._record_success(dev_id, time.monotonic() - start)
        snapshot.device_id = dev_id

        if not self._is_member(dev_id):
            self._discarded += 1
            logger.debug("[%s] Device no longer enabled, discarding result", dev_id)
            return
        self._last_results[dev_id] = snapshot
        self._reconciler.submit(snapshot)

    def _record_success(self, dev_id: str, duration: float):
        failures = self._device_failures.pop(dev_id, 0)
        if failures:
            logger.info("[%s] Reachable again after %d failed poll(s)", dev_id, failures)
        logger.debug("[%s] Polled in %.0fms", dev_id, duration * 1000)

    def _record_failure(self, dev_id: str, msg: str):
        count = self._device_failures.get(dev_id, 0) + 1
        self._device_failures[dev_id] = count
        if count == 1:
            logger.warning("[%s] Poll failed: %s", dev_id, msg)
        elif count <= 5:
            logger.error("[%s] Poll failed: %s (failure %d)", dev_id, msg, count)
        elif count % 30 == 0:
            logger.error("[%s] Unreachable for %d consecutive polls: %s", dev_id, count, msg)

    def latest(self, device_id: str) -> StatusSnapshot | None:
        """Most recent raw snapshot of a device."""
        return self._last_results.get(device_id)

    def get_status_detail(self) -> dict:
        return {
            "interval": self.interval,
            "cycles": self._cycle_count,
            "in_flight": sorted(self._in_flight),
            "skipped": self._skipped,
            "discarded": self._discarded,
            "failing_devices": dict(self._device_failures),
            "last_cycle": self._last_cycle_time,
        }

    def stop(self):
        self._running = False
        for task in self._in_flight.values():
            if not task.done():
                task.cancel()
