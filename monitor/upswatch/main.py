# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Entry point -- multi-UPS monitor.

Architecture
------------
MonitorManager    -- wires configuration, stores, sinks and the long
                     running tasks below.
PollingScheduler  -- queries every enabled UPS each interval.
StatusReconciler  -- debounces raw readings and emits alerts.
ReportScheduler   -- daily/weekly/monthly status reports.
"""

__version__ = "1.0.0"

import asyncio
import logging
import signal
import sys
import time

from .config import Config, ConfigError
from .mock_ups import MockUPSClient
from .notifier import FanoutSink, LoggingSink, MQTTNotifier
from .nut_client import NUTClient
from .poller import PollingScheduler
from .reconciler import ReconcilerSettings, StatusReconciler
from .report_scheduler import ReportSchedule, ReportScheduler
from .snmp_client import SNMPClient
from .snmp_transport import PySnmpTransport
from .state_store import StateStore
from .ups_config import PROTOCOL_NUT, PROTOCOL_SNMP, DeviceStore

logger = logging.getLogger("ups_watch")

MAINTENANCE_CHECK_INTERVAL = 3600


class MonitorManager:
    """Top-level orchestrator.

    Owns the device and state stores, the notification sinks and one
    task each for polling, reconciliation, reports and maintenance.
    """

    def __init__(self, config: Config | None = None):
        self.config = config or Config()
        self._running = False
        self._start_time = time.time()
        self._tasks: list[asyncio.Task] = []

        self.devices = DeviceStore(self.config.devices_file)
        self.state_store = StateStore(self.config.state_file)

        # Sinks
        self.mqtt: MQTTNotifier | None = None
        self.sink = FanoutSink([LoggingSink()])
        if self.config.mqtt_enabled:
            self.mqtt = MQTTNotifier(self.config)
            self.sink.add(self.mqtt)

        # Clients per protocol
        self._snmp_transport: PySnmpTransport | None = None
        if self.config.mock_mode:
            logger.info("Mock mode: all devices are simulated")
            mock = MockUPSClient()
            self.clients = {PROTOCOL_NUT: mock, PROTOCOL_SNMP: mock}
        else:
            self._snmp_transport = PySnmpTransport(
                timeout=self.config.snmp_timeout, retries=self.config.snmp_retries,
            )
            self.clients = {
                PROTOCOL_NUT: NUTClient(timeout=self.config.nut_timeout),
                PROTOCOL_SNMP: SNMPClient(self._snmp_transport),
            }

        self.reconciler = StatusReconciler(
            ReconcilerSettings.from_config(self.config),
            sink=self.sink,
            state_store=self.state_store,
        )
        self.poller = PollingScheduler(
            self.devices, self.clients, self.reconciler,
            interval=self.config.poll_interval,
        )
        self.reports = ReportScheduler(
            ReportSchedule.from_config(self.config),
            status_source=self.reconciler,
            sink=self.sink,
            state_store=self.state_store,
            tick_interval=self.config.report_tick,
        )

    async def _maintenance_scheduler(self):
        """Hourly battery age check."""
        while self._running:
            try:
                self.reconciler.check_maintenance()
            except Exception:
                logger.exception("Error in maintenance scheduler")
            await asyncio.sleep(MAINTENANCE_CHECK_INTERVAL)

    async def _device_watcher(self):
        while self._running:
            await asyncio.sleep(self.config.poll_interval)
            try:
                if self.devices.reload_if_changed():
                    self.reconciler.sync_devices(self.devices.list_enabled_devices())
            except Exception:
                logger.exception("Error reloading device configuration")

    async def run(self):
        """Start every task and wait for them to finish."""
        self._running = True
        enabled = self.devices.list_enabled_devices()
        logger.info("UPS Watch %s starting with %d enabled UPS device(s)",
                    __version__, len(enabled))
        if not enabled:
            logger.warning("No enabled devices in %s; run upswatch-discover to find some",
                           self.config.devices_file)

        if self.mqtt is not None:
            self.mqtt.connect()

        loop = asyncio.get_running_loop()
        self.reconciler.sync_devices(enabled)
        self._tasks = [
            loop.create_task(self.reconciler.run(), name="reconciler"),
            loop.create_task(self.poller.run(), name="poller"),
            loop.create_task(self.reports.run(), name="reports"),
            loop.create_task(self._maintenance_scheduler(), name="maintenance"),
            loop.create_task(self._device_watcher(), name="device-watcher"),
        ]
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def stop(self):
        if not self._running:
            return
        self._running = False

        self.poller.stop()
        self.reports.stop()
        self.reconciler.stop()
        for task in self._tasks:
            if task.get_name() != "reconciler" and not task.done():
                task.cancel()

        if self.mqtt is not None:
            self.mqtt.disconnect()
        if self._snmp_transport is not None:
            self._snmp_transport.close()

    def get_status_detail(self) -> dict:
        detail = {
            "version": __version__,
            "uptime": time.time() - self._start_time,
            "mock_mode": self.config.mock_mode,
            "poller": self.poller.get_status_detail(),
            "reconciler": self.reconciler.get_status_detail(),
            "reports": self.reports.get_status_detail(),
        }
        if self._snmp_transport is not None:
            detail["snmp"] = self._snmp_transport.get_health()
        if self.mqtt is not None:
            detail["mqtt"] = self.mqtt.get_status()
        return detail


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    manager = MonitorManager(config)
    loop = asyncio.new_event_loop()

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        loop.call_soon_threadsafe(manager.stop)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        loop.run_until_complete(manager.run())
    except KeyboardInterrupt:
        pass
    finally:
        manager.stop()
        loop.close()
        logger.info("Monitor stopped.")


if __name__ == "__main__":
    main()
