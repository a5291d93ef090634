# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Notification sinks -- where alerts and reports go.

MQTTNotifier publishes JSON events so any subscriber (Home Assistant,
a mailer, a pager bridge) can act on them:

    {prefix}/{device_id}/alert      one message per alert (QoS 1)
    {prefix}/{device_id}/status     retained stable status, on every debounced change
    {prefix}/report/{kind}          daily/weekly/monthly reports (QoS 1)
    {prefix}/monitor/status         retained "online"/"offline" (LWT)
"""

import json
import logging
import time

import paho.mqtt.client as mqtt

from .config import Config
from .ups_model import Alert, AlertKind, Report, StableStatus

logger = logging.getLogger(__name__)


class LoggingSink:
    """Writes alerts and reports to the log."""

    def on_alert(self, alert: Alert):
        level = logging.INFO if alert.kind in (
            AlertKind.DEVICE_ONLINE, AlertKind.POWER_RESTORED,
        ) else logging.WARNING
        logger.log(level, "%s [%s]: %s", alert.title, alert.device_id, alert.message)

    def on_status(self, device_id: str, status: StableStatus):
        logger.info("[%s] Stable %s: %s", device_id,
                    "online" if status.online else "offline", status.snapshot.status)

    def on_report(self, report: Report):
        online = sum(1 for s in report.statuses.values() if s.online)
        logger.info("%s report: %d/%d UPS online", report.kind.value.capitalize(),
                    online, len(report.statuses))
        for dev_id, stable in sorted(report.statuses.items()):
            snap = stable.snapshot
            logger.info(
                "  %s: %s charge=%s runtime=%s load=%s",
                report.device_names.get(dev_id, dev_id), snap.status,
                f"{snap.battery_charge:.0f}%" if snap.battery_charge is not None else "?",
                snap.formatted_runtime,
                f"{snap.load:.0f}%" if snap.load is not None else "?",
            )


class FanoutSink:
    """Delivers to several sinks; one failing sink never blocks the others."""

    def __init__(self, sinks: list):
        self._sinks = list(sinks)
        self._errors: dict[str, int] = {}

    def add(self, sink):
        self._sinks.append(sink)

    def on_alert(self, alert: Alert):
        for sink in self._sinks:
            self._safe(sink, "on_alert", alert)

    def on_report(self, report: Report):
        for sink in self._sinks:
            self._safe(sink, "on_report", report)

    def on_status(self, device_id: str, status: StableStatus):
        for sink in self._sinks:
            self._safe(sink, "on_status", device_id, status)

    def _safe(self, sink, method: str, *args):
        try:
            getattr(sink, method)(*args)
        except Exception:
            name = type(sink).__name__
            self._errors[name] = self._errors.get(name, 0) + 1
            if self._errors[name] <= 3:
                logger.exception("%s.%s failed", name, method)


class MQTTNotifier:
    def __init__(self, config: Config):
        self.config = config
        self.prefix = config.mqtt_topic_prefix

        # Connection status tracking
        self._connected: bool = False
        self._reconnect_count: int = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None
        self._publish_errors: int = 0
        self._total_publishes: int = 0

        # Pending publishes queued while disconnected (max 100)
        self._pending_publishes: list[tuple[str, str, bool, int]] = []
        self._max_pending = 100

        self.client = mqtt.Client(
            client_id=f"{self.prefix}-watch",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(
            f"{self.prefix}/monitor/status", "offline", qos=1, retain=True
        )
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        # Auto-reconnect with backoff
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self):
        logger.info("Connecting to MQTT broker %s:%d", self.config.mqtt_broker, self.config.mqtt_port)
        if self.config.mqtt_username:
            self.client.username_pw_set(
                self.config.mqtt_username, self.config.mqtt_password
            )
            logger.info("MQTT authentication configured for user %s", self.config.mqtt_username)

        try:
            self.client.connect(self.config.mqtt_broker, self.config.mqtt_port, keepalive=60)
            self.client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        logger.info("MQTT connected (rc=%s)", reason_code)
        if self._last_connect_time is not None:
            self._reconnect_count += 1
            logger.info("MQTT reconnected (count=%d)", self._reconnect_count)
        self._connected = True
        self._last_connect_time = time.time()

        client.publish(f"{self.prefix}/monitor/status", "online", qos=1, retain=True)

        # Drain pending publishes queued during disconnect
        if self._pending_publishes:
            drained = len(self._pending_publishes)
            for topic, payload, retain, qos in self._pending_publishes:
                try:
                    client.publish(topic, payload, qos=qos, retain=retain)
                except Exception:
                    logger.debug("Dropping pending publish to %s", topic, exc_info=True)
            self._pending_publishes.clear()
            logger.info("Drained %d pending publishes after reconnect", drained)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("MQTT disconnected (rc=%s)", reason_code)
        self._connected = False
        self._last_disconnect_time = time.time()

    def get_status(self) -> dict:
        """Return MQTT connection health info."""
        return {
            "connected": self._connected,
            "reconnect_count": self._reconnect_count,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "broker": self.config.mqtt_broker,
            "port": self.config.mqtt_port,
            "publish_errors": self._publish_errors,
            "total_publishes": self._total_publishes,
            "pending": len(self._pending_publishes),
        }

    def _publish(self, topic: str, payload, retain: bool = False, qos: int = 0):
        """Publish with error tracking. Queues alerts and retained state on failure."""
        self._total_publishes += 1
        must_deliver = retain or qos > 0

        try:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._publish_errors += 1
                if self._publish_errors % 100 == 1:
                    logger.warning("MQTT publish failed (rc=%s, topic=%s)", info.rc, topic)
                if must_deliver and len(self._pending_publishes) < self._max_pending:
                    self._pending_publishes.append((topic, str(payload), retain, qos))
        except Exception:
            self._publish_errors += 1
            if self._publish_errors % 100 == 1:
                logger.exception("MQTT publish exception (topic=%s)", topic)
            if must_deliver and len(self._pending_publishes) < self._max_pending:
                self._pending_publishes.append((topic, str(payload), retain, qos))

    # ------------------------------------------------------------------
    # NotificationSink
    # ------------------------------------------------------------------

    def on_alert(self, alert: Alert):
        self._publish(
            f"{self.prefix}/{alert.device_id}/alert",
            json.dumps(alert.to_dict()),
            qos=1,
        )

    def on_report(self, report: Report):
        self._publish(
            f"{self.prefix}/report/{report.kind.value}",
            json.dumps(report.to_dict()),
            qos=1,
        )

    def on_status(self, device_id: str, status: StableStatus):
        self._publish(
            f"{self.prefix}/{device_id}/status",
            json.dumps(status.to_dict()),
            retain=True,
            qos=1,
        )

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        """Publish offline status and disconnect."""
        self._publish(f"{self.prefix}/monitor/status", "offline", qos=1, retain=True)
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Error during MQTT disconnect", exc_info=True)
