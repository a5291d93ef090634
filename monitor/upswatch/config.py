# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Configuration from environment variables with validation."""

import logging
import os

from .report_scheduler import parse_time_of_day

logger = logging.getLogger(__name__)

_TRUE = ("true", "1", "yes")


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class Config:
    def __init__(self):
        self.devices_file = os.environ.get("UPS_DEVICES_FILE", "/data/devices.json")
        self.state_file = os.environ.get("UPS_STATE_FILE", "/data/scheduler_state.json")

        self.poll_interval = self._float("UPS_POLL_INTERVAL", "30", 1, 3600)
        self.nut_timeout = self._float("UPS_NUT_TIMEOUT", "15", 1, 120)
        self.snmp_timeout = self._float("UPS_SNMP_TIMEOUT", "2.0", 0.5, 30)
        self.snmp_retries = self._int("UPS_SNMP_RETRIES", "1", 0, 5)
        self.mock_mode = self._bool("UPS_MOCK_MODE", "false")
        self.log_level = os.environ.get("UPS_LOG_LEVEL", "INFO").upper()

        # Debounce and alert thresholds
        self.offline_dwell = self._float("UPS_OFFLINE_DWELL", "30", 0, 3600)
        self.online_dwell = self._float("UPS_ONLINE_DWELL", "10", 0, 3600)
        self.low_battery_threshold = self._float("UPS_LOW_BATTERY_THRESHOLD", "20", 0, 100)
        self.temperature_warning = self._float("UPS_TEMPERATURE_WARNING", "35", -40, 100)
        self.load_warning = self._float("UPS_LOAD_WARNING", "80", 0, 200)

        # Alert preferences
        self.alerts_enabled = self._bool("UPS_ALERTS_ENABLED", "true")
        self.notify_on_battery = self._bool("UPS_NOTIFY_ON_BATTERY", "true")
        self.notify_power_restored = self._bool("UPS_NOTIFY_POWER_RESTORED", "true")
        self.notify_low_battery = self._bool("UPS_NOTIFY_LOW_BATTERY", "true")
        self.notify_device_offline = self._bool("UPS_NOTIFY_DEVICE_OFFLINE", "true")
        self.notify_critical_alarms = self._bool("UPS_NOTIFY_CRITICAL_ALARMS", "true")
        self.notify_warnings = self._bool("UPS_NOTIFY_WARNINGS", "true")
        self.notify_maintenance = self._bool("UPS_NOTIFY_MAINTENANCE", "true")

        # Reports
        self.report_time = os.environ.get("UPS_REPORT_TIME", "08:00")
        self.report_weekday = self._int("UPS_REPORT_WEEKDAY", "0", 0, 6)
        self.report_day_of_month = self._int("UPS_REPORT_DAY_OF_MONTH", "1", 1, 31)
        self.reports_daily = self._bool("UPS_REPORTS_DAILY", "true")
        self.reports_weekly = self._bool("UPS_REPORTS_WEEKLY", "true")
        self.reports_monthly = self._bool("UPS_REPORTS_MONTHLY", "true")
        self.report_tick = self._float("UPS_REPORT_TICK", "60", 1, 60)
        self.report_window = self._float("UPS_REPORT_WINDOW", "120", 1, 3600)

        # MQTT notifications
        self.mqtt_enabled = self._bool("UPS_MQTT_ENABLED", "false")
        self.mqtt_broker = os.environ.get("MQTT_BROKER", "mosquitto")
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")
        self.mqtt_topic_prefix = os.environ.get("MQTT_TOPIC_PREFIX", "ups").strip("/")

        if not self.mqtt_topic_prefix or any(c in self.mqtt_topic_prefix for c in "#+ "):
            raise ConfigError(
                f"MQTT_TOPIC_PREFIX contains invalid characters: {self.mqtt_topic_prefix!r}"
            )
        self._validate_report_time()
        self._log_config()

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _float(env: str, default: str, min_val: float, max_val: float) -> float:
        raw = os.environ.get(env, default)
        try:
            val = float(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid number")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _bool(env: str, default: str) -> bool:
        return os.environ.get(env, default).strip().lower() in _TRUE

    def _validate_report_time(self):
        try:
            parse_time_of_day(self.report_time)
        except ValueError as e:
            raise ConfigError(f"UPS_REPORT_TIME: {e}") from e

    def _log_config(self):
        logger.info(
            "Config: devices=%s mock=%s poll=%.0fs dwell=%.0f/%.0fs low_battery=%.0f%% "
            "reports=%s mqtt=%s",
            self.devices_file, self.mock_mode, self.poll_interval,
            self.offline_dwell, self.online_dwell, self.low_battery_threshold,
            self.report_time,
            f"{self.mqtt_broker}:{self.mqtt_port}" if self.mqtt_enabled else "off",
        )
