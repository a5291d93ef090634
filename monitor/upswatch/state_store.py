# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Scheduler state that must survive restarts (report dedup, reminders)."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "/data/scheduler_state.json"


@dataclass
class ReportScheduleState:
    """Last-sent time (epoch seconds) of each scheduled report kind."""
    last_daily: float | None = None
    last_weekly: float | None = None
    last_monthly: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_daily": self.last_daily,
            "last_weekly": self.last_weekly,
            "last_monthly": self.last_monthly,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ReportScheduleState":
        def ts(key: str) -> float | None:
            v = d.get(key)
            try:
                return float(v) if v is not None else None
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid %s=%r in scheduler state", key, v)
                return None

        return cls(
            last_daily=ts("last_daily"),
            last_weekly=ts("last_weekly"),
            last_monthly=ts("last_monthly"),
        )


class StateStore:
    """One JSON document holding report and maintenance bookkeeping.

    Components mutate ``report_state`` / ``maintenance_sent`` in place and
    call :meth:`save`; writes are atomic (temp file + rename).
    """

    def __init__(self, path: str = DEFAULT_STATE_FILE):
        self._path = Path(path)
        self.report_state = ReportScheduleState()
        self.maintenance_sent: dict[str, float] = {}
        self.load()

    def load(self):
        if not self._path.exists():
            logger.info("No scheduler state at %s, starting fresh", self._path)
            return
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed to load scheduler state from %s", self._path)
            return
        self.report_state = ReportScheduleState.from_dict(data.get("reports", {}))
        self.maintenance_sent.clear()
        for dev_id, ts in data.get("maintenance_sent", {}).items():
            try:
                self.maintenance_sent[dev_id] = float(ts)
            except (TypeError, ValueError):
                continue
        logger.info("Loaded scheduler state from %s", self._path)

    def save(self):
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps({
            "reports": self.report_state.to_dict(),
            "maintenance_sent": self.maintenance_sent,
        }, indent=2)
        tmp = self._path.with_suffix(".tmp")
        try:
            tmp.write_text(data)
            tmp.rename(self._path)
        except Exception:
            logger.exception("Failed to save scheduler state to %s", self._path)
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise
