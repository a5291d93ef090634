# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Calendar report scheduler -- daily, weekly and monthly status reports.

Each tick checks whether local time sits inside the window that opens at
the configured time of day.  A window may run past midnight, in which
case it still belongs to the day it opened on.  A report fires at most
once per calendar day, ISO week or month; the scheduled slot is recorded
and saved before the report is handed to the sink, so a duplicate tick
inside the same window is a no-op even if dispatch fails.
"""

import asyncio
import calendar
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from .state_store import ReportScheduleState
from .transport import NotificationSink
from .ups_model import Report, ReportKind

logger = logging.getLogger(__name__)

_LAST_SENT_FIELD = {
    ReportKind.DAILY: "last_daily",
    ReportKind.WEEKLY: "last_weekly",
    ReportKind.MONTHLY: "last_monthly",
}


def parse_time_of_day(s: str) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    parts = s.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid time format: {s!r} (expected HH:MM)")
    try:
        h, m = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid time format: {s!r} (non-numeric)")
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"Invalid time: {s!r} (hour 0-23, minute 0-59)")
    return h, m


@dataclass
class ReportSchedule:
    time_of_day: str = "08:00"
    weekday: int = 0              # 0=Mon..6=Sun
    day_of_month: int = 1         # clamped to the month's length
    window: float = 120.0         # seconds after the scheduled time
    daily: bool = True
    weekly: bool = True
    monthly: bool = True

    def __post_init__(self):
        self.hour, self.minute = parse_time_of_day(self.time_of_day)
        if not (0 <= self.weekday <= 6):
            raise ValueError(f"weekday must be 0-6, got {self.weekday}")
        if not (1 <= self.day_of_month <= 31):
            raise ValueError(f"day_of_month must be 1-31, got {self.day_of_month}")

    @classmethod
    def from_config(cls, config) -> "ReportSchedule":
        return cls(
            time_of_day=config.report_time,
            weekday=config.report_weekday,
            day_of_month=config.report_day_of_month,
            window=config.report_window,
            daily=config.reports_daily,
            weekly=config.reports_weekly,
            monthly=config.reports_monthly,
        )

    def enabled_kinds(self) -> list[ReportKind]:
        flags = {
            ReportKind.DAILY: self.daily,
            ReportKind.WEEKLY: self.weekly,
            ReportKind.MONTHLY: self.monthly,
        }
        return [kind for kind, on in flags.items() if on]

    def matches_day(self, kind: ReportKind, day: datetime) -> bool:
        if kind is ReportKind.WEEKLY:
            return day.weekday() == self.weekday
        if kind is ReportKind.MONTHLY:
            last_day = calendar.monthrange(day.year, day.month)[1]
            return day.day == min(self.day_of_month, last_day)
        return True

    def scheduled_on(self, day: datetime) -> datetime:
        return day.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)


def same_period(kind: ReportKind, a: datetime, b: datetime) -> bool:
    if kind is ReportKind.DAILY:
        return a.date() == b.date()
    if kind is ReportKind.WEEKLY:
        return a.isocalendar()[:2] == b.isocalendar()[:2]
    return (a.year, a.month) == (b.year, b.month)


class ReportScheduler:
    def __init__(self, schedule: ReportSchedule, status_source=None,
                 sink: NotificationSink | None = None, state_store=None,
                 tick_interval: float = 60.0):
        self.schedule = schedule
        self._status_source = status_source
        self._sink = sink
        self._state_store = state_store
        self.state: ReportScheduleState = (
            state_store.report_state if state_store is not None else ReportScheduleState()
        )
        self.tick_interval = tick_interval
        self._running = False
        self._reports_sent = 0
        self._missing_source_logged = False

    async def run(self):
        self._running = True
        logger.info(
            "Report scheduler running (%s at %02d:%02d, tick %.0fs)",
            ",".join(k.value for k in self.schedule.enabled_kinds()) or "none",
            self.schedule.hour, self.schedule.minute, self.tick_interval,
        )
        while self._running:
            try:
                self.tick()
            except Exception:
                logger.exception("Error in report scheduler")
            await asyncio.sleep(self.tick_interval)

    def stop(self):
        self._running = False

    def tick(self, now: datetime | None = None) -> list[Report]:
        """Fire every report that is due at ``now``. Returns what fired."""
        now = now or datetime.now()
        if self._status_source is None:
            if not self._missing_source_logged:
                logger.warning("Report scheduler has no status source, skipping")
                self._missing_source_logged = True
            return []

        fired = []
        for kind in self.schedule.enabled_kinds():
            slot = self.due_slot(kind, now)
            if slot is None:
                continue
            self._mark_sent(kind, slot)
            report = self._build(kind, now)
            self._dispatch(report)
            fired.append(report)
        return fired

    def due_slot(self, kind: ReportKind, now: datetime) -> datetime | None:
        """Scheduled instant whose window contains ``now`` and is not yet reported.

        A window that starts late in the evening runs past midnight, so
        yesterday's slot is checked as well as today's.
        """
        window = timedelta(seconds=self.schedule.window)
        for days_back in (0, 1):
            day = now - timedelta(days=days_back)
            if not self.schedule.matches_day(kind, day):
                continue
            scheduled = self.schedule.scheduled_on(day)
            if not (scheduled <= now < scheduled + window):
                continue
            last = getattr(self.state, _LAST_SENT_FIELD[kind])
            if last is not None and same_period(kind, datetime.fromtimestamp(last), scheduled):
                return None
            return scheduled
        return None

    def _mark_sent(self, kind: ReportKind, slot: datetime):
        setattr(self.state, _LAST_SENT_FIELD[kind], slot.timestamp())
        if self._state_store is not None:
            try:
                self._state_store.save()
            except Exception:
                logger.exception("Failed to persist %s report state", kind.value)

    def _build(self, kind: ReportKind, now: datetime, manual: bool = False) -> Report:
        return Report(
            kind=kind,
            generated_at=now.timestamp(),
            statuses=self._status_source.stable_table(),
            device_names=self._status_source.device_names(),
            manual=manual,
        )

    def _dispatch(self, report: Report):
        self._reports_sent += 1
        logger.info("Sending %s%s report (%d device(s))", report.kind.value,
                    " manual" if report.manual else "", len(report.statuses))
        if self._sink is None:
            return
        try:
            self._sink.on_report(report)
        except Exception:
            logger.exception("Notification sink failed for %s report", report.kind.value)

    def send_now(self, kind: ReportKind) -> Report | None:
        """Send a report immediately without touching the schedule state."""
        if self._status_source is None:
            logger.warning("Cannot send %s report: no status source", kind.value)
            return None
        report = self._build(kind, datetime.now(), manual=True)
        self._dispatch(report)
        return report

    def next_report_times(self, now: datetime | None = None) -> dict[ReportKind, datetime]:
        """Next scheduled time of each enabled report kind."""
        now = now or datetime.now()
        window = timedelta(seconds=self.schedule.window)
        result = {}
        for kind in self.schedule.enabled_kinds():
            last = getattr(self.state, _LAST_SENT_FIELD[kind])
            last_dt = datetime.fromtimestamp(last) if last is not None else None
            for offset in range(0, 400):
                day = now + timedelta(days=offset)
                if not self.schedule.matches_day(kind, day):
                    continue
                scheduled = self.schedule.scheduled_on(day)
                if scheduled + window <= now:
                    continue
                if last_dt is not None and same_period(kind, last_dt, scheduled):
                    continue
                result[kind] = scheduled
                break
        return result

    def get_status_detail(self) -> dict:
        return {
            "reports_sent": self._reports_sent,
            "state": self.state.to_dict(),
            "next": {k.value: v.isoformat() for k, v in self.next_report_times().items()},
            "checked_at": time.time(),
        }
