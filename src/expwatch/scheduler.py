# Copyright (c) Syntropy Systems
"""Cron-style scheduler for periodic detection and recovery sweeps."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from threading import Event, Lock, Thread
from typing import Optional
from zoneinfo import ZoneInfo

from expwatch.config import ExpwatchConfig
from expwatch.orchestrator import DetectionOrchestrator

logger = logging.getLogger(__name__)

DETECTION_TASK = "change_detection"
SWEEP_TASK = "recovery_sweep"

# (name, low, high) for the five cron fields
_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 7),
)


def _parse_field(expr: str, low: int, high: int, name: str) -> frozenset[int]:
    values: set[int] = set()
    for part in expr.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step < 1:
                msg = f"Invalid step in {name} field: {expr}"
                raise ValueError(msg)
        if part in ("*", ""):
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = int(part)
            end = high if step > 1 else start
        if start < low or end > high or start > end:
            msg = f"Value out of range in {name} field: {expr}"
            raise ValueError(msg)
        values.update(range(start, end + 1, step))
    if name == "day_of_week":
        # 7 is Sunday too
        return frozenset(value % 7 for value in values)
    return frozenset(values)


@dataclass(frozen=True)
class CronSchedule:
    """
    Parsed five-field cron expression.

    Format: "minute hour day month day_of_week"
    Examples:
        "0 2 1 * *" - 02:00 on the first of every month
        "0 */4 * * *" - every four hours
        "0 0 * * 0" - weekly on Sunday at midnight
    """

    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    day_restricted: bool
    dow_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> CronSchedule:
        parts = expression.strip().split()
        if len(parts) != 5:
            msg = f"Invalid cron expression: {expression}"
            raise ValueError(msg)
        try:
            parsed = [_parse_field(p, low, high, name) for p, (name, low, high) in zip(parts, _FIELDS)]
        except ValueError as e:
            msg = f"Invalid cron expression '{expression}': {e}"
            raise ValueError(msg) from e
        return cls(
            expression=expression,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            days_of_week=parsed[4],
            day_restricted=parts[2] != "*",
            dow_restricted=parts[4] != "*",
        )

    def _day_matches(self, dt: datetime) -> bool:
        # cron counts Sunday as 0, Python counts Monday as 0
        in_days = dt.day in self.days
        in_dow = (dt.weekday() + 1) % 7 in self.days_of_week
        if self.day_restricted and self.dow_restricted:
            return in_days or in_dow
        return in_days and in_dow

    def matches(self, dt: datetime) -> bool:
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt)
        )

    def next_after(self, after: datetime) -> Optional[datetime]:
        """First matching minute strictly after `after`, or None within five years."""
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + timedelta(days=5 * 366)
        while candidate < limit:
            if candidate.month not in self.months:
                year = candidate.year + (candidate.month == 12)
                month = candidate.month % 12 + 1
                candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        return None


@dataclass
class ScheduledTask:
    name: str
    schedule: CronSchedule
    action: Callable[[], object]
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    _fired_minute: Optional[datetime] = field(default=None, repr=False)


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class Scheduler:
    """Runs registered tasks when their cron schedule matches.

    A background thread ticks every `tick_seconds`; each task fires at most
    once per matching minute.
    """

    def __init__(self, tz: tzinfo = timezone.utc, tick_seconds: float = 30.0) -> None:
        self.tz = tz
        self.tick_seconds = tick_seconds
        self._tasks: dict[str, ScheduledTask] = {}
        self._lock = Lock()
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @classmethod
    def for_orchestrator(cls, orchestrator: DetectionOrchestrator, config: ExpwatchConfig) -> Scheduler:
        """Scheduler with the monthly detection run and the recovery sweep."""
        scheduler = cls(tz=resolve_timezone(config.schedule_timezone))
        scheduler.add_task(
            DETECTION_TASK,
            config.detection_schedule,
            lambda: orchestrator.run_for_all_datasets("cron", "monthly_scheduler"),
        )
        scheduler.add_task(SWEEP_TASK, config.sweep_schedule, orchestrator.recover)
        return scheduler

    def add_task(self, name: str, expression: str, action: Callable[[], object]) -> ScheduledTask:
        task = ScheduledTask(name=name, schedule=CronSchedule.parse(expression), action=action)
        with self._lock:
            self._tasks[name] = task
        return task

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="expwatch-scheduler", daemon=True)
        self._thread.start()
        for task in self.tasks():
            logger.info("Scheduled %s (%s), next run %s", task.name, task.schedule.expression, self.next_run(task.name))

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None

    def tasks(self) -> list[ScheduledTask]:
        with self._lock:
            return list(self._tasks.values())

    def next_run(self, name: str, now: Optional[datetime] = None) -> Optional[datetime]:
        task = self._get(name)
        return task.schedule.next_after(now or datetime.now(self.tz))

    def _get(self, name: str) -> ScheduledTask:
        with self._lock:
            task = self._tasks.get(name)
        if task is None:
            msg = f"Unknown scheduled task: {name}"
            raise KeyError(msg)
        return task

    def trigger_now(self, name: str = DETECTION_TASK) -> object:
        """Run a task immediately, outside its schedule. Errors propagate."""
        task = self._get(name)
        logger.info("Manually triggering %s", name)
        return self._run(task, datetime.now(self.tz), reraise=True)

    def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Run every task whose schedule matches `now`. Returns the names run."""
        if now is None:
            now = datetime.now(self.tz)
        minute = now.replace(second=0, microsecond=0)
        fired: list[str] = []
        for task in self.tasks():
            if task._fired_minute == minute or not task.schedule.matches(now):
                continue
            task._fired_minute = minute
            _ = self._run(task, now, reraise=False)
            fired.append(task.name)
        return fired

    def _run(self, task: ScheduledTask, now: datetime, reraise: bool) -> object:
        task.last_run = now
        task.runs += 1
        try:
            result = task.action()
        except Exception as e:
            task.last_error = str(e)
            if reraise:
                raise
            logger.exception("Scheduled task %s failed", task.name)
            return None
        task.last_error = None
        return result

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                _ = self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            _ = self._stop.wait(timeout=self.tick_seconds)
