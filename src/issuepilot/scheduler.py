from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import threading

from issuepilot.observability import log_event


LOGGER = logging.getLogger("issuepilot.scheduler")


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""

    @abstractmethod
    def wait(self, stop: threading.Event, seconds: float) -> bool:
        """Block up to ``seconds`` or until ``stop`` is set. Returns True when stopped."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def wait(self, stop: threading.Event, seconds: float) -> bool:
        return stop.wait(timeout=max(0.0, seconds))


class ManualClock(Clock):
    """Clock for tests and dry runs: time only moves when ``advance`` is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now

    def wait(self, stop: threading.Event, seconds: float) -> bool:
        if stop.is_set():
            return True
        self.advance(seconds)
        return stop.is_set()


@dataclass
class PeriodicTask:
    name: str
    interval_seconds: float
    action: Callable[[], object]
    next_due: datetime | None = None
    run_count: int = 0
    failure_count: int = 0

    def is_due(self, now: datetime) -> bool:
        return self.next_due is None or now >= self.next_due

    def run(self, now: datetime) -> None:
        self.next_due = now + timedelta(seconds=self.interval_seconds)
        self.run_count += 1
        try:
            self.action()
        except Exception as exc:  # noqa: BLE001
            self.failure_count += 1
            log_event(
                LOGGER,
                "periodic_task_failed",
                task=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )


class Scheduler:
    """Runs periodic tasks on the calling thread until cancelled.

    A failing task is logged and rescheduled; it never stops the others.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        stop_event: threading.Event | None = None,
        idle_seconds: float = 1.0,
    ) -> None:
        self._clock = clock
        self._stop = stop_event or threading.Event()
        self._idle_seconds = idle_seconds
        self._tasks: list[PeriodicTask] = []
        self._before_tick: list[Callable[[], object]] = []

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    @property
    def tasks(self) -> tuple[PeriodicTask, ...]:
        return tuple(self._tasks)

    def add(
        self, name: str, interval_seconds: float, action: Callable[[], object]
    ) -> PeriodicTask:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if any(task.name == name for task in self._tasks):
            raise ValueError(f"Duplicate periodic task name: {name}")
        task = PeriodicTask(name=name, interval_seconds=interval_seconds, action=action)
        self._tasks.append(task)
        return task

    def on_tick(self, hook: Callable[[], object]) -> None:
        self._before_tick.append(hook)

    def run_once(self) -> int:
        for hook in self._before_tick:
            hook()
        now = self._clock.now()
        ran = 0
        for task in self._tasks:
            if self._stop.is_set():
                break
            if task.is_due(now):
                task.run(now)
                ran += 1
        return ran

    def run_forever(self) -> None:
        log_event(LOGGER, "scheduler_started", task_count=len(self._tasks))
        while not self._stop.is_set():
            self.run_once()
            if self._clock.wait(self._stop, self._seconds_until_next_due()):
                break
        log_event(LOGGER, "scheduler_stopped")

    def cancel(self) -> None:
        self._stop.set()

    def reset(self) -> None:
        self._stop.clear()

    def _seconds_until_next_due(self) -> float:
        now = self._clock.now()
        waits = [
            (task.next_due - now).total_seconds() for task in self._tasks if task.next_due is not None
        ]
        if not waits:
            return self._idle_seconds
        return max(0.0, min(min(waits), self._idle_seconds))
