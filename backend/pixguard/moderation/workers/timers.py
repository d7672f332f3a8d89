"""Timers driving the moderation queue loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Timer(Protocol):
    """Schedules coroutine callbacks. Cancelling a handle twice is harmless."""

    def call_every(self, interval: float, callback: TimerCallback, *, name: str, immediate: bool = False) -> TimerHandle:
        ...

    def call_later(self, delay: float, callback: TimerCallback, *, name: str) -> TimerHandle:
        ...

    def shutdown(self) -> None:
        ...


class _SchedulerJob:
    def __init__(self, scheduler: AsyncIOScheduler, job_id: str) -> None:
        self._scheduler = scheduler
        self.job_id = job_id

    def cancel(self) -> None:
        try:
            self._scheduler.remove_job(self.job_id)
        except JobLookupError:
            # one-shot jobs remove themselves after firing
            pass


class SchedulerTimer(Timer):
    """Timer backed by APScheduler's AsyncIOScheduler.

    Job ids are the callback names, so arming a name again replaces the
    previous job instead of stacking a second one.
    """

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._started = False

    def _ensure_started(self) -> None:
        if not self._started:
            self._scheduler.start()
            self._started = True

    def call_every(self, interval: float, callback: TimerCallback, *, name: str, immediate: bool = False) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._ensure_started()
        options = {}
        if immediate:
            # omitting next_run_time lets the trigger compute it; passing None would pause the job
            options["next_run_time"] = datetime.now(timezone.utc)
        self._scheduler.add_job(
            callback,
            trigger=IntervalTrigger(seconds=interval),
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            **options,
        )
        return _SchedulerJob(self._scheduler, name)

    def call_later(self, delay: float, callback: TimerCallback, *, name: str) -> TimerHandle:
        self._ensure_started()
        run_date = datetime.now(timezone.utc) + timedelta(seconds=max(delay, 0.0))
        self._scheduler.add_job(
            callback,
            trigger=DateTrigger(run_date=run_date),
            id=name,
            name=name,
            replace_existing=True,
            misfire_grace_time=None,
        )
        return _SchedulerJob(self._scheduler, name)

    def shutdown(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False


@dataclass(slots=True)
class _ManualJob:
    name: str
    callback: TimerCallback
    due: float
    interval: float | None = None
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimer(Timer):
    """Deterministic timer whose clock only moves when ``advance`` is awaited."""

    def __init__(self) -> None:
        self.now = 0.0
        self._jobs: list[_ManualJob] = []

    def call_every(self, interval: float, callback: TimerCallback, *, name: str, immediate: bool = False) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        job = _ManualJob(name=name, callback=callback, due=self.now if immediate else self.now + interval, interval=interval)
        self._jobs.append(job)
        return job

    def call_later(self, delay: float, callback: TimerCallback, *, name: str) -> TimerHandle:
        job = _ManualJob(name=name, callback=callback, due=self.now + max(delay, 0.0))
        self._jobs.append(job)
        return job

    def active(self) -> list[str]:
        return [job.name for job in self._jobs if not job.cancelled]

    async def advance(self, seconds: float = 0.0) -> int:
        """Move the clock forward, firing due callbacks in order. Returns how many fired."""
        target = self.now + seconds
        fired = 0
        while True:
            self._jobs = [job for job in self._jobs if not job.cancelled]
            due = [job for job in self._jobs if job.due <= target]
            if not due:
                break
            job = min(due, key=lambda item: item.due)
            self.now = max(self.now, job.due)
            if job.interval is None:
                job.cancelled = True
            else:
                job.due += job.interval
            fired += 1
            await job.callback()
        self.now = target
        return fired

    def shutdown(self) -> None:
        for job in self._jobs:
            job.cancel()
        self._jobs.clear()


__all__ = ["ManualTimer", "SchedulerTimer", "Timer", "TimerCallback", "TimerHandle"]
