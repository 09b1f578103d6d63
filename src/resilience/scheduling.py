"""Clock and interval-job scheduling used by every periodic resilience component.

Production code runs on APScheduler's ``AsyncIOScheduler`` with the wall clock.
Tests pair ``ManualClock`` with ``VirtualScheduler`` so time only moves when
the test advances it, and jobs fire in due order without real sleeps.
"""

import contextlib
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Protocol

from apscheduler.jobstores.base import JobLookupError  # type: ignore[import-untyped]
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

JobFunc = Callable[[], object]


class Clock(Protocol):
    def now(self) -> datetime: ...

    def now_ms(self) -> int: ...


class Scheduler(Protocol):
    def add_interval_job(self, job_id: str, func: JobFunc, seconds: float, *, run_now: bool = False) -> None: ...

    def remove_job(self, job_id: str) -> None: ...

    def start(self) -> None: ...

    def shutdown(self) -> None: ...


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class SystemClock:
    """Wall clock. ``now()`` is in the local timezone so hour-of-day reads naturally."""

    def now(self) -> datetime:
        return datetime.now().astimezone()

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime | None = None, tz: tzinfo = UTC) -> None:
        start = start or datetime(2026, 1, 5, 12, 0, tzinfo=tz)
        self._tz = tz
        self._ms = int(start.timestamp() * 1000)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._ms / 1000, tz=self._tz)

    def now_ms(self) -> int:
        return self._ms

    def set_ms(self, value: int) -> None:
        self._ms = value

    def advance(self, seconds: float = 0.0, *, ms: int = 0) -> None:
        self._ms += int(seconds * 1000) + ms


# ---------------------------------------------------------------------------
# Schedulers
# ---------------------------------------------------------------------------


class APSchedulerScheduler:
    """Interval jobs on an ``AsyncIOScheduler``; coroutine jobs run on the event loop."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler or AsyncIOScheduler()

    def add_interval_job(self, job_id: str, func: JobFunc, seconds: float, *, run_now: bool = False) -> None:
        _ = self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            next_run_time=datetime.now(UTC) if run_now else datetime.now(UTC) + timedelta(seconds=seconds),
        )

    def remove_job(self, job_id: str) -> None:
        with contextlib.suppress(JobLookupError):
            self._scheduler.remove_job(job_id)

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Resilience scheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            with contextlib.suppress(Exception):
                self._scheduler.shutdown(wait=False)
            logger.info("Resilience scheduler stopped")


@dataclass
class _VirtualJob:
    job_id: str
    func: JobFunc
    interval_ms: int
    next_run_ms: int


class VirtualScheduler:
    """Deterministic scheduler driven by a ``ManualClock``.

    ``advance()`` moves the clock forward, running every job that falls due
    along the way in timestamp order.  Coroutine jobs are awaited inline.
    """

    def __init__(self, clock: ManualClock) -> None:
        self._clock = clock
        self._jobs: dict[str, _VirtualJob] = {}
        self.running = False

    def add_interval_job(self, job_id: str, func: JobFunc, seconds: float, *, run_now: bool = False) -> None:
        interval_ms = int(seconds * 1000)
        now = self._clock.now_ms()
        self._jobs[job_id] = _VirtualJob(
            job_id=job_id,
            func=func,
            interval_ms=interval_ms,
            next_run_ms=now if run_now else now + interval_ms,
        )

    def remove_job(self, job_id: str) -> None:
        _ = self._jobs.pop(job_id, None)

    def has_job(self, job_id: str) -> bool:
        return job_id in self._jobs

    @property
    def job_ids(self) -> list[str]:
        return sorted(self._jobs)

    def start(self) -> None:
        self.running = True

    def shutdown(self) -> None:
        self.running = False

    async def run_pending(self) -> int:
        """Run every job already due at the current virtual time."""
        return await self.advance(0)

    async def advance(self, seconds: float) -> int:
        """Advance virtual time, firing due jobs. Returns the number of job runs."""
        target = self._clock.now_ms() + int(seconds * 1000)
        runs = 0
        while True:
            due = [job for job in self._jobs.values() if job.next_run_ms <= target]
            if not due:
                break
            job = min(due, key=lambda j: j.next_run_ms)
            if job.next_run_ms > self._clock.now_ms():
                self._clock.set_ms(job.next_run_ms)
            job.next_run_ms += max(job.interval_ms, 1)
            result = job.func()
            if inspect.isawaitable(result):
                await result
            runs += 1
        if target > self._clock.now_ms():
            self._clock.set_ms(target)
        return runs
