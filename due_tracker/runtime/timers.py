"""Wall-clock aligned repeating timers for the tick drivers.

Every job owns a rule that computes its next fire time from the current
instant (top of the second, top of the minute, local midnight, ...). The
next fire time is always recomputed rather than added to a fixed period, so
daylight-saving shifts and slow callbacks never accumulate drift.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from due_tracker.core.utils import utc_now
from due_tracker.runtime.queue import Sleep

logger = logging.getLogger(__name__)

# Job callbacks receive the scheduled fire time; they may be sync or async.
TickCallback = Callable[[datetime], Any]


class FireRule(Protocol):
    def next_fire(self, after: datetime) -> datetime:
        """Return the first fire time strictly later than *after*."""
        ...


class AlignedInterval:
    """Fires on multiples of *period* since the Unix epoch (e.g. every :00 second)."""

    def __init__(self, period: timedelta) -> None:
        if period <= timedelta(0):
            raise ValueError("period must be positive")
        self.period = period

    def next_fire(self, after: datetime) -> datetime:
        period = self.period.total_seconds()
        ts = after.timestamp()
        nxt = (math.floor(ts / period) + 1) * period
        return datetime.fromtimestamp(nxt, tz=UTC)


class LocalMidnight:
    """Fires at 00:00 local time in *tz*, honouring DST transitions."""

    def __init__(self, tz: ZoneInfo) -> None:
        self.tz = tz

    def next_fire(self, after: datetime) -> datetime:
        local = after.astimezone(self.tz)
        tomorrow = local.date() + timedelta(days=1)
        return datetime.combine(tomorrow, time(0), tzinfo=self.tz).astimezone(UTC)


@dataclass
class Job:
    name: str
    rule: FireRule
    callback: TickCallback
    fires: int = 0
    last_fire: datetime | None = None
    task: asyncio.Task | None = field(default=None, repr=False)


class TickScheduler:
    """Runs registered jobs as independent asyncio tasks.

    A failing callback is logged and counted; it never stops its timer or any
    other job.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._jobs: dict[str, Job] = {}
        self._running = False
        self.failure_counts: dict[str, int] = {}

    def register(self, name: str, rule: FireRule, callback: TickCallback) -> None:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        job = Job(name=name, rule=rule, callback=callback)
        self._jobs[name] = job
        if self._running:
            self._spawn(job)

    @property
    def running(self) -> bool:
        return self._running

    def job_names(self) -> list[str]:
        return list(self._jobs)

    def start(self) -> None:
        """Start every job's timer (idempotent). Needs a running event loop."""
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            self._spawn(job)

    def stop(self) -> None:
        self._running = False
        for job in self._jobs.values():
            if job.task is not None and not job.task.done():
                job.task.cancel()
            job.task = None

    async def fire(self, name: str, at: datetime | None = None) -> Any:
        """Run one job's callback now; returns its result or None on failure."""
        job = self._jobs[name]
        at = at or self._clock()
        job.fires += 1
        job.last_fire = at
        try:
            result = job.callback(at)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception:
            self.failure_counts[name] = self.failure_counts.get(name, 0) + 1
            logger.exception("Timer job %r failed (failure #%d)", name, self.failure_counts[name])
            return None

    def _spawn(self, job: Job) -> None:
        job.task = asyncio.get_running_loop().create_task(self._loop(job), name=f"timer:{job.name}")

    async def _loop(self, job: Job) -> None:
        while self._running:
            now = self._clock()
            # Never fire the same slot twice if the sleep woke up early.
            base = max(now, job.last_fire) if job.last_fire else now
            fire_at = job.rule.next_fire(base)
            await self._sleep(max(0.0, (fire_at - now).total_seconds()))
            if not self._running:
                return
            await self.fire(job.name, fire_at)
