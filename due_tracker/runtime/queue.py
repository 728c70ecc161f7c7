"""Per-channel refresh queues.

Each channel gets one sequential worker: tasks run strictly FIFO, spaced by a
cadence-dependent base delay plus 0–59 ms of jitter, and the whole channel
pauses while a rate-limit cooldown is active. Channels never wait on each
other.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from due_tracker.core.constants import (
    BASE_DELAY_MS,
    DEFAULT_BASE_DELAY_MS,
    JITTER_MS,
    RATE_LIMIT_COOLDOWN,
)
from due_tracker.core.models import AnnouncementRecord, Bucket
from due_tracker.core.utils import utc_now

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class Task:
    record: AnnouncementRecord
    bucket: Bucket
    enqueued_at: datetime


TaskRunner = Callable[[Task], Awaitable[None]]


def pacing_delay(bucket: Bucket, rng: random.Random) -> float:
    """Seconds to wait after a task of *bucket* before the next one."""
    base = BASE_DELAY_MS.get(bucket.value, DEFAULT_BASE_DELAY_MS)
    return (base + rng.randrange(JITTER_MS)) / 1000


class ChannelQueue:
    def __init__(
        self,
        channel_id: str,
        runner: TaskRunner,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.channel_id = channel_id
        self.pending: deque[Task] = deque()
        self.is_processing = False
        self.cooldown_until: datetime | None = None
        self._runner = runner
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._worker: asyncio.Task | None = None

    def enqueue(self, record: AnnouncementRecord, bucket: Bucket) -> None:
        """Append a task and start the worker if it is idle.

        Must be called from inside the running event loop.
        """
        self.pending.append(Task(record=record, bucket=bucket, enqueued_at=self._clock()))
        if not self.is_processing:
            self.is_processing = True
            self._worker = asyncio.get_running_loop().create_task(
                self._process(), name=f"channel-queue:{self.channel_id}"
            )

    def cool_down(self, retry_after: float | None = None) -> datetime:
        """Pause this channel for at least the standard cooldown."""
        window = RATE_LIMIT_COOLDOWN
        if retry_after is not None and retry_after > window.total_seconds():
            window = timedelta(seconds=retry_after)
        until = self._clock() + window
        if self.cooldown_until is None or until > self.cooldown_until:
            self.cooldown_until = until
        logger.warning(
            "Channel %s rate limited; pausing edits until %s",
            self.channel_id,
            self.cooldown_until.isoformat(),
        )
        return self.cooldown_until

    def in_cooldown(self) -> bool:
        return self.cooldown_until is not None and self._clock() < self.cooldown_until

    async def _process(self) -> None:
        try:
            while self.pending:
                now = self._clock()
                if self.cooldown_until is not None and now < self.cooldown_until:
                    await self._sleep((self.cooldown_until - now).total_seconds())
                    continue

                task = self.pending.popleft()
                try:
                    await self._runner(task)
                except Exception:
                    logger.exception(
                        "Refresh task failed for message %s in channel %s",
                        task.record.message_id,
                        self.channel_id,
                    )
                await self._sleep(pacing_delay(task.bucket, self._rng))
        finally:
            self.is_processing = False

    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def wait_idle(self) -> None:
        while self._worker is not None and not self._worker.done():
            await asyncio.gather(self._worker, return_exceptions=True)

    def cancel(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self.pending.clear()
        self.is_processing = False


class QueueRegistry:
    """Lazily creates one ChannelQueue per channel."""

    def __init__(
        self,
        runner: TaskRunner,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._runner = runner
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._queues: dict[str, ChannelQueue] = {}

    def get(self, channel_id: str) -> ChannelQueue:
        queue = self._queues.get(channel_id)
        if queue is None:
            queue = ChannelQueue(channel_id, self._runner, self._clock, self._sleep, self._rng)
            self._queues[channel_id] = queue
        return queue

    def enqueue(self, record: AnnouncementRecord, bucket: Bucket) -> None:
        self.get(record.channel_id).enqueue(record, bucket)

    def pending_count(self) -> int:
        return sum(len(q.pending) for q in self._queues.values())

    async def drain(self) -> None:
        """Wait until every channel worker has gone idle."""
        while True:
            busy = [q for q in self._queues.values() if q.is_running()]
            if not busy:
                return
            for queue in busy:
                await queue.wait_idle()

    def cancel_all(self) -> None:
        for queue in self._queues.values():
            queue.cancel()

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._queues
