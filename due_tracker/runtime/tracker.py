"""Homework tracker — keeps posted due-date announcements visually current.

Flow:
  track() → bucket registry classifies the record
  second/minute/daily ticks → select bucket members → per-channel queue
  queue task → signature dedup → render + edit → reclassify or untrack
  every change → debounced snapshot; start() restores and reconciles
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from due_tracker.core.constants import (
    CACHE_PRUNE_INTERVAL,
    DEFAULT_HOME_TZ,
    SECOND_BUCKET_CAP_PER_TICK,
)
from due_tracker.core.models import (
    AnnouncementRecord,
    Bucket,
    DueItem,
    Payload,
    SnapshotEntry,
    TrackStatus,
)
from due_tracker.core.rendering import render_text
from due_tracker.core.rules.labels import signature
from due_tracker.core.utils import minute_of_hour, utc_now
from due_tracker.integrations.platform import (
    ChatPlatform,
    MessageNotFoundError,
    RateLimitedError,
)
from due_tracker.runtime.buckets import BucketRegistry
from due_tracker.runtime.cache import ResolverCache
from due_tracker.runtime.queue import QueueRegistry, Sleep, Task
from due_tracker.runtime.timers import AlignedInterval, LocalMidnight, TickScheduler
from due_tracker.storage.persistence import PersistenceAdapter
from due_tracker.storage.snapshot import SnapshotStore

logger = logging.getLogger(__name__)

Renderer = Callable[[list[DueItem], str, datetime], Payload]


class HomeworkTracker:
    """Owns the tracking table, bucket registry, channel queues and timers.

    All state mutations happen on the event loop thread: from tick callbacks,
    from queue task completion, or from the public methods below.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        store: SnapshotStore | None = None,
        renderer: Renderer | None = None,
        *,
        home_tz: ZoneInfo | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
        second_cap: int = SECOND_BUCKET_CAP_PER_TICK,
    ) -> None:
        self._platform = platform
        self._tz = home_tz or ZoneInfo(DEFAULT_HOME_TZ)
        self._renderer = renderer or (lambda items, label, now: render_text(items, label, now, self._tz))
        self._clock = clock
        self._second_cap = second_cap

        self._records: dict[str, AnnouncementRecord] = {}
        self.buckets = BucketRegistry(self._tz)
        self.queues = QueueRegistry(self._run_task, clock=clock, sleep=sleep, rng=rng)
        self.cache = ResolverCache(platform, clock=clock)
        self.persistence = PersistenceAdapter(store, self._snapshot, sleep=sleep)
        self.scheduler = TickScheduler(clock=clock, sleep=sleep)
        self.scheduler.register("second", AlignedInterval(timedelta(seconds=1)), self.second_tick)
        self.scheduler.register("minute", AlignedInterval(timedelta(minutes=1)), self.minute_tick)
        self.scheduler.register("daily", LocalMidnight(self._tz), self.daily_tick)
        self.scheduler.register("cache-prune", AlignedInterval(CACHE_PRUNE_INTERVAL), self._prune_cache)
        self._started = False

    # ── Public operations ─────────────────────────────────────────────────

    def track(
        self,
        channel_id: str,
        message_id: str,
        items: list[DueItem],
        label: str = "",
    ) -> AnnouncementRecord:
        """Register an announcement; replaces any record with the same message id."""
        previous = self._records.pop(message_id, None)
        if previous is not None:
            self.buckets.discard(previous)

        record = AnnouncementRecord(
            channel_id=channel_id,
            message_id=message_id,
            items=list(items),
            label=label,
        )
        self._records[message_id] = record
        bucket = self.buckets.update_membership(record, self._clock())
        logger.info(
            "Tracking message %s in channel %s (%d item(s), %s cadence)",
            message_id,
            channel_id,
            len(record.items),
            bucket,
        )
        self.persistence.request_save()
        return record

    def append_items(self, message_id: str, items: list[DueItem]) -> int:
        """Add items to a tracked announcement; returns how many were new."""
        record = self._records.get(message_id)
        if record is None:
            return 0
        added = record.add_items(items)
        if added:
            self.buckets.update_membership(record, self._clock())
            self.persistence.request_save()
        return added

    def untrack(self, message_id: str) -> bool:
        """Stop tracking; idempotent. Returns whether a record was removed."""
        record = self._records.pop(message_id, None)
        if record is None:
            self.buckets.discard_id(message_id)
            return False
        self.buckets.discard(record)
        self.cache.forget_message(record.channel_id, message_id)
        logger.info("Untracked message %s", message_id)
        self.persistence.request_save()
        return True

    def get_status(self, message_id: str) -> TrackStatus:
        record = self._records.get(message_id)
        if record is None:
            return TrackStatus(tracked=False)
        return TrackStatus(
            tracked=True,
            channel_id=record.channel_id,
            message_id=record.message_id,
            bucket=record.bucket,
            item_count=len(record.items),
            all_past_due=record.all_past_due(self._clock()),
        )

    def refresh_now(self, message_id: str) -> bool:
        """Queue an immediate refresh outside the normal cadence."""
        record = self._records.get(message_id)
        if record is None:
            return False
        bucket = record.bucket if record.bucket != Bucket.NONE else Bucket.MINUTE
        self.queues.enqueue(record, bucket)
        return True

    def render(self, items: list[DueItem], label: str) -> Payload:
        return self._renderer(list(items), label, self._clock())

    def now(self) -> datetime:
        return self._clock()

    @property
    def home_tz(self) -> ZoneInfo:
        return self._tz

    @property
    def platform(self) -> ChatPlatform:
        return self._platform

    def list_tracked(self) -> list[AnnouncementRecord]:
        return list(self._records.values())

    def get_record(self, message_id: str) -> AnnouncementRecord | None:
        return self._records.get(message_id)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._records

    async def start(self) -> None:
        """Restore persisted state, then start the tick drivers. Safe to call twice."""
        if self._started:
            return
        self._started = True
        try:
            await self.restore()
        except Exception:
            logger.exception("Restoring tracked announcements failed; continuing empty")
        self.scheduler.start()
        logger.info("Homework tracker started with %d tracked announcement(s)", len(self))

    async def stop(self) -> None:
        self.scheduler.stop()
        self.queues.cancel_all()
        await self.persistence.flush()
        self._started = False

    # ── Tick drivers ──────────────────────────────────────────────────────

    def second_tick(self, now: datetime | None = None) -> list[str]:
        """Promote minute → second, then refresh a capped round-robin slice."""
        now = now if now is not None else self._clock()
        self.buckets.promote(Bucket.MINUTE, self._records, now)
        selected = self.buckets.select_round_robin(Bucket.SECOND, self._second_cap)
        return self._enqueue_ids(selected, Bucket.SECOND)

    def minute_tick(self, now: datetime | None = None) -> list[str]:
        """Promote hour → minute, refresh the minute bucket and this minute's hour slot."""
        now = now if now is not None else self._clock()
        self.buckets.promote(Bucket.HOUR, self._records, now)
        enqueued = self._enqueue_ids(self.buckets.members(Bucket.MINUTE), Bucket.MINUTE)

        minute = minute_of_hour(now, self._tz)
        for message_id in self.buckets.slot_members(minute):
            record = self._records.get(message_id)
            if record is None or record.bucket != Bucket.HOUR or record.hour_slot != minute:
                self.buckets.drop_from_slot(minute, message_id)
                continue
            self.queues.enqueue(record, Bucket.HOUR)
            enqueued.append(message_id)
        return enqueued

    def daily_tick(self, now: datetime | None = None) -> list[str]:
        """Force one refresh of every tracked record, whatever its bucket."""
        enqueued = []
        for record in list(self._records.values()):
            bucket = record.bucket if record.bucket != Bucket.NONE else Bucket.MINUTE
            self.queues.enqueue(record, bucket)
            enqueued.append(record.message_id)
        logger.info("Daily refresh queued %d announcement(s)", len(enqueued))
        return enqueued

    def _prune_cache(self, now: datetime) -> int:
        return self.cache.prune()

    def _enqueue_ids(self, message_ids: list[str], bucket: Bucket) -> list[str]:
        enqueued = []
        for message_id in message_ids:
            record = self._records.get(message_id)
            if record is None:
                self.buckets.discard_id(message_id)
                continue
            self.queues.enqueue(record, bucket)
            enqueued.append(message_id)
        return enqueued

    # ── Task execution ────────────────────────────────────────────────────

    async def _run_task(self, task: Task) -> None:
        record = task.record
        if self._records.get(record.message_id) is not record:
            return  # untracked or replaced since it was queued

        now = self._clock()
        sig = signature(record, now)
        if sig == record.last_signature:
            self.buckets.update_membership(record, now)
            return

        all_due = record.all_past_due(now)
        try:
            message = await self.cache.message(record.channel_id, record.message_id)
            if message is None:
                logger.info("Message %s is gone; untracking", record.message_id)
                self.untrack(record.message_id)
                return
            payload = self._renderer(list(record.items), record.label, now)
            await self._platform.edit_message(record.channel_id, record.message_id, payload)
        except MessageNotFoundError:
            logger.info("Message %s was deleted; untracking", record.message_id)
            self.untrack(record.message_id)
            return
        except RateLimitedError as exc:
            self.queues.get(record.channel_id).cool_down(exc.retry_after)
            return
        except Exception:
            logger.warning(
                "Refresh of message %s failed; retrying on its next tick",
                record.message_id,
                exc_info=True,
            )
            return

        if self._records.get(record.message_id) is not record:
            return
        record.last_signature = sig
        if all_due:
            self.untrack(record.message_id)
            return
        self.buckets.update_membership(record, now)

    # ── Persistence ───────────────────────────────────────────────────────

    def _snapshot(self) -> list[SnapshotEntry]:
        return [record.to_snapshot() for record in self._records.values()]

    async def restore(self) -> int:
        """Reload the last snapshot, keep entries whose message still exists.

        Each restored record gets one immediate refresh so anything that
        expired while the process was down is pushed to its final state.
        Returns the number of restored records.
        """
        entries = await self.persistence.load()
        if not entries:
            return 0

        results = await asyncio.gather(
            *(self._message_exists(entry) for entry in entries),
            return_exceptions=True,
        )
        restored = 0
        for entry, exists in zip(entries, results, strict=True):
            if exists is not True:
                logger.info("Skipping stale snapshot entry for message %s", entry.message_id)
                continue
            record = AnnouncementRecord(
                channel_id=entry.channel_id,
                message_id=entry.message_id,
                items=list(entry.items),
                label=entry.label,
            )
            self._records[record.message_id] = record
            bucket = self.buckets.update_membership(record, self._clock())
            self.queues.enqueue(record, bucket if bucket != Bucket.NONE else Bucket.MINUTE)
            restored += 1

        if restored < len(entries):
            self.persistence.request_save()
        logger.info("Restored %d of %d persisted announcement(s)", restored, len(entries))
        return restored

    async def _message_exists(self, entry: SnapshotEntry) -> bool:
        try:
            return await self.cache.message(entry.channel_id, entry.message_id) is not None
        except Exception:
            logger.warning("Could not verify message %s", entry.message_id, exc_info=True)
            return False
