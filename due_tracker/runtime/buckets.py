"""Bucket registry — which tracked messages refresh at which cadence.

Three membership sets (second/minute/hour) keyed by message id, plus 60
minute-of-hour slots under the hour bucket. Sets are insertion-ordered dicts
so round-robin selection is stable between ticks.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from zoneinfo import ZoneInfo

from due_tracker.core.constants import DEFAULT_HOME_TZ
from due_tracker.core.models import AnnouncementRecord, Bucket
from due_tracker.core.rules.cadence import classify, is_finer, soonest_upcoming
from due_tracker.core.utils import minute_of_hour

logger = logging.getLogger(__name__)

CADENCES = (Bucket.SECOND, Bucket.MINUTE, Bucket.HOUR)


class BucketRegistry:
    def __init__(self, home_tz: ZoneInfo | None = None) -> None:
        self._tz = home_tz or ZoneInfo(DEFAULT_HOME_TZ)
        self._members: dict[Bucket, dict[str, None]] = {b: {} for b in CADENCES}
        self._hour_slots: list[dict[str, None]] = [{} for _ in range(60)]
        self._cursors: dict[Bucket, int] = {b: 0 for b in CADENCES}

    # ── Membership ────────────────────────────────────────────────────────

    def discard(self, record: AnnouncementRecord) -> None:
        """Remove *record* from every set and clear its bucket/slot."""
        self.discard_id(record.message_id, record.hour_slot)
        record.bucket = Bucket.NONE
        record.hour_slot = None

    def discard_id(self, message_id: str, hour_slot: int | None = None) -> None:
        for members in self._members.values():
            members.pop(message_id, None)
        if hour_slot is not None:
            self._hour_slots[hour_slot].pop(message_id, None)

    def update_membership(self, record: AnnouncementRecord, now: datetime) -> Bucket:
        """Reclassify *record* and move it into the matching set (and slot)."""
        self.discard(record)
        bucket = classify(record.items, now)
        record.bucket = bucket
        if bucket == Bucket.NONE:
            return bucket

        self._members[bucket][record.message_id] = None
        if bucket == Bucket.HOUR:
            soonest = soonest_upcoming(record.items, now)
            slot = minute_of_hour(soonest.due_at, self._tz)
            record.hour_slot = slot
            self._hour_slots[slot][record.message_id] = None
        return bucket

    def promote(
        self,
        coarse: Bucket,
        records: Mapping[str, AnnouncementRecord],
        now: datetime,
    ) -> list[str]:
        """Move members of *coarse* whose cadence became finer; returns moved ids.

        Ids whose record is gone are dropped. Members that are already past
        due stay put so the next tick of their bucket pushes the final state.
        """
        promoted: list[str] = []
        for message_id in list(self._members[coarse]):
            record = records.get(message_id)
            if record is None:
                self._members[coarse].pop(message_id, None)
                continue
            if is_finer(classify(record.items, now), coarse):
                self.update_membership(record, now)
                promoted.append(message_id)
        if promoted:
            logger.debug("Promoted %d record(s) out of %s bucket", len(promoted), coarse)
        return promoted

    # ── Selection ─────────────────────────────────────────────────────────

    def members(self, bucket: Bucket) -> list[str]:
        return list(self._members.get(bucket, {}))

    def slot_members(self, minute: int) -> list[str]:
        return list(self._hour_slots[minute])

    def drop_from_slot(self, minute: int, message_id: str) -> None:
        self._hour_slots[minute].pop(message_id, None)

    def select_round_robin(self, bucket: Bucket, cap: int | None = None) -> list[str]:
        """Pick up to *cap* members starting at the bucket's cursor, wrapping around."""
        ids = self.members(bucket)
        if not ids:
            return []
        count = len(ids) if cap is None else min(cap, len(ids))
        cursor = self._cursors[bucket] % len(ids)
        selected = [ids[(cursor + i) % len(ids)] for i in range(count)]
        self._cursors[bucket] = (cursor + len(selected)) % len(ids)
        return selected

    # ── Introspection ─────────────────────────────────────────────────────

    def bucket_of(self, message_id: str) -> Bucket:
        for bucket in CADENCES:
            if message_id in self._members[bucket]:
                return bucket
        return Bucket.NONE

    def slots_of(self, message_id: str) -> list[int]:
        return [minute for minute, ids in enumerate(self._hour_slots) if message_id in ids]

    def counts(self) -> dict[str, int]:
        return {bucket.value: len(self._members[bucket]) for bucket in CADENCES}
