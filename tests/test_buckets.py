"""Tests for the bucket registry."""

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from due_tracker.core.models import AnnouncementRecord, Bucket, DueItem
from due_tracker.runtime.buckets import BucketRegistry

NOW = datetime(2026, 10, 19, 14, 0, 0, tzinfo=UTC)


def _record(message_id: str, *deltas: timedelta) -> AnnouncementRecord:
    items = [DueItem(title=f"HW {i}", due_at=NOW + d) for i, d in enumerate(deltas)]
    return AnnouncementRecord(channel_id="c1", message_id=message_id, items=items)


@pytest.fixture
def registry():
    return BucketRegistry(ZoneInfo("America/New_York"))


class TestMembership:
    def test_hour_record_gets_a_slot(self, registry):
        record = _record("m1", timedelta(hours=3, minutes=17))
        assert registry.update_membership(record, NOW) == Bucket.HOUR
        assert record.bucket == Bucket.HOUR
        assert record.hour_slot == 17
        assert registry.bucket_of("m1") == Bucket.HOUR
        assert registry.slots_of("m1") == [17]

    def test_slot_uses_home_time_zone(self):
        # Kolkata is UTC+5:30, so the minute-of-hour shifts by 30.
        registry = BucketRegistry(ZoneInfo("Asia/Kolkata"))
        record = _record("m1", timedelta(hours=3, minutes=17))
        registry.update_membership(record, NOW)
        assert record.hour_slot == 47

    def test_minute_and_second_records_have_no_slot(self, registry):
        minute = _record("m1", timedelta(minutes=30))
        second = _record("m2", timedelta(seconds=30))
        registry.update_membership(minute, NOW)
        registry.update_membership(second, NOW)
        assert registry.members(Bucket.MINUTE) == ["m1"]
        assert registry.members(Bucket.SECOND) == ["m2"]
        assert minute.hour_slot is None
        assert registry.slots_of("m1") == []

    def test_all_due_record_is_in_no_set(self, registry):
        record = _record("m1", timedelta(seconds=-5))
        assert registry.update_membership(record, NOW) == Bucket.NONE
        assert registry.counts() == {"second": 0, "minute": 0, "hour": 0}

    def test_reclassification_leaves_exactly_one_set(self, registry):
        record = _record("m1", timedelta(hours=3, minutes=17))
        registry.update_membership(record, NOW)
        record.add_items([DueItem(title="Quiz", due_at=NOW + timedelta(seconds=45))])
        registry.update_membership(record, NOW)

        assert record.bucket == Bucket.SECOND
        assert record.hour_slot is None
        assert registry.slots_of("m1") == []
        assert registry.counts() == {"second": 1, "minute": 0, "hour": 0}

    def test_hour_slot_moves_with_soonest_item(self, registry):
        record = _record("m1", timedelta(hours=5, minutes=40))
        registry.update_membership(record, NOW)
        record.add_items([DueItem(title="Quiz", due_at=NOW + timedelta(hours=2, minutes=5))])
        registry.update_membership(record, NOW)
        assert registry.slots_of("m1") == [5]

    def test_discard_clears_everything(self, registry):
        record = _record("m1", timedelta(hours=3, minutes=17))
        registry.update_membership(record, NOW)
        registry.discard(record)
        assert record.bucket == Bucket.NONE
        assert record.hour_slot is None
        assert registry.bucket_of("m1") == Bucket.NONE
        assert registry.slots_of("m1") == []


class TestPromotion:
    def test_hour_to_minute(self, registry):
        record = _record("m1", timedelta(minutes=70))
        registry.update_membership(record, NOW)
        assert record.bucket == Bucket.HOUR

        moved = registry.promote(Bucket.HOUR, {"m1": record}, NOW + timedelta(minutes=15))
        assert moved == ["m1"]
        assert record.bucket == Bucket.MINUTE
        assert registry.members(Bucket.MINUTE) == ["m1"]
        assert registry.slots_of("m1") == []

    def test_minute_to_second(self, registry):
        record = _record("m1", timedelta(minutes=2))
        registry.update_membership(record, NOW)
        assert registry.promote(Bucket.MINUTE, {"m1": record}, NOW + timedelta(seconds=70)) == ["m1"]
        assert registry.bucket_of("m1") == Bucket.SECOND

    def test_not_yet_due_for_promotion(self, registry):
        record = _record("m1", timedelta(minutes=70))
        registry.update_membership(record, NOW)
        assert registry.promote(Bucket.HOUR, {"m1": record}, NOW + timedelta(minutes=5)) == []
        assert record.bucket == Bucket.HOUR

    def test_past_due_member_stays_put(self, registry):
        record = _record("m1", timedelta(minutes=2))
        registry.update_membership(record, NOW)
        assert registry.promote(Bucket.MINUTE, {"m1": record}, NOW + timedelta(minutes=5)) == []
        assert registry.bucket_of("m1") == Bucket.MINUTE

    def test_missing_records_are_dropped(self, registry):
        record = _record("m1", timedelta(minutes=70))
        registry.update_membership(record, NOW)
        assert registry.promote(Bucket.HOUR, {}, NOW) == []
        assert registry.bucket_of("m1") == Bucket.NONE


class TestSelection:
    def test_round_robin_wraps(self, registry):
        for i in range(10):
            registry.update_membership(_record(f"m{i}", timedelta(seconds=30)), NOW)

        assert registry.select_round_robin(Bucket.SECOND, 6) == [f"m{i}" for i in range(6)]
        assert registry.select_round_robin(Bucket.SECOND, 6) == ["m6", "m7", "m8", "m9", "m0", "m1"]
        assert registry.select_round_robin(Bucket.SECOND, 6) == [f"m{i}" for i in range(2, 8)]

    def test_uncapped_selects_everyone(self, registry):
        for i in range(3):
            registry.update_membership(_record(f"m{i}", timedelta(seconds=30)), NOW)
        assert registry.select_round_robin(Bucket.SECOND) == ["m0", "m1", "m2"]

    def test_empty_bucket(self, registry):
        assert registry.select_round_robin(Bucket.SECOND, 6) == []

    def test_drop_from_slot(self, registry):
        record = _record("m1", timedelta(hours=3, minutes=17))
        registry.update_membership(record, NOW)
        registry.drop_from_slot(17, "m1")
        assert registry.slot_members(17) == []
