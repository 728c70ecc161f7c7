"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import itertools
import random
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from due_tracker.integrations.platform import MessageNotFoundError
from due_tracker.runtime.tracker import HomeworkTracker
from due_tracker.storage.snapshot import SqliteSnapshotStore
from due_tracker.storage.sqlite import Database

# Monday 2026-10-19, 10:00 in New York (EDT).
T0 = datetime(2026, 10, 19, 14, 0, 0, tzinfo=UTC)
HOME_TZ = ZoneInfo("America/New_York")


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeSleep:
    """Advances the fake clock instead of waiting, then yields to the loop."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)


class FakePlatform:
    """In-memory chat platform: channels hold sets of message ids."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.channels: dict[str, set[str]] = {}
        self.edits: list[tuple[datetime, str, str, object]] = []
        self.edit_errors: dict[str, list[Exception]] = {}
        self.fetch_errors: dict[str, Exception] = {}
        self.fetch_message_calls = 0
        self._ids = itertools.count(1000)

    def add_message(self, channel_id: str, message_id: str) -> None:
        self.channels.setdefault(channel_id, set()).add(message_id)

    def remove_message(self, channel_id: str, message_id: str) -> None:
        self.channels.get(channel_id, set()).discard(message_id)

    def edits_for(self, message_id: str) -> list:
        return [payload for _, _, mid, payload in self.edits if mid == message_id]

    async def fetch_channel(self, channel_id: str):
        if channel_id not in self.channels:
            return None
        return {"id": channel_id}

    async def fetch_message(self, channel_id: str, message_id: str):
        self.fetch_message_calls += 1
        if message_id in self.fetch_errors:
            raise self.fetch_errors[message_id]
        if message_id not in self.channels.get(channel_id, set()):
            return None
        return {"channel_id": channel_id, "message_id": message_id}

    async def edit_message(self, channel_id: str, message_id: str, payload) -> None:
        errors = self.edit_errors.get(message_id)
        if errors:
            raise errors.pop(0)
        if message_id not in self.channels.get(channel_id, set()):
            raise MessageNotFoundError(f"message {message_id} not found")
        self.edits.append((self.clock(), channel_id, message_id, payload))

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        self.remove_message(channel_id, message_id)

    async def send_message(self, channel_id: str, payload) -> str:
        message_id = str(next(self._ids))
        self.add_message(channel_id, message_id)
        return message_id


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def platform(clock):
    return FakePlatform(clock)


@pytest.fixture
def tracker(platform, clock, sleep):
    return HomeworkTracker(
        platform,
        home_tz=HOME_TZ,
        clock=clock,
        sleep=sleep,
        rng=random.Random(7),
    )


@pytest.fixture
def db(tmp_path):
    """Create a fresh snapshot database on disk."""
    database = Database(tmp_path / "test_tracker.db")
    yield database
    database.close()


@pytest.fixture
def store(db):
    return SqliteSnapshotStore(db)
