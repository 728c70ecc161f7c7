"""Core domain models for the homework tracker."""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from due_tracker.core.utils import parse_utc_datetime

# ── Enums ──────────────────────────────────────────────────────────────


class Bucket(enum.StrEnum):
    """Refresh cadence class of a tracked announcement."""

    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    NONE = "none"


# ── Domain Models ──────────────────────────────────────────────────────


class DueItem(BaseModel):
    """A single titled deadline."""

    model_config = {"frozen": True}

    title: str
    due_at: datetime
    group_key: str = ""

    @field_validator("title")
    @classmethod
    def title_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Due item title must not be empty")
        return v.strip()

    @field_validator("due_at", mode="before")
    @classmethod
    def due_at_is_utc(cls, v: Any) -> Any:
        if isinstance(v, (str, datetime)):
            return parse_utc_datetime(v)
        return v


class AnnouncementRecord(BaseModel):
    """One posted message kept visually current by the tracker.

    ``channel_id``/``message_id``/``label`` never change after creation.
    ``bucket``, ``hour_slot`` and ``last_signature`` are owned by the tracker
    and rewritten on every refresh.
    """

    channel_id: str
    message_id: str
    items: list[DueItem] = Field(default_factory=list)
    label: str = ""
    last_signature: str | None = None
    bucket: Bucket = Bucket.NONE
    hour_slot: int | None = Field(default=None, ge=0, le=59)

    def upcoming(self, now: datetime) -> list[DueItem]:
        return [item for item in self.items if item.due_at > now]

    def all_past_due(self, now: datetime) -> bool:
        return all(item.due_at <= now for item in self.items)

    def add_items(self, items: list[DueItem]) -> int:
        """Append items, skipping exact duplicates (same title and due time).

        Returns the number of items actually added.
        """
        seen = {(item.title, item.due_at) for item in self.items}
        added = 0
        for item in items:
            key = (item.title, item.due_at)
            if key in seen:
                continue
            self.items.append(item)
            seen.add(key)
            added += 1
        return added

    def to_snapshot(self) -> SnapshotEntry:
        return SnapshotEntry(
            channel_id=self.channel_id,
            message_id=self.message_id,
            items=list(self.items),
            label=self.label,
        )


class SnapshotEntry(BaseModel):
    """The persisted part of a record."""

    model_config = {"frozen": True}

    channel_id: str
    message_id: str
    items: list[DueItem]
    label: str = ""

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        # Older snapshots used camelCase keys, "events" and epoch-millisecond due times.
        if not isinstance(data, dict) or "channel_id" in data:
            return data
        items = data.get("items", data.get("events"))
        if isinstance(items, list):
            items = [_legacy_item(item) for item in items]
        return {
            "channel_id": data.get("channelId"),
            "message_id": data.get("messageId"),
            "items": items,
            "label": data.get("label", data.get("classKey")) or "",
        }

    @field_validator("channel_id", "message_id", mode="before")
    @classmethod
    def ids_are_strings(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v


def _legacy_item(item: Any) -> Any:
    if not isinstance(item, dict) or "due_at" in item:
        return item
    due = item.get("dueAt", item.get("dueTimestamp"))
    if isinstance(due, (int, float)):
        due = datetime.fromtimestamp(due / 1000, tz=UTC)
    return {
        "title": item.get("title"),
        "due_at": due,
        "group_key": item.get("groupKey", item.get("classKey")) or "",
    }


class TrackStatus(BaseModel):
    """Answer of ``HomeworkTracker.get_status``."""

    model_config = {"frozen": True}

    tracked: bool
    channel_id: str | None = None
    message_id: str | None = None
    bucket: Bucket | None = None
    item_count: int = 0
    all_past_due: bool | None = None


class Payload(BaseModel):
    """Renderer output handed to the chat platform."""

    model_config = {"frozen": True}

    text: str
    parse_mode: str | None = None
