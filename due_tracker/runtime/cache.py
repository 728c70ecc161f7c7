"""Short-lived cache in front of the platform's channel/message lookups."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from due_tracker.core.constants import CHANNEL_CACHE_TTL, MESSAGE_CACHE_TTL
from due_tracker.core.utils import utc_now
from due_tracker.integrations.platform import ChatPlatform

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: datetime


class ResolverCache:
    """Caches found channels and messages; misses are never cached."""

    def __init__(
        self,
        platform: ChatPlatform,
        clock: Callable[[], datetime] = utc_now,
        message_ttl: timedelta = MESSAGE_CACHE_TTL,
        channel_ttl: timedelta = CHANNEL_CACHE_TTL,
    ) -> None:
        self._platform = platform
        self._clock = clock
        self._message_ttl = message_ttl
        self._channel_ttl = channel_ttl
        self._channels: dict[str, _Entry] = {}
        self._messages: dict[tuple[str, str], _Entry] = {}

    async def channel(self, channel_id: str) -> Any | None:
        now = self._clock()
        cached = self._channels.get(channel_id)
        if cached is not None:
            if cached.expires_at > now:
                return cached.value
            del self._channels[channel_id]

        channel = await self._platform.fetch_channel(channel_id)
        if channel is not None:
            self._channels[channel_id] = _Entry(channel, now + self._channel_ttl)
        return channel

    async def message(self, channel_id: str, message_id: str) -> Any | None:
        key = (channel_id, message_id)
        now = self._clock()
        cached = self._messages.get(key)
        if cached is not None and cached.expires_at > now:
            return cached.value

        if await self.channel(channel_id) is None:
            self._messages.pop(key, None)
            return None

        message = await self._platform.fetch_message(channel_id, message_id)
        if message is not None:
            self._messages[key] = _Entry(message, now + self._message_ttl)
        else:
            self._messages.pop(key, None)
        return message

    def forget_message(self, channel_id: str, message_id: str) -> None:
        self._messages.pop((channel_id, message_id), None)

    def prune(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        removed = 0
        for store in (self._channels, self._messages):
            for key in [k for k, entry in store.items() if entry.expires_at <= now]:
                del store[key]
                removed += 1
        if removed:
            logger.debug("Pruned %d expired cache entries", removed)
        return removed

    def __len__(self) -> int:
        return len(self._channels) + len(self._messages)
