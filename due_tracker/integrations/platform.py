"""Chat platform boundary used by the tracker.

Adapters translate their client library's failures into the error types
below; the tracker only ever branches on these classes.
"""

from __future__ import annotations

from typing import Any, Protocol

from due_tracker.core.models import Payload


class PlatformError(Exception):
    """A transient or unclassified failure talking to the platform."""


class MessageNotFoundError(PlatformError):
    """The message (or its channel) no longer exists."""


class RateLimitedError(PlatformError):
    """The platform is throttling edits for this channel."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ChatPlatform(Protocol):
    async def fetch_channel(self, channel_id: str) -> Any | None:
        """Return a channel handle, or None when it does not exist."""
        ...

    async def fetch_message(self, channel_id: str, message_id: str) -> Any | None:
        """Return a message handle, or None when it does not exist."""
        ...

    async def edit_message(self, channel_id: str, message_id: str, payload: Payload) -> None:
        ...

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        ...

    async def send_message(self, channel_id: str, payload: Payload) -> str:
        """Post a new message and return its id."""
        ...
