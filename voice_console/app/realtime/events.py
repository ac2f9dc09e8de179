"""Realtime protocol event types and the in-process event bus."""

from __future__ import annotations

import inspect
import secrets
import string
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

_EVENT_ID_ALPHABET = string.ascii_letters + string.digits


def _utcnow() -> datetime:
    """Returns current UTC wall clock time."""
    return datetime.now(timezone.utc)


def generate_id(prefix: str, length: int = 21) -> str:
    """Builds a random identifier such as ``evt_XXXX``.

    Args:
        prefix: Identifier prefix including the trailing underscore.
        length: Total identifier length.

    Returns:
        Prefix followed by random alphanumeric characters.
    """
    size = max(1, length - len(prefix))
    return prefix + "".join(secrets.choice(_EVENT_ID_ALPHABET) for _ in range(size))


class EventSource(str, Enum):
    CLIENT = "client"
    SERVER = "server"


@dataclass(slots=True, frozen=True)
class RealtimeEvent:
    """One protocol event observed on the realtime connection.

    Attributes:
        source: Whether the console sent or received the event.
        event: Decoded event payload including its ``type`` tag.
        time: Observation timestamp in UTC.
    """

    source: EventSource
    event: dict[str, Any]
    time: datetime = field(default_factory=_utcnow)

    @property
    def type(self) -> str:
        return str(self.event.get("type", ""))


EventHandler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """Routes published payloads to handlers subscribed by channel name.

    Coroutine handlers are awaited in subscription order, so a publisher
    that awaits ``publish`` sees its events handled one at a time.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, channel: str, handler: EventHandler) -> None:
        self._handlers.setdefault(channel, []).append(handler)

    async def publish(self, channel: str, payload: Any) -> None:
        """Delivers a payload to every handler subscribed to ``channel``.

        Args:
            channel: Channel name, usually a protocol event type.
            payload: Value passed to each handler.
        """
        handlers = list(self._handlers.get(channel, []))
        for handler in handlers:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
