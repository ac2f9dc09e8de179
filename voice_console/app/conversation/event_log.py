"""Append-only realtime event log with adjacent same-type coalescing."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from ..realtime.events import RealtimeEvent

# Event fields replaced by a size marker when rendering for display.
_TRIMMED_FIELDS = {
    "input_audio_buffer.append": "audio",
    "response.audio.delta": "delta",
}


@dataclass(slots=True)
class LoggedEvent:
    """Log entry for one event or a run of same-type events.

    Attributes:
        event: First event of the run; later occurrences only bump ``count``.
        count: Number of consecutive events of this type, starting at 1.
    """

    event: RealtimeEvent
    count: int = 1

    @property
    def type(self) -> str:
        return self.event.type

    def display_payload(self) -> dict[str, Any]:
        """Returns the payload with bulky audio fields replaced by markers."""
        payload = copy.copy(self.event.event)
        field_name = _TRIMMED_FIELDS.get(self.type)
        if field_name and isinstance(payload.get(field_name), str):
            payload[field_name] = f"[trimmed: {len(payload[field_name])} bytes]"
        return payload

    def summary(self) -> str:
        label = "error!" if self.type == "error" else self.event.source.value
        suffix = f" ({self.count})" if self.count > 1 else ""
        return f"{label} {self.type}{suffix}"


class EventLog:
    """Ordered event log.

    Only the newest entry is considered for coalescing, so identical types
    separated by any other event stay separate entries.
    """

    def __init__(self) -> None:
        self._entries: list[LoggedEvent] = []

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, event: RealtimeEvent) -> LoggedEvent:
        """Records an event, coalescing it into the newest same-type entry.

        Args:
            event: Event to record.

        Returns:
            The entry that now represents the event.
        """
        if self._entries and self._entries[-1].type == event.type:
            last = self._entries[-1]
            last.count += 1
            return last
        entry = LoggedEvent(event=event)
        self._entries.append(entry)
        return entry

    def entries(self) -> list[LoggedEvent]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()
