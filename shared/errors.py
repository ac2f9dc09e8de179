"""Error hierarchy shared by the relay server and the voice console."""

from __future__ import annotations


class RealtimeError(Exception):
    """Base error for realtime session failures.

    Attributes:
        session_id: Realtime session id when known.
        event_type: Protocol event type that triggered the failure, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        event_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        self.event_type = event_type


class RelayConnectionError(RealtimeError):
    """Transport to the relay or to the upstream service failed or closed."""


class ProtocolError(RealtimeError):
    """An inbound event was malformed or referenced unknown state."""


class UpstreamError(RealtimeError):
    """The realtime service reported an error event."""


class ToolError(RealtimeError):
    """A tool invocation failed validation or raised during execution."""

    def __init__(
        self,
        message: str,
        *,
        tool_name: str | None = None,
        session_id: str | None = None,
        event_type: str | None = None,
    ) -> None:
        super().__init__(message, session_id=session_id, event_type=event_type)
        self.tool_name = tool_name


class DeviceError(RealtimeError):
    """An audio input or output device could not be acquired."""


class RetrievalError(RealtimeError):
    """The context retrieval collaborator failed."""
