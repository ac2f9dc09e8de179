"""Websocket client that speaks the realtime event protocol via the relay.

The client never holds the upstream credential. It connects to the relay,
stamps outbound events with ids, tracks uncommitted input audio, and
publishes every sent and received event on an ``EventBus``:

- ``realtime.event`` carries every sent and received ``RealtimeEvent``.
- ``client.<type>`` / ``server.<type>`` carry the same events by type.
- ``protocol.error`` carries ``ProtocolError`` for undecodable frames and
  for events whose handlers failed; the stream keeps being read.
- ``connection.closed`` carries ``RelayConnectionError`` when the relay
  connection ends without a local ``disconnect()``.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import math
from typing import Any

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.errors import ProtocolError, RelayConnectionError

from .events import EventBus, EventSource, RealtimeEvent, generate_id

_LOGGER = logging.getLogger(__name__)

REALTIME_EVENT_CHANNEL = "realtime.event"
PROTOCOL_ERROR_CHANNEL = "protocol.error"
CONNECTION_CLOSED_CHANNEL = "connection.closed"


def default_session_config() -> dict[str, Any]:
    """Returns the session configuration applied before any update."""
    return {
        "modalities": ["text", "audio"],
        "instructions": "",
        "voice": "alloy",
        "input_audio_format": "pcm16",
        "output_audio_format": "pcm16",
        "input_audio_transcription": None,
        "turn_detection": None,
        "tools": [],
        "tool_choice": "auto",
        "temperature": 0.8,
        "max_response_output_tokens": 4096,
    }


class RealtimeClient:
    """Async realtime protocol client bound to one relay URL."""

    def __init__(
        self,
        url: str,
        *,
        sample_rate: int = 24000,
        open_timeout_s: float = 10.0,
    ) -> None:
        """Initializes an unconnected client.

        Args:
            url: Relay websocket URL.
            sample_rate: PCM16 sample rate used for truncation offsets.
            open_timeout_s: Websocket opening handshake timeout.
        """
        self.url = url
        self.sample_rate = sample_rate
        self.bus = EventBus()
        self.session_config = default_session_config()
        self.input_audio_buffer = bytearray()
        self._open_timeout_s = open_timeout_s
        self._ws = None
        self._receive_task: asyncio.Task[None] | None = None
        self._is_closing = False
        self._sent_count = 0
        self._received_count = 0

    def is_connected(self) -> bool:
        return self._ws is not None and not self._is_closing

    async def connect(self) -> None:
        """Opens the relay websocket and starts the receive loop.

        Raises:
            RuntimeError: If the client is already connected.
            RelayConnectionError: If the relay cannot be reached.
        """
        if self._ws is not None:
            raise RuntimeError("Realtime client is already connected")
        _LOGGER.debug("Connecting realtime client to relay.", extra={"url": self.url})
        try:
            self._ws = await connect(self.url, max_size=None, open_timeout=self._open_timeout_s)
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise RelayConnectionError(f"Could not connect to relay at {self.url}: {exc}") from exc
        self._is_closing = False
        self._receive_task = asyncio.create_task(self._receive_loop())
        _LOGGER.info("Realtime client connected.", extra={"url": self.url})

    async def disconnect(self) -> None:
        """Idempotently stops the receive loop and closes the websocket."""
        if self._ws is None:
            return
        self._is_closing = True
        task = self._receive_task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        with contextlib.suppress(Exception):
            await self._ws.close()
        self._ws = None
        self._receive_task = None
        self.input_audio_buffer = bytearray()
        _LOGGER.info(
            "Realtime client disconnected.",
            extra={"sent_events": self._sent_count, "received_events": self._received_count},
        )

    async def send(self, event_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        """Sends one client event with a fresh event id.

        Args:
            event_type: Protocol event type.
            data: Event fields other than ``event_id`` and ``type``.

        Raises:
            RelayConnectionError: If the client is not connected or the send
                fails because the connection closed.

        Returns:
            The event as sent.
        """
        if not self.is_connected():
            raise RelayConnectionError("Realtime client is not connected", event_type=event_type)
        event = {"event_id": generate_id("evt_"), "type": event_type, **(data or {})}
        try:
            await self._ws.send(json.dumps(event))
        except ConnectionClosed as exc:
            raise RelayConnectionError("Relay connection closed", event_type=event_type) from exc
        self._sent_count += 1
        await self._publish(RealtimeEvent(EventSource.CLIENT, event))
        return event

    async def update_session(self, **changes: Any) -> None:
        """Merges session configuration and sends it when connected.

        Args:
            **changes: Session fields to overwrite, for example
                ``turn_detection=None``.
        """
        self.session_config.update(changes)
        if self.is_connected():
            await self.send("session.update", {"session": dict(self.session_config)})

    def turn_detection_type(self) -> str | None:
        turn_detection = self.session_config.get("turn_detection")
        return turn_detection.get("type") if turn_detection else None

    async def append_input_audio(self, pcm: bytes) -> None:
        """Sends PCM16 audio and accumulates it as uncommitted input."""
        if not pcm:
            return
        await self.send(
            "input_audio_buffer.append",
            {"audio": base64.b64encode(pcm).decode("ascii")},
        )
        self.input_audio_buffer.extend(pcm)

    async def commit_input_audio(self) -> bytes:
        """Commits uncommitted input audio if there is any.

        Returns:
            The committed PCM16 bytes, or empty bytes when nothing was sent.
        """
        if not self.input_audio_buffer:
            return b""
        await self.send("input_audio_buffer.commit")
        committed = bytes(self.input_audio_buffer)
        self.input_audio_buffer = bytearray()
        return committed

    async def create_response(self) -> None:
        await self.send("response.create")

    async def cancel_response(
        self,
        item_id: str | None = None,
        sample_count: int = 0,
        content_index: int = 0,
    ) -> int | None:
        """Cancels the active response and truncates its audio if known.

        Args:
            item_id: Assistant item whose audio was interrupted.
            sample_count: Samples of that item actually played.
            content_index: Index of the audio part within the item content.

        Returns:
            The ``audio_end_ms`` sent with the truncation, or None when no
            item was given.
        """
        await self.send("response.cancel")
        if not item_id:
            return None
        audio_end_ms = math.floor(sample_count / self.sample_rate * 1000)
        await self.send(
            "conversation.item.truncate",
            {"item_id": item_id, "content_index": content_index, "audio_end_ms": audio_end_ms},
        )
        return audio_end_ms

    async def delete_item(self, item_id: str) -> None:
        await self.send("conversation.item.delete", {"item_id": item_id})

    async def send_user_message(self, content: list[dict[str, Any]], *, respond: bool = True) -> None:
        """Adds a user message item and optionally requests a response.

        Args:
            content: Message content parts such as
                ``{"type": "input_text", "text": "Hello!"}``.
            respond: Sends ``response.create`` after the item when True.
        """
        await self.send(
            "conversation.item.create",
            {"item": {"type": "message", "role": "user", "content": content}},
        )
        if respond:
            await self.create_response()

    async def send_function_call_output(self, call_id: str, output: dict[str, Any]) -> None:
        """Returns a tool result to the service and requests a response."""
        await self.send(
            "conversation.item.create",
            {
                "item": {
                    "type": "function_call_output",
                    "call_id": call_id,
                    "output": json.dumps(output),
                }
            },
        )
        await self.create_response()

    async def _publish(self, realtime_event: RealtimeEvent) -> None:
        await self.bus.publish(REALTIME_EVENT_CHANNEL, realtime_event)
        await self.bus.publish(f"{realtime_event.source.value}.{realtime_event.type}", realtime_event)

    async def _receive_loop(self) -> None:
        """Decodes inbound frames and publishes them until the socket ends."""
        assert self._ws is not None
        reason = "Relay connection closed"
        try:
            async for message in self._ws:
                try:
                    event = _decode_event(message)
                except ProtocolError as exc:
                    _LOGGER.warning("Received malformed realtime event.", extra={"error": exc.message})
                    await self.bus.publish(PROTOCOL_ERROR_CHANNEL, exc)
                    continue
                self._received_count += 1
                try:
                    await self._publish(RealtimeEvent(EventSource.SERVER, event))
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    _LOGGER.exception("Realtime event handler failed.", extra={"event_type": event["type"]})
                    await self.bus.publish(
                        PROTOCOL_ERROR_CHANNEL,
                        ProtocolError(f"Handler failed for {event['type']}: {exc}", event_type=event["type"]),
                    )
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            reason = f"Relay connection closed with code {exc.rcvd.code if exc.rcvd else 1006}"
        except Exception:
            _LOGGER.exception("Realtime receive loop failed.")
            reason = "Realtime receive loop failed"

        if not self._is_closing:
            _LOGGER.warning("Relay connection ended unexpectedly.", extra={"reason": reason})
            self._is_closing = True
            await self.bus.publish(CONNECTION_CLOSED_CHANNEL, RelayConnectionError(reason))


def _decode_event(message: str | bytes) -> dict[str, Any]:
    """Parses one inbound frame into an event dict.

    Raises:
        ProtocolError: If the frame is binary, not JSON, or untyped.
    """
    if not isinstance(message, str):
        raise ProtocolError("Unexpected binary frame from relay")
    try:
        event = json.loads(message)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Invalid JSON from relay: {exc.msg}") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise ProtocolError("Realtime event is missing a type")
    return event
