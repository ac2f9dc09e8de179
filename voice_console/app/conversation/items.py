"""Local conversation state folded from realtime server events.

``Conversation.process_event`` applies one server event and returns the
affected item together with the delta it received, so callers can route
audio deltas to playback without re-deriving them.
"""

from __future__ import annotations

import base64
import binascii
import io
import math
import wave
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shared.errors import ProtocolError

_BYTES_PER_SAMPLE = 2


class ItemRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ItemType(str, Enum):
    MESSAGE = "message"
    FUNCTION_CALL = "function_call"
    FUNCTION_CALL_OUTPUT = "function_call_output"


class ItemStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    TRUNCATED = "truncated"


@dataclass(slots=True)
class ToolInvocation:
    name: str
    call_id: str
    arguments: str = ""


@dataclass(slots=True)
class FormattedContent:
    """Presentation-ready content accumulated from deltas.

    Attributes:
        text: Text content for text modality messages.
        transcript: Spoken transcript for audio messages.
        audio: PCM16 mono audio bytes in arrival order.
        tool: Tool invocation descriptor for ``function_call`` items.
        output: Serialized tool output for ``function_call_output`` items.
    """

    text: str = ""
    transcript: str = ""
    audio: bytearray = field(default_factory=bytearray)
    tool: ToolInvocation | None = None
    output: str | None = None


@dataclass(slots=True)
class ConversationItem:
    id: str
    role: ItemRole
    type: ItemType
    status: ItemStatus = ItemStatus.IN_PROGRESS
    content: list[dict[str, Any]] = field(default_factory=list)
    formatted: FormattedContent = field(default_factory=FormattedContent)

    def audio_content_index(self) -> int:
        """Returns the index of the first audio content part, or 0."""
        for index, part in enumerate(self.content):
            if part.get("type") in ("audio", "input_audio"):
                return index
        return 0

    def wav_bytes(self, sample_rate: int) -> bytes:
        """Wraps accumulated PCM16 audio in a WAV container."""
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(_BYTES_PER_SAMPLE)
            wav.setframerate(sample_rate)
            wav.writeframes(bytes(self.formatted.audio))
        return buffer.getvalue()


ItemDelta = dict[str, Any]
ProcessResult = tuple[ConversationItem | None, ItemDelta | None]


def _parse_status(value: str | None) -> ItemStatus:
    if value == "completed":
        return ItemStatus.COMPLETED
    if value == "incomplete":
        return ItemStatus.TRUNCATED
    return ItemStatus.IN_PROGRESS


def _parse_role(item: dict[str, Any], item_type: ItemType) -> ItemRole:
    if item_type is ItemType.FUNCTION_CALL_OUTPUT:
        return ItemRole.TOOL
    if item_type is ItemType.FUNCTION_CALL:
        return ItemRole.ASSISTANT
    try:
        return ItemRole(item.get("role", "assistant"))
    except ValueError as exc:
        raise ProtocolError(f"Unknown item role: {item.get('role')}") from exc


def _decode_audio(delta: str) -> bytes:
    try:
        return base64.b64decode(delta, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError("Audio delta is not valid base64") from exc


class Conversation:
    """Ordered conversation items keyed by id."""

    def __init__(self, sample_rate: int = 24000) -> None:
        self.sample_rate = sample_rate
        self._items: list[ConversationItem] = []
        self._items_by_id: dict[str, ConversationItem] = {}
        # Input audio committed locally, attached to the next user item.
        self._queued_input_audio: bytes | None = None
        # Speech segments and transcripts that arrive before their item.
        self._queued_speech: dict[str, dict[str, Any]] = {}
        self._queued_transcripts: dict[str, str] = {}

        self._handlers: dict[str, Callable[[dict[str, Any], bytes], ProcessResult]] = {
            "conversation.item.created": self._on_item_created,
            "conversation.item.truncated": self._on_item_truncated,
            "conversation.item.deleted": self._on_item_deleted,
            "conversation.item.input_audio_transcription.completed": self._on_transcription_completed,
            "input_audio_buffer.speech_started": self._on_speech_started,
            "input_audio_buffer.speech_stopped": self._on_speech_stopped,
            "response.output_item.added": self._on_output_item_added,
            "response.output_item.done": self._on_output_item_done,
            "response.content_part.added": self._on_content_part_added,
            "response.audio_transcript.delta": self._on_audio_transcript_delta,
            "response.audio.delta": self._on_audio_delta,
            "response.text.delta": self._on_text_delta,
            "response.function_call_arguments.delta": self._on_function_call_arguments_delta,
        }

    def items(self) -> list[ConversationItem]:
        return list(self._items)

    def get(self, item_id: str) -> ConversationItem | None:
        return self._items_by_id.get(item_id)

    def clear(self) -> None:
        self._items.clear()
        self._items_by_id.clear()
        self._queued_input_audio = None
        self._queued_speech.clear()
        self._queued_transcripts.clear()

    def queue_input_audio(self, pcm: bytes) -> None:
        """Stores committed input audio for the next created user item."""
        self._queued_input_audio = pcm

    def delete(self, item_id: str) -> ConversationItem | None:
        """Removes an item locally.

        Returns:
            The removed item, or None when it was unknown.
        """
        item = self._items_by_id.pop(item_id, None)
        if item is not None:
            self._items.remove(item)
        return item

    def truncate(self, item_id: str, audio_end_ms: int) -> ConversationItem | None:
        """Cuts an item's audio at ``audio_end_ms`` and clears its transcript."""
        item = self._items_by_id.get(item_id)
        if item is None:
            return None
        end_index = math.floor(audio_end_ms * self.sample_rate / 1000) * _BYTES_PER_SAMPLE
        del item.formatted.audio[end_index:]
        item.formatted.transcript = ""
        item.status = ItemStatus.TRUNCATED
        return item

    def process_event(self, event: dict[str, Any], input_audio_buffer: bytes = b"") -> ProcessResult:
        """Applies one server event to the conversation.

        Args:
            event: Decoded server event.
            input_audio_buffer: Uncommitted input audio, used to slice
                speech segments in automatic turn detection.

        Raises:
            ProtocolError: If the event is missing fields or references an
                unknown item.

        Returns:
            The affected item and its delta, or ``(None, None)`` for events
            that do not change items.
        """
        handler = self._handlers.get(event.get("type", ""))
        if handler is None:
            return None, None
        try:
            return handler(event, input_audio_buffer)
        except KeyError as exc:
            raise ProtocolError(
                f"Event is missing field {exc.args[0]!r}",
                event_type=event.get("type"),
            ) from exc
        except (TypeError, ValueError, AttributeError) as exc:
            raise ProtocolError(
                f"Event has malformed fields: {exc}",
                event_type=event.get("type"),
            ) from exc

    def _require(self, item_id: str, event_type: str) -> ConversationItem:
        item = self._items_by_id.get(item_id)
        if item is None:
            raise ProtocolError(f"Unknown item: {item_id}", event_type=event_type)
        return item

    def _on_item_created(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        raw = event["item"]
        item_id = raw["id"]
        existing = self._items_by_id.get(item_id)
        if existing is not None:
            return existing, None
        try:
            item_type = ItemType(raw.get("type", "message"))
        except ValueError as exc:
            raise ProtocolError(f"Unknown item type: {raw.get('type')}", event_type=event["type"]) from exc

        item = ConversationItem(
            id=item_id,
            role=_parse_role(raw, item_type),
            type=item_type,
            status=_parse_status(raw.get("status")),
            content=[dict(part) for part in raw.get("content", [])],
        )
        for part in item.content:
            if part.get("type") in ("text", "input_text"):
                item.formatted.text += part.get("text", "")

        if item_type is ItemType.FUNCTION_CALL:
            item.formatted.tool = ToolInvocation(
                name=raw.get("name", ""),
                call_id=raw.get("call_id", ""),
                arguments=raw.get("arguments", ""),
            )
        elif item_type is ItemType.FUNCTION_CALL_OUTPUT:
            item.formatted.output = raw.get("output")
            item.status = ItemStatus.COMPLETED

        if item.role is ItemRole.USER:
            speech = self._queued_speech.pop(item_id, None)
            if speech and speech.get("audio"):
                item.formatted.audio.extend(speech["audio"])
            elif self._queued_input_audio is not None:
                item.formatted.audio.extend(self._queued_input_audio)
            self._queued_input_audio = None
        transcript = self._queued_transcripts.pop(item_id, None)
        if transcript is not None:
            item.formatted.transcript = transcript

        self._items.append(item)
        self._items_by_id[item_id] = item
        return item, None

    def _on_item_truncated(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        item = self._require(event["item_id"], event["type"])
        self.truncate(item.id, int(event["audio_end_ms"]))
        return item, {"transcript": "", "audio": bytes(item.formatted.audio)}

    def _on_item_deleted(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        item = self.delete(event["item_id"])
        return item, None

    def _on_transcription_completed(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        item_id = event["item_id"]
        # An empty transcript still marks the item as transcribed.
        transcript = event.get("transcript") or " "
        item = self._items_by_id.get(item_id)
        if item is None:
            self._queued_transcripts[item_id] = transcript
            return None, None
        content_index = int(event.get("content_index", 0))
        if 0 <= content_index < len(item.content):
            item.content[content_index]["transcript"] = transcript
        item.formatted.transcript = transcript
        return item, {"transcript": transcript}

    def _on_speech_started(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        self._queued_speech[event["item_id"]] = {"audio_start_ms": int(event["audio_start_ms"])}
        return None, None

    def _on_speech_stopped(self, event: dict[str, Any], input_audio_buffer: bytes) -> ProcessResult:
        speech = self._queued_speech.setdefault(event["item_id"], {"audio_start_ms": 0})
        speech["audio_end_ms"] = int(event["audio_end_ms"])
        if input_audio_buffer:
            start = math.floor(speech["audio_start_ms"] * self.sample_rate / 1000) * _BYTES_PER_SAMPLE
            end = math.floor(speech["audio_end_ms"] * self.sample_rate / 1000) * _BYTES_PER_SAMPLE
            speech["audio"] = bytes(input_audio_buffer[start:end])
        return None, None

    def _on_output_item_added(self, event: dict[str, Any], buffer: bytes) -> ProcessResult:
        # Items usually arrive through ``conversation.item.created`` first.
        raw = event["item"]
        if raw["id"] in self._items_by_id:
            return self._items_by_id[raw["id"]], None
        return self._on_item_created({"type": event["type"], "item": raw}, buffer)

    def _on_output_item_done(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        raw = event["item"]
        item = self._require(raw["id"], event["type"])
        item.status = _parse_status(raw.get("status"))
        if item.formatted.tool is not None and raw.get("arguments"):
            item.formatted.tool.arguments = raw["arguments"]
        return item, None

    def _on_content_part_added(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        item = self._require(event["item_id"], event["type"])
        item.content.append(dict(event["part"]))
        return item, None

    def _on_audio_transcript_delta(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        item = self._require(event["item_id"], event["type"])
        delta = event["delta"]
        content_index = int(event.get("content_index", 0))
        if 0 <= content_index < len(item.content):
            part = item.content[content_index]
            part["transcript"] = part.get("transcript", "") + delta
        item.formatted.transcript += delta
        return item, {"transcript": delta}

    def _on_audio_delta(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        item = self._require(event["item_id"], event["type"])
        audio = _decode_audio(event["delta"])
        item.formatted.audio.extend(audio)
        return item, {"audio": audio}

    def _on_text_delta(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        item = self._require(event["item_id"], event["type"])
        delta = event["delta"]
        content_index = int(event.get("content_index", 0))
        if 0 <= content_index < len(item.content):
            part = item.content[content_index]
            part["text"] = part.get("text", "") + delta
        item.formatted.text += delta
        return item, {"text": delta}

    def _on_function_call_arguments_delta(self, event: dict[str, Any], _buffer: bytes) -> ProcessResult:
        item = self._require(event["item_id"], event["type"])
        if item.formatted.tool is None:
            raise ProtocolError(f"Item {item.id} is not a function call", event_type=event["type"])
        item.formatted.tool.arguments += event["delta"]
        return item, {"arguments": event["delta"]}
