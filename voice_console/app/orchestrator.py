"""Conversation orchestrator for one realtime voice session.

The orchestrator owns session configuration and the local conversation, and
drives the audio pipelines, the turn detection controller, the avatar, and
tool dispatch from realtime events:
1. Capture frames -> ``input_audio_buffer.append`` on the realtime client.
2. Server events -> conversation items, playback, avatar, and tool calls.
3. Interruptions -> playback stop plus ``response.cancel`` and truncation at
   the sample offset that was actually heard.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shared.errors import (
    DeviceError,
    ProtocolError,
    RealtimeError,
    RelayConnectionError,
    RetrievalError,
    ToolError,
    UpstreamError,
)
from shared.schemas import GetWeatherRequest, SetMemoryRequest, TurnDetectionMode

from .audio.analysis import AnalysisType, FrequencySnapshot
from .audio.capture import AudioCapture, AudioFrame, CaptureStatus
from .audio.playback import AudioPlayback, TrackOffset
from .audio.turn_detection import TurnDetectionController, turn_detection_config
from .avatar import AvatarController, AvatarState
from .config import Settings, settings as default_settings
from .conversation.event_log import EventLog, LoggedEvent
from .conversation.items import Conversation, ConversationItem, ItemDelta, ItemRole, ItemStatus, ItemType
from .realtime.client import (
    CONNECTION_CLOSED_CHANNEL,
    PROTOCOL_ERROR_CHANNEL,
    REALTIME_EVENT_CHANNEL,
    RealtimeClient,
)
from .realtime.events import EventSource, RealtimeEvent, generate_id
from .retrieval_client import RetrievalClient
from .tools.memory import SET_MEMORY_DESCRIPTION, MemoryStore
from .tools.registry import ToolRegistry
from .tools.weather_client import GET_WEATHER_DESCRIPTION, MapState, WeatherClient

_LOGGER = logging.getLogger(__name__)

ItemListener = Callable[[ConversationItem, ItemDelta | None], None]
AvatarListener = Callable[[AvatarState], None]
EventLogListener = Callable[[LoggedEvent], None]
ErrorListener = Callable[[RealtimeError], None]


class EventClass(str, Enum):
    INPUT_COMMITTED = "input_committed"
    TRANSCRIPTION_COMPLETED = "transcription_completed"
    RESPONSE_ACTIVE = "response_active"
    RESPONSE_COMPLETED = "response_completed"
    INTERRUPTED = "interrupted"
    TOOL_INVOCATION = "tool_invocation"
    ERROR = "error"
    OTHER = "other"


def classify_event(event: dict[str, Any]) -> EventClass:
    """Maps a server event to the class that decides its side effects."""
    event_type = event.get("type", "")
    if event_type == "input_audio_buffer.committed":
        return EventClass.INPUT_COMMITTED
    if event_type == "conversation.item.input_audio_transcription.completed":
        return EventClass.TRANSCRIPTION_COMPLETED
    if event_type == "input_audio_buffer.speech_started":
        return EventClass.INTERRUPTED
    if event_type == "error":
        return EventClass.ERROR
    if event_type == "response.done":
        return EventClass.RESPONSE_COMPLETED
    if event_type == "response.output_item.done" and (event.get("item") or {}).get("type") == "function_call":
        return EventClass.TOOL_INVOCATION
    if event_type.startswith("response.") or event_type.startswith("conversation.item.output"):
        return EventClass.RESPONSE_ACTIVE
    return EventClass.OTHER


@dataclass(slots=True)
class Session:
    """Client-side view of the realtime session.

    Attributes:
        id: Service-assigned id once ``session.created`` arrives, else local.
        turn_detection: Active turn detection mode.
        instructions: System instructions applied on connect.
        tools: Tool descriptors advertised to the service.
        is_open: Whether the relay connection is established.
    """

    id: str
    turn_detection: TurnDetectionMode
    instructions: str
    tools: list[dict[str, Any]] = field(default_factory=list)
    is_open: bool = False


@dataclass(slots=True)
class ToolCall:
    name: str
    call_id: str
    arguments: str
    result: dict[str, Any] | None = None

    @property
    def is_pending(self) -> bool:
        return self.result is None


class ConversationOrchestrator:
    """Coordinates one console session end to end.

    Usage pattern:
    1. ``connect()`` opens devices and the relay session and greets.
    2. ``start_recording()`` / ``stop_recording()`` drive push-to-talk in
       manual mode; automatic mode records continuously.
    3. ``disconnect()`` releases everything and clears local state.
    """

    def __init__(
        self,
        *,
        client: RealtimeClient | None = None,
        capture: AudioCapture | None = None,
        playback: AudioPlayback | None = None,
        retrieval: RetrievalClient | None = None,
        weather: WeatherClient | None = None,
        config: Settings | None = None,
        on_item_updated: ItemListener | None = None,
        on_avatar_change: AvatarListener | None = None,
        on_event_logged: EventLogListener | None = None,
        on_error: ErrorListener | None = None,
    ) -> None:
        self.config = config or default_settings
        rate = self.config.AUDIO_SAMPLE_RATE
        self.client = client or RealtimeClient(self.config.RELAY_URL, sample_rate=rate)
        self.capture = capture or AudioCapture(rate, self.config.capture_frame_samples)
        self.playback = playback or AudioPlayback(rate)
        self.retrieval = retrieval or RetrievalClient(self.config.CONTEXT_URL, self.config.HTTP_TIMEOUT_S)
        self.map_state = weather.map_state if weather else MapState(self.config.DEFAULT_LAT, self.config.DEFAULT_LNG)
        self.weather = weather or WeatherClient(self.config.WEATHER_URL, self.map_state, self.config.HTTP_TIMEOUT_S)

        self.conversation = Conversation(rate)
        self.event_log = EventLog()
        self.memory = MemoryStore()
        self.avatar = AvatarController(on_avatar_change)
        self.turn_controller = TurnDetectionController(
            self.capture,
            self.client,
            self._on_capture_frame,
            self.config.TURN_DETECTION,
        )

        self.tools = ToolRegistry()
        self.tools.register("set_memory", SET_MEMORY_DESCRIPTION, SetMemoryRequest, self.memory.set_memory)
        self.tools.register("get_weather", GET_WEATHER_DESCRIPTION, GetWeatherRequest, self.weather.get_weather)

        self.session = Session(
            id=generate_id("sess_local_"),
            turn_detection=self.turn_controller.mode,
            instructions=self.config.INSTRUCTIONS,
            tools=self.tools.descriptors(),
        )
        self.tool_calls: dict[str, ToolCall] = {}

        self._on_item_updated = on_item_updated
        self._on_event_logged = on_event_logged
        self._on_error = on_error
        self._tasks: set[asyncio.Task[Any]] = set()
        self._is_shutting_down = False
        self._consecutive_protocol_errors = 0

        self.client.bus.subscribe(REALTIME_EVENT_CHANNEL, self._on_realtime_event)
        self.client.bus.subscribe(PROTOCOL_ERROR_CHANNEL, self._on_protocol_error)
        self.client.bus.subscribe(CONNECTION_CLOSED_CHANNEL, self._on_connection_closed)

    # Lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Opens devices and the realtime session, applies config, and greets.

        Device failures are reported through ``on_error`` and leave that
        pipeline stopped; the conversation still proceeds.

        Raises:
            RuntimeError: If the session is already open.
            RelayConnectionError: If the relay cannot be reached.
        """
        if self.session.is_open:
            raise RuntimeError("Session is already open")
        self.event_log.clear()
        self.conversation.clear()

        try:
            await self.capture.begin()
        except DeviceError as exc:
            _LOGGER.warning("Audio capture unavailable.", extra={"error": exc.message})
            self._report_error(exc)
        try:
            await self.playback.connect()
        except DeviceError as exc:
            _LOGGER.warning("Audio playback unavailable.", extra={"error": exc.message})
            self._report_error(exc)

        try:
            await self.client.connect()
        except RelayConnectionError:
            await self._release_devices()
            raise
        self.session.is_open = True
        self._consecutive_protocol_errors = 0
        _LOGGER.info("Conversation session opened.", extra={"session_id": self.session.id})

        await self.client.update_session(
            instructions=self.session.instructions,
            input_audio_transcription={"model": self.config.TRANSCRIPTION_MODEL},
            tools=self.session.tools,
            turn_detection=turn_detection_config(self.turn_controller.mode),
        )
        await self.client.send_user_message(
            [{"type": "input_text", "text": self.config.GREETING_TEXT}],
            respond=False,
        )
        await self._request_response()
        await self.turn_controller.resume_automatic_capture()

    async def disconnect(self) -> None:
        """Idempotently closes the session and clears all local state.

        Safe while a tool call is pending or audio is playing: tool tasks are
        cancelled, playback is interrupted, and every device is released once.
        """
        if self._is_shutting_down or not self.session.is_open:
            return
        self._is_shutting_down = True
        self.session.is_open = False
        _LOGGER.info("Conversation session closing.", extra={"session_id": self.session.id})
        try:
            await self._cancel_background_tasks()
            with contextlib.suppress(Exception):
                await self.client.disconnect()
            await self._release_devices()
        finally:
            self.conversation.clear()
            self.event_log.clear()
            self.memory.clear()
            self.map_state.reset()
            self.tool_calls.clear()
            self.avatar.reset()
            self._is_shutting_down = False
        _LOGGER.info("Conversation session closed.", extra={"session_id": self.session.id})

    async def close(self) -> None:
        """Disconnects and releases HTTP collaborators for process exit."""
        await self.disconnect()
        with contextlib.suppress(Exception):
            await self.retrieval.close()
        with contextlib.suppress(Exception):
            await self.weather.close()

    async def _release_devices(self) -> None:
        with contextlib.suppress(Exception):
            await self.capture.end()
        with contextlib.suppress(Exception):
            self.playback.interrupt()
            await self.playback.close()

    async def _cancel_background_tasks(self) -> None:
        """Cancels and awaits tool and context tasks, skipping the current one."""
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Operator controls ----------------------------------------------------

    @property
    def items(self) -> list[ConversationItem]:
        return self.conversation.items()

    async def start_recording(self) -> None:
        """Begins a push-to-talk turn, interrupting any playing response.

        Raises:
            RuntimeError: If the session is closed or automatic mode is active.
        """
        self._require_manual_turns()
        await self._interrupt_playback()
        await self.capture.record(self._on_capture_frame)
        self.avatar.set(AvatarState.IDLE)

    async def stop_recording(self) -> None:
        """Ends a push-to-talk turn and commits the captured audio once.

        Raises:
            RuntimeError: If the session is closed or automatic mode is active.
        """
        self._require_manual_turns()
        await self.capture.pause()
        committed = await self.client.commit_input_audio()
        if committed:
            self.conversation.queue_input_audio(committed)
        self.avatar.set(AvatarState.THINK)

    async def set_turn_detection(self, mode: TurnDetectionMode) -> None:
        await self.turn_controller.set_mode(mode)
        self.session.turn_detection = mode

    async def delete_item(self, item_id: str) -> None:
        """Removes an item locally and asks the service to delete it.

        Raises:
            KeyError: If no item has this id.
        """
        if self.conversation.delete(item_id) is None:
            raise KeyError(item_id)
        await self.client.delete_item(item_id)

    async def send_text(self, text: str) -> None:
        """Sends a typed user message and requests a response."""
        await self.client.send_user_message([{"type": "input_text", "text": text}], respond=False)
        await self._request_response()

    def input_frequencies(self, analysis_type: AnalysisType = AnalysisType.VOICE) -> FrequencySnapshot:
        return self.capture.frequency_snapshot(analysis_type)

    def output_frequencies(self, analysis_type: AnalysisType = AnalysisType.VOICE) -> FrequencySnapshot:
        return self.playback.frequency_snapshot(analysis_type)

    def _require_manual_turns(self) -> None:
        if not self.session.is_open:
            raise RuntimeError("Session is not open")
        if not self.turn_controller.is_manual:
            raise RuntimeError("Push-to-talk is only available in manual turn detection mode")

    # Realtime event handling ----------------------------------------------

    async def _on_capture_frame(self, frame: AudioFrame) -> None:
        if self.client.is_connected():
            await self.client.append_input_audio(frame.pcm)

    async def _on_realtime_event(self, realtime_event: RealtimeEvent) -> None:
        entry = self.event_log.append(realtime_event)
        if self._on_event_logged is not None:
            self._on_event_logged(entry)
        if realtime_event.source is EventSource.SERVER:
            await self._handle_server_event(realtime_event.event)

    async def _handle_server_event(self, event: dict[str, Any]) -> None:
        """Applies one server event to conversation state and side effects.

        Events are handled one at a time in arrival order, so deltas for an
        item are applied in order. Tool calls and context lookups run as
        separate tasks so they never hold up event consumption.
        """
        try:
            item, delta = self.conversation.process_event(event, bytes(self.client.input_audio_buffer))
        except ProtocolError as exc:
            await self._on_protocol_error(exc)
            return
        self._consecutive_protocol_errors = 0

        event_type = event["type"]
        if event_type in ("session.created", "session.updated"):
            self.session.id = (event.get("session") or {}).get("id") or self.session.id

        event_class = classify_event(event)
        if event_class is EventClass.INPUT_COMMITTED:
            self.avatar.set(AvatarState.THINK)
        elif event_class is EventClass.TRANSCRIPTION_COMPLETED:
            self.avatar.set(AvatarState.THINK)
            self._spawn(self._inject_context(event.get("transcript") or ""))
        elif event_class is EventClass.RESPONSE_ACTIVE:
            self.avatar.set(AvatarState.TALK)
        elif event_class is EventClass.RESPONSE_COMPLETED:
            self.avatar.set(AvatarState.IDLE, self.config.AVATAR_RESPONSE_IDLE_HOLD_MS)
        elif event_class is EventClass.INTERRUPTED:
            await self._interrupt_playback()
            self.avatar.set(AvatarState.IDLE)
        elif event_class is EventClass.TOOL_INVOCATION:
            self.avatar.set(AvatarState.TALK)
            if item is not None and item.status is ItemStatus.COMPLETED and item.formatted.tool:
                self._start_tool_call(item)
        elif event_class is EventClass.ERROR:
            error = event.get("error") or {}
            self._report_error(
                UpstreamError(
                    error.get("message") or "Realtime service error",
                    session_id=self.session.id,
                    event_type=error.get("type"),
                )
            )

        if item is None:
            return
        if event_type == "response.audio.delta" and delta and delta.get("audio"):
            self.playback.add_samples(item.id, delta["audio"])
        if (
            event_type == "response.output_item.done"
            and item.role is ItemRole.ASSISTANT
            and item.type is ItemType.MESSAGE
        ):
            # Completed and truncated items both end their track.
            self.playback.complete_track(item.id)
            if item.status is ItemStatus.COMPLETED:
                self.avatar.set(AvatarState.IDLE, self.config.AVATAR_ITEM_IDLE_HOLD_MS)
        if self._on_item_updated is not None:
            self._on_item_updated(item, delta)

    async def _interrupt_playback(self) -> TrackOffset | None:
        """Stops playback and truncates the heard item at the played offset."""
        offset = self.playback.interrupt()
        if offset is None:
            return None
        item = self.conversation.get(offset.track_id)
        content_index = item.audio_content_index() if item else 0
        audio_end_ms = await self.client.cancel_response(offset.track_id, offset.sample_offset, content_index)
        _LOGGER.debug(
            "Response interrupted.",
            extra={"item_id": offset.track_id, "sample_offset": offset.sample_offset, "audio_end_ms": audio_end_ms},
        )
        return offset

    async def _request_response(self) -> None:
        """Requests a response, committing pending input first in manual mode.

        A push-to-talk turn in progress is left uncommitted; only
        ``stop_recording`` ends it.
        """
        if self.turn_controller.is_manual and self.capture.status is not CaptureStatus.RECORDING:
            committed = await self.client.commit_input_audio()
            if committed:
                self.conversation.queue_input_audio(committed)
        await self.client.create_response()

    async def _inject_context(self, transcript: str) -> None:
        """Adds retrieved context for a user utterance, best effort.

        Under manual turn detection a response is requested afterwards even
        when no context was found, because push-to-talk commits never
        request one themselves.
        """
        query = transcript.strip()
        if query:
            try:
                message = await self.retrieval.lookup(query)
            except RetrievalError as exc:
                _LOGGER.debug("Context lookup skipped.", extra={"error": exc.message})
                message = ""
            if message and self.client.is_connected():
                await self.client.send_user_message([{"type": "input_text", "text": message}], respond=False)
        if self.turn_controller.is_manual and self.client.is_connected():
            await self._request_response()
        self.avatar.set(AvatarState.THINK)

    def _start_tool_call(self, item: ConversationItem) -> None:
        tool = item.formatted.tool
        assert tool is not None
        if tool.call_id in self.tool_calls:
            return
        call = ToolCall(name=tool.name, call_id=tool.call_id, arguments=tool.arguments)
        self.tool_calls[call.call_id] = call
        self._spawn(self._run_tool_call(call))

    async def _run_tool_call(self, call: ToolCall) -> None:
        """Executes a tool and returns its output, or its error, to the service."""
        _LOGGER.info("Tool call received.", extra={"tool_name": call.name, "call_id": call.call_id})
        try:
            call.result = await self.tools.invoke(call.name, call.arguments)
        except ToolError as exc:
            _LOGGER.warning(
                "Tool call failed.",
                extra={"tool_name": call.name, "call_id": call.call_id, "error": exc.message},
            )
            call.result = {"error": exc.message}
        if not self.client.is_connected():
            return
        try:
            await self.client.send_function_call_output(call.call_id, call.result)
        except RelayConnectionError as exc:
            self._report_error(exc)

    async def _on_protocol_error(self, exc: ProtocolError) -> None:
        self._consecutive_protocol_errors += 1
        _LOGGER.warning(
            "Realtime protocol error.",
            extra={
                "error": exc.message,
                "event_type": exc.event_type,
                "consecutive_errors": self._consecutive_protocol_errors,
            },
        )
        exc.session_id = exc.session_id or self.session.id
        self._report_error(exc)
        if self._consecutive_protocol_errors >= self.config.MAX_CONSECUTIVE_PROTOCOL_ERRORS:
            _LOGGER.error("Too many consecutive protocol errors; closing session.")
            await self.disconnect()

    async def _on_connection_closed(self, exc: RelayConnectionError) -> None:
        exc.session_id = exc.session_id or self.session.id
        self._report_error(exc)
        await self.disconnect()

    def _report_error(self, exc: RealtimeError) -> None:
        if self._on_error is not None:
            self._on_error(exc)
