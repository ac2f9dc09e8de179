"""Terminal entrypoint for the voice console.

Stands in for a graphical presentation layer: avatar changes, completed
items, and errors are printed, and operator controls are read from stdin.
"""

from __future__ import annotations

import asyncio
import logging

from shared.errors import RealtimeError, RelayConnectionError
from shared.schemas import TurnDetectionMode

from .avatar import AvatarState
from .config import settings
from .conversation.items import ConversationItem, ItemDelta, ItemStatus, ItemType
from .orchestrator import ConversationOrchestrator

_LOGGER = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  <enter>        - Start / stop push-to-talk (manual mode)
  /vad           - Toggle between manual and automatic turn detection
  /items         - List conversation items
  /delete <id>   - Delete a conversation item
  /events        - Show the event log
  /memory        - Show stored memory
  /quit          - Disconnect and exit
  /help          - Show this help
Any other text is sent as a user message.
"""


def _configure_logging() -> None:
    """Configures runtime log level for console lifecycle tracing."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    websockets_level = getattr(
        logging,
        settings.WEBSOCKETS_LOG_LEVEL.upper(),
        logging.INFO,
    )
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(level)

    _LOGGER.setLevel(level)
    logging.getLogger("voice_console").setLevel(level)
    logging.getLogger("websockets").setLevel(websockets_level)
    logging.getLogger("websockets.client").setLevel(websockets_level)
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def _describe_item(item: ConversationItem) -> str:
    if item.type is ItemType.FUNCTION_CALL and item.formatted.tool:
        return f"{item.formatted.tool.name}({item.formatted.tool.arguments})"
    if item.type is ItemType.FUNCTION_CALL_OUTPUT:
        return item.formatted.output or ""
    return item.formatted.transcript.strip() or item.formatted.text.strip() or "(audio)"


class ConsoleRunner:
    """Reads operator commands and renders orchestrator callbacks."""

    def __init__(self) -> None:
        self._printed_items: set[str] = set()
        self._recording = False
        self.orchestrator = ConversationOrchestrator(
            on_item_updated=self._on_item_updated,
            on_avatar_change=self._on_avatar_change,
            on_error=self._on_error,
        )

    def _on_item_updated(self, item: ConversationItem, delta: ItemDelta | None) -> None:
        del delta
        if item.status is not ItemStatus.COMPLETED or item.id in self._printed_items:
            return
        self._printed_items.add(item.id)
        print(f"\n[{item.role.value}] {_describe_item(item)}")

    def _on_avatar_change(self, state: AvatarState) -> None:
        print(f"  ({state.value})")

    def _on_error(self, exc: RealtimeError) -> None:
        print(f"\n! {exc.__class__.__name__}: {exc.message}")

    async def _toggle_recording(self) -> None:
        if self._recording:
            self._recording = False
            await self.orchestrator.stop_recording()
            print("  ...sent")
        else:
            await self.orchestrator.start_recording()
            self._recording = True
            print("  recording, press enter to send")

    async def _toggle_turn_detection(self) -> None:
        if self._recording:
            await self.orchestrator.stop_recording()
            self._recording = False
        manual = self.orchestrator.turn_controller.is_manual
        mode = TurnDetectionMode.AUTOMATIC if manual else TurnDetectionMode.MANUAL
        await self.orchestrator.set_turn_detection(mode)
        print(f"  turn detection: {'automatic' if manual else 'manual'}")

    def _print_items(self) -> None:
        for item in self.orchestrator.items:
            print(f"  {item.id} [{item.role.value}/{item.status.value}] {_describe_item(item)}")

    def _print_events(self) -> None:
        for entry in self.orchestrator.event_log.entries():
            print(f"  {entry.event.time:%H:%M:%S} {entry.summary()}")

    async def _handle_command(self, line: str) -> bool:
        """Handles one input line; returns False when the runner should stop."""
        if not line:
            await self._toggle_recording()
            return True
        if not line.startswith("/"):
            await self.orchestrator.send_text(line)
            return True

        command, _, argument = line[1:].partition(" ")
        command = command.lower()
        if command == "quit":
            return False
        if command == "help":
            print(HELP_TEXT)
        elif command == "vad":
            await self._toggle_turn_detection()
        elif command == "items":
            self._print_items()
        elif command == "delete":
            try:
                await self.orchestrator.delete_item(argument.strip())
            except KeyError:
                print(f"  no item with id {argument.strip()!r}")
        elif command == "events":
            self._print_events()
        elif command == "memory":
            print(f"  {self.orchestrator.memory.snapshot()}")
        else:
            print(f"Unknown command: {command}")
        return True

    async def run(self) -> None:
        """Connects and processes commands until quit or disconnect."""
        try:
            await self.orchestrator.connect()
        except RelayConnectionError as exc:
            print(f"Could not connect: {exc.message}")
            await self.orchestrator.close()
            return
        print(HELP_TEXT)
        try:
            while self.orchestrator.session.is_open:
                try:
                    line = await asyncio.to_thread(input, "> ")
                except EOFError:
                    break
                try:
                    if not await self._handle_command(line.strip()):
                        break
                except (RuntimeError, RealtimeError) as exc:
                    print(f"  {exc}")
        finally:
            await self.orchestrator.close()


def run() -> None:
    """Console-script entrypoint for `voice-console`."""
    _configure_logging()
    try:
        asyncio.run(ConsoleRunner().run())
    except KeyboardInterrupt:
        print("\nExiting...")


if __name__ == "__main__":
    run()
