"""Two-state turn detection switch governing how capture is driven."""

from __future__ import annotations

import logging
from typing import Any

from shared.schemas import TurnDetectionMode

from ..realtime.client import RealtimeClient
from .capture import AudioCapture, CaptureStatus, FrameHandler

_LOGGER = logging.getLogger(__name__)


def turn_detection_config(mode: TurnDetectionMode) -> dict[str, Any] | None:
    """Returns the ``turn_detection`` session value for a mode."""
    if mode is TurnDetectionMode.AUTOMATIC:
        return {"type": "server_vad"}
    return None


class TurnDetectionController:
    """Switches between push-to-talk and server voice activity detection.

    In manual mode capture runs only between explicit start/stop calls. In
    automatic mode capture runs continuously while the session is open and
    the service decides where turns end.
    """

    def __init__(
        self,
        capture: AudioCapture,
        client: RealtimeClient,
        on_frame: FrameHandler,
        mode: TurnDetectionMode = TurnDetectionMode.MANUAL,
    ) -> None:
        self._capture = capture
        self._client = client
        self._on_frame = on_frame
        self._mode = mode

    @property
    def mode(self) -> TurnDetectionMode:
        return self._mode

    @property
    def is_manual(self) -> bool:
        return self._mode is TurnDetectionMode.MANUAL

    async def set_mode(self, mode: TurnDetectionMode) -> None:
        """Applies a new mode.

        Active capture is paused first so no frame straddles the switch. The
        session configuration is then updated and, when entering automatic
        mode with an open session, continuous capture resumes.

        Args:
            mode: Target mode.
        """
        if self._capture.status is CaptureStatus.RECORDING:
            await self._capture.pause()
        previous = self._mode
        self._mode = mode
        await self._client.update_session(turn_detection=turn_detection_config(mode))
        if mode is TurnDetectionMode.AUTOMATIC:
            await self.resume_automatic_capture()
        _LOGGER.info(
            "Turn detection mode changed.",
            extra={"previous_mode": previous.value, "mode": mode.value},
        )

    async def resume_automatic_capture(self) -> None:
        """Starts continuous capture when automatic mode applies."""
        if (
            self._mode is TurnDetectionMode.AUTOMATIC
            and self._client.is_connected()
            and self._capture.status is CaptureStatus.PAUSED
        ):
            await self._capture.record(self._on_frame)
