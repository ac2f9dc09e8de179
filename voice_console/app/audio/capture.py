"""Microphone capture that delivers fixed-size PCM16 frames to the event loop.

The device callback runs on a PortAudio thread. Frames are handed to the
asyncio loop with ``call_soon_threadsafe`` and dispatched to the registered
coroutine in capture order.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

try:
    import sounddevice as sd
except OSError:  # PortAudio shared library missing
    sd = None

from shared.errors import DeviceError

from .analysis import AnalysisType, FrequencySnapshot, frequency_snapshot

_LOGGER = logging.getLogger(__name__)

# Samples retained for visualization snapshots.
_ANALYSIS_WINDOW_SAMPLES = 2048


class CaptureStatus(str, Enum):
    ENDED = "ended"
    PAUSED = "paused"
    RECORDING = "recording"


@dataclass(slots=True, frozen=True)
class AudioFrame:
    """One captured block of mono PCM16 audio.

    Attributes:
        pcm: Little-endian int16 sample bytes.
        sample_rate: Capture sample rate in Hz.
        captured_at: Monotonic capture timestamp in seconds.
    """

    pcm: bytes
    sample_rate: int
    captured_at: float = field(default_factory=time.monotonic)

    @property
    def sample_count(self) -> int:
        return len(self.pcm) // 2

    def samples(self) -> np.ndarray:
        return np.frombuffer(self.pcm, dtype=np.int16)


FrameHandler = Callable[[AudioFrame], Awaitable[None]]


class AudioCapture:
    """Input device wrapper with begin / record / pause / end lifecycle."""

    def __init__(
        self,
        sample_rate: int = 24000,
        frame_samples: int = 2400,
        device: int | str | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.frame_samples = frame_samples
        self.device = device
        self._status = CaptureStatus.ENDED
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[AudioFrame | None] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._on_frame: FrameHandler | None = None
        self._window_lock = threading.Lock()
        self._window = np.zeros(0, dtype=np.int16)
        self._frame_count = 0

    @property
    def status(self) -> CaptureStatus:
        return self._status

    async def begin(self) -> None:
        """Acquires the input device without starting delivery.

        Raises:
            DeviceError: If the device or audio backend is unavailable.
        """
        if self._stream is not None:
            return
        if sd is None:
            raise DeviceError("Audio input unavailable: PortAudio could not be loaded")
        self._loop = asyncio.get_running_loop()
        try:
            self._stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.frame_samples,
                device=self.device,
                callback=self._on_audio,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceError(f"Could not open audio input device: {exc}") from exc
        self._status = CaptureStatus.PAUSED
        _LOGGER.debug(
            "Audio capture device acquired.",
            extra={"sample_rate": self.sample_rate, "frame_samples": self.frame_samples},
        )

    async def record(self, on_frame: FrameHandler) -> None:
        """Starts delivering frames to ``on_frame``.

        Args:
            on_frame: Coroutine called once per captured frame.

        Raises:
            RuntimeError: If capture has not begun or is already recording.
        """
        if self._stream is None:
            raise RuntimeError("Audio capture has not begun")
        if self._status is CaptureStatus.RECORDING:
            raise RuntimeError("Audio capture is already recording")
        self._on_frame = on_frame
        self._queue = asyncio.Queue()
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(self._queue))
        self._status = CaptureStatus.RECORDING
        self._stream.start()
        _LOGGER.debug("Audio capture recording started.")

    async def pause(self) -> None:
        """Stops delivery while keeping the device.

        Frames captured before the pause are delivered before this returns.
        """
        if self._status is not CaptureStatus.RECORDING:
            return
        self._status = CaptureStatus.PAUSED
        self._stream.stop()
        if self._queue is not None and self._loop is not None:
            # Queued after any frame the device thread already scheduled.
            self._loop.call_soon(self._queue.put_nowait, None)
        if self._dispatch_task is not None:
            await self._dispatch_task
        self._dispatch_task = None
        self._queue = None
        self._on_frame = None
        _LOGGER.debug("Audio capture paused.", extra={"frames_captured": self._frame_count})

    async def end(self) -> None:
        """Releases the device. Safe to call repeatedly."""
        await self.pause()
        if self._stream is not None:
            self._stream.close()
            self._stream = None
            _LOGGER.debug("Audio capture device released.")
        self._status = CaptureStatus.ENDED
        with self._window_lock:
            self._window = np.zeros(0, dtype=np.int16)

    def frequency_snapshot(self, analysis_type: AnalysisType = AnalysisType.VOICE) -> FrequencySnapshot:
        with self._window_lock:
            window = self._window.copy()
        return frequency_snapshot(window, self.sample_rate, analysis_type)

    def _on_audio(self, indata, frames, time_info, status) -> None:
        """PortAudio callback; runs on the device thread."""
        del frames, time_info
        if status:
            _LOGGER.debug("Audio capture callback status.", extra={"status": str(status)})
        pcm = bytes(indata)
        with self._window_lock:
            samples = np.frombuffer(pcm, dtype=np.int16)
            self._window = np.concatenate((self._window, samples))[-_ANALYSIS_WINDOW_SAMPLES:]
        queue = self._queue
        if queue is None or self._loop is None or self._status is not CaptureStatus.RECORDING:
            return
        self._loop.call_soon_threadsafe(queue.put_nowait, AudioFrame(pcm, self.sample_rate))

    async def _dispatch_loop(self, queue: asyncio.Queue[AudioFrame | None]) -> None:
        """Hands frames to the handler in capture order until paused."""
        while True:
            frame = await queue.get()
            if frame is None:
                return
            self._frame_count += 1
            if self._on_frame is None:
                continue
            try:
                await self._on_frame(frame)
            except asyncio.CancelledError:
                raise
            except Exception:
                _LOGGER.exception("Audio frame handler failed.")
