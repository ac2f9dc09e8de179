"""Streaming playback of synthesized speech, keyed by response item id.

Chunks are appended from the event loop and rendered from the PortAudio
thread. Both sides share one lock so an interrupt is atomic with respect to
appends: once a track is interrupted, later chunks for it are dropped.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

import numpy as np

try:
    import sounddevice as sd
except OSError:  # PortAudio shared library missing
    sd = None

from shared.errors import DeviceError

from .analysis import AnalysisType, FrequencySnapshot, frequency_snapshot

_LOGGER = logging.getLogger(__name__)

_BYTES_PER_SAMPLE = 2
_ANALYSIS_WINDOW_SAMPLES = 2048


@dataclass(slots=True, frozen=True)
class TrackOffset:
    """Playback position reported by ``AudioPlayback.interrupt``.

    Attributes:
        track_id: Item id of the interrupted track.
        sample_offset: Samples of that track actually rendered.
        sample_rate: Playback sample rate in Hz.
    """

    track_id: str
    sample_offset: int
    sample_rate: int

    @property
    def seconds(self) -> float:
        return self.sample_offset / self.sample_rate


@dataclass(slots=True)
class PlaybackTrack:
    track_id: str
    buffer: bytearray = field(default_factory=bytearray)
    samples_appended: int = 0
    samples_rendered: int = 0
    completed: bool = False


class AudioPlayback:
    """Output device wrapper that plays queued tracks in arrival order."""

    def __init__(
        self,
        sample_rate: int = 24000,
        block_samples: int = 960,
        device: int | str | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.block_samples = block_samples
        self.device = device
        self._stream = None
        self._lock = threading.Lock()
        self._tracks: dict[str, PlaybackTrack] = {}
        self._interrupted: set[str] = set()
        self._window = np.zeros(0, dtype=np.int16)
        self._underrun_count = 0

    def is_connected(self) -> bool:
        return self._stream is not None

    async def connect(self) -> None:
        """Opens and starts the output stream.

        Raises:
            DeviceError: If the device or audio backend is unavailable.
        """
        if self._stream is not None:
            return
        if sd is None:
            raise DeviceError("Audio output unavailable: PortAudio could not be loaded")
        try:
            self._stream = sd.RawOutputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.block_samples,
                device=self.device,
                callback=self._render,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self._stream = None
            raise DeviceError(f"Could not open audio output device: {exc}") from exc
        _LOGGER.debug("Audio playback device started.", extra={"sample_rate": self.sample_rate})

    def add_samples(self, track_id: str, pcm: bytes) -> bool:
        """Queues PCM16 audio for a track, creating the track if needed.

        Args:
            track_id: Response item id the audio belongs to.
            pcm: Little-endian int16 sample bytes.

        Returns:
            False when the track was interrupted and the chunk was dropped.
        """
        with self._lock:
            if track_id in self._interrupted:
                return False
            track = self._tracks.get(track_id)
            if track is None:
                track = self._tracks[track_id] = PlaybackTrack(track_id)
            track.buffer.extend(pcm)
            track.samples_appended += len(pcm) // _BYTES_PER_SAMPLE
        return True

    def complete_track(self, track_id: str) -> None:
        """Marks a track as fully received so it is released once drained.

        An interrupted track is forgotten here, since no more audio can
        arrive for a finished item.
        """
        with self._lock:
            self._interrupted.discard(track_id)
            track = self._tracks.get(track_id)
            if track is None:
                return
            track.completed = True
            if not track.buffer:
                del self._tracks[track_id]

    def interrupt(self) -> TrackOffset | None:
        """Stops playback immediately and discards queued audio.

        Returns:
            Offset of the track that was playing, or None when idle.
        """
        with self._lock:
            current = next(iter(self._tracks.values()), None)
            offset = None
            if current is not None:
                offset = TrackOffset(current.track_id, current.samples_rendered, self.sample_rate)
            self._interrupted.update(self._tracks)
            self._tracks.clear()
        if offset is not None:
            _LOGGER.debug(
                "Playback interrupted.",
                extra={"track_id": offset.track_id, "sample_offset": offset.sample_offset},
            )
        return offset

    def is_playing(self) -> bool:
        with self._lock:
            return any(track.buffer for track in self._tracks.values())

    def frequency_snapshot(self, analysis_type: AnalysisType = AnalysisType.VOICE) -> FrequencySnapshot:
        with self._lock:
            window = self._window.copy()
        return frequency_snapshot(window, self.sample_rate, analysis_type)

    async def close(self) -> None:
        """Stops the output stream and drops all tracks."""
        self.interrupt()
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
            _LOGGER.debug("Audio playback device released.", extra={"underruns": self._underrun_count})
        with self._lock:
            self._interrupted.clear()
            self._window = np.zeros(0, dtype=np.int16)

    def _render(self, outdata, frames, time_info, status) -> None:
        """PortAudio callback; fills ``outdata`` and zero-pads on underrun."""
        del time_info
        if status:
            _LOGGER.debug("Audio playback callback status.", extra={"status": str(status)})
        needed = frames * _BYTES_PER_SAMPLE
        chunk = self._take(needed)
        if len(chunk) < needed:
            chunk.extend(bytes(needed - len(chunk)))
        outdata[:] = bytes(chunk)

    def _take(self, needed: int) -> bytearray:
        """Removes up to ``needed`` bytes from the head of the track queue."""
        out = bytearray()
        with self._lock:
            while len(out) < needed and self._tracks:
                track = next(iter(self._tracks.values()))
                piece = track.buffer[: needed - len(out)]
                del track.buffer[: len(piece)]
                track.samples_rendered += len(piece) // _BYTES_PER_SAMPLE
                out.extend(piece)
                if track.buffer:
                    continue
                # Drained: release finished tracks, wait on a live one unless
                # a later track already has audio.
                has_successor = any(other.buffer for other in self._tracks.values() if other is not track)
                if track.completed or has_successor:
                    del self._tracks[track.track_id]
                else:
                    break
            if out:
                samples = np.frombuffer(bytes(out), dtype=np.int16)
                self._window = np.concatenate((self._window, samples))[-_ANALYSIS_WINDOW_SAMPLES:]
            if len(out) < needed and self._tracks:
                self._underrun_count += 1
        return out
