"""Frequency-domain snapshots of PCM16 audio for visualization."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np

MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0

VOICE_MIN_HZ = 32.0
VOICE_MAX_HZ = 2000.0

# Equal-tempered note frequencies from C0 to B7, used as voice bands.
_NOTE_FREQUENCIES = 440.0 * np.power(2.0, (np.arange(96) - 57) / 12.0)
_VOICE_BANDS = _NOTE_FREQUENCIES[
    (_NOTE_FREQUENCIES >= VOICE_MIN_HZ) & (_NOTE_FREQUENCIES <= VOICE_MAX_HZ)
]


class AnalysisType(str, Enum):
    FREQUENCY = "frequency"
    VOICE = "voice"


@dataclass(slots=True, frozen=True)
class FrequencySnapshot:
    """Normalized band magnitudes.

    Attributes:
        values: Magnitudes mapped from [MIN_DECIBELS, MAX_DECIBELS] to [0, 1].
        labels: Centre frequency of each band in Hz.
    """

    values: np.ndarray
    labels: np.ndarray

    @classmethod
    def empty(cls, analysis_type: AnalysisType = AnalysisType.VOICE) -> "FrequencySnapshot":
        size = len(_VOICE_BANDS) if analysis_type is AnalysisType.VOICE else 0
        labels = _VOICE_BANDS.copy() if analysis_type is AnalysisType.VOICE else np.zeros(0)
        return cls(values=np.zeros(size, dtype=np.float32), labels=labels)


def _spectrum_db(samples: np.ndarray, sample_rate: int) -> tuple[np.ndarray, np.ndarray]:
    """Returns bin frequencies and dB magnitudes of a Hann-windowed FFT."""
    signal = samples.astype(np.float32) / 32768.0
    window = np.hanning(len(signal)).astype(np.float32)
    spectrum = np.abs(np.fft.rfft(signal * window)) / max(1, len(signal))
    decibels = 20.0 * np.log10(spectrum + 1e-12)
    frequencies = np.fft.rfftfreq(len(signal), d=1.0 / sample_rate)
    return frequencies, decibels


def _normalize(decibels: np.ndarray) -> np.ndarray:
    scaled = (decibels - MIN_DECIBELS) / (MAX_DECIBELS - MIN_DECIBELS)
    return np.clip(scaled, 0.0, 1.0).astype(np.float32)


def frequency_snapshot(
    samples: np.ndarray,
    sample_rate: int,
    analysis_type: AnalysisType = AnalysisType.VOICE,
) -> FrequencySnapshot:
    """Computes a frequency snapshot of the given window.

    Args:
        samples: Mono int16 samples, oldest first.
        sample_rate: Sample rate of ``samples`` in Hz.
        analysis_type: ``frequency`` returns every FFT bin; ``voice`` groups
            bins into note bands between 32 Hz and 2 kHz.

    Returns:
        Snapshot with values in [0, 1]. An empty window yields zeros.
    """
    if samples.size < 2:
        return FrequencySnapshot.empty(analysis_type)
    frequencies, decibels = _spectrum_db(samples, sample_rate)
    if analysis_type is AnalysisType.FREQUENCY:
        return FrequencySnapshot(values=_normalize(decibels), labels=frequencies)

    # Each FFT bin contributes to its nearest note band; a band keeps its loudest bin.
    band_values = np.full(len(_VOICE_BANDS), MIN_DECIBELS, dtype=np.float64)
    in_range = (frequencies >= VOICE_MIN_HZ) & (frequencies <= VOICE_MAX_HZ)
    if np.any(in_range):
        log_bands = np.log2(_VOICE_BANDS)
        nearest = np.abs(np.log2(frequencies[in_range])[:, None] - log_bands[None, :]).argmin(axis=1)
        np.maximum.at(band_values, nearest, decibels[in_range])
    return FrequencySnapshot(values=_normalize(band_values), labels=_VOICE_BANDS.copy())
