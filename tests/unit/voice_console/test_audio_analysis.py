from __future__ import annotations

import numpy as np

from voice_console.app.audio.analysis import AnalysisType, frequency_snapshot


def _tone(frequency: float, sample_rate: int = 24000, size: int = 2048) -> np.ndarray:
    t = np.arange(size) / sample_rate
    return (np.sin(2 * np.pi * frequency * t) * 16000).astype(np.int16)


def test_empty_window_yields_zeros() -> None:
    snapshot = frequency_snapshot(np.zeros(0, dtype=np.int16), 24000)

    assert snapshot.values.size == snapshot.labels.size
    assert not snapshot.values.any()


def test_values_are_normalized() -> None:
    snapshot = frequency_snapshot(_tone(440.0), 24000, AnalysisType.FREQUENCY)

    assert snapshot.values.min() >= 0.0
    assert snapshot.values.max() <= 1.0
    assert snapshot.values.size == 2048 // 2 + 1


def test_voice_bands_peak_near_tone() -> None:
    snapshot = frequency_snapshot(_tone(440.0), 24000, AnalysisType.VOICE)

    peak = snapshot.labels[int(np.argmax(snapshot.values))]
    assert abs(np.log2(peak / 440.0)) < 0.25
    assert snapshot.labels.min() >= 32.0
    assert snapshot.labels.max() <= 2000.0
