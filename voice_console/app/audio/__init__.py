"""Audio capture, playback, and turn detection for the voice console."""

from .analysis import AnalysisType, FrequencySnapshot, frequency_snapshot
from .capture import AudioCapture, AudioFrame, CaptureStatus
from .playback import AudioPlayback, TrackOffset
from .turn_detection import TurnDetectionController, turn_detection_config

__all__ = [
    "AnalysisType",
    "AudioCapture",
    "AudioFrame",
    "AudioPlayback",
    "CaptureStatus",
    "FrequencySnapshot",
    "TrackOffset",
    "TurnDetectionController",
    "frequency_snapshot",
    "turn_detection_config",
]
