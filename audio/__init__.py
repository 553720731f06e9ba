"""Audio layer — pure codec functions, capture, level metering and playback."""

from audio.frame import AudioFrame
from audio.analyser import SpectrumAnalyser
from audio.capture import CaptureSession
from audio.level_monitor import AudioLevelMonitor
from audio.playback import AudioPlayer

__all__ = [
    "AudioFrame",
    "SpectrumAnalyser",
    "CaptureSession",
    "AudioLevelMonitor",
    "AudioPlayer",
]
