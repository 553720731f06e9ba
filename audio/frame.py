"""
audio/frame.py — AudioFrame value type

An AudioFrame is an immutable block of normalized float samples shaped
(frames, channels). Capture and decode produce frames; resampling, level
computation and WAV framing consume them. Transformations always return a
new frame — the sample array is marked read-only on construction.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from exceptions import AudioValidationError


@dataclass(frozen=True)
class AudioFrame:
    """
    Attributes
    ----------
    samples       : np.ndarray — float32, shape (frames, channel_count), read-only
    sample_rate   : int        — Hz
    channel_count : int
    """
    samples: np.ndarray
    sample_rate: int
    channel_count: int

    def __post_init__(self) -> None:
        if self.sample_rate < 1:
            raise AudioValidationError(f"sample_rate must be >= 1, got {self.sample_rate}")
        if self.channel_count < 1:
            raise AudioValidationError(f"channel_count must be >= 1, got {self.channel_count}")

        arr = np.array(self.samples, dtype=np.float32, copy=True)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2 or arr.shape[1] != self.channel_count:
            raise AudioValidationError(
                f"samples shape {arr.shape} does not match channel_count={self.channel_count}"
            )
        arr.setflags(write=False)
        object.__setattr__(self, "samples", arr)

    @classmethod
    def from_mono(cls, samples, sample_rate: int) -> "AudioFrame":
        return cls(np.asarray(samples, dtype=np.float32).reshape(-1, 1), sample_rate, 1)

    @classmethod
    def silent(cls, length: int, sample_rate: int, channel_count: int = 1) -> "AudioFrame":
        return cls(np.zeros((length, channel_count), dtype=np.float32), sample_rate, channel_count)

    @property
    def length(self) -> int:
        """Number of sample frames (per-channel sample count)."""
        return int(self.samples.shape[0])

    @property
    def duration_s(self) -> float:
        return self.length / self.sample_rate

    def channel(self, index: int) -> np.ndarray:
        """Return a read-only view of one channel's samples."""
        if not 0 <= index < self.channel_count:
            raise AudioValidationError(
                f"channel {index} out of range for {self.channel_count}-channel frame"
            )
        return self.samples[:, index]

    def mono(self) -> np.ndarray:
        """Mean of all channels as a 1-D float32 array."""
        if self.channel_count == 1:
            return self.samples[:, 0]
        return self.samples.mean(axis=1).astype(np.float32)
