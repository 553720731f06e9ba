"""
audio/analyser.py — Spectrum analysis node

A small numpy re-creation of a browser AnalyserNode: capture pushes sample
blocks in, the level monitor reads smoothed byte-scaled frequency magnitudes
out. Only the pieces the level meter needs are modelled:

    time-domain ring (fft_size samples) ──► Blackman window ──► |rFFT| / N
        ──► exponential smoothing (τ = 0.8) ──► dB ──► [min_db, max_db] → 0..255
"""

from __future__ import annotations

import numpy as np

from exceptions import AudioValidationError

DEFAULT_FFT_SIZE = 256
_SMOOTHING = 0.8
_MIN_DB = -100.0
_MAX_DB = -30.0


class SpectrumAnalyser:
    """Holds the most recent fft_size samples and derives frequency-bin magnitudes."""

    def __init__(self, fft_size: int = DEFAULT_FFT_SIZE, smoothing: float = _SMOOTHING) -> None:
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise AudioValidationError(f"fft_size must be a power of two >= 32, got {fft_size}")
        self.fft_size = fft_size
        self.smoothing = smoothing
        self._window = np.blackman(fft_size).astype(np.float32)
        self._buffer = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, samples: np.ndarray) -> None:
        """Append a block of mono float samples, keeping only the newest fft_size."""
        block = np.asarray(samples, dtype=np.float32).reshape(-1)
        if block.size >= self.fft_size:
            self._buffer = block[-self.fft_size:].copy()
        elif block.size:
            self._buffer = np.concatenate([self._buffer[block.size:], block])

    def byte_frequency_data(self) -> np.ndarray:
        """Return frequency_bin_count magnitudes scaled to uint8 (0..255)."""
        spectrum = np.fft.rfft(self._buffer * self._window)[: self.frequency_bin_count]
        magnitude = np.abs(spectrum) / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude

        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(self._smoothed)
        scaled = 255.0 * (db - _MIN_DB) / (_MAX_DB - _MIN_DB)
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)

    def reset(self) -> None:
        self._buffer.fill(0.0)
        self._smoothed.fill(0.0)
