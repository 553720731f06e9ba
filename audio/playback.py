"""
audio/playback.py — Backend TTS playback

Decodes synthesized audio payloads (WAV, MP3, FLAC, … anything libsndfile
reads) with soundfile, resamples to the configured output rate and plays
them through sounddevice. Playback blocks in an executor thread so the
event loop stays free; stop() interrupts it from the loop thread.
"""

from __future__ import annotations

import asyncio
import io

import numpy as np
import soundfile as sf

from audio.codec import frame_from_pcm16, resample_frame
from audio.frame import AudioFrame
from exceptions import AudioDecodeError, AudioValidationError, DeviceUnavailableError
from observability.logger import get_logger

log = get_logger(__name__)

# Raw PCM content types carry no container, so they bypass libsndfile
_RAW_PCM_TYPES = {"audio/l16", "audio/pcm"}


class AudioPlayer:
    """Decode-and-play sink for backend synthesized speech."""

    def __init__(self, sample_rate_out: int = 24000) -> None:
        self._sample_rate_out = sample_rate_out
        self._playing = False
        self._token = 0

    @property
    def playing(self) -> bool:
        return self._playing

    def decode(self, data: bytes, content_type: str = "") -> AudioFrame:
        """
        Decode a payload to a float frame at sample_rate_out.
        Raises AudioDecodeError if the payload is empty or unreadable.
        """
        if not data:
            raise AudioDecodeError("Empty audio payload")

        if content_type.split(";")[0].strip().lower() in _RAW_PCM_TYPES:
            try:
                frame = frame_from_pcm16(data, self._sample_rate_out)
            except AudioValidationError as e:
                raise AudioDecodeError(f"Malformed raw PCM payload: {e}") from e
        else:
            try:
                with sf.SoundFile(io.BytesIO(data)) as f:
                    samples = f.read(dtype="float32", always_2d=True)
                    frame = AudioFrame(samples, f.samplerate, f.channels)
            except (RuntimeError, TypeError, ValueError) as e:
                # soundfile.LibsndfileError subclasses RuntimeError
                raise AudioDecodeError(f"Could not decode audio payload: {e}") from e

        if frame.length == 0:
            raise AudioDecodeError("Audio payload decoded to zero samples")
        return resample_frame(frame, self._sample_rate_out)

    async def play(self, frame: AudioFrame) -> None:
        """Play a frame to completion (or until stop())."""
        loop = asyncio.get_running_loop()
        self._token += 1
        token = self._token
        self._playing = True
        log.debug("playback.start", duration_s=round(frame.duration_s, 2),
                  sample_rate=frame.sample_rate)
        try:
            await loop.run_in_executor(
                None, self._play_blocking, np.asarray(frame.samples), frame.sample_rate
            )
        finally:
            # An older call finishing must not clear a newer playback
            if token == self._token:
                self._playing = False
            log.debug("playback.end", current=token == self._token)

    def stop(self) -> None:
        """Interrupt the current playback, if any."""
        if self._playing:
            self._stop_blocking()

    def _play_blocking(self, samples: np.ndarray, sample_rate: int) -> None:
        """Blocking sounddevice playback — runs in executor."""
        import sounddevice as sd
        try:
            sd.play(samples, samplerate=sample_rate)
            sd.wait()
        except sd.PortAudioError as e:
            raise DeviceUnavailableError(f"Audio output failed: {e}") from e

    def _stop_blocking(self) -> None:
        import sounddevice as sd
        sd.stop()
