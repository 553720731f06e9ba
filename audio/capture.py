"""
audio/capture.py — Microphone capture session

Owns the microphone stream and the analysis node fed from it.

    acquire(config) ──► sounddevice InputStream (mono float32 @ sample_rate_in)
                            │  PortAudio thread callback
                            ▼  loop.call_soon_threadsafe
                        _deliver(block) ──► SpectrumAnalyser.push()
                                        └─► frame subscribers (recognizer)
    release()       ──► stop + close stream, reset analyser, drop subscribers

release() is idempotent and also runs from __exit__/__aexit__, so a session
torn down on any exit path never leaves the device open.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import numpy as np

from audio.analyser import SpectrumAnalyser
from audio.frame import AudioFrame
from config.settings import VoiceConfig
from exceptions import DeviceUnavailableError
from observability.logger import get_logger

log = get_logger(__name__)

_BLOCK_MS = 30

# Hints a browser-style capture API would honour; PortAudio has no equivalent
# switches, so they are recorded for diagnostics only.
CAPTURE_CONSTRAINTS = {"echo_cancellation": True, "noise_suppression": True}

FrameCallback = Callable[[AudioFrame], None]
StreamFactory = Callable[..., Any]


def open_input_stream(
    *,
    samplerate: int,
    channels: int,
    blocksize: int,
    device: Optional[int],
    callback: Callable,
) -> Any:
    """Open (but don't start) a sounddevice InputStream. Raises DeviceUnavailableError."""
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        raise DeviceUnavailableError(f"Audio backend unavailable: {e}") from e

    try:
        sd.query_devices(device, kind="input")
        return sd.InputStream(
            samplerate=samplerate,
            channels=channels,
            dtype="float32",
            blocksize=blocksize,
            device=device,
            callback=callback,
        )
    except (sd.PortAudioError, ValueError) as e:
        raise DeviceUnavailableError(f"No usable microphone: {e}") from e


class CaptureSession:
    """Scoped owner of one microphone stream and its analyser."""

    def __init__(self, stream_factory: StreamFactory = open_input_stream) -> None:
        self._stream_factory = stream_factory
        self._stream: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._analyser: Optional[SpectrumAnalyser] = None
        self._subscribers: list[FrameCallback] = []
        self._sample_rate = 0

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def active(self) -> bool:
        return self._stream is not None

    @property
    def analyser(self) -> Optional[SpectrumAnalyser]:
        return self._analyser

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def acquire(self, config: VoiceConfig) -> SpectrumAnalyser:
        """
        Open the input device and build the analysis node.

        Returns the analyser. Raises DeviceUnavailableError if permission is
        denied or no device exists. Re-acquiring releases the previous stream.
        """
        if self.active:
            self.release()

        self._loop = asyncio.get_running_loop()
        analyser = SpectrumAnalyser(fft_size=config.fft_size)

        log.info(
            "capture.acquiring",
            sample_rate=config.sample_rate_in,
            device=config.mic_device_index,
            **CAPTURE_CONSTRAINTS,
        )
        stream = self._stream_factory(
            samplerate=config.sample_rate_in,
            channels=1,
            blocksize=int(config.sample_rate_in * _BLOCK_MS / 1000),
            device=config.mic_device_index,
            callback=self._sd_callback,
        )
        try:
            stream.start()
        except Exception as e:
            stream.close()
            raise DeviceUnavailableError(f"Microphone could not be started: {e}") from e

        self._stream = stream
        self._analyser = analyser
        self._sample_rate = config.sample_rate_in
        log.info("capture.acquired", fft_size=analyser.fft_size)
        return analyser

    def release(self) -> None:
        """Stop the device and tear down the analyser. No-op once released."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
        if self._analyser is not None:
            self._analyser.reset()
        self._analyser = None
        self._subscribers.clear()
        log.info("capture.released")

    def __enter__(self) -> "CaptureSession":
        return self

    def __exit__(self, *_: object) -> None:
        self.release()

    async def __aenter__(self) -> "CaptureSession":
        return self

    async def __aexit__(self, *_: object) -> None:
        self.release()

    # ── Frame fan-out ─────────────────────────────────────────────────────────

    def subscribe(self, callback: FrameCallback) -> Callable[[], None]:
        """Receive every captured block on the event loop. Returns an unsubscribe."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _sd_callback(self, indata, frames, time_info, status) -> None:
        """PortAudio thread — copy the block and hop onto the event loop."""
        if status:
            log.debug("capture.sounddevice_status", status=str(status))
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        block = np.array(indata[:, 0], dtype=np.float32, copy=True)
        loop.call_soon_threadsafe(self._deliver, block)

    def _deliver(self, block: np.ndarray) -> None:
        if self._stream is None or self._analyser is None:
            return  # released while the block was in flight
        self._analyser.push(block)
        if not self._subscribers:
            return
        frame = AudioFrame.from_mono(block, self._sample_rate)
        for callback in list(self._subscribers):
            callback(frame)
