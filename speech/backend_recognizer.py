"""
speech/backend_recognizer.py — Backend-driven Recognition Capability

A RecognitionCapability built from the captured microphone frames and the
backend /stt endpoint, for hosts with no platform speech recognizer.

Segmentation is energy-VAD based:

    speech frame      → append to utterance, reset silence counter
    silence frame     → append while an utterance is open; after
                        silence_duration_ms the utterance is sent
    max_utterance_s   → the open utterance is sent regardless

Each utterance is framed as 16-bit WAV, posted to /stt and delivered as a
final result. Like platform recognizers, it ends on its own: after
no_speech_timeout_s without speech it reports `no-speech` and ends, and the
driver decides whether to start it again.

All events are dispatched with loop.call_soon, so a handler never runs
inside the call that triggered it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from audio.capture import CaptureSession
from audio.codec import concatenate, detect_speech, float32_to_pcm16, wav_bytes
from audio.frame import AudioFrame
from config.settings import VoiceConfig
from exceptions import BackendUnavailableError, DeviceUnavailableError, RecognitionAlreadyStartedError
from observability.logger import get_logger
from speech.backend_client import BackendClient
from speech.types import (
    RecognitionAlternative,
    RecognitionErrorEvent,
    RecognitionResult,
    RecognitionResultEvent,
    locale_for,
)

log = get_logger(__name__)


class BackendRecognitionCapability:
    """Continuous recognizer: capture → VAD → /stt."""

    def __init__(self, capture: CaptureSession, client: BackendClient, config: VoiceConfig) -> None:
        self._capture = capture
        self._client = client
        self._cfg = config

        self.lang = locale_for(config.language)
        self.continuous = True
        self.interim_results = False
        self.max_alternatives = 1

        self.on_start: Optional[Callable[[], None]] = None
        self.on_result: Optional[Callable[[RecognitionResultEvent], None]] = None
        self.on_error: Optional[Callable[[RecognitionErrorEvent], None]] = None
        self.on_end: Optional[Callable[[], None]] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._no_speech_timer: Optional[asyncio.TimerHandle] = None
        self._pending: set[asyncio.Task] = set()
        self._frames: list[AudioFrame] = []
        self._voiced_s = 0.0
        self._silence_s = 0.0
        self._results: tuple[RecognitionResult, ...] = ()

    @property
    def running(self) -> bool:
        return self._running

    # ── RecognitionCapability ─────────────────────────────────────────────────

    def start(self) -> None:
        if self._running:
            raise RecognitionAlreadyStartedError()
        if not self._capture.active:
            raise DeviceUnavailableError("Capture session is not active")

        self._loop = asyncio.get_running_loop()
        self._running = True
        self._results = ()
        self._reset_utterance()
        self._unsubscribe = self._capture.subscribe(self._on_frame)
        self._arm_no_speech_timer()
        log.debug("backend_recognizer.started", lang=self.lang, vad=self._cfg.enable_vad)
        self._emit("on_start")

    def stop(self) -> None:
        if not self._running:
            return
        self._finish()

    def abort(self) -> None:
        if not self._running:
            return
        self._emit("on_error", RecognitionErrorEvent("aborted", "Recognition aborted"))
        self._finish()

    # ── Segmentation ──────────────────────────────────────────────────────────

    def _on_frame(self, frame: AudioFrame) -> None:
        if not self._running:
            return
        samples = frame.mono()
        voiced = not self._cfg.enable_vad or detect_speech(samples, self._cfg.vad_threshold)

        if voiced:
            self._cancel_no_speech_timer()
            self._frames.append(frame)
            self._voiced_s += frame.duration_s
            self._silence_s = 0.0
        elif self._frames:
            self._frames.append(frame)
            self._silence_s += frame.duration_s
            if self._silence_s * 1000 >= self._cfg.silence_duration_ms:
                self._flush("silence")
                return
        else:
            return

        if self._voiced_s + self._silence_s >= self._cfg.max_utterance_s:
            self._flush("max_length")

    def _flush(self, reason: str) -> None:
        merged = concatenate(self._frames)
        voiced_s = self._voiced_s
        self._reset_utterance()
        self._arm_no_speech_timer()
        if merged is None:
            return

        wav = wav_bytes(float32_to_pcm16(merged.samples), merged.sample_rate, merged.channel_count)
        log.debug("backend_recognizer.utterance", reason=reason,
                  duration_s=round(merged.duration_s, 2), voiced_s=round(voiced_s, 2))
        task = asyncio.ensure_future(self._transcribe(wav))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _transcribe(self, wav: bytes) -> None:
        try:
            result = await self._client.transcribe(wav, "audio/wav")
        except BackendUnavailableError as e:
            if self._running:
                self._emit("on_error", RecognitionErrorEvent("network", str(e)))
                self._finish()
            return

        text = result.text.strip()
        if not self._running or not text:
            return
        self._results = self._results + (
            RecognitionResult(
                alternatives=(RecognitionAlternative(text),),
                is_final=True,
                language=result.language,
            ),
        )
        self._emit("on_result", RecognitionResultEvent(results=self._results))

    def _on_no_speech(self) -> None:
        self._no_speech_timer = None
        if not self._running:
            return
        log.debug("backend_recognizer.no_speech", timeout_s=self._cfg.no_speech_timeout_s)
        self._emit("on_error", RecognitionErrorEvent("no-speech", "No speech detected"))
        self._finish()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _finish(self) -> None:
        self._running = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_no_speech_timer()
        for task in list(self._pending):
            task.cancel()
        self._reset_utterance()
        self._emit("on_end")

    def _reset_utterance(self) -> None:
        self._frames = []
        self._voiced_s = 0.0
        self._silence_s = 0.0

    def _arm_no_speech_timer(self) -> None:
        self._cancel_no_speech_timer()
        if self._loop is not None:
            self._no_speech_timer = self._loop.call_later(
                self._cfg.no_speech_timeout_s, self._on_no_speech
            )

    def _cancel_no_speech_timer(self) -> None:
        if self._no_speech_timer is not None:
            self._no_speech_timer.cancel()
            self._no_speech_timer = None

    def _emit(self, handler: str, *args: Any) -> None:
        if self._loop is None:
            return
        self._loop.call_soon(self._dispatch, handler, args)

    def _dispatch(self, handler: str, args: tuple) -> None:
        # Looked up at dispatch time so re-registered handlers take effect
        callback = getattr(self, handler)
        if callback is not None:
            callback(*args)
