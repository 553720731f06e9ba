"""
speech/synthesis.py — Speech Output Orchestrator

Backend-first speech output with a local fallback:

    speak(text, lang)
      │  is_speaking = True
      ├─ 1. backend /tts → decode → play ─────────────► BACKEND
      │      │ BackendUnavailableError / AudioDecodeError
      │      ▼
      ├─ 2. local synthesis (rate 0.9, pitch 1.0) ─────► FALLBACK
      │      │ SynthesisError / no local voice
      │      ▼                                          FAILED
      │  is_speaking = False   (only by the current call)
      ▼
    SpeechOutcome

The two steps are strictly sequential: the fallback starts only after the
backend attempt has failed, and never once backend playback has begun.

Every call takes a generation number. stop_speaking() and a newer speak()
advance the generation; a call that finds itself superseded returns
CANCELLED without playing anything further and without touching
is_speaking, so a late backend response can never restart speech.
"""

from __future__ import annotations

from typing import Optional

from app.state import ConnectionStateMachine
from audio.playback import AudioPlayer
from exceptions import AudioDecodeError, BackendUnavailableError, VoiceCoreError
from observability.logger import get_logger
from speech.backend_client import BackendClient
from speech.types import SpeechOutcome, SynthesisCapability, Utterance

log = get_logger(__name__)

FALLBACK_RATE = 0.9
FALLBACK_PITCH = 1.0


class SpeechOutputOrchestrator:
    """Speaks text through the backend, or the local synthesizer if the backend fails."""

    def __init__(
        self,
        state: ConnectionStateMachine,
        client: BackendClient,
        player: AudioPlayer,
        local: Optional[SynthesisCapability] = None,
        *,
        default_lang: str = "ar-SA",
        voice: Optional[str] = None,
        fmt: Optional[str] = None,
    ) -> None:
        self._state = state
        self._client = client
        self._player = player
        self._local = local
        self._default_lang = default_lang
        self._voice = voice
        self._fmt = fmt
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    async def speak(self, text: str, lang: Optional[str] = None) -> SpeechOutcome:
        """Speak `text`. Returns how the call ended; never raises for backend failures."""
        if not text or not text.strip():
            log.debug("tts.empty_text")
            return SpeechOutcome.FAILED

        if self._state.is_speaking:
            self._interrupt()
        self._generation += 1
        generation = self._generation
        self._state.set_speaking(True)

        outcome = SpeechOutcome.FAILED
        try:
            outcome = await self._speak(text, lang or self._default_lang, generation)
            return outcome
        finally:
            if generation == self._generation:
                self._state.set_speaking(False)
            log.info("tts.done", outcome=outcome.value, generation=generation)

    def stop_speaking(self) -> None:
        """Cancel backend playback and local synthesis; is_speaking becomes False."""
        self._generation += 1
        self._interrupt()
        self._state.set_speaking(False)
        log.debug("tts.stopped", generation=self._generation)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _superseded(self, generation: int) -> bool:
        return generation != self._generation

    def _interrupt(self) -> None:
        self._player.stop()
        if self._local is not None:
            self._local.cancel()

    async def _speak(self, text: str, lang: str, generation: int) -> SpeechOutcome:
        # Step 1: backend
        try:
            audio = await self._client.synthesize(text, voice=self._voice, fmt=self._fmt)
            frame = self._player.decode(audio.data, audio.content_type)
        except (BackendUnavailableError, AudioDecodeError) as e:
            if self._superseded(generation):
                return SpeechOutcome.CANCELLED
            log.warning("tts.fallback", reason=str(e), error_type=type(e).__name__)
            return await self._speak_locally(text, lang, generation)

        if self._superseded(generation):
            log.debug("tts.stale_backend_audio", generation=generation)
            return SpeechOutcome.CANCELLED

        try:
            await self._player.play(frame)
        except VoiceCoreError as e:
            # Playback had started; the fallback is no longer an option
            log.error("tts.playback_failed", error=str(e))
            return SpeechOutcome.FAILED
        return SpeechOutcome.CANCELLED if self._superseded(generation) else SpeechOutcome.BACKEND

    async def _speak_locally(self, text: str, lang: str, generation: int) -> SpeechOutcome:
        # Step 2: local fallback
        if self._local is None:
            log.error("tts.no_local_synthesizer")
            return SpeechOutcome.FAILED

        utterance = Utterance(text=text, lang=lang, rate=FALLBACK_RATE, pitch=FALLBACK_PITCH)
        try:
            await self._local.speak(utterance)
        except VoiceCoreError as e:
            log.error("tts.fallback_failed", error=str(e), code=e.code)
            return SpeechOutcome.CANCELLED if self._superseded(generation) else SpeechOutcome.FAILED
        return SpeechOutcome.CANCELLED if self._superseded(generation) else SpeechOutcome.FALLBACK
