"""
interfaces/voice.py — Basma Voice Session Interface

VoiceInterface composes the voice core for one interaction:

    start_listening()
        │  idle|error → connecting
        ├─ CaptureSession.acquire()          mic + analyser
        ├─ recognizer_factory(...)            RecognitionCapability
        ├─ RecognitionDriver.start()          restarts on silent self-termination
        │      on_start → active, AudioLevelMonitor ticking
        ▼
    transcripts → on_transcript callbacks

    speak(text) → SpeechOutputOrchestrator (backend /tts, local Piper fallback)

    stop_listening() → driver stop, monitor stop, capture release, → idle

Device or capability failures during start are recorded on the state
machine (state `error`, last_error set) and re-raised to the caller. A fatal
recognizer error later on releases everything and leaves the session in
`error` until the next start_listening().

Usage::

    vi = VoiceInterface(settings)
    vi.on_transcript(lambda t: print(t.text))
    await vi.start_listening()
    ...
    await vi.aclose()
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Callable, Optional

from app.state import ConnectionState, ConnectionStateMachine, StateListener
from audio.capture import CaptureSession
from audio.level_monitor import AudioLevelMonitor
from audio.playback import AudioPlayer
from config.settings import Settings, VoiceConfig
from exceptions import (
    CapabilityUnsupportedError,
    DeviceUnavailableError,
    VoiceCoreError,
)
from observability.logger import bind_session, clear_session, get_logger
from speech.backend_client import BackendClient
from speech.backend_recognizer import BackendRecognitionCapability
from speech.local_tts import PiperSynthesisCapability
from speech.recognition import RecognitionDriver, TranscriptListener
from speech.synthesis import SpeechOutputOrchestrator
from speech.types import (
    RecognitionCapability,
    SpeechOutcome,
    SttResult,
    SynthesisCapability,
    SynthesizedAudio,
    Transcript,
    locale_for,
)

log = get_logger(__name__)

RecognizerFactory = Callable[[CaptureSession, BackendClient, VoiceConfig], Optional[RecognitionCapability]]


class VoiceInterface:
    """
    One voice session: capture, recognition, level metering and speech output.

    Every collaborator can be injected; the defaults talk to real audio
    devices (sounddevice), the configured backend (httpx) and Piper.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        capture: Optional[CaptureSession] = None,
        recognizer_factory: Optional[RecognizerFactory] = None,
        player: Optional[AudioPlayer] = None,
        local_tts: Optional[SynthesisCapability] = None,
        client: Optional[BackendClient] = None,
    ) -> None:
        self._settings = settings
        self._cfg = settings.effective_voice

        self._state = ConnectionStateMachine()
        self._capture = capture or CaptureSession()
        self._recognizer_factory: RecognizerFactory = recognizer_factory or BackendRecognitionCapability
        self._player = player or AudioPlayer(self._cfg.sample_rate_out)
        self._client = client or BackendClient(
            self._cfg.backend_url,
            timeout_s=settings.backend.timeout_s,
            default_voice=self._cfg.tts_voice,
            default_format=self._cfg.tts_format,
        )
        self._local_tts = local_tts or PiperSynthesisCapability(self._cfg, player=self._player)
        self._speech = SpeechOutputOrchestrator(
            self._state,
            self._client,
            self._player,
            self._local_tts,
            default_lang=locale_for(self._cfg.language),
            voice=self._cfg.tts_voice,
            fmt=self._cfg.tts_format,
        )

        self._driver: Optional[RecognitionDriver] = None
        self._monitor: Optional[AudioLevelMonitor] = None
        self._transcript_listeners: list[TranscriptListener] = []
        self._session_id: Optional[str] = None

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def config(self) -> VoiceConfig:
        return self._cfg

    @property
    def state(self) -> ConnectionStateMachine:
        return self._state

    @property
    def driver(self) -> Optional[RecognitionDriver]:
        return self._driver

    @property
    def monitor(self) -> Optional[AudioLevelMonitor]:
        return self._monitor

    @property
    def speech(self) -> SpeechOutputOrchestrator:
        return self._speech

    def on_transcript(self, callback: TranscriptListener) -> None:
        """Register a callback for every transcript (interim and final)."""
        self._transcript_listeners.append(callback)

    def on_state_change(self, callback: StateListener) -> None:
        """Register a callback(old_state, new_state)."""
        self._state.add_listener(callback)

    def status(self) -> dict:
        """Point-in-time view of the session for status displays."""
        snapshot = self._state.snapshot()
        snapshot.update(
            session_id=self._session_id,
            language=self._cfg.language,
            restarts=self._driver.restarts if self._driver else 0,
        )
        return snapshot

    # ── Listening ─────────────────────────────────────────────────────────────

    async def start_listening(self) -> None:
        """
        Acquire the microphone and start continuous recognition.

        Raises:
            InvalidTransitionError:      already connecting or active
            DeviceUnavailableError:      no microphone / permission denied
            CapabilityUnsupportedError:  no recognizer could be created
        """
        self._state.begin_connect()
        self._session_id = uuid.uuid4().hex[:12]
        bind_session(self._session_id, language=self._cfg.language)
        log.info("voice.listening_starting", language=self._cfg.language,
                 sample_rate=self._cfg.sample_rate_in)

        try:
            analyser = await self._capture.acquire(self._cfg)
            if self._state.state is not ConnectionState.CONNECTING:
                # stop_listening() ran while the device was opening
                self._capture.release()
                return
            capability = self._recognizer_factory(self._capture, self._client, self._cfg)
            if capability is None:
                raise CapabilityUnsupportedError("No speech recognition capability available")

            self._monitor = AudioLevelMonitor(
                analyser,
                is_listening=lambda: self._state.is_listening,
                on_level=self._state.set_audio_level,
                refresh_hz=self._cfg.level_refresh_hz,
            )
            self._driver = RecognitionDriver(
                capability,
                self._state,
                language=self._cfg.language,
                monitor=self._monitor,
                on_fatal_error=self._on_recognition_failed,
            )
            self._driver.add_transcript_listener(self._dispatch_transcript)
            self._driver.start()
        except VoiceCoreError as e:
            log.error("voice.start_failed", code=e.code, error=str(e))
            self._release()
            self._state.fail(e)
            raise

        log.info("voice.listening_started")

    async def stop_listening(self) -> None:
        """Release everything and return to idle. Safe to call in any state."""
        was = self._state.state
        self._release()
        self._state.reset()
        if was is not ConnectionState.IDLE:
            log.info("voice.listening_stopped", previous=was.value)
        clear_session()

    def _release(self) -> None:
        driver, self._driver = self._driver, None
        if driver is not None:
            driver.stop()
        monitor, self._monitor = self._monitor, None
        if monitor is not None:
            monitor.stop()
        self._capture.release()

    def _on_recognition_failed(self, error: VoiceCoreError) -> None:
        driver = self._driver
        if driver is not None:
            driver.capability.abort()
        self._release()
        self._state.fail(error)

    def _dispatch_transcript(self, transcript: Transcript) -> None:
        for callback in list(self._transcript_listeners):
            try:
                callback(transcript)
            except Exception as e:
                log.error("voice.transcript_callback_error", error=str(e),
                          error_type=type(e).__name__)

    # ── Speaking ──────────────────────────────────────────────────────────────

    async def speak(self, text: str, lang: Optional[str] = None) -> SpeechOutcome:
        """Speak text (backend first, local fallback). See SpeechOutputOrchestrator."""
        return await self._speech.speak(text, lang)

    def stop_speaking(self) -> None:
        self._speech.stop_speaking()

    # ── Backend pass-throughs ─────────────────────────────────────────────────

    async def transcribe_audio(self, audio: bytes, mime_type: str = "audio/wav") -> SttResult:
        return await self._client.transcribe(audio, mime_type)

    async def synthesize_speech(self, text: str, voice: Optional[str] = None) -> SynthesizedAudio:
        return await self._client.synthesize(text, voice=voice, fmt=self._cfg.tts_format)

    # ── Teardown ──────────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        """Stop speaking and listening, then close the backend client."""
        self.stop_speaking()
        await self.stop_listening()
        await self._client.aclose()

    async def __aenter__(self) -> "VoiceInterface":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


# ─────────────────────────────────────────────────────────────────────────────
# Public entry point
# ─────────────────────────────────────────────────────────────────────────────

async def run_voice(settings: Settings, log_, echo: bool = False) -> None:
    """
    Interactive listen loop called from main.py. Prints final transcripts;
    with echo=True each one is also spoken back. Runs until Ctrl+C or a
    fatal session error.
    """
    vi = VoiceInterface(settings)
    failed = asyncio.Event()
    speaking: set[asyncio.Task] = set()

    def _on_transcript(t: Transcript) -> None:
        if not t.is_final or not t.text.strip():
            return
        print(f"🗣  {t.text}")
        if echo:
            task = asyncio.ensure_future(vi.speak(t.text, t.language))
            speaking.add(task)
            task.add_done_callback(speaking.discard)

    def _on_state(old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.ERROR:
            failed.set()

    vi.on_transcript(_on_transcript)
    vi.on_state_change(_on_state)

    log_.info("voice.interface_bootstrap", echo=echo)
    try:
        await vi.start_listening()
        print("\n🎙  Basma Voice is listening. Press Ctrl+C to stop.\n")
        await failed.wait()
        error = vi.state.last_error
        if error is not None:
            print(f"\n❌ Voice session error: {error.message}\n")
    except DeviceUnavailableError as e:
        print(f"\n❌ Audio device error: {e}\n")
        log_.error("voice.audio_error", error=str(e))
    except CapabilityUnsupportedError as e:
        print(f"\n❌ Speech recognition unavailable: {e}\n")
        log_.error("voice.capability_error", error=str(e))
    except (KeyboardInterrupt, asyncio.CancelledError):
        log_.info("voice.interrupted")
    finally:
        for task in list(speaking):
            task.cancel()
        await vi.aclose()
