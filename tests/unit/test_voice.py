"""
tests/unit/test_voice.py — VoiceInterface Unit Tests

Exercises interfaces/voice.py end to end without audio hardware: the
microphone is a fake stream factory, the recognizer is scripted, playback
is mocked and the backend is an httpx.MockTransport.

Test groups
-----------
  start_listening   — idle → connecting → active, monitor + driver wired
  start failures    — device / capability errors land in `error` and re-raise
  stop_listening    — full release, idle, no late restarts
  fatal errors      — recognizer failure releases the session
  transcripts       — fan-out to on_transcript callbacks
  speech output     — backend failure → local fallback through the interface
  run_voice         — entry point reports device and session errors
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

_ROOT = Path(__file__).parent.parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from app.state import ConnectionState
from audio.capture import CaptureSession
from config.settings import Settings
from exceptions import (
    CapabilityUnsupportedError,
    DeviceUnavailableError,
    InvalidTransitionError,
    RecognitionAlreadyStartedError,
    RecognitionError,
)
from interfaces.voice import VoiceInterface, run_voice
from speech.backend_client import BackendClient
from speech.types import (
    RecognitionAlternative,
    RecognitionErrorEvent,
    RecognitionResult,
    RecognitionResultEvent,
    SpeechOutcome,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class ScriptedRecognizer:
    def __init__(self):
        self.lang = ""
        self.continuous = False
        self.interim_results = False
        self.max_alternatives = 0
        self.on_start = self.on_result = self.on_error = self.on_end = None
        self.running = False
        self.start_calls = 0
        self.stop_calls = 0
        self.abort_calls = 0

    def start(self):
        if self.running:
            raise RecognitionAlreadyStartedError()
        self.running = True
        self.start_calls += 1

    def stop(self):
        self.stop_calls += 1

    def abort(self):
        self.abort_calls += 1

    def fire_end(self):
        self.running = False
        self.on_end()


def _stream_factory(**kwargs):
    return MagicMock()


def _failing_stream_factory(**kwargs):
    raise DeviceUnavailableError("No usable microphone: permission denied")


class GatedCapture(CaptureSession):
    """Capture whose acquire() waits for the test to open the gate."""

    def __init__(self):
        super().__init__(stream_factory=_stream_factory)
        self.acquiring = asyncio.Event()
        self.gate = asyncio.Event()

    async def acquire(self, config):
        self.acquiring.set()
        await self.gate.wait()
        return await super().acquire(config)


def _backend(status: int = 200, content: bytes = b"RIFF") -> BackendClient:
    transport = httpx.MockTransport(lambda r: httpx.Response(status, content=content))
    return BackendClient("http://backend.test", client=httpx.AsyncClient(transport=transport))


def _interface(stream_factory=_stream_factory, recognizer=None, factory=None, tts_status=500,
               capture=None):
    rec = recognizer or ScriptedRecognizer()
    capture = capture or CaptureSession(stream_factory=stream_factory)
    player = MagicMock()
    player.play = AsyncMock()
    local = MagicMock()
    local.speak = AsyncMock()
    vi = VoiceInterface(
        Settings(),
        capture=capture,
        recognizer_factory=factory or (lambda capture, client, cfg: rec),
        player=player,
        local_tts=local,
        client=_backend(tts_status),
    )
    return vi, rec, capture, player, local


async def _listening(**kwargs):
    vi, rec, capture, player, local = _interface(**kwargs)
    await vi.start_listening()
    rec.on_start()
    return vi, rec, capture, player, local


# ─────────────────────────────────────────────────────────────────────────────
# start_listening
# ─────────────────────────────────────────────────────────────────────────────

class TestStartListening:
    @pytest.mark.asyncio
    async def test_connecting_until_recognizer_starts(self):
        vi, rec, capture, *_ = _interface()
        await vi.start_listening()
        assert vi.state.state is ConnectionState.CONNECTING
        assert not vi.state.is_listening
        assert capture.active
        assert rec.start_calls == 1
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_active_after_on_start(self):
        vi, rec, capture, *_ = await _listening()
        assert vi.state.state is ConnectionState.ACTIVE
        assert vi.state.is_listening
        assert vi.monitor.running
        assert rec.lang == "ar-SA"
        assert rec.continuous and rec.interim_results
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_status(self):
        vi, *_ = await _listening()
        status = vi.status()
        assert status["state"] == "active"
        assert status["is_listening"] is True
        assert status["language"] == "mixed"
        assert status["restarts"] == 0
        assert len(status["session_id"]) == 12
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_start_while_active_rejected(self):
        vi, *_ = await _listening()
        with pytest.raises(InvalidTransitionError):
            await vi.start_listening()
        assert vi.state.state is ConnectionState.ACTIVE
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_device_unavailable(self):
        vi, rec, capture, *_ = _interface(stream_factory=_failing_stream_factory)
        with pytest.raises(DeviceUnavailableError):
            await vi.start_listening()
        assert vi.state.state is ConnectionState.ERROR
        assert vi.state.last_error.code == "device_unavailable"
        assert not vi.state.is_listening
        assert rec.start_calls == 0
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_capability_unsupported(self):
        vi, rec, capture, *_ = _interface(factory=lambda capture, client, cfg: None)
        with pytest.raises(CapabilityUnsupportedError):
            await vi.start_listening()
        assert vi.state.state is ConnectionState.ERROR
        assert vi.state.last_error.code == "capability_unsupported"
        assert not capture.active
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_restart_after_error(self):
        attempts = {"n": 0}

        def _flaky(**kwargs):
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise DeviceUnavailableError("busy")
            return MagicMock()

        vi, rec, *_ = _interface(stream_factory=_flaky)
        with pytest.raises(DeviceUnavailableError):
            await vi.start_listening()
        await vi.start_listening()
        rec.on_start()
        assert vi.state.state is ConnectionState.ACTIVE
        assert vi.state.last_error is None
        await vi.aclose()


# ─────────────────────────────────────────────────────────────────────────────
# stop_listening / failures
# ─────────────────────────────────────────────────────────────────────────────

class TestStopAndFailures:
    @pytest.mark.asyncio
    async def test_stop_releases_everything(self):
        vi, rec, capture, *_ = await _listening()
        monitor = vi.monitor
        await vi.stop_listening()

        assert vi.state.state is ConnectionState.IDLE
        assert not vi.state.is_listening
        assert vi.state.audio_level == 0.0
        assert not capture.active
        assert not monitor.running
        assert rec.stop_calls == 1

        rec.fire_end()
        assert rec.start_calls == 1

    @pytest.mark.asyncio
    async def test_stop_while_device_opening(self):
        capture = GatedCapture()
        factory = MagicMock()
        vi, *_ = _interface(capture=capture, factory=factory)

        start = asyncio.ensure_future(vi.start_listening())
        await capture.acquiring.wait()
        await vi.stop_listening()
        assert vi.state.state is ConnectionState.IDLE

        capture.gate.set()
        await start

        assert vi.state.state is ConnectionState.IDLE
        assert not vi.state.is_listening
        assert not capture.active
        assert vi.driver is None
        assert vi.monitor is None
        factory.assert_not_called()
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self):
        vi, *_ = _interface()
        await vi.stop_listening()
        await vi.stop_listening()
        assert vi.state.state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_silent_end_restarts(self):
        vi, rec, *_ = await _listening()
        rec.fire_end()
        assert rec.start_calls == 2
        assert vi.status()["restarts"] == 1
        assert vi.state.state is ConnectionState.ACTIVE
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_fatal_recognizer_error(self):
        vi, rec, capture, *_ = await _listening()
        rec.on_error(RecognitionErrorEvent("not-allowed", "Permission denied"))

        assert vi.state.state is ConnectionState.ERROR
        assert vi.state.last_error.code == "recognition_error"
        assert rec.abort_calls == 1
        assert not capture.active
        assert vi.driver is None

        rec.fire_end()
        assert rec.start_calls == 1
        await vi.aclose()


# ─────────────────────────────────────────────────────────────────────────────
# Transcripts
# ─────────────────────────────────────────────────────────────────────────────

class TestTranscripts:
    @pytest.mark.asyncio
    async def test_callbacks_receive_transcripts(self):
        vi, rec, *_ = await _listening()
        seen = []

        def _bad(_t):
            raise RuntimeError("ui bug")

        vi.on_transcript(_bad)
        vi.on_transcript(seen.append)
        rec.on_result(RecognitionResultEvent((
            RecognitionResult((RecognitionAlternative("مرحبا"),), is_final=True),
        )))

        assert [t.text for t in seen] == ["مرحبا"]
        assert vi.state.transcript.text == "مرحبا"
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_state_change_callback(self):
        vi, rec, *_ = _interface()
        seen = []
        vi.on_state_change(lambda old, new: seen.append(new.value))
        await vi.start_listening()
        rec.on_start()
        await vi.stop_listening()
        assert seen == ["connecting", "active", "idle"]


# ─────────────────────────────────────────────────────────────────────────────
# Speech output
# ─────────────────────────────────────────────────────────────────────────────

class TestSpeech:
    @pytest.mark.asyncio
    async def test_backend_failure_falls_back(self):
        vi, rec, capture, player, local = _interface(tts_status=500)
        outcome = await vi.speak("hello")
        assert outcome is SpeechOutcome.FALLBACK
        local.speak.assert_awaited_once()
        utterance = local.speak.call_args.args[0]
        assert utterance.lang == "ar-SA"
        assert utterance.rate == 0.9
        assert vi.state.is_speaking is False
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_backend_success(self):
        vi, rec, capture, player, local = _interface(tts_status=200)
        outcome = await vi.speak("hello", lang="en-US")
        assert outcome is SpeechOutcome.BACKEND
        player.play.assert_awaited_once()
        local.speak.assert_not_called()
        await vi.aclose()

    @pytest.mark.asyncio
    async def test_stop_speaking(self):
        vi, rec, capture, player, local = _interface()
        vi.stop_speaking()
        player.stop.assert_called_once()
        local.cancel.assert_called_once()
        assert vi.state.is_speaking is False
        await vi.aclose()


# ─────────────────────────────────────────────────────────────────────────────
# run_voice
# ─────────────────────────────────────────────────────────────────────────────

class TestRunVoice:
    @pytest.mark.asyncio
    async def test_device_error_reported(self, capsys):
        log_ = MagicMock()

        async def _no_mic(self):
            raise DeviceUnavailableError("No usable microphone")

        with patch.object(VoiceInterface, "start_listening", _no_mic):
            await run_voice(Settings(), log_)

        assert "Audio device error" in capsys.readouterr().out
        log_.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_session_error_ends_loop(self, capsys):
        log_ = MagicMock()

        async def _fails_later(self):
            self.state.begin_connect()
            asyncio.get_running_loop().call_soon(
                self.state.fail, RecognitionError("network", "Network unreachable")
            )

        with patch.object(VoiceInterface, "start_listening", _fails_later):
            await asyncio.wait_for(run_voice(Settings(), log_), timeout=2)

        out = capsys.readouterr().out
        assert "Network unreachable" in out
