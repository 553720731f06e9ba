"""
tests/unit/test_synthesis.py — SpeechOutputOrchestrator

Covers:
  - backend success → decode + play, no fallback, is_speaking back to False
  - HTTP 500 from /tts → local fallback exactly once (rate 0.9, pitch 1.0)
  - undecodable backend audio (including malformed audio/L16) → fallback
  - fallback failure / no local synthesizer → FAILED
  - playback failure after the backend succeeded → FAILED, no fallback
  - stop_speaking() while /tts is in flight → late audio never played
  - a newer speak() supersedes the older one
  - empty text → FAILED without touching state
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

from app.state import ConnectionStateMachine
from audio.frame import AudioFrame
from audio.playback import AudioPlayer
from exceptions import AudioDecodeError, DeviceUnavailableError, SynthesisError
from speech.backend_client import BackendClient
from speech.synthesis import FALLBACK_PITCH, FALLBACK_RATE, SpeechOutputOrchestrator
from speech.types import SpeechOutcome, SynthesizedAudio, Utterance


def _http_client(handler) -> BackendClient:
    return BackendClient(
        "http://backend.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _player() -> MagicMock:
    player = MagicMock()
    player.decode.return_value = AudioFrame.silent(240, 24000)
    player.play = AsyncMock()
    return player


def _local() -> MagicMock:
    local = MagicMock()
    local.speak = AsyncMock()
    return local


class _GatedClient:
    """Backend client whose /tts response is held until release() is called."""

    def __init__(self):
        self.requested = asyncio.Event()
        self._gate = asyncio.Event()
        self.calls = 0

    def release(self):
        self._gate.set()

    async def synthesize(self, text, voice=None, fmt=None):
        self.calls += 1
        self.requested.set()
        await self._gate.wait()
        return SynthesizedAudio(b"RIFF-late", "audio/wav")


# ─────────────────────────────────────────────────────────────────────────────
# Backend path
# ─────────────────────────────────────────────────────────────────────────────

class TestBackend:
    @pytest.mark.asyncio
    async def test_backend_success(self):
        state = ConnectionStateMachine()
        player, local = _player(), _local()
        client = _http_client(lambda r: httpx.Response(
            200, content=b"ID3-audio", headers={"content-type": "audio/mpeg"}))
        tts = SpeechOutputOrchestrator(state, client, player, local)

        outcome = await tts.speak("hello")

        assert outcome is SpeechOutcome.BACKEND
        player.decode.assert_called_once_with(b"ID3-audio", "audio/mpeg")
        player.play.assert_awaited_once()
        local.speak.assert_not_called()
        assert state.is_speaking is False

    @pytest.mark.asyncio
    async def test_speaking_during_playback(self):
        state = ConnectionStateMachine()
        player = _player()
        seen = []
        player.play.side_effect = lambda frame: seen.append(state.is_speaking)
        client = _http_client(lambda r: httpx.Response(200, content=b"x"))
        await SpeechOutputOrchestrator(state, client, player).speak("hello")
        assert seen == [True]
        assert state.is_speaking is False

    @pytest.mark.asyncio
    async def test_playback_failure_does_not_fall_back(self):
        state = ConnectionStateMachine()
        player, local = _player(), _local()
        player.play.side_effect = DeviceUnavailableError("Audio output failed")
        client = _http_client(lambda r: httpx.Response(200, content=b"x"))
        tts = SpeechOutputOrchestrator(state, client, player, local)

        assert await tts.speak("hello") is SpeechOutcome.FAILED
        local.speak.assert_not_called()
        assert state.is_speaking is False

    @pytest.mark.asyncio
    async def test_empty_text(self):
        state = ConnectionStateMachine()
        player, local = _player(), _local()
        client = MagicMock()
        client.synthesize = AsyncMock()
        tts = SpeechOutputOrchestrator(state, client, player, local)

        assert await tts.speak("   ") is SpeechOutcome.FAILED
        client.synthesize.assert_not_called()
        assert tts.generation == 0


# ─────────────────────────────────────────────────────────────────────────────
# Fallback path
# ─────────────────────────────────────────────────────────────────────────────

class TestFallback:
    @pytest.mark.asyncio
    async def test_http_500_falls_back_once(self):
        state = ConnectionStateMachine()
        player, local = _player(), _local()
        client = _http_client(lambda r: httpx.Response(500))
        tts = SpeechOutputOrchestrator(state, client, player, local, default_lang="en-US")

        outcome = await tts.speak("hello")

        assert outcome is SpeechOutcome.FALLBACK
        local.speak.assert_awaited_once_with(
            Utterance(text="hello", lang="en-US", rate=FALLBACK_RATE, pitch=FALLBACK_PITCH)
        )
        player.play.assert_not_called()
        assert state.is_speaking is False

    def test_fallback_prosody(self):
        assert FALLBACK_RATE == 0.9
        assert FALLBACK_PITCH == 1.0

    @pytest.mark.asyncio
    async def test_explicit_language_used(self):
        state = ConnectionStateMachine()
        local = _local()
        client = _http_client(lambda r: httpx.Response(503))
        tts = SpeechOutputOrchestrator(state, client, _player(), local)
        await tts.speak("مرحبا", lang="ar-SA")
        assert local.speak.call_args.args[0].lang == "ar-SA"

    @pytest.mark.asyncio
    async def test_undecodable_audio_falls_back(self):
        state = ConnectionStateMachine()
        player, local = _player(), _local()
        player.decode.side_effect = AudioDecodeError("Could not decode audio payload")
        client = _http_client(lambda r: httpx.Response(200, content=b"garbage"))
        tts = SpeechOutputOrchestrator(state, client, player, local)

        assert await tts.speak("hello") is SpeechOutcome.FALLBACK
        local.speak.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_malformed_raw_pcm_falls_back(self):
        state = ConnectionStateMachine()
        local = _local()
        player = AudioPlayer(sample_rate_out=24000)
        client = _http_client(lambda r: httpx.Response(
            200, content=b"\x01\x02\x03", headers={"content-type": "audio/L16"}))
        tts = SpeechOutputOrchestrator(state, client, player, local, fmt="pcm")

        with patch.object(player, "play", AsyncMock()) as play:
            outcome = await tts.speak("hello")

        assert outcome is SpeechOutcome.FALLBACK
        local.speak.assert_awaited_once()
        play.assert_not_called()
        assert state.is_speaking is False

    @pytest.mark.asyncio
    async def test_fallback_failure(self):
        state = ConnectionStateMachine()
        local = _local()
        local.speak.side_effect = SynthesisError("No local voice for 'fr-FR'")
        client = _http_client(lambda r: httpx.Response(500))
        tts = SpeechOutputOrchestrator(state, client, _player(), local)

        assert await tts.speak("bonjour") is SpeechOutcome.FAILED
        assert state.is_speaking is False

    @pytest.mark.asyncio
    async def test_no_local_synthesizer(self):
        state = ConnectionStateMachine()
        client = _http_client(lambda r: httpx.Response(500))
        tts = SpeechOutputOrchestrator(state, client, _player(), None)
        assert await tts.speak("hello") is SpeechOutcome.FAILED
        assert state.is_speaking is False


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

class TestCancellation:
    @pytest.mark.asyncio
    async def test_stop_discards_late_backend_audio(self):
        state = ConnectionStateMachine()
        player, local = _player(), _local()
        client = _GatedClient()
        tts = SpeechOutputOrchestrator(state, client, player, local)

        task = asyncio.ensure_future(tts.speak("hello"))
        await client.requested.wait()
        assert state.is_speaking is True

        tts.stop_speaking()
        assert state.is_speaking is False
        local.cancel.assert_called_once()

        client.release()
        assert await task is SpeechOutcome.CANCELLED
        player.decode.assert_called_once()
        player.play.assert_not_called()
        local.speak.assert_not_called()
        assert state.is_speaking is False

    @pytest.mark.asyncio
    async def test_newer_speak_supersedes(self):
        state = ConnectionStateMachine()
        player = _player()
        client = _GatedClient()
        tts = SpeechOutputOrchestrator(state, client, player, _local())

        first = asyncio.ensure_future(tts.speak("one"))
        await client.requested.wait()
        second = asyncio.ensure_future(tts.speak("two"))
        await asyncio.sleep(0)
        assert client.calls == 2

        client.release()
        results = await asyncio.gather(first, second)
        assert results == [SpeechOutcome.CANCELLED, SpeechOutcome.BACKEND]
        player.play.assert_awaited_once()
        player.stop.assert_called()
        assert state.is_speaking is False

    @pytest.mark.asyncio
    async def test_stop_when_idle(self):
        state = ConnectionStateMachine()
        player, local = _player(), _local()
        tts = SpeechOutputOrchestrator(state, MagicMock(), player, local)
        tts.stop_speaking()
        assert state.is_speaking is False
        player.stop.assert_called_once()
        assert tts.generation == 1
