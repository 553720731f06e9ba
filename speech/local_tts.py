"""
speech/local_tts.py — Local (offline) Speech Synthesis

PiperSynthesisCapability is the fallback synthesizer used when the backend
TTS endpoint fails. Voices are Piper .onnx models chosen by language:

    voice:
      local_voices:
        ar: "~/.local/share/piper/ar_JO-kareem-medium.onnx"
        en: "~/.local/share/piper/en_US-lessac-medium.onnx"
      piper_model_path: "~/.local/share/piper/en_US-lessac-medium.onnx"   # any other language

Models are loaded once per path and cached. Synthesis and playback run in
executor threads. Piper has no pitch control, so Utterance.pitch is ignored.

Requirements:
    piper-tts   — synthesis (plus a .onnx voice model and its .json config)
    soundfile   — reads Piper's WAV output
    sounddevice — playback (via AudioPlayer)
"""

from __future__ import annotations

import asyncio
import io
import wave
from pathlib import Path
from typing import Any, Callable, Optional

import soundfile as sf

from audio.frame import AudioFrame
from audio.playback import AudioPlayer
from config.settings import VoiceConfig
from exceptions import SynthesisError
from observability.logger import get_logger
from speech.types import Utterance

log = get_logger(__name__)


def load_piper_voice(model_path: str) -> Any:
    """Blocking PiperVoice.load — runs in executor."""
    from piper.voice import PiperVoice
    return PiperVoice.load(str(Path(model_path).expanduser().resolve()))


class PiperSynthesisCapability:
    """SynthesisCapability backed by Piper voices."""

    def __init__(
        self,
        config: VoiceConfig,
        player: Optional[AudioPlayer] = None,
        voice_loader: Callable[[str], Any] = load_piper_voice,
    ) -> None:
        self._cfg = config
        self._player = player or AudioPlayer(config.sample_rate_out)
        self._voice_loader = voice_loader
        self._voices: dict[str, Any] = {}
        self._generation = 0

    def model_path_for(self, lang: str) -> Optional[str]:
        """Voice model for a language tag: exact tag, then its primary subtag, then the default."""
        voices = self._cfg.local_voices
        primary = lang.split("-")[0].lower() if lang else ""
        return voices.get(lang) or voices.get(primary) or self._cfg.piper_model_path or None

    async def speak(self, utterance: Utterance) -> None:
        """Synthesize and play. Returns when playback ends or cancel() is called."""
        text = utterance.text.strip()
        if not text:
            return

        model_path = self.model_path_for(utterance.lang)
        if model_path is None:
            raise SynthesisError(f"No local voice configured for '{utterance.lang}'")
        if utterance.pitch != 1.0:
            log.debug("local_tts.pitch_ignored", pitch=utterance.pitch)

        generation = self._generation
        loop = asyncio.get_running_loop()
        voice = await self._voice(model_path)
        try:
            frame = await loop.run_in_executor(
                None, self._synthesize_blocking, voice, text, 1.0 / utterance.rate
            )
        except (RuntimeError, ValueError, OSError) as e:
            raise SynthesisError(f"Piper synthesis failed: {e}") from e

        if generation != self._generation:
            log.debug("local_tts.cancelled_before_playback")
            return
        log.info("local_tts.speaking", lang=utterance.lang, chars=len(text),
                 duration_s=round(frame.duration_s, 2))
        await self._player.play(frame)

    def cancel(self) -> None:
        """Drop anything not yet playing and stop what is."""
        self._generation += 1
        self._player.stop()

    async def _voice(self, model_path: str) -> Any:
        voice = self._voices.get(model_path)
        if voice is not None:
            return voice

        log.info("local_tts.loading_voice", path=model_path)
        loop = asyncio.get_running_loop()
        try:
            voice = await loop.run_in_executor(None, self._voice_loader, model_path)
        except ImportError as e:
            raise SynthesisError("piper-tts is not installed (pip install piper-tts)") from e
        except (OSError, ValueError, RuntimeError) as e:
            raise SynthesisError(f"Could not load Piper voice '{model_path}': {e}") from e

        self._voices[model_path] = voice
        return voice

    @staticmethod
    def _synthesize_blocking(voice: Any, text: str, length_scale: float) -> AudioFrame:
        """Blocking Piper synthesis — runs in executor. Returns the rendered frame."""
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wav_file:
            if hasattr(voice, "synthesize_wav"):
                from piper import SynthesisConfig
                voice.synthesize_wav(text, wav_file,
                                     syn_config=SynthesisConfig(length_scale=length_scale))
            else:
                voice.synthesize(text, wav_file, length_scale=length_scale)

        buf.seek(0)
        data, sample_rate = sf.read(buf, dtype="float32", always_2d=True)
        if len(data) == 0:
            raise SynthesisError("Piper produced no audio")
        return AudioFrame(data, sample_rate, data.shape[1])
