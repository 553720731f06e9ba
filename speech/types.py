"""
speech/types.py — Speech Data Models and Capability Interfaces

Shared types used by the recognition driver, the speech output orchestrator
and the backend client. Recognizers and synthesizers are modelled as
capability protocols so a platform engine, a cloud backend or an on-device
model can be swapped in without touching the session state machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# Languages
# ─────────────────────────────────────────────────────────────────────────────

_LOCALES = {
    "ar":    "ar-SA",
    "en":    "en-US",
    "mixed": "ar-SA",   # mixed-language sessions recognise with the Arabic model
}


def locale_for(language: str) -> str:
    """Map a config language selector (en | ar | mixed) to a BCP-47 locale."""
    return _LOCALES.get(language, _LOCALES["mixed"])


# ─────────────────────────────────────────────────────────────────────────────
# Transcripts
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Transcript:
    """
    One recognition event as seen by the session. Immutable once emitted;
    the newest instance supersedes the previous "current transcript".
    """
    text: str
    is_final: bool
    timestamp_ms: int
    language: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# Recognition capability events
# ─────────────────────────────────────────────────────────────────────────────

# Error codes a continuous recognizer emits routinely; not session failures.
BENIGN_ERROR_CODES = frozenset({"no-speech", "aborted"})


@dataclass(frozen=True)
class RecognitionAlternative:
    transcript: str
    confidence: float = 1.0


@dataclass(frozen=True)
class RecognitionResult:
    alternatives: tuple[RecognitionAlternative, ...]
    is_final: bool
    language: Optional[str] = None


@dataclass(frozen=True)
class RecognitionResultEvent:
    """All results of the current recognition run; the last one is the newest."""
    results: tuple[RecognitionResult, ...]


@dataclass(frozen=True)
class RecognitionErrorEvent:
    error: str
    message: str = ""


@runtime_checkable
class RecognitionCapability(Protocol):
    """
    A continuous speech recognizer.

    Handlers are plain attributes assigned by the driver and invoked on the
    session's event loop. start() raises RecognitionAlreadyStartedError if
    the recognizer is already running.
    """
    lang: str
    continuous: bool
    interim_results: bool
    max_alternatives: int

    on_start: Optional[Callable[[], None]]
    on_result: Optional[Callable[[RecognitionResultEvent], None]]
    on_error: Optional[Callable[[RecognitionErrorEvent], None]]
    on_end: Optional[Callable[[], None]]

    def start(self) -> None: ...
    def stop(self) -> None: ...
    def abort(self) -> None: ...


# ─────────────────────────────────────────────────────────────────────────────
# Synthesis
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Utterance:
    """A local synthesis request."""
    text: str
    lang: str
    rate: float = 0.9
    pitch: float = 1.0


@runtime_checkable
class SynthesisCapability(Protocol):
    """
    A local speech synthesizer. speak() completes when playback has ended
    and raises on failure; cancel() flushes anything queued or playing.
    """
    async def speak(self, utterance: Utterance) -> None: ...
    def cancel(self) -> None: ...


class SpeechOutcome(str, Enum):
    """How a speak() call terminated — exactly one per call."""
    BACKEND   = "backend"     # backend audio played
    FALLBACK  = "fallback"    # local synthesis played
    CANCELLED = "cancelled"   # stop_speaking() superseded the call
    FAILED    = "failed"      # nothing could be spoken


# ─────────────────────────────────────────────────────────────────────────────
# Backend wire types
# ─────────────────────────────────────────────────────────────────────────────

class SttRequest(BaseModel):
    audio_base64: str = Field(..., alias="audioBase64")
    mime_type: str = Field(default="audio/wav", alias="mimeType")

    model_config = {"populate_by_name": True}


class SttResult(BaseModel):
    text: str = ""
    language: Optional[str] = None


class TtsRequest(BaseModel):
    text: str
    voice: Optional[str] = None
    format: Optional[str] = None


@dataclass(frozen=True)
class SynthesizedAudio:
    data: bytes
    content_type: str = "application/octet-stream"
