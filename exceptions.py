"""
exceptions.py — Basma Voice Unified Error Hierarchy

All voice-core exceptions live here. Every layer of the stack raises typed
subclasses of VoiceCoreError — never bare Exception.

Import from here, not from individual modules:
    from exceptions import DeviceUnavailableError, BackendUnavailableError

Hierarchy:
    VoiceCoreError
    ├── DeviceUnavailableError        — no microphone / permission denied
    ├── CapabilityUnsupportedError    — no recognition capability available
    ├── RecognitionError              — non-benign recognizer error code
    │   └── RecognitionAlreadyStartedError
    ├── BackendUnavailableError       — network failure or non-2xx on /stt, /tts
    ├── AudioDecodeError              — malformed audio payload
    ├── AudioValidationError          — malformed input frame or parameters
    ├── SynthesisError                — local speech synthesis failed
    └── InvalidTransitionError        — operation not valid in the current state

Each class carries a short `code` used as the session's last_error code.
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class VoiceCoreError(Exception):
    """Base class for all voice-core exceptions."""

    code = "voice_error"


# ─────────────────────────────────────────────────────────────────────────────
# Session start
# ─────────────────────────────────────────────────────────────────────────────

class DeviceUnavailableError(VoiceCoreError):
    """No audio input device exists, or access to it was denied."""

    code = "device_unavailable"


class CapabilityUnsupportedError(VoiceCoreError):
    """The platform offers no continuous recognition capability."""

    code = "capability_unsupported"


# ─────────────────────────────────────────────────────────────────────────────
# Recognition
# ─────────────────────────────────────────────────────────────────────────────

class RecognitionError(VoiceCoreError):
    """The recognizer reported an error code that is not benign."""

    code = "recognition_error"

    def __init__(self, error_code: str, message: str = "") -> None:
        self.error_code = error_code
        super().__init__(message or f"Speech recognition error: {error_code}")


class RecognitionAlreadyStartedError(RecognitionError):
    """start() was called on a recognizer that is already running."""

    def __init__(self, message: str = "") -> None:
        super().__init__("already-started", message or "Recognition has already started")


# ─────────────────────────────────────────────────────────────────────────────
# Backend boundary
# ─────────────────────────────────────────────────────────────────────────────

class BackendUnavailableError(VoiceCoreError):
    """The speech backend could not be reached or answered with a non-2xx status."""

    code = "backend_unavailable"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


# ─────────────────────────────────────────────────────────────────────────────
# Audio utilities
# ─────────────────────────────────────────────────────────────────────────────

class AudioDecodeError(VoiceCoreError):
    """An audio payload could not be decoded."""

    code = "decode_error"


class AudioValidationError(VoiceCoreError):
    """An audio frame or codec parameter is malformed (e.g. odd-length PCM)."""

    code = "validation_error"


# ─────────────────────────────────────────────────────────────────────────────
# Output / state
# ─────────────────────────────────────────────────────────────────────────────

class SynthesisError(VoiceCoreError):
    """Local speech synthesis failed or has no voice for the language."""

    code = "synthesis_error"


class InvalidTransitionError(VoiceCoreError):
    """A session operation was requested from a state that does not allow it."""

    code = "invalid_transition"

    def __init__(self, operation: str, state: str) -> None:
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while session is '{state}'")


__all__ = [
    "VoiceCoreError",
    "DeviceUnavailableError",
    "CapabilityUnsupportedError",
    "RecognitionError",
    "RecognitionAlreadyStartedError",
    "BackendUnavailableError",
    "AudioDecodeError",
    "AudioValidationError",
    "SynthesisError",
    "InvalidTransitionError",
]
