"""Speech layer — recognition driver, backend client and speech output."""

from speech.types import (
    RecognitionCapability,
    SpeechOutcome,
    SynthesisCapability,
    Transcript,
    Utterance,
)

__all__ = [
    "RecognitionCapability",
    "SpeechOutcome",
    "SynthesisCapability",
    "Transcript",
    "Utterance",
]
