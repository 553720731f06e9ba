"""
app/state.py — Voice session state machine

ConnectionStateMachine is the single source of truth for one voice
interaction. It is written by the session façade and the recognition driver,
and read by presentation code (status line, level meter).

States
------
    idle ──start──► connecting ──recognizer started──► active
      ▲                 │                                  │
      │            device/capability                  fatal recognizer
      │               failure                              error
      │                 ▼                                  ▼
      └──────stop────  error  ◄─────────────────────────────┘

`reconnecting` is a label only: recovery from recognizer self-termination is
done by silent restarts while the session stays `active`.

Invariants
----------
    is_listening  ⇒ state == active
    not is_listening ⇒ audio_level == 0.0

All mutation goes through the transition methods below; everything runs on
the session's event loop, so no locking is needed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from exceptions import InvalidTransitionError, VoiceCoreError
from observability.logger import get_logger
from speech.types import Transcript

log = get_logger(__name__)


class ConnectionState(str, Enum):
    IDLE         = "idle"
    CONNECTING   = "connecting"
    ACTIVE       = "active"
    ERROR        = "error"
    RECONNECTING = "reconnecting"


_STARTABLE = {ConnectionState.IDLE, ConnectionState.ERROR}


@dataclass(frozen=True)
class ErrorInfo:
    """The session's single current error."""
    code: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        code = exc.code if isinstance(exc, VoiceCoreError) else "unexpected_error"
        return cls(code=code, message=str(exc) or type(exc).__name__)


StateListener = Callable[[ConnectionState, ConnectionState], None]


class ConnectionStateMachine:
    """
    Owns the VoiceSession fields: state, is_listening, is_speaking,
    audio_level, last_error and the current transcript.
    """

    def __init__(self) -> None:
        self._state = ConnectionState.IDLE
        self._is_listening = False
        self._is_speaking = False
        self._audio_level = 0.0
        self._last_error: Optional[ErrorInfo] = None
        self._transcript: Optional[Transcript] = None
        self._listeners: list[StateListener] = []

    # ── Read side ─────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_listening(self) -> bool:
        return self._is_listening

    @property
    def is_speaking(self) -> bool:
        return self._is_speaking

    @property
    def audio_level(self) -> float:
        return self._audio_level

    @property
    def last_error(self) -> Optional[ErrorInfo]:
        return self._last_error

    @property
    def transcript(self) -> Optional[Transcript]:
        return self._transcript

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback(old_state, new_state) fired on every state change."""
        self._listeners.append(listener)

    def snapshot(self) -> dict:
        """Return a point-in-time copy of all fields as a plain dict."""
        return {
            "state":        self._state.value,
            "is_listening": self._is_listening,
            "is_speaking":  self._is_speaking,
            "audio_level":  self._audio_level,
            "error":        self._last_error.message if self._last_error else None,
            "transcript":   self._transcript.text if self._transcript else None,
        }

    # ── Transitions ───────────────────────────────────────────────────────────

    def begin_connect(self) -> None:
        """idle|error → connecting. Clears the previous error."""
        if self._state not in _STARTABLE:
            raise InvalidTransitionError("start", self._state.value)
        self._last_error = None
        self._set_state(ConnectionState.CONNECTING)

    def mark_active(self) -> bool:
        """
        connecting → active and start listening. Returns False (no change) if
        the session left `connecting` in the meantime, e.g. stop() won the race.
        """
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.ACTIVE):
            log.debug("state.activate_ignored", state=self._state.value)
            return False
        self._is_listening = True
        self._set_state(ConnectionState.ACTIVE)
        return True

    def fail(self, error: BaseException) -> None:
        """Any state → error; records the error and stops listening."""
        self._last_error = ErrorInfo.from_exception(error)
        self._is_listening = False
        self._audio_level = 0.0
        log.warning("state.error", code=self._last_error.code, error=self._last_error.message)
        self._set_state(ConnectionState.ERROR)

    def reset(self) -> None:
        """Any state → idle. Idempotent."""
        self._is_listening = False
        self._audio_level = 0.0
        self._set_state(ConnectionState.IDLE)

    # ── Field updates ─────────────────────────────────────────────────────────

    def set_audio_level(self, level: float) -> None:
        """Store a meter reading; forced to 0 whenever not listening."""
        if not self._is_listening:
            self._audio_level = 0.0
            return
        self._audio_level = min(max(float(level), 0.0), 1.0)

    def set_speaking(self, speaking: bool) -> None:
        self._is_speaking = speaking

    def set_transcript(self, transcript: Transcript) -> None:
        """Replace the current transcript; older ones are not retained."""
        self._transcript = transcript

    # ── Internals ─────────────────────────────────────────────────────────────

    def _set_state(self, new_state: ConnectionState) -> None:
        old = self._state
        if old is new_state:
            return
        self._state = new_state
        log.info("state.changed", old=old.value, new=new_state.value)
        for listener in list(self._listeners):
            try:
                listener(old, new_state)
            except Exception as e:
                log.error("state.listener_error", error=str(e), error_type=type(e).__name__)
