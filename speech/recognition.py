"""
speech/recognition.py — Continuous Recognition Driver

Wraps a RecognitionCapability and keeps it running for as long as the
session is listening.

Handlers are registered once in __init__ and fire many times across
restarts, so the end handler never relies on values captured at
registration: it asks the state machine for its current state and checks
the driver's own `stopped` flag at the moment the event arrives.

Error policy:
    no-speech, aborted  → ignored (routine for continuous recognizers)
    anything else       → fatal; reported through on_fatal_error and the
                          driver stops restarting
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from app.state import ConnectionState, ConnectionStateMachine
from audio.level_monitor import AudioLevelMonitor
from exceptions import RecognitionAlreadyStartedError, RecognitionError, VoiceCoreError
from observability.logger import get_logger
from speech.types import (
    BENIGN_ERROR_CODES,
    RecognitionCapability,
    RecognitionErrorEvent,
    RecognitionResultEvent,
    Transcript,
    locale_for,
)

log = get_logger(__name__)

TranscriptListener = Callable[[Transcript], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class RecognitionDriver:
    """
    Drives one recognition capability for one session.

    Args:
        capability:     the recognizer to drive
        state:          the session's state machine (read live, written on start)
        language:       config language selector: en | ar | mixed
        monitor:        level monitor started when recognition starts
        on_fatal_error: called once with a RecognitionError (or the exception
                        raised by a failed restart)
        clock:          millisecond clock for transcript timestamps
    """

    def __init__(
        self,
        capability: RecognitionCapability,
        state: ConnectionStateMachine,
        language: str = "mixed",
        monitor: Optional[AudioLevelMonitor] = None,
        on_fatal_error: Optional[Callable[[VoiceCoreError], None]] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._capability = capability
        self._state = state
        self._monitor = monitor
        self._on_fatal_error = on_fatal_error
        self._clock = clock
        self._listeners: list[TranscriptListener] = []
        self._stopped = True
        self._restarts = 0

        capability.lang = locale_for(language)
        capability.continuous = True
        capability.interim_results = True
        capability.max_alternatives = 1

        capability.on_start = self._handle_start
        capability.on_result = self._handle_result
        capability.on_error = self._handle_error
        capability.on_end = self._handle_end

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def capability(self) -> RecognitionCapability:
        return self._capability

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def restarts(self) -> int:
        """Number of automatic restarts performed since construction."""
        return self._restarts

    def add_transcript_listener(self, listener: TranscriptListener) -> None:
        self._listeners.append(listener)

    # ── Control ───────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start recognition. Propagates errors raised by the capability."""
        self._stopped = False
        log.info("recognition.starting", lang=self._capability.lang)
        try:
            self._capability.start()
        except RecognitionAlreadyStartedError:
            log.debug("recognition.already_started")
        except Exception:
            self._stopped = True
            raise

    def stop(self) -> None:
        """Stop recognition for good. Idempotent; pending end events won't restart it."""
        if self._stopped:
            return
        self._stopped = True
        log.info("recognition.stopping", restarts=self._restarts)
        self._capability.stop()

    def abort(self) -> None:
        """Like stop(), but discards any result still in flight."""
        was_stopped = self._stopped
        self._stopped = True
        if not was_stopped:
            self._capability.abort()

    # ── Capability handlers ───────────────────────────────────────────────────

    def _handle_start(self) -> None:
        if self._stopped:
            return
        if self._state.mark_active() and self._monitor is not None:
            self._monitor.start()
        log.debug("recognition.started", restarts=self._restarts)

    def _handle_result(self, event: RecognitionResultEvent) -> None:
        if self._stopped or not event.results:
            return
        # Only the newest result matters; earlier ones were superseded
        result = event.results[-1]
        if not result.alternatives:
            return
        transcript = Transcript(
            text=result.alternatives[0].transcript,
            is_final=result.is_final,
            timestamp_ms=self._clock(),
            language=result.language,
        )
        self._state.set_transcript(transcript)
        log.debug("recognition.transcript", final=transcript.is_final,
                  chars=len(transcript.text))
        for listener in list(self._listeners):
            try:
                listener(transcript)
            except Exception as e:
                log.error("recognition.listener_error", error=str(e),
                          error_type=type(e).__name__)

    def _handle_error(self, event: RecognitionErrorEvent) -> None:
        if event.error in BENIGN_ERROR_CODES:
            log.debug("recognition.benign_error", code=event.error)
            return
        if self._stopped:
            log.debug("recognition.error_after_stop", code=event.error)
            return
        self._fail(RecognitionError(event.error, event.message))

    def _handle_end(self) -> None:
        # Live reads: this handler outlives any particular start() call
        state = self._state.state
        listening = self._state.is_listening
        if self._stopped or state is not ConnectionState.ACTIVE or not listening:
            log.debug("recognition.ended", state=state.value, stopped=self._stopped)
            return

        try:
            self._capability.start()
        except RecognitionAlreadyStartedError:
            log.debug("recognition.restart_race")
            return
        except VoiceCoreError as e:
            self._fail(e)
            return
        except Exception as e:
            # Any other failure from a platform recognizer is fatal
            self._fail(RecognitionError("restart-failed", str(e) or type(e).__name__))
            return
        self._restarts += 1
        log.info("recognition.restarted", restarts=self._restarts)

    def _fail(self, error: VoiceCoreError) -> None:
        self._stopped = True
        log.error("recognition.fatal_error", code=error.code, error=str(error))
        if self._on_fatal_error is not None:
            self._on_fatal_error(error)
        else:
            self._state.fail(error)
