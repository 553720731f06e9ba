"""
audio/level_monitor.py — Live input level for presentation feedback

Samples the capture analyser on a cooperative per-frame tick (default 60 Hz,
a display refresh cadence), normalizes the mean frequency-bin magnitude by a
fixed reference of 128 and clamps to [0, 1].

The tick re-reads the live listening flag on every iteration and stops
scheduling itself as soon as it turns false; stop() cancels the pending tick
so nothing is published after teardown.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import numpy as np

from audio.analyser import SpectrumAnalyser
from observability.logger import get_logger

log = get_logger(__name__)

_REFERENCE = 128.0


class AudioLevelMonitor:
    """
    Usage::

        monitor = AudioLevelMonitor(analyser, is_listening=lambda: sm.is_listening,
                                    on_level=sm.set_audio_level)
        monitor.start()     # inside a running event loop
        ...
        monitor.stop()
    """

    def __init__(
        self,
        analyser: SpectrumAnalyser,
        is_listening: Callable[[], bool],
        on_level: Callable[[float], None],
        refresh_hz: float = 60.0,
    ) -> None:
        self._analyser = analyser
        self._is_listening = is_listening
        self._on_level = on_level
        self._interval = 1.0 / refresh_hz
        self._task: Optional[asyncio.Task] = None
        self._level = 0.0
        self._ticks = 0

    @property
    def level(self) -> float:
        """Latest published reading."""
        return self._level

    @property
    def ticks(self) -> int:
        return self._ticks

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sample(self) -> float:
        """Mean of the analyser's byte frequency bins / 128, clamped to [0, 1]."""
        bins = self._analyser.byte_frequency_data()
        if bins.size == 0:
            return 0.0
        average = float(np.mean(bins))
        return min(max(average / _REFERENCE, 0.0), 1.0)

    def start(self) -> None:
        """Begin ticking. No-op if a tick loop is already alive."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="audio-level-monitor"
        )

    def stop(self) -> None:
        """Cancel the tick loop and zero the reading. Safe to call repeatedly."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._level = 0.0

    async def _run(self) -> None:
        while self._is_listening():
            self._publish(self.sample())
            await asyncio.sleep(self._interval)
        # Listening ended on its own; leave the meter at rest
        self._publish(0.0)
        log.debug("level_monitor.idle", ticks=self._ticks)

    def _publish(self, level: float) -> None:
        self._level = level
        self._ticks += 1
        self._on_level(level)
