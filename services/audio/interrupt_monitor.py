"""Watch the microphone during playback and report barge-in."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from services.audio.activity_detector import ActivityDetector, ActivityEvent, pcm16_rms
from services.audio.microphone import MicrophoneTap, StreamMicrophone

LOGGER = logging.getLogger(__name__)


class InterruptMonitor:
    """Second microphone consumer, active only while the assistant speaks.

    The tap is released before ``on_interrupt`` runs, so the callback may
    immediately hand the microphone to a capture controller.
    """

    def __init__(
        self,
        microphone: StreamMicrophone,
        *,
        threshold: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.microphone = microphone
        self.threshold = threshold
        self.clock = clock
        self._tap: Optional[MicrophoneTap] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._tap is not None

    def start(self, on_interrupt: Callable[[], None]) -> None:
        if self._tap is not None:
            return
        self._tap = self.microphone.acquire("interrupt")
        self._task = asyncio.get_running_loop().create_task(self._watch(self._tap, on_interrupt))

    def stop(self) -> None:
        """Release the microphone now. Safe to call when not running."""
        tap, self._tap = self._tap, None
        if tap is not None:
            tap.close()

    async def _watch(self, tap: MicrophoneTap, on_interrupt: Callable[[], None]) -> None:
        detector = ActivityDetector(self.threshold, 0)
        triggered = False
        async with tap:
            while True:
                frame = await tap.read()
                if frame is None or tap.closed:
                    break
                if detector.feed(pcm16_rms(frame), self.clock()) is ActivityEvent.START:
                    triggered = True
                    break
        if self._tap is tap:
            self._tap = None
        if triggered:
            LOGGER.info("Barge-in detected during playback")
            on_interrupt()
