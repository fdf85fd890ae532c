"""Threshold-plus-debounce voice activity detection over energy samples."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

import numpy as np

LOGGER = logging.getLogger(__name__)


class ActivityEvent(str, Enum):
    START = "start"
    STOP = "stop"


def pcm16_rms(frame: bytes) -> float:
    """Return the RMS energy of a little-endian PCM16 frame normalised to 0..1."""
    usable = len(frame) - (len(frame) % 2)
    if usable <= 0:
        return 0.0
    samples = np.frombuffer(frame[:usable], dtype="<i2").astype(np.float64) / 32768.0
    return float(np.sqrt(np.mean(np.square(samples))))


class ActivityDetector:
    """Classify a stream of energy samples into speech and silence.

    ``feed`` is called once per frame with the frame energy and the time it was
    observed (seconds, monotonic). ``on_start`` fires on the first frame above
    ``threshold`` after silence; ``on_stop`` fires once energy has stayed below
    the threshold for ``silence_delay_ms``, and only if a start was seen since
    the previous stop. The detector never stops on its own when the signal
    never crosses the threshold; callers bound recordings with a max duration.
    """

    def __init__(
        self,
        threshold: float,
        silence_delay_ms: int,
        *,
        on_start: Optional[Callable[[], None]] = None,
        on_stop: Optional[Callable[[], None]] = None,
    ) -> None:
        if threshold < 0:
            raise ValueError("threshold must be non-negative")
        if silence_delay_ms < 0:
            raise ValueError("silence_delay_ms must be non-negative")
        self.threshold = threshold
        self.silence_delay = silence_delay_ms / 1000.0
        self.on_start = on_start
        self.on_stop = on_stop
        self._speaking = False
        self._silence_started: Optional[float] = None

    @property
    def speaking(self) -> bool:
        return self._speaking

    def reset(self) -> None:
        self._speaking = False
        self._silence_started = None

    def feed(self, energy: float, now: float) -> Optional[ActivityEvent]:
        """Process one energy sample and return the event it triggered, if any."""
        if energy > self.threshold:
            self._silence_started = None
            if not self._speaking:
                self._speaking = True
                LOGGER.debug("Activity start (energy=%.4f)", energy)
                if self.on_start:
                    self.on_start()
                return ActivityEvent.START
            return None

        if not self._speaking:
            return None
        if self._silence_started is None:
            self._silence_started = now
        if now - self._silence_started >= self.silence_delay:
            self._speaking = False
            self._silence_started = None
            LOGGER.debug("Activity stop after %.0f ms of silence", self.silence_delay * 1000)
            if self.on_stop:
                self.on_stop()
            return ActivityEvent.STOP
        return None
