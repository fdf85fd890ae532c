"""Record one utterance from the microphone and hand it downstream."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from models.session_models import AudioUnit
from services.audio.activity_detector import ActivityDetector, ActivityEvent, pcm16_rms
from services.audio.microphone import MicrophoneTap, StreamMicrophone

LOGGER = logging.getLogger(__name__)

CompletionCallback = Callable[[AudioUnit], Union[None, Awaitable[None]]]


class CaptureState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    RECORDING = "recording"
    FINALIZING = "finalizing"


class CaptureController:
    """Owns the microphone while recording a single utterance.

    ``start`` acquires the device and spawns the recording task. The
    recording ends when the activity detector reports silence, when
    ``max_duration_ms`` elapses, or when :meth:`stop` is called. The
    buffered frames are joined into one :class:`AudioUnit`, the device is
    released, the controller goes back to idle, and only then is the
    completion callback invoked.
    """

    def __init__(
        self,
        microphone: StreamMicrophone,
        *,
        threshold: float,
        silence_delay_ms: int,
        max_duration_ms: int,
        sample_rate: int = 16000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.microphone = microphone
        self.threshold = threshold
        self.silence_delay_ms = silence_delay_ms
        self.max_duration_ms = max_duration_ms
        self.sample_rate = sample_rate
        self.clock = clock
        self.state = CaptureState.IDLE
        self.start_count = 0
        self._tap: Optional[MicrophoneTap] = None
        self._task: Optional[asyncio.Task] = None
        self._discard = False

    @property
    def active(self) -> bool:
        return self.state in (CaptureState.ACQUIRING, CaptureState.RECORDING)

    def start(self, on_complete: CompletionCallback) -> bool:
        """Begin recording. Returns False when a recording is already running.

        Raises :class:`DeviceError` when the microphone cannot be acquired; the
        controller is back in ``IDLE`` in that case and is not retried.
        """
        if self.active:
            LOGGER.debug("Capture start ignored, already %s", self.state.value)
            return False
        self.state = CaptureState.ACQUIRING
        try:
            tap = self.microphone.acquire("capture")
        except Exception:
            self.state = CaptureState.IDLE
            raise
        self.start_count += 1
        self._tap = tap
        self._discard = False
        self.state = CaptureState.RECORDING
        self._task = asyncio.get_running_loop().create_task(self._record(tap, on_complete))
        return True

    def stop(self, discard: bool = False) -> None:
        """End the current recording early. No-op when nothing is recording."""
        if self.state != CaptureState.RECORDING or self._tap is None:
            return
        if discard:
            self._discard = True
        self._tap.end()

    async def close(self) -> None:
        self.stop(discard=True)
        task = self._task
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _record(self, tap: MicrophoneTap, on_complete: CompletionCallback) -> None:
        chunks: List[bytes] = []
        detector = ActivityDetector(self.threshold, self.silence_delay_ms)
        try:
            async with tap:
                try:
                    await asyncio.wait_for(self._consume(tap, chunks, detector), self.max_duration_ms / 1000.0)
                except asyncio.TimeoutError:
                    LOGGER.info("Recording reached max duration of %d ms", self.max_duration_ms)
            self.state = CaptureState.FINALIZING
            data = b"".join(chunks)
            unit = AudioUnit(
                data=data,
                mime_type="audio/pcm",
                duration_ms=int(len(data) / 2 / self.sample_rate * 1000) if self.sample_rate else 0,
                sample_rate=self.sample_rate,
            )
        finally:
            self._tap = None
            self._task = None
            self.state = CaptureState.IDLE

        if self._discard:
            LOGGER.debug("Recording discarded (%d bytes)", unit.size)
            return
        LOGGER.info("Recording finished: %d bytes, %d ms", unit.size, unit.duration_ms)
        try:
            result = on_complete(unit)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("Capture completion callback failed")

    async def _consume(self, tap: MicrophoneTap, chunks: List[bytes], detector: ActivityDetector) -> None:
        while True:
            frame = await tap.read()
            if frame is None:
                return
            chunks.append(frame)
            if detector.feed(pcm16_rms(frame), self.clock()) is ActivityEvent.STOP:
                return
