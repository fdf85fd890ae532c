"""Synthesize assistant speech and relay it to the audio sink, one handle at a time."""

from __future__ import annotations

import asyncio
import itertools
import logging
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from services.errors import PlaybackError

LOGGER = logging.getLogger(__name__)

_handle_ids = itertools.count(1)


class PlaybackStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"


class PlaybackHandle:
    """One in-flight speak() call. Reaches exactly one terminal status."""

    def __init__(self, text: str) -> None:
        self.id = next(_handle_ids)
        self.text = text
        self.status = PlaybackStatus.ACTIVE
        self.degraded = False
        self.error: Optional[PlaybackError] = None
        self.chunks_sent = 0
        self._done = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.status == PlaybackStatus.ACTIVE

    async def wait(self) -> PlaybackStatus:
        await self._done.wait()
        return self.status

    def __repr__(self) -> str:
        return f"PlaybackHandle(id={self.id}, status={self.status.value})"


class AudioSink:
    """Where synthesized audio goes. The base class discards everything."""

    async def start(self, handle: PlaybackHandle) -> None:
        pass

    async def write(self, handle: PlaybackHandle, chunk: bytes) -> None:
        pass

    async def end(self, handle: PlaybackHandle) -> None:
        pass

    async def abort(self, handle: PlaybackHandle) -> None:
        pass


HandleCallback = Optional[Callable[[PlaybackHandle], None]]


class SynthesisPlaybackController:
    """Drive a synthesizer into a sink with cancel-then-start semantics.

    ``speak`` returns immediately; ``on_start`` has fired by the time it
    returns. ``cancel`` fires ``on_cancelled`` before it returns. A handle
    whose synthesis fails ends normally with ``degraded`` set, after
    ``on_error``, so the conversation can continue as text.

    The synthesizer must provide ``stream(text)``, an async iterator of
    audio chunks in playback order.
    """

    def __init__(
        self,
        synthesizer,
        sink: Optional[AudioSink] = None,
        *,
        timeout: Optional[float] = None,
        on_start: HandleCallback = None,
        on_end: HandleCallback = None,
        on_cancelled: HandleCallback = None,
        on_error: Optional[Callable[[PlaybackHandle, PlaybackError], None]] = None,
    ) -> None:
        self.synthesizer = synthesizer
        self.sink = sink or AudioSink()
        self.timeout = timeout
        self.on_start = on_start
        self.on_end = on_end
        self.on_cancelled = on_cancelled
        self.on_error = on_error
        self.current: Optional[PlaybackHandle] = None

    @property
    def playing(self) -> bool:
        return self.current is not None and self.current.active

    def speak(self, text: str) -> PlaybackHandle:
        if self.current is not None and self.current.active:
            self.cancel(self.current)
        handle = PlaybackHandle(text)
        self.current = handle
        LOGGER.debug("Playback %d started (%d chars)", handle.id, len(text))
        self._fire(self.on_start, handle)
        handle._task = asyncio.get_running_loop().create_task(self._play(handle))
        return handle

    def cancel(self, handle: Optional[PlaybackHandle] = None) -> bool:
        """Stop ``handle`` (default: the current one). Returns False if it had already ended."""
        handle = handle or self.current
        if handle is None or not handle.active:
            return False
        handle.status = PlaybackStatus.CANCELLED
        if self.current is handle:
            self.current = None
        handle._done.set()
        LOGGER.info("Playback %d cancelled after %d chunks", handle.id, handle.chunks_sent)
        self._fire(self.on_cancelled, handle)
        if handle._task is not None and not handle._task.done():
            handle._task.cancel()
        return True

    async def close(self) -> None:
        handle = self.current
        if handle is None:
            return
        self.cancel(handle)
        if handle._task is not None:
            try:
                await handle._task
            except asyncio.CancelledError:
                pass

    async def _play(self, handle: PlaybackHandle) -> None:
        try:
            if self.timeout:
                await asyncio.wait_for(self._render(handle), self.timeout)
            else:
                await self._render(handle)
        except asyncio.CancelledError:
            await self._abort(handle)
            raise
        except asyncio.TimeoutError:
            self._degrade(handle, PlaybackError(f"Speech synthesis timed out after {self.timeout}s"))
            await self._end_sink(handle)
        except PlaybackError as exc:
            self._degrade(handle, exc)
            await self._end_sink(handle)
        except Exception as exc:
            self._degrade(handle, PlaybackError(f"Playback failed: {exc}"))
            await self._end_sink(handle)
        self._finish(handle)

    async def _render(self, handle: PlaybackHandle) -> None:
        await self.sink.start(handle)
        stream: AsyncIterator[bytes] = self.synthesizer.stream(handle.text)
        async for chunk in stream:
            if not handle.active:
                break
            if not chunk:
                continue
            await self.sink.write(handle, chunk)
            handle.chunks_sent += 1
        if handle.active:
            await self.sink.end(handle)

    async def _abort(self, handle: PlaybackHandle) -> None:
        try:
            await self.sink.abort(handle)
        except Exception:
            LOGGER.warning("Audio sink abort failed for playback %d", handle.id, exc_info=True)

    async def _end_sink(self, handle: PlaybackHandle) -> None:
        try:
            await self.sink.end(handle)
        except Exception:
            LOGGER.warning("Audio sink end failed for playback %d", handle.id, exc_info=True)

    def _degrade(self, handle: PlaybackHandle, exc: PlaybackError) -> None:
        if not handle.active:
            return
        LOGGER.error("Playback %d degraded to text: %s", handle.id, exc)
        handle.degraded = True
        handle.error = exc
        if self.on_error:
            try:
                self.on_error(handle, exc)
            except Exception:
                LOGGER.exception("Playback error callback failed")

    def _finish(self, handle: PlaybackHandle) -> None:
        if not handle.active:
            return
        handle.status = PlaybackStatus.ENDED
        if self.current is handle:
            self.current = None
        handle._done.set()
        LOGGER.debug("Playback %d ended (%d chunks)", handle.id, handle.chunks_sent)
        self._fire(self.on_end, handle)

    @staticmethod
    def _fire(callback: HandleCallback, handle: PlaybackHandle) -> None:
        if callback is None:
            return
        try:
            callback(handle)
        except Exception:
            LOGGER.exception("Playback callback failed for handle %d", handle.id)
