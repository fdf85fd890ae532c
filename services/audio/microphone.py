"""Single-acquirer audio input fed by frames relayed from the browser."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from services.errors import DeviceError

LOGGER = logging.getLogger(__name__)

_END = object()


class MicrophoneTap:
    """An open handle on the microphone; the only consumer of its frames.

    Use it as an async context manager so the device is released on every
    exit path. ``read`` returns ``None`` once the tap has been ended.
    """

    def __init__(self, microphone: "StreamMicrophone", owner: str) -> None:
        self.microphone = microphone
        self.owner = owner
        self._queue: asyncio.Queue = asyncio.Queue()
        self._ended = False
        self.closed = False

    async def __aenter__(self) -> "MicrophoneTap":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def push(self, frame: bytes) -> None:
        if not self._ended:
            self._queue.put_nowait(frame)

    def end(self) -> None:
        """Unblock readers; frames already queued are still delivered."""
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(_END)

    async def read(self) -> Optional[bytes]:
        item = await self._queue.get()
        if item is _END:
            self._queue.put_nowait(_END)
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.end()
        self.closed = True
        self.microphone._release(self)


class StreamMicrophone:
    """Audio input device backed by ``audio-data`` frames from one connection.

    At most one :class:`MicrophoneTap` may be open at a time. Frames pushed
    while nothing holds the device are dropped, the same way a closed
    hardware stream would not buffer them.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._tap: Optional[MicrophoneTap] = None
        self._closed = False

    @property
    def holder(self) -> Optional[str]:
        return self._tap.owner if self._tap else None

    @property
    def busy(self) -> bool:
        return self._tap is not None

    def acquire(self, owner: str) -> MicrophoneTap:
        """Open the device for ``owner``; raises :class:`DeviceError` if unavailable."""
        if self._closed:
            raise DeviceError("Microphone closed")
        if not self.enabled:
            raise DeviceError("Microphone permission denied")
        if self._tap is not None:
            raise DeviceError(
                f"Microphone held by {self._tap.owner}",
                user_message="The microphone is already in use.",
            )
        self._tap = MicrophoneTap(self, owner)
        LOGGER.debug("Microphone acquired by %s", owner)
        return self._tap

    def _release(self, tap: MicrophoneTap) -> None:
        if self._tap is tap:
            self._tap = None
            LOGGER.debug("Microphone released by %s", tap.owner)

    def push(self, frame: bytes) -> bool:
        """Deliver one frame to the open tap. Returns False when it was dropped."""
        if self._tap is None or not frame:
            return False
        self._tap.push(frame)
        return True

    def close(self) -> None:
        self._closed = True
        if self._tap is not None:
            self._tap.close()
