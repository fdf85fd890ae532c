"""Fixed-backoff retry for gateway calls that fail with a transport error."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from services.errors import TransportError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retries(
    call: Callable[[], Awaitable[T]],
    *,
    retries: int,
    backoff: float,
    label: str,
) -> T:
    """Run ``call`` and retry it ``retries`` more times on :class:`TransportError`.

    Any other exception propagates immediately. When every attempt fails the
    last ``TransportError`` is re-raised for the caller to escalate.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except TransportError as exc:
            if attempt >= retries:
                LOGGER.error("%s failed after %d attempts: %s", label, attempt + 1, exc)
                raise
            attempt += 1
            LOGGER.warning("%s transport error (attempt %d/%d): %s", label, attempt, retries + 1, exc)
            await asyncio.sleep(backoff)
