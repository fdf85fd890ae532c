"""Deepgram speech recognition: prerecorded REST and live websocket streaming."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus

from models.session_models import AudioUnit, TranscriptEvent
from services.errors import AuthError, RecognitionError, TransportError, VoiceError
from utils.retry import with_retries

LOGGER = logging.getLogger(__name__)

LISTEN_URL = "https://api.deepgram.com/v1/listen"
STREAM_URL = "wss://api.deepgram.com/v1/listen"
MODEL = "nova-2"

TranscriptCallback = Callable[[TranscriptEvent], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[VoiceError], Union[None, Awaitable[None]]]


def _first_transcript(payload: Dict[str, Any]) -> str:
    channels = (payload.get("results") or {}).get("channels") or []
    if not channels:
        return ""
    alternatives = channels[0].get("alternatives") or []
    if not alternatives:
        return ""
    return (alternatives[0].get("transcript") or "").strip()


async def _call(callback, *args) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class DeepgramRecognizer:
    """Recognition gateway with both batch and live modes.

    ``transcribe`` posts one AudioUnit to the prerecorded endpoint.
    ``open_stream`` returns a :class:`DeepgramStream` that emits interim and
    final :class:`TranscriptEvent` objects.
    """

    supports_partial_results = True

    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        *,
        language: Optional[str] = None,
        sample_rate: int = 16000,
        min_audio_bytes: int = 100,
        timeout: float = 10.0,
        retries: int = 2,
        backoff: float = 1.0,
        reconnect_delay: float = 1.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        if not api_key:
            raise ValueError("DEEPGRAM_API_KEY is required for Deepgram recognition.")
        self.api_key = api_key
        self.http_client = http_client
        self.language = language
        self.sample_rate = sample_rate
        self.min_audio_bytes = min_audio_bytes
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.reconnect_delay = reconnect_delay
        self.connect = connect

    def _params(self, raw_pcm: bool, interim: bool = False) -> Dict[str, str]:
        params = {"model": MODEL, "punctuate": "true", "smart_format": "true"}
        if self.language:
            params["language"] = self.language
        if raw_pcm:
            params["encoding"] = "linear16"
            params["sample_rate"] = str(self.sample_rate)
            params["channels"] = "1"
        if interim:
            params["interim_results"] = "true"
        return params

    async def transcribe(self, unit: AudioUnit) -> str:
        if unit.size < self.min_audio_bytes:
            LOGGER.info("Skipping recognition of %d-byte audio (minimum %d)", unit.size, self.min_audio_bytes)
            return ""
        return await with_retries(
            lambda: self._request(unit),
            retries=self.retries,
            backoff=self.backoff,
            label="Deepgram transcription",
        )

    async def _request(self, unit: AudioUnit) -> str:
        raw_pcm = unit.mime_type in ("audio/pcm", "audio/l16")
        headers = {
            "Authorization": f"Token {self.api_key}",
            "Content-Type": "application/octet-stream" if raw_pcm else unit.mime_type,
        }
        try:
            response = await self.http_client.post(
                LISTEN_URL,
                params=self._params(raw_pcm),
                headers=headers,
                content=unit.data,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"Deepgram request timed out: {exc}", source="stt") from exc
        except httpx.TransportError as exc:
            raise TransportError(f"Deepgram connection failed: {exc}", source="stt") from exc

        if response.status_code in (401, 403):
            LOGGER.error("Deepgram rejected the API key (%d)", response.status_code)
            raise AuthError(f"Deepgram authentication failed ({response.status_code})", source="stt")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransportError(f"Deepgram returned {response.status_code}", source="stt")
        if response.status_code >= 400:
            raise RecognitionError(f"Deepgram returned {response.status_code}: {response.text[:200]}")
        try:
            return _first_transcript(response.json())
        except ValueError as exc:
            raise RecognitionError("Deepgram returned invalid JSON") from exc

    def open_stream(
        self,
        on_transcript: TranscriptCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> "DeepgramStream":
        url = f"{STREAM_URL}?{urlencode(self._params(raw_pcm=True, interim=True))}"
        return DeepgramStream(
            url,
            {"Authorization": f"Token {self.api_key}"},
            on_transcript,
            on_error=on_error,
            reconnect_delay=self.reconnect_delay,
            connect=self.connect,
        )


class DeepgramStream:
    """Long-lived duplex recognition stream with fixed-delay reconnect.

    Audio written while the connection is down is dropped; nothing is
    replayed after a reconnect. An authentication failure stops the stream
    and is reported through ``on_error``.
    """

    def __init__(
        self,
        url: str,
        headers: Dict[str, str],
        on_transcript: TranscriptCallback,
        *,
        on_error: Optional[ErrorCallback] = None,
        reconnect_delay: float = 1.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.headers = headers
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.reconnect_delay = reconnect_delay
        self.connect = connect
        self.reconnects = 0
        self.dropped_chunks = 0
        self._websocket = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def send(self, chunk: bytes) -> None:
        websocket = self._websocket
        if websocket is None:
            self.dropped_chunks += 1
            return
        try:
            await websocket.send(chunk)
        except ConnectionClosed:
            self.dropped_chunks += 1
            LOGGER.warning("Deepgram connection closed while sending audio")

    async def close(self) -> None:
        self._running = False
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            try:
                await websocket.send(json.dumps({"type": "CloseStream"}))
                await websocket.close()
            except ConnectionClosed:
                pass
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        first = True
        while self._running:
            if not first:
                self.reconnects += 1
                LOGGER.warning("Deepgram stream lost, reconnecting in %.1fs", self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)
                if not self._running:
                    break
            first = False
            try:
                websocket = await self.connect(self.url, additional_headers=self.headers)
            except InvalidStatus as exc:
                status = getattr(exc.response, "status_code", None)
                if status in (401, 403):
                    self._running = False
                    await self._report(AuthError(f"Deepgram rejected the stream ({status})", source="stt"))
                    break
                LOGGER.warning("Deepgram stream connect failed: %s", exc)
                continue
            except (OSError, asyncio.TimeoutError, ConnectionClosed) as exc:
                LOGGER.warning("Deepgram stream connect failed: %s", exc)
                continue

            self._websocket = websocket
            LOGGER.info("Deepgram stream connected")
            try:
                async for message in websocket:
                    await self._handle_message(message)
            except ConnectionClosed as exc:
                LOGGER.info("Deepgram connection closed: %s", exc)
            finally:
                if self._websocket is websocket:
                    self._websocket = None

    async def _handle_message(self, message) -> None:
        if isinstance(message, bytes):
            return
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            LOGGER.warning("Invalid JSON from Deepgram: %s", message[:100])
            return
        msg_type = data.get("type")
        if msg_type == "Results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            text = (alternatives[0].get("transcript") or "").strip() if alternatives else ""
            if not text:
                return
            event = TranscriptEvent(text=text, is_final=bool(data.get("is_final")))
            LOGGER.debug("Deepgram transcript %r (final=%s)", text, event.is_final)
            try:
                await _call(self.on_transcript, event)
            except Exception:
                LOGGER.exception("Transcript callback failed")
        elif msg_type == "Error":
            LOGGER.error("Deepgram error message: %s", data)

    async def _report(self, error: VoiceError) -> None:
        LOGGER.error("Deepgram stream stopped: %s", error)
        if self.on_error is not None:
            await _call(self.on_error, error)
