"""ElevenLabs text-to-speech over HTTP."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Dict

import httpx

from services.errors import PlaybackError

LOGGER = logging.getLogger(__name__)

BASE_URL = "https://api.elevenlabs.io/v1"
CHUNK_SIZE = 4096

AUTH_MESSAGE = "ElevenLabs rejected the API key. Continuing in text mode."
QUOTA_MESSAGE = "ElevenLabs quota exceeded. Continuing in text mode."


class ElevenLabsSynthesizer:
    """Synthesis gateway returning ``audio/mpeg`` for a piece of text.

    Every failure surfaces as :class:`PlaybackError` so playback degrades to
    text instead of stopping the conversation.
    """

    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        *,
        voice_id: str,
        model_id: str = "eleven_multilingual_v2",
        streaming: bool = True,
        timeout: float = 10.0,
        stability: float = 0.5,
        similarity_boost: float = 0.75,
    ) -> None:
        if not api_key:
            raise ValueError("ELEVENLABS_API_KEY is required for speech synthesis.")
        self.api_key = api_key
        self.http_client = http_client
        self.voice_id = voice_id
        self.model_id = model_id
        self.streaming = streaming
        self.timeout = timeout
        self.stability = stability
        self.similarity_boost = similarity_boost

    def _headers(self) -> Dict[str, str]:
        return {"xi-api-key": self.api_key, "Accept": "audio/mpeg", "Content-Type": "application/json"}

    def _body(self, text: str) -> Dict[str, object]:
        return {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {"stability": self.stability, "similarity_boost": self.similarity_boost},
        }

    @staticmethod
    def _check(status_code: int, detail: str) -> None:
        if status_code < 400:
            return
        LOGGER.error("ElevenLabs request failed (%d): %s", status_code, detail[:200])
        if status_code == 401 or "invalid_api_key" in detail:
            raise PlaybackError(f"ElevenLabs authentication failed ({status_code})", user_message=AUTH_MESSAGE)
        if status_code == 429 or "quota" in detail.lower():
            raise PlaybackError(f"ElevenLabs quota exceeded ({status_code})", user_message=QUOTA_MESSAGE)
        raise PlaybackError(f"ElevenLabs returned {status_code}")

    async def synthesize(self, text: str) -> bytes:
        """Return the complete audio for ``text``."""
        if not (text or "").strip():
            raise PlaybackError("No text to synthesize")
        url = f"{BASE_URL}/text-to-speech/{self.voice_id}"
        try:
            response = await self.http_client.post(
                url, headers=self._headers(), json=self._body(text), timeout=self.timeout
            )
        except httpx.TimeoutException as exc:
            raise PlaybackError("Speech synthesis timed out") from exc
        except httpx.HTTPError as exc:
            raise PlaybackError(f"Speech synthesis request failed: {exc}") from exc
        self._check(response.status_code, response.text if response.status_code >= 400 else "")
        return response.content

    async def stream(self, text: str) -> AsyncIterator[bytes]:
        """Yield audio chunks for ``text`` in playback order."""
        if not self.streaming:
            yield await self.synthesize(text)
            return
        if not (text or "").strip():
            raise PlaybackError("No text to synthesize")
        url = f"{BASE_URL}/text-to-speech/{self.voice_id}/stream"
        try:
            async with self.http_client.stream(
                "POST", url, headers=self._headers(), json=self._body(text), timeout=self.timeout
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    self._check(response.status_code, detail)
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    if chunk:
                        yield chunk
        except httpx.TimeoutException as exc:
            raise PlaybackError("Speech synthesis timed out") from exc
        except httpx.HTTPError as exc:
            raise PlaybackError(f"Speech synthesis request failed: {exc}") from exc
