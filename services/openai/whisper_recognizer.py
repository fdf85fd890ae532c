"""Batch speech recognition through OpenAI Whisper."""

import asyncio
import io
import logging
import wave
from typing import Optional

import openai
from openai import AsyncOpenAI

from models.session_models import AudioUnit
from services.errors import AuthError, RecognitionError, TransportError
from utils.retry import with_retries

TRANSCRIBE_MODEL = "whisper-1"

_MIME_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "mp4",
    "audio/aac": "m4a",
    "audio/ogg": "oga",
    "audio/opus": "ogg",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
}
_KNOWN_SUFFIXES = {"webm", "wav", "mp3", "mp4", "mpeg", "mpga", "oga", "ogg", "flac", "m4a"}


def filename_for_mime(mime_type: str) -> str:
    """Return an upload filename whose extension matches ``mime_type``.

    MIME parameters such as ``;codecs=opus`` are ignored. Unknown types raise
    ValueError instead of sending an unsupported format to the API.
    """
    mime = (mime_type or "").lower().split(";", 1)[0].strip()
    if mime in _MIME_EXTENSIONS:
        suffix = _MIME_EXTENSIONS[mime]
    elif "/" in mime and mime.split("/")[-1] in _KNOWN_SUFFIXES:
        suffix = mime.split("/")[-1]
    else:
        raise ValueError(f"Unsupported or unknown audio MIME type: '{mime_type}'")
    return f"speech.{suffix}"


def pcm16_to_wav(data: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw little-endian PCM16 samples in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(data)
    return buffer.getvalue()


class WhisperRecognizer:
    """Recognition gateway that sends one finished utterance to Whisper.

    Whisper has no interim results, so ``supports_partial_results`` is False
    and callers never see partial transcripts from this gateway.
    """

    supports_partial_results = False

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        language: Optional[str] = None,
        min_audio_bytes: int = 100,
        timeout: float = 10.0,
        retries: int = 2,
        backoff: float = 1.0,
    ) -> None:
        if client is None:
            raise ValueError("AsyncOpenAI client is required.")
        self.client = client
        self.language = language
        self.min_audio_bytes = min_audio_bytes
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff

    async def transcribe(self, unit: AudioUnit) -> str:
        """Return the transcript for ``unit``, or "" when the audio is too short to hold speech."""
        if unit.size < self.min_audio_bytes:
            logging.info("Skipping recognition of %d-byte audio (minimum %d)", unit.size, self.min_audio_bytes)
            return ""

        if unit.mime_type in ("audio/pcm", "audio/l16"):
            payload = pcm16_to_wav(unit.data, unit.sample_rate)
            filename = "speech.wav"
        else:
            payload = unit.data
            try:
                filename = filename_for_mime(unit.mime_type)
            except ValueError as exc:
                raise RecognitionError(str(exc)) from exc

        return await with_retries(
            lambda: self._request(payload, filename),
            retries=self.retries,
            backoff=self.backoff,
            label="Whisper transcription",
        )

    async def _request(self, payload: bytes, filename: str) -> str:
        audio_file = io.BytesIO(payload)
        audio_file.name = filename
        kwargs = {"model": TRANSCRIBE_MODEL, "file": audio_file, "response_format": "text"}
        if self.language:
            kwargs["language"] = self.language
        try:
            response = await asyncio.wait_for(self.client.audio.transcriptions.create(**kwargs), self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Whisper request timed out after {self.timeout}s", source="stt") from exc
        except openai.AuthenticationError as exc:
            logging.error("Whisper rejected the API key: %s", exc)
            raise AuthError(f"Whisper authentication failed: {exc}", source="stt") from exc
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as exc:
            raise TransportError(f"Whisper transport error: {exc}", source="stt") from exc
        except openai.OpenAIError as exc:
            logging.error("OpenAI transcription request failed: %s", exc)
            raise RecognitionError(f"Transcription failed: {exc}") from exc

        if isinstance(response, str):
            return response.strip()
        return (getattr(response, "text", None) or "").strip()
