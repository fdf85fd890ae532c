import asyncio
import io
import wave
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from models.session_models import AudioUnit
from services.errors import AuthError, RecognitionError, TransportError
from services.openai.whisper_recognizer import WhisperRecognizer, filename_for_mime, pcm16_to_wav

OPENAI_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")


def _client(create):
    return SimpleNamespace(audio=SimpleNamespace(transcriptions=SimpleNamespace(create=create)))


def _status_error(cls, status):
    response = httpx.Response(status, request=OPENAI_REQUEST)
    return cls("failure", response=response, body=None)


class TestWhisperRecognizer:
    @pytest.mark.asyncio
    async def test_pcm_is_wrapped_as_wav(self):
        create = AsyncMock(return_value="  dzień dobry \n")
        recognizer = WhisperRecognizer(_client(create), language="pl", backoff=0)
        pcm = b"\x01\x00" * 800

        text = await recognizer.transcribe(AudioUnit(pcm, "audio/pcm", sample_rate=16000))

        assert text == "dzień dobry"
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "whisper-1"
        assert kwargs["language"] == "pl"
        assert kwargs["response_format"] == "text"
        assert kwargs["file"].name == "speech.wav"
        with wave.open(io.BytesIO(kwargs["file"].getvalue())) as wav:
            assert wav.getframerate() == 16000
            assert wav.getnframes() == 800

    @pytest.mark.asyncio
    async def test_short_audio_is_skipped(self):
        create = AsyncMock()
        recognizer = WhisperRecognizer(_client(create), min_audio_bytes=100)
        assert await recognizer.transcribe(AudioUnit(b"\x00" * 10)) == ""
        create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_encoded_upload_keeps_its_format(self):
        create = AsyncMock(return_value=SimpleNamespace(text="hello"))
        recognizer = WhisperRecognizer(_client(create))
        text = await recognizer.transcribe(AudioUnit(b"\x1a" * 500, "audio/webm;codecs=opus"))
        assert text == "hello"
        assert create.await_args.kwargs["file"].name == "speech.webm"
        assert "language" not in create.await_args.kwargs

    @pytest.mark.asyncio
    async def test_unknown_mime_type(self):
        recognizer = WhisperRecognizer(_client(AsyncMock()))
        with pytest.raises(RecognitionError):
            await recognizer.transcribe(AudioUnit(b"\x00" * 500, "video/x-unknown"))

    @pytest.mark.asyncio
    async def test_authentication_failure_is_not_retried(self):
        create = AsyncMock(side_effect=_status_error(openai.AuthenticationError, 401))
        recognizer = WhisperRecognizer(_client(create), retries=2, backoff=0)
        with pytest.raises(AuthError) as excinfo:
            await recognizer.transcribe(AudioUnit(b"\x00" * 500))
        assert excinfo.value.source == "stt"
        assert create.await_count == 1

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self):
        create = AsyncMock(side_effect=[openai.APIConnectionError(request=OPENAI_REQUEST), "second try"])
        recognizer = WhisperRecognizer(_client(create), retries=2, backoff=0)
        assert await recognizer.transcribe(AudioUnit(b"\x00" * 500)) == "second try"
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_surfaces_transport_error(self):
        create = AsyncMock(side_effect=_status_error(openai.RateLimitError, 429))
        recognizer = WhisperRecognizer(_client(create), retries=1, backoff=0)
        with pytest.raises(TransportError):
            await recognizer.transcribe(AudioUnit(b"\x00" * 500))
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_timeout_is_attributed_to_stt(self):
        async def slow(**kwargs):
            await asyncio.sleep(1)
            return "too late"

        recognizer = WhisperRecognizer(_client(slow), timeout=0.01, retries=0, backoff=0)
        with pytest.raises(TransportError) as excinfo:
            await recognizer.transcribe(AudioUnit(b"\x00" * 500))
        assert excinfo.value.source == "stt"

    @pytest.mark.asyncio
    async def test_bad_request_is_recognition_error(self):
        create = AsyncMock(side_effect=_status_error(openai.BadRequestError, 400))
        recognizer = WhisperRecognizer(_client(create), backoff=0)
        with pytest.raises(RecognitionError):
            await recognizer.transcribe(AudioUnit(b"\x00" * 500))

    def test_requires_client(self):
        with pytest.raises(ValueError):
            WhisperRecognizer(None)


def test_filename_for_mime():
    assert filename_for_mime("audio/mpeg") == "speech.mp3"
    assert filename_for_mime("audio/ogg; codecs=opus") == "speech.oga"
    assert filename_for_mime("audio/m4a") == "speech.m4a"
    with pytest.raises(ValueError):
        filename_for_mime("text/plain")


def test_pcm16_to_wav_header():
    data = pcm16_to_wav(b"\x00\x00" * 10, 8000)
    assert data[:4] == b"RIFF"
    assert data[8:12] == b"WAVE"
