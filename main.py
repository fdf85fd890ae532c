import inspect
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from openai import AsyncOpenAI

from routes.chat_route import router as chat_router
from routes.realtime_ws import router as realtime_router
from routes.speech_route import router as speech_router
from services.chat.chat_client import ChatApiClient
from services.deepgram.deepgram_recognizer import DeepgramRecognizer
from services.elevenlabs.elevenlabs_synthesizer import ElevenLabsSynthesizer
from services.openai.whisper_recognizer import WhisperRecognizer
from services.realtime.session_store import SessionRegistry
from utils.logging_config import setup_logging
from utils.settings import Settings

load_dotenv()  # Load environment variables from .env file if present


def build_recognizer(settings: Settings, openai_client: Optional[AsyncOpenAI], http_client: httpx.AsyncClient):
    """Return the recognition gateway selected by STT_PROVIDER."""
    common = {
        "language": settings.stt_language,
        "min_audio_bytes": settings.min_audio_bytes,
        "timeout": settings.gateway_timeout_s,
        "retries": settings.gateway_retries,
        "backoff": settings.gateway_backoff_ms / 1000.0,
    }
    if settings.stt_provider == "deepgram":
        return DeepgramRecognizer(
            settings.deepgram_api_key,
            http_client,
            sample_rate=settings.sample_rate,
            reconnect_delay=settings.stt_reconnect_ms / 1000.0,
            **common,
        )
    return WhisperRecognizer(openai_client, **common)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan manager to initialize:
      - settings and logging
      - the OpenAI async client and one shared httpx client
      - the recognition, dialogue and synthesis gateways
      - the registry of live voice sessions
    and attach them to `app.state`.
    """
    settings = getattr(app.state, "settings", None) or Settings.from_env()
    app.state.settings = settings
    setup_logging(settings.log_level, settings.log_file)

    if settings.stt_provider == "whisper" and not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY environment variable is not set")
    if settings.stt_provider == "deepgram" and not settings.deepgram_api_key:
        raise RuntimeError("DEEPGRAM_API_KEY environment variable is not set")
    if not settings.elevenlabs_api_key:
        raise RuntimeError("ELEVENLABS_API_KEY environment variable is not set")

    openai_client = None
    if settings.openai_api_key:
        try:
            openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
        except Exception as exc:
            raise RuntimeError("Failed to initialize OpenAI Async client") from exc
    app.state.openai_client = openai_client

    http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_s)
    app.state.http_client = http_client

    app.state.recognizer = build_recognizer(settings, openai_client, http_client)
    app.state.chat_client = ChatApiClient(
        http_client,
        settings.chat_api_url,
        timeout=settings.gateway_timeout_s,
        retries=settings.gateway_retries,
        backoff=settings.gateway_backoff_ms / 1000.0,
        completion_phrases=settings.completion_phrases,
    )
    app.state.synthesizer = ElevenLabsSynthesizer(
        settings.elevenlabs_api_key,
        http_client,
        voice_id=settings.elevenlabs_voice_id,
        model_id=settings.elevenlabs_model_id,
        streaming=settings.tts_streaming,
        timeout=settings.gateway_timeout_s,
    )
    app.state.session_registry = SessionRegistry()
    logging.info("Voice relay ready (stt=%s, chat=%s)", settings.stt_provider, settings.chat_api_url)

    try:
        yield
    finally:
        await app.state.session_registry.close_all()
        await http_client.aclose()
        # Gracefully close the OpenAI client if it exposes a close/aclose method.
        client = getattr(app.state, "openai_client", None)
        if client is not None:
            aclose = getattr(client, "aclose", None) or getattr(client, "close", None)
            if aclose is not None:
                try:
                    result = aclose()
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logging.warning("OpenAI client did not close cleanly", exc_info=True)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.
    """
    app = FastAPI(lifespan=lifespan)
    if settings is not None:
        app.state.settings = settings

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check reporting the OpenAI client and the number of live sessions.
        """
        has_openai = getattr(request.app.state, "openai_client", None) is not None
        registry = getattr(request.app.state, "session_registry", None)
        return {"ok": True, "openai_available": has_openai, "sessions": len(registry) if registry is not None else 0}

    # Register application routers
    app.include_router(chat_router)
    app.include_router(speech_router)
    app.include_router(realtime_router)

    return app


app = create_app()
