"""Environment-driven configuration for the voice relay."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_FALLBACK_GREETING = "Hi! I'm your voice assistant. How can I help you?"
DEFAULT_APOLOGY = "Sorry, something went wrong. Please try again."
DEFAULT_COMPLETION_PHRASES = ("Analizuję Twoje dane i przygotowuję oferty",)


def _env_str(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip()


def _env_optional(name: str) -> Optional[str]:
    value = _env_str(name)
    return value or None


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_str(name).lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_list(name: str) -> Tuple[str, ...]:
    raw = _env_str(name)
    return tuple(item.strip() for item in raw.split("|") if item.strip())


@dataclass(frozen=True)
class Settings:
    """Runtime configuration. Thresholds are tunables, not constants."""

    openai_api_key: Optional[str] = None
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    elevenlabs_model_id: str = "eleven_multilingual_v2"
    deepgram_api_key: Optional[str] = None

    stt_provider: str = "whisper"
    stt_streaming: bool = False
    stt_language: Optional[str] = "pl"
    chat_api_url: str = "http://localhost:8001/api"

    sample_rate: int = 16000
    vad_threshold: float = 0.02
    interrupt_threshold: float = 0.05
    silence_delay_ms: int = 700
    max_recording_ms: int = 6000
    min_audio_bytes: int = 100

    gateway_timeout_s: float = 10.0
    gateway_retries: int = 2
    gateway_backoff_ms: int = 1000
    stt_reconnect_ms: int = 1000
    error_recovery_ms: int = 3000
    tts_streaming: bool = True

    completion_phrases: Tuple[str, ...] = DEFAULT_COMPLETION_PHRASES
    fallback_greeting: str = DEFAULT_FALLBACK_GREETING
    apology_message: str = DEFAULT_APOLOGY

    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (``.env`` already loaded)."""
        provider = _env_str("STT_PROVIDER", "whisper").lower()
        if provider not in {"whisper", "deepgram"}:
            raise ValueError(f"STT_PROVIDER must be 'whisper' or 'deepgram', got {provider!r}")
        return cls(
            openai_api_key=_env_optional("OPENAI_API_KEY"),
            elevenlabs_api_key=_env_optional("ELEVENLABS_API_KEY"),
            elevenlabs_voice_id=_env_str("ELEVENLABS_VOICE_ID", cls.elevenlabs_voice_id),
            elevenlabs_model_id=_env_str("ELEVENLABS_MODEL_ID", cls.elevenlabs_model_id),
            deepgram_api_key=_env_optional("DEEPGRAM_API_KEY"),
            stt_provider=provider,
            stt_streaming=_env_bool("STT_STREAMING", False),
            stt_language=_env_optional("STT_LANGUAGE") or cls.stt_language,
            chat_api_url=_env_str("CHAT_API_URL", cls.chat_api_url).rstrip("/"),
            sample_rate=_env_int("SAMPLE_RATE", cls.sample_rate),
            vad_threshold=_env_float("VAD_THRESHOLD", cls.vad_threshold),
            interrupt_threshold=_env_float("INTERRUPT_THRESHOLD", cls.interrupt_threshold),
            silence_delay_ms=_env_int("SILENCE_DELAY_MS", cls.silence_delay_ms),
            max_recording_ms=_env_int("MAX_RECORDING_MS", cls.max_recording_ms),
            min_audio_bytes=_env_int("MIN_AUDIO_BYTES", cls.min_audio_bytes),
            gateway_timeout_s=_env_float("GATEWAY_TIMEOUT_S", cls.gateway_timeout_s),
            gateway_retries=_env_int("GATEWAY_RETRIES", cls.gateway_retries),
            gateway_backoff_ms=_env_int("GATEWAY_BACKOFF_MS", cls.gateway_backoff_ms),
            stt_reconnect_ms=_env_int("STT_RECONNECT_MS", cls.stt_reconnect_ms),
            error_recovery_ms=_env_int("ERROR_RECOVERY_MS", cls.error_recovery_ms),
            tts_streaming=_env_bool("TTS_STREAMING", True),
            completion_phrases=_env_list("CHAT_COMPLETION_PHRASES") or DEFAULT_COMPLETION_PHRASES,
            fallback_greeting=_env_str("FALLBACK_GREETING", DEFAULT_FALLBACK_GREETING),
            apology_message=_env_str("APOLOGY_MESSAGE", DEFAULT_APOLOGY),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            log_file=_env_optional("LOG_FILE"),
        )
