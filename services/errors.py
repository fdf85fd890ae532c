"""Error taxonomy shared by the voice session components."""

from __future__ import annotations

from typing import Optional


class VoiceError(Exception):
    """Base class for every failure raised by the voice pipeline.

    ``user_message`` is the human-readable text surfaced through the UI
    error channel; ``source`` names the component that failed.
    """

    source = "session"
    default_user_message = "Something went wrong. Please try again."

    def __init__(
        self,
        message: str = "",
        *,
        user_message: Optional[str] = None,
        source: Optional[str] = None,
    ) -> None:
        super().__init__(message or self.default_user_message)
        self.user_message = user_message or self.default_user_message
        if source:
            self.source = source


class DeviceError(VoiceError):
    """The audio input device could not be acquired."""

    source = "microphone"
    default_user_message = "Microphone access was denied or no microphone is available."


class EmptyResultError(VoiceError):
    """Recognition produced no text. Benign: the user said nothing."""

    source = "stt"
    default_user_message = ""


class GatewayError(VoiceError):
    """A call to an external cloud service failed."""

    source = "gateway"
    retryable = False


class TransportError(GatewayError):
    """Network-level failure (connect, timeout, dropped stream)."""

    default_user_message = "Connection problem. Please try again."
    retryable = True


class AuthError(GatewayError):
    """Credentials were rejected by the provider. Never retried."""

    default_user_message = "The service rejected our credentials."


class RecognitionError(GatewayError):
    """The speech-to-text provider returned an unusable response."""

    source = "stt"
    default_user_message = "Speech recognition failed. Please try again."


class DialogueError(GatewayError):
    """The chat API call failed."""

    source = "dialogue"
    default_user_message = "Could not process your message. Please try again."


class SessionError(DialogueError):
    """A dialogue call was made without a valid session identifier."""

    default_user_message = "Session error. Please start the conversation again."


class PlaybackError(GatewayError):
    """Speech synthesis or playback failed; the turn degrades to text only."""

    source = "tts"
    default_user_message = "Speech synthesis failed. Continuing in text mode."


def require_transcript(text: Optional[str]) -> str:
    """Return ``text`` stripped, raising :class:`EmptyResultError` when blank."""
    cleaned = (text or "").strip()
    if not cleaned:
        raise EmptyResultError("Empty transcript")
    return cleaned
