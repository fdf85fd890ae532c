from typing import Any, Dict

from fastapi import HTTPException, Request, UploadFile
from fastapi.responses import Response

from models.session_models import AudioUnit
from services.errors import AuthError, PlaybackError, VoiceError
from utils.media_validation import read_audio_upload


async def transcribe_upload(request: Request, audio_file: UploadFile) -> Dict[str, Any]:
    """Run one uploaded recording through the batch recognition gateway.

    Args:
        request: FastAPI Request object (used to access app.state for shared clients).
        audio_file: Multipart upload from the ``audio`` form field.

    Returns:
        ``{"transcript": str}``; the transcript is empty when nothing was recognized.
    """
    mime_type, audio_bytes = await read_audio_upload(audio_file)

    settings = request.app.state.settings
    recognizer = request.app.state.recognizer
    unit = AudioUnit(data=audio_bytes, mime_type=mime_type, sample_rate=settings.sample_rate)
    try:
        transcript = await recognizer.transcribe(unit)
    except AuthError as exc:
        raise HTTPException(status_code=502, detail=exc.user_message)
    except VoiceError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"transcript": (transcript or "").strip()}


async def synthesize_text(request: Request, text: str) -> Response:
    """Return ``audio/mpeg`` bytes for ``text``."""
    if not (text or "").strip():
        raise HTTPException(status_code=400, detail="text is required")
    synthesizer = request.app.state.synthesizer
    try:
        audio = await synthesizer.synthesize(text.strip())
    except PlaybackError as exc:
        raise HTTPException(status_code=502, detail=exc.user_message)
    return Response(content=audio, media_type="audio/mpeg")
