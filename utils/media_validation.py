"""Validation helpers for uploaded audio."""

from typing import Tuple

from fastapi import HTTPException, UploadFile

ALLOWED_AUDIO_TYPES = {
    "audio/wav",
    "audio/x-wav",
    "audio/webm",
    "audio/mpeg",
    "audio/mp3",
    "audio/mp4",
    "audio/aac",
    "audio/ogg",
    "audio/opus",
    "audio/flac",
    "audio/x-flac",
    "audio/pcm",
    "audio/l16",
}

AUDIO_EXTENSIONS = (".wav", ".webm", ".mp3", ".mp4", ".m4a", ".ogg", ".oga", ".flac", ".pcm")


def audio_mime_type(audio_file: UploadFile) -> str:
    """Return the normalised MIME type of an upload, raising 415 when unsupported.

    Browsers send ``audio/webm;codecs=opus`` and similar, so parameters are
    dropped before the check. When the content type is missing the filename
    extension has to identify a known container instead.
    """
    if audio_file.content_type and audio_file.content_type != "application/octet-stream":
        content_type = audio_file.content_type.lower().split(";", 1)[0].strip()
        if content_type not in ALLOWED_AUDIO_TYPES:
            raise HTTPException(status_code=415, detail=f"Unsupported audio content type: {audio_file.content_type}")
        return content_type
    filename = (audio_file.filename or "").lower()
    for ext in AUDIO_EXTENSIONS:
        if filename.endswith(ext):
            return {".m4a": "audio/mp4", ".oga": "audio/ogg", ".pcm": "audio/pcm", ".mp3": "audio/mpeg"}.get(ext, f"audio/{ext[1:]}")
    raise HTTPException(status_code=415, detail="Unsupported or missing audio content type.")


async def read_audio_upload(audio_file: UploadFile) -> Tuple[str, bytes]:
    """Validate an upload once and return ``(mime_type, audio_bytes)``; empty uploads are a 400."""
    mime_type = audio_mime_type(audio_file)
    audio_bytes = await audio_file.read()
    if not audio_bytes:
        raise HTTPException(status_code=400, detail="Uploaded audio file is empty.")
    return mime_type, audio_bytes
