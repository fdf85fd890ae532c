"""One-shot speech recognition and synthesis endpoints."""

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from pydantic import BaseModel

from controllers.speech_controller import synthesize_text, transcribe_upload

router = APIRouter(prefix="/api")


class SpeechPayload(BaseModel):
	text: str = ""


@router.post("/stt")
async def speech_to_text_route(request: Request, audio: UploadFile = File(...)):
	"""Transcribe the multipart ``audio`` field."""
	try:
		return await transcribe_upload(request, audio)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/tts")
async def text_to_speech_route(request: Request, payload: SpeechPayload):
	"""Return synthesized speech for ``text`` as audio/mpeg."""
	try:
		return await synthesize_text(request, payload.text)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
