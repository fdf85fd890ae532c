"""HTTP relay to the chat API."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from controllers.chat_controller import answer_chat, get_mortgage_offers, send_offers_email, start_chat

router = APIRouter(prefix="/api/chat")


class AnswerPayload(BaseModel):
	sessionId: Optional[str] = None
	answer: Optional[str] = None
	systemQuestion: Optional[str] = None


class EmailPayload(BaseModel):
	sessionId: Optional[str] = None
	email: Optional[str] = None
	message: str = ""


@router.get("/start")
async def start_chat_route(request: Request):
	try:
		return await start_chat(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/answer")
async def answer_chat_route(request: Request, payload: AnswerPayload):
	try:
		return await answer_chat(request, payload.sessionId, payload.answer, payload.systemQuestion)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/mortgage-offers/{session_id}")
async def mortgage_offers_route(request: Request, session_id: str):
	try:
		return await get_mortgage_offers(request, session_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/send-offers-email")
async def send_offers_email_route(request: Request, payload: EmailPayload):
	try:
		return await send_offers_email(request, payload.sessionId, payload.email, payload.message)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
