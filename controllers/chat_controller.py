from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from services.chat.chat_client import ChatApiClient
from services.errors import SessionError, VoiceError


def _client(request: Request) -> ChatApiClient:
    client = getattr(request.app.state, "chat_client", None)
    if client is None:
        raise HTTPException(status_code=500, detail="Chat client unavailable")
    return client


async def start_chat(request: Request):
    """Open a conversation with the chat API.

    On failure the caller still gets a greeting to show, with HTTP 502 so it
    knows no session was created.
    """
    settings = request.app.state.settings
    try:
        opened = await _client(request).start()
    except VoiceError as exc:
        return JSONResponse(
            status_code=502,
            content={"error": "Failed to connect to chat API", "detail": str(exc), "message": settings.fallback_greeting},
        )
    return {
        "sessionId": opened.session_id,
        "message": opened.greeting_text or settings.fallback_greeting,
        "createdAt": opened.created_at,
    }


async def answer_chat(
    request: Request,
    session_id: Optional[str],
    answer: Optional[str],
    system_question: Optional[str] = None,
):
    """Forward one user answer; the session id always comes from the caller."""
    if not session_id or not (answer or "").strip():
        raise HTTPException(status_code=400, detail="sessionId and answer are required")
    settings = request.app.state.settings
    try:
        result = await _client(request).answer(session_id, answer.strip(), system_question=system_question)
    except SessionError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except VoiceError as exc:
        return JSONResponse(
            status_code=502,
            content={"error": "Failed to connect to chat API", "detail": str(exc), "question": settings.apology_message},
        )
    return {
        "sessionId": result.session_id,
        "question": result.prompt_text,
        "isCompleted": result.is_completed,
        "currentState": result.current_state,
        "availableActions": result.available_actions,
        "creditInformation": result.structured_data,
        "nextAction": result.next_action.value,
    }


async def get_mortgage_offers(request: Request, session_id: str) -> Dict[str, Any]:
    try:
        offers = await _client(request).mortgage_offers(session_id)
    except SessionError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except VoiceError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"sessionId": session_id, "offers": [offer.to_json() for offer in offers]}


async def send_offers_email(request: Request, session_id: Optional[str], email: Optional[str], message: str = "") -> Dict[str, Any]:
    if not session_id or not (email or "").strip():
        raise HTTPException(status_code=400, detail="sessionId and email are required")
    try:
        return await _client(request).send_offers_email(session_id, email.strip(), message or "")
    except SessionError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except VoiceError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
