"""HTTP client for the remote conversational chat API."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from models.offer_record import OfferRecord, parse_offers
from models.session_models import DialogueResult, DialogueStart, NextAction
from services.errors import AuthError, DialogueError, SessionError, TransportError
from utils.retry import with_retries

LOGGER = logging.getLogger(__name__)

EMAIL_ACTIONS = {"send-offers-email", "send_offers_email", "email"}
OFFER_ACTIONS = {"display-offers", "display_offers", "show-offers", "offers"}


def _unwrap(payload: Any) -> Dict[str, Any]:
    """Accept both flat bodies and ``{"data": {"attributes": {...}}}`` envelopes."""
    if not isinstance(payload, dict):
        return {}
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("attributes"), dict):
        merged = dict(data["attributes"])
        if data.get("id") and "sessionId" not in merged:
            merged["sessionId"] = data["id"]
        return merged
    return payload


def normalize_actions(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        items: Iterable[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = raw
    else:
        return []
    return [str(item).strip() for item in items if str(item).strip()]


def resolve_next_action(actions: Sequence[str], is_completed: bool) -> NextAction:
    """Map ``availableActions`` onto the coordinator's side-channel action."""
    lowered = {action.lower() for action in actions}
    if lowered & EMAIL_ACTIONS:
        return NextAction.EMAIL
    if lowered & OFFER_ACTIONS:
        return NextAction.DISPLAY_OFFERS
    if is_completed:
        return NextAction.DISPLAY_OFFERS
    return NextAction.NONE


class ChatApiClient:
    """Dialogue gateway over the chat HTTP API.

    The session identifier is always passed in by the caller; the client
    keeps no conversation state of its own.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        *,
        timeout: float = 10.0,
        retries: int = 2,
        backoff: float = 1.0,
        completion_phrases: Sequence[str] = (),
    ) -> None:
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.completion_phrases = tuple(phrase.lower() for phrase in completion_phrases if phrase)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self.http_client.request(
                method,
                url,
                json=json,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"Chat API timed out on {path}", source="dialogue") from exc
        except httpx.TransportError as exc:
            raise TransportError(f"Chat API unreachable: {exc}", source="dialogue") from exc

        if response.status_code in (401, 403):
            raise AuthError(f"Chat API rejected the request ({response.status_code})", source="dialogue")
        if response.status_code >= 500:
            raise TransportError(f"Chat API returned {response.status_code} for {path}", source="dialogue")
        if response.status_code == 404 and session_id:
            raise SessionError(f"Chat API does not know session {session_id}")
        if response.status_code >= 400:
            LOGGER.error("Chat API %s %s failed: %d %s", method, path, response.status_code, response.text[:200])
            raise DialogueError(f"Chat API returned {response.status_code} for {path}")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            return _unwrap(response.json())
        except ValueError as exc:
            raise DialogueError("Chat API returned invalid JSON") from exc

    async def start(self) -> DialogueStart:
        """Open a new conversation and return its id and greeting."""
        response = await with_retries(
            lambda: self._send("GET", "/chat/start"),
            retries=self.retries,
            backoff=self.backoff,
            label="Chat start",
        )
        data = self._json(response)
        session_id = data.get("sessionId")
        if not session_id:
            raise SessionError("Chat API did not return a sessionId")
        return DialogueStart(
            session_id=str(session_id),
            greeting_text=(data.get("message") or "").strip(),
            created_at=data.get("createdAt"),
        )

    async def answer(
        self,
        session_id: Optional[str],
        text: str,
        system_question: Optional[str] = None,
    ) -> DialogueResult:
        """Send the user's answer. Not retried: the chat API is not idempotent."""
        if not session_id:
            raise SessionError("answer() called without a session id")
        body: Dict[str, Any] = {"sessionId": session_id, "answer": text}
        if system_question:
            body["systemQuestion"] = system_question
        response = await self._send("POST", "/chat/answer", json=body, session_id=session_id)
        data = self._json(response)
        prompt = (data.get("question") or data.get("message") or "").strip()
        actions = normalize_actions(data.get("availableActions"))
        completed = bool(data.get("isCompleted")) or self._matches_completion(prompt)
        return DialogueResult(
            prompt_text=prompt,
            is_completed=completed,
            next_action=resolve_next_action(actions, completed),
            structured_data=data.get("creditInformation"),
            session_id=data.get("sessionId") or session_id,
            current_state=data.get("currentState"),
            available_actions=actions,
        )

    async def mortgage_offers(self, session_id: str) -> List[OfferRecord]:
        if not session_id:
            raise SessionError("mortgage_offers() called without a session id")
        response = await with_retries(
            lambda: self._send("GET", f"/chat/mortgage-offers/{session_id}", session_id=session_id),
            retries=self.retries,
            backoff=self.backoff,
            label="Mortgage offers",
        )
        return parse_offers(self._json(response))

    async def send_offers_email(self, session_id: str, email: str, message: str = "") -> Dict[str, Any]:
        if not session_id:
            raise SessionError("send_offers_email() called without a session id")
        response = await self._send(
            "POST",
            "/chat/send-offers-email",
            json={"sessionId": session_id, "email": email, "message": message},
        )
        if response.status_code == 204 or not response.content:
            return {"success": True, "message": "Email sent successfully"}
        return self._json(response)

    def _matches_completion(self, prompt: str) -> bool:
        lowered = prompt.lower()
        return any(phrase in lowered for phrase in self.completion_phrases)
