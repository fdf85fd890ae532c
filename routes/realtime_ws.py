"""WebSocket endpoint for full-duplex voice sessions."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, WebSocket
from starlette.websockets import WebSocketDisconnect

from services.realtime.session_store import SessionRegistry
from services.realtime.ws_session import VoiceSessionHandler

router = APIRouter()


def _require_registry(websocket: WebSocket) -> SessionRegistry:
	registry = getattr(websocket.app.state, "session_registry", None)
	if registry is None:
		raise HTTPException(status_code=500, detail="Session registry unavailable")
	return registry


@router.websocket("/ws")
async def voice_socket(websocket: WebSocket, registry: SessionRegistry = Depends(_require_registry)):
	"""Run one voice session for the lifetime of the websocket."""
	await websocket.accept()
	state = websocket.app.state
	handler = VoiceSessionHandler(
		websocket,
		state.settings,
		recognizer=state.recognizer,
		dialogue=state.chat_client,
		synthesizer=state.synthesizer,
	)
	connection_id = registry.register(handler)
	await handler.open(connection_id)
	try:
		while True:
			try:
				raw = await websocket.receive_text()
			except WebSocketDisconnect:
				break
			except KeyError:
				# Binary frame: receive_text() finds no "text" key.
				handler.post("error", {"source": "transport", "message": "Frames must be JSON text"})
				continue
			try:
				payload = json.loads(raw)
			except json.JSONDecodeError:
				handler.post("error", {"source": "transport", "message": "Payload must be JSON"})
				continue
			if not isinstance(payload, dict):
				handler.post("error", {"source": "transport", "message": "Payload must be a JSON object"})
				continue
			await handler.handle(payload)
	finally:
		registry.remove(connection_id)
		await handler.close()
	try:
		await websocket.close()
	except RuntimeError:
		pass
