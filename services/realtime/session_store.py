"""In-memory registry of live voice sessions, one per websocket connection."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional
from uuid import uuid4

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
	"""Map connection ids to their session handlers.

	Handlers share nothing with each other; the registry only tracks them so
	they can be counted and torn down on shutdown.
	"""

	def __init__(self) -> None:
		self._handlers: Dict[str, object] = {}

	def __len__(self) -> int:
		return len(self._handlers)

	def register(self, handler, connection_id: Optional[str] = None) -> str:
		"""Add a handler and return the connection id it is stored under."""
		connection_id = connection_id or uuid4().hex
		if connection_id in self._handlers:
			raise KeyError(f"Connection {connection_id} already registered")
		self._handlers[connection_id] = handler
		LOGGER.info("Voice session %s registered (%d live)", connection_id, len(self._handlers))
		return connection_id

	def get(self, connection_id: str):
		"""Return a handler or raise KeyError if missing."""
		handler = self._handlers.get(connection_id)
		if handler is None:
			raise KeyError(f"Connection {connection_id} not found")
		return handler

	def remove(self, connection_id: str):
		handler = self._handlers.pop(connection_id, None)
		if handler is not None:
			LOGGER.info("Voice session %s removed (%d live)", connection_id, len(self._handlers))
		return handler

	def connection_ids(self) -> List[str]:
		return list(self._handlers)

	async def close_all(self) -> None:
		"""Destroy every live handler; used on application shutdown."""
		for connection_id in self.connection_ids():
			handler = self.remove(connection_id)
			if handler is None:
				continue
			try:
				await handler.close()
			except Exception:
				LOGGER.exception("Failed to close voice session %s", connection_id)
