"""Named handler bundles invoked on voice session lifecycle events."""

from __future__ import annotations

import asyncio
import contextvars
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

LOGGER = logging.getLogger(__name__)

_DISPATCHING: contextvars.ContextVar = contextvars.ContextVar("plugin_dispatching", default=None)

EVENTS = (
	"onTranscript",
	"onPartialTranscript",
	"onTTSStart",
	"onTTSStop",
	"onUserStartedSpeaking",
	"onError",
)


@dataclass(frozen=True)
class PluginContext:
	"""Passed to every handler next to the event data."""

	plugin: str
	event: str
	timestamp: float


class PluginRegistry:
	"""Dispatch events to registered plugins in submission order.

	``emit`` queues the event and returns once that event has been handled:
	every handler has run and every coroutine returned by a handler has been
	awaited. A failing handler is logged and never stops the others.
	"""

	def __init__(self) -> None:
		self._plugins: Dict[str, Dict[str, Callable[..., Any]]] = {}
		self._queue: Deque[Tuple[str, Any, asyncio.Future]] = deque()
		self._worker: Optional[asyncio.Task] = None
		self._emitted: Dict[str, int] = {event: 0 for event in EVENTS}
		self._failures = 0

	def register(self, name: str, **handlers: Callable[..., Any]) -> None:
		"""Register (or replace) the plugin ``name`` with handlers keyed by event name."""
		if not name:
			raise ValueError("Plugin name is required.")
		unknown = [key for key in handlers if key not in EVENTS]
		if unknown:
			raise ValueError(f"Unknown plugin events: {', '.join(sorted(unknown))}")
		for key, handler in handlers.items():
			if not callable(handler):
				raise ValueError(f"Handler for {key} must be callable.")
		if name in self._plugins:
			LOGGER.info("Replacing plugin %s", name)
		self._plugins[name] = dict(handlers)

	def unregister(self, name: str) -> bool:
		return self._plugins.pop(name, None) is not None

	def names(self) -> List[str]:
		return list(self._plugins)

	def stats(self) -> Dict[str, Any]:
		return {
			"plugins": len(self._plugins),
			"handlers": {event: sum(1 for bundle in self._plugins.values() if event in bundle) for event in EVENTS},
			"emitted": dict(self._emitted),
			"failures": self._failures,
			"queued": len(self._queue),
		}

	def clear(self) -> None:
		self._plugins.clear()

	async def emit(self, event: str, data: Any = None) -> None:
		if event not in EVENTS:
			raise ValueError(f"Unknown plugin event: {event}")
		loop = asyncio.get_running_loop()
		future = loop.create_future()
		self._queue.append((event, data, future))
		if self._worker is None or self._worker.done():
			self._worker = loop.create_task(self._drain())
		if _DISPATCHING.get() is self:
			# Emitted from inside a handler: runs after the current event.
			return
		await future

	async def close(self) -> None:
		worker = self._worker
		if worker is not None and not worker.done():
			await asyncio.gather(worker, return_exceptions=True)
		self.clear()

	async def _drain(self) -> None:
		_DISPATCHING.set(self)
		while self._queue:
			event, data, future = self._queue.popleft()
			try:
				await self._dispatch(event, data)
			finally:
				if not future.done():
					future.set_result(None)

	async def _dispatch(self, event: str, data: Any) -> None:
		self._emitted[event] += 1
		pending = []
		names = []
		for name, bundle in list(self._plugins.items()):
			handler = bundle.get(event)
			if handler is None:
				continue
			context = PluginContext(plugin=name, event=event, timestamp=time.time())
			try:
				result = handler(data, context)
			except Exception:
				self._failures += 1
				LOGGER.exception("Plugin %s failed on %s", name, event)
				continue
			if inspect.isawaitable(result):
				pending.append(result)
				names.append(name)
		if not pending:
			return
		results = await asyncio.gather(*pending, return_exceptions=True)
		for name, result in zip(names, results):
			if isinstance(result, Exception):
				self._failures += 1
				LOGGER.error("Plugin %s failed on %s: %s", name, event, result)


def logging_plugin(session_label: str) -> Dict[str, Callable[..., Any]]:
	"""Handlers that trace every lifecycle event at DEBUG."""

	def _trace(data: Any, context: PluginContext) -> None:
		LOGGER.debug("[%s] %s %r", session_label, context.event, data)

	return {event: _trace for event in EVENTS}
