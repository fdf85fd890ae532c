"""Dispatch voice websocket messages to the session's turn coordinator."""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import WebSocket

from models.session_models import Session, TurnState
from services.audio.capture_controller import CaptureController
from services.audio.interrupt_monitor import InterruptMonitor
from services.audio.microphone import StreamMicrophone
from services.audio.playback_controller import AudioSink, PlaybackHandle, SynthesisPlaybackController
from services.errors import VoiceError
from services.realtime.plugin_registry import PluginRegistry, logging_plugin
from services.realtime.turn_coordinator import TurnCoordinator
from utils.settings import Settings

LOGGER = logging.getLogger(__name__)


def envelope(kind: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
	"""Build an outbound message: ``{type, ...payload, timestamp}`` in epoch milliseconds."""
	message = {"type": kind}
	message.update(payload or {})
	message["type"] = kind
	message["timestamp"] = int(time.time() * 1000)
	return message


class WebSocketAudioSink(AudioSink):
	"""Relay synthesized audio to the browser as base64 ``tts-*`` frames."""

	def __init__(self, post) -> None:
		self.post = post

	async def start(self, handle: PlaybackHandle) -> None:
		self.post("tts-start", {"playbackId": handle.id, "text": handle.text})

	async def write(self, handle: PlaybackHandle, chunk: bytes) -> None:
		self.post("tts-chunk", {"playbackId": handle.id, "audio": {"data": base64.b64encode(chunk).decode("ascii")}})

	async def end(self, handle: PlaybackHandle) -> None:
		self.post("tts-end", {"playbackId": handle.id, "cancelled": False})

	async def abort(self, handle: PlaybackHandle) -> None:
		self.post("tts-end", {"playbackId": handle.id, "cancelled": True})


class VoiceSessionHandler:
	"""Own one connection's coordinator and route its websocket traffic.

	Outbound messages go through a queue drained by a single writer task,
	so envelopes reach the socket in the order they were produced.
	"""

	def __init__(
		self,
		websocket: WebSocket,
		settings: Settings,
		*,
		recognizer,
		dialogue,
		synthesizer,
	) -> None:
		self.websocket = websocket
		self.settings = settings
		self.dialogue = dialogue
		self.recognizer = recognizer
		self.streaming = bool(settings.stt_streaming and hasattr(recognizer, "open_stream"))
		self.stream = None
		self._outbox: asyncio.Queue = asyncio.Queue()
		self._writer: Optional[asyncio.Task] = None
		self._side_tasks = set()

		self.microphone = StreamMicrophone()
		self.plugins = PluginRegistry()
		self.capture = None
		if not self.streaming:
			self.capture = CaptureController(
				self.microphone,
				threshold=settings.vad_threshold,
				silence_delay_ms=settings.silence_delay_ms,
				max_duration_ms=settings.max_recording_ms,
				sample_rate=settings.sample_rate,
			)
		self.playback = SynthesisPlaybackController(
			synthesizer,
			WebSocketAudioSink(self.post),
			timeout=settings.gateway_timeout_s * 3,
		)
		self.coordinator = TurnCoordinator(
			capture=self.capture,
			recognizer=recognizer,
			dialogue=dialogue,
			playback=self.playback,
			interrupt_monitor=InterruptMonitor(self.microphone, threshold=settings.interrupt_threshold),
			plugins=self.plugins,
			session=Session(),
			on_signal=self._on_signal,
			streaming=self.streaming,
			recognition_timeout=settings.gateway_timeout_s * (settings.gateway_retries + 1),
			dialogue_timeout=settings.gateway_timeout_s * (settings.gateway_retries + 1),
			error_recovery_ms=settings.error_recovery_ms,
			fallback_greeting=settings.fallback_greeting,
			apology_message=settings.apology_message,
		)

	async def open(self, connection_id: str = "voice") -> None:
		self._writer = asyncio.get_running_loop().create_task(self._write_loop())
		self.plugins.register("logger", **logging_plugin(connection_id))

	async def handle(self, payload: Dict[str, Any]) -> None:
		"""Process a single inbound websocket payload."""
		message_type = payload.get("type")
		try:
			if message_type == "start-session":
				await self._start_session(payload)
			elif message_type == "stop-session":
				await self._stop_session()
			elif message_type == "audio-data":
				await self._audio(payload)
			elif message_type == "user-started-speaking":
				self.coordinator.interrupt()
			elif message_type == "user-stopped-speaking":
				if self.capture is not None:
					self.capture.stop()
			elif message_type == "tts-request":
				self._tts_request(payload)
			else:
				raise ValueError(f"Unsupported message type: {message_type!r}")
		except VoiceError as exc:
			self.post("error", {"source": exc.source, "message": exc.user_message})
		except ValueError as exc:
			self.post("error", {"source": "transport", "message": str(exc)})

	async def _start_session(self, payload: Dict[str, Any]) -> None:
		session = self.coordinator.session
		if session.is_active:
			raise ValueError("Session already started.")
		requested = payload.get("sessionId")
		if requested and isinstance(requested, str):
			session.session_id = requested
		if self.streaming and self.stream is None:
			self.stream = self.recognizer.open_stream(self.coordinator.handle_transcript, on_error=self._on_stream_error)
			await self.stream.start()
		self.coordinator.start()

	async def _stop_session(self) -> None:
		self.coordinator.stop()
		if self.stream is not None:
			stream, self.stream = self.stream, None
			await stream.close()

	async def _audio(self, payload: Dict[str, Any]) -> None:
		raw = payload.get("audio")
		if isinstance(raw, dict):
			raw = raw.get("data")
		if not raw or not isinstance(raw, str):
			raise ValueError("audio-data requires a base64 'audio' field.")
		try:
			frame = base64.b64decode(raw, validate=True)
		except (binascii.Error, ValueError) as exc:
			raise ValueError("audio-data is not valid base64.") from exc
		self.microphone.push(frame)
		if self.stream is not None:
			await self.stream.send(frame)

	def _tts_request(self, payload: Dict[str, Any]) -> None:
		text = (payload.get("text") or "").strip()
		if not text:
			raise ValueError("tts-request requires text.")
		if not self.coordinator.say(text):
			raise ValueError(f"Cannot speak while {self.coordinator.state.value}.")

	def _on_stream_error(self, error: VoiceError) -> None:
		"""The recognition stream gave up: fail the turn and drop the dead stream.

		Runs inside the stream's own task, so the stream is closed from a
		separate task; the next ``start-session`` opens a fresh one.
		"""
		stream, self.stream = self.stream, None
		if self.coordinator.state != TurnState.ERROR:
			self.coordinator.fail(error)
		if stream is not None:
			self._track(asyncio.get_running_loop().create_task(stream.close()))

	def _on_signal(self, kind: str, payload: Dict[str, Any]) -> None:
		if kind == "results-ready":
			self._track(asyncio.get_running_loop().create_task(self._results_ready(payload)))
			return
		self.post(kind, payload)

	def _track(self, task: asyncio.Task) -> None:
		self._side_tasks.add(task)
		task.add_done_callback(self._side_tasks.discard)

	async def _results_ready(self, payload: Dict[str, Any]) -> None:
		offers = []
		session_id = payload.get("sessionId")
		try:
			offers = [offer.to_json() for offer in await self.dialogue.mortgage_offers(session_id)]
		except VoiceError as exc:
			LOGGER.error("Could not fetch offers for %s: %s", session_id, exc)
			self.post("error", {"source": exc.source, "message": "Could not load the offers."})
		self.post("results-ready", {**payload, "offers": offers})

	def post(self, kind: str, payload: Optional[Dict[str, Any]] = None) -> None:
		self._outbox.put_nowait(envelope(kind, payload))

	async def _write_loop(self) -> None:
		while True:
			message = await self._outbox.get()
			try:
				await self.websocket.send_text(json.dumps(message))
			except Exception as exc:
				LOGGER.info("Dropping outbound %s, socket closed: %s", message.get("type"), exc)
				return

	async def flush(self) -> None:
		"""Wait until every queued envelope has been written."""
		while not self._outbox.empty() and self._writer is not None and not self._writer.done():
			await asyncio.sleep(0)

	async def close(self) -> None:
		await self.coordinator.close()
		if self.stream is not None:
			stream, self.stream = self.stream, None
			await stream.close()
		self.microphone.close()
		for task in list(self._side_tasks):
			task.cancel()
		await self.flush()
		if self._writer is not None:
			self._writer.cancel()
			try:
				await self._writer
			except asyncio.CancelledError:
				pass
