"""Per-session turn-taking state machine: listen, recognize, answer, speak."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from models.session_models import AudioUnit, DialogueResult, NextAction, Session, TranscriptEvent, TurnState
from services.audio.capture_controller import CaptureController
from services.audio.interrupt_monitor import InterruptMonitor
from services.audio.playback_controller import PlaybackHandle, PlaybackStatus, SynthesisPlaybackController
from services.errors import (
	DeviceError,
	DialogueError,
	EmptyResultError,
	PlaybackError,
	TransportError,
	VoiceError,
	require_transcript,
)
from services.realtime.plugin_registry import PluginRegistry
from utils.settings import DEFAULT_APOLOGY, DEFAULT_FALLBACK_GREETING

LOGGER = logging.getLogger(__name__)

SignalCallback = Callable[[str, Dict[str, Any]], None]


class TurnCoordinator:
	"""Orchestrate capture, recognition, dialogue and playback for one session.

	Collaborators are injected so the same machine runs behind the websocket
	relay and in tests. Public entry points (``start``, ``say``,
	``handle_transcript``, ``interrupt``, ``stop``) never block on a gateway;
	the work they start runs in tasks owned by the coordinator.

	State changes and user-facing events are reported through ``on_signal``
	as ``(kind, payload)`` pairs and, for lifecycle events, through the
	plugin registry.
	"""

	def __init__(
		self,
		*,
		capture: Optional[CaptureController],
		recognizer,
		dialogue,
		playback: SynthesisPlaybackController,
		interrupt_monitor: Optional[InterruptMonitor] = None,
		plugins: Optional[PluginRegistry] = None,
		session: Optional[Session] = None,
		on_signal: Optional[SignalCallback] = None,
		streaming: bool = False,
		recognition_timeout: float = 10.0,
		dialogue_timeout: float = 10.0,
		error_recovery_ms: int = 3000,
		fallback_greeting: str = DEFAULT_FALLBACK_GREETING,
		apology_message: str = DEFAULT_APOLOGY,
	) -> None:
		if capture is None and not streaming:
			raise ValueError("A capture controller is required unless recognition is streaming.")
		self.capture = capture
		self.recognizer = recognizer
		self.dialogue = dialogue
		self.playback = playback
		self.interrupt_monitor = interrupt_monitor
		self.plugins = plugins or PluginRegistry()
		self.session = session or Session()
		self.on_signal = on_signal
		self.streaming = streaming
		self.recognition_timeout = recognition_timeout
		self.dialogue_timeout = dialogue_timeout
		self.error_recovery_ms = error_recovery_ms
		self.fallback_greeting = fallback_greeting
		self.apology_message = apology_message

		self.state = TurnState.IDLE
		self.barge_ins = 0
		self._awaiting_dialogue = False
		# Bumped by start() and stop(); results of gateway calls begun in an
		# older run are dropped.
		self._run = 0
		self._tasks: Set[asyncio.Task] = set()
		self._recovery: Optional[asyncio.TimerHandle] = None

		playback.on_start = self._on_playback_start
		playback.on_end = self._on_playback_end
		playback.on_cancelled = self._on_playback_cancelled
		playback.on_error = self._on_playback_error

	@property
	def label(self) -> str:
		return self.session.session_id or "new"

	@property
	def completed(self) -> bool:
		return self.session.completed

	def activities(self) -> Set[str]:
		"""Which of capturing / awaiting-dialogue / playing are currently true."""
		active = set()
		if self.capture is not None and self.capture.active:
			active.add("capturing")
		if self._awaiting_dialogue:
			active.add("awaiting-dialogue")
		if self.playback.playing:
			active.add("playing")
		return active

	# Public entry points

	def start(self) -> bool:
		"""Open the session: greet a new conversation or resume an existing one."""
		if self.session.is_active:
			LOGGER.info("[%s] start ignored, session already active", self.label)
			return False
		self._cancel_recovery()
		self._run += 1
		self.session.is_active = True
		self.session.completed = False
		self._spawn(self._open())
		return True

	def say(self, text: str) -> bool:
		"""Speak arbitrary text through the one playback channel."""
		text = (text or "").strip()
		if not text or self.state in (TurnState.PROCESSING, TurnState.SPEAKING):
			return False
		self._spawn(self._say(text))
		return True

	def handle_transcript(self, event: TranscriptEvent) -> None:
		"""Entry point for streaming recognition results."""
		text = event.text.strip()
		if not text:
			return
		if not event.is_final:
			self._signal("partial-transcript", {"text": text})
			self._emit("onPartialTranscript", {"text": text})
			if self.state == TurnState.SPEAKING:
				self.interrupt()
			return
		if self.state == TurnState.SPEAKING:
			self.interrupt()
		if self.state != TurnState.LISTENING or not self.session.is_active:
			LOGGER.info("[%s] final transcript ignored while %s", self.label, self.state.value)
			return
		self._spawn(self._process(text))

	def interrupt(self) -> bool:
		"""Barge-in requested from outside the interrupt monitor."""
		if self.state != TurnState.SPEAKING:
			return False
		self._stop_interrupt_monitor()
		self._barge_in()
		return True

	def stop(self) -> None:
		"""Stop whatever phase is active and return to idle.

		An in-flight gateway call is not cancelled; its result is discarded
		when it arrives.
		"""
		was_active = self.session.is_active
		self.session.is_active = False
		self._run += 1
		self._awaiting_dialogue = False
		self._cancel_recovery()
		self._stop_interrupt_monitor()
		if self.capture is not None:
			self.capture.stop(discard=True)
		self.playback.cancel()
		self._set_state(TurnState.IDLE)
		if was_active:
			self._signal("session-stopped", {"sessionId": self.session.session_id})

	def fail(self, exc: VoiceError) -> None:
		"""Report a fatal error raised outside the coordinator's own tasks."""
		self._fail(exc)

	async def drain(self) -> None:
		"""Wait until every task started by the coordinator has finished."""
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)

	async def close(self) -> None:
		self.stop()
		if self.capture is not None:
			await self.capture.close()
		await self.playback.close()
		await self.drain()
		await self.plugins.close()

	# Turn pipeline

	async def _open(self) -> None:
		if self.session.session_id:
			LOGGER.info("[%s] resuming session", self.label)
			self._signal("session-started", {"sessionId": self.session.session_id, "resumed": True})
			self._listen()
			return

		run = self._run
		self._set_state(TurnState.PROCESSING)
		self._awaiting_dialogue = True
		try:
			opened = await asyncio.wait_for(self.dialogue.start(), self.dialogue_timeout)
		except asyncio.TimeoutError:
			self._fail_run(run, DialogueError(f"Chat start timed out after {self.dialogue_timeout}s"))
			return
		except VoiceError as exc:
			self._fail_run(run, exc)
			return
		finally:
			if run == self._run:
				self._awaiting_dialogue = False

		if run != self._run or not self.session.is_active:
			LOGGER.info("Session stopped while opening; discarding greeting")
			return
		self.session.session_id = opened.session_id
		greeting = opened.greeting_text or self.fallback_greeting
		LOGGER.info("[%s] session opened", self.label)
		self._signal("session-started", {"sessionId": opened.session_id, "message": greeting, "resumed": False})
		await self._respond(greeting)

	async def _say(self, text: str) -> None:
		if self.capture is not None:
			await self.capture.close()
		await self._respond(text)

	def _listen(self) -> None:
		if not self.session.is_active or self.session.completed:
			return
		if not self.streaming:
			try:
				self.capture.start(self._on_audio)
			except DeviceError as exc:
				self._report(exc)
				return
		self._set_state(TurnState.LISTENING)

	def _on_audio(self, unit: AudioUnit) -> None:
		self._spawn(self._handle_audio(unit))

	async def _handle_audio(self, unit: AudioUnit) -> None:
		if self.state != TurnState.LISTENING or not self.session.is_active:
			return
		run = self._run
		try:
			raw = await asyncio.wait_for(self.recognizer.transcribe(unit), self.recognition_timeout)
			text = require_transcript(raw)
		except EmptyResultError:
			if run != self._run:
				return
			LOGGER.info("[%s] nothing recognized in %d bytes, listening again", self.label, unit.size)
			if self.state == TurnState.LISTENING:
				self._listen()
			return
		except asyncio.TimeoutError:
			self._fail_run(run, TransportError(f"Recognition timed out after {self.recognition_timeout}s", source="stt"))
			return
		except VoiceError as exc:
			self._fail_run(run, exc)
			return
		if run != self._run:
			LOGGER.info("[%s] transcript from a stopped run discarded", self.label)
			return
		await self._process(text)

	async def _process(self, text: str) -> None:
		if self.state != TurnState.LISTENING or not self.session.is_active:
			return
		run = self._run
		self.session.add_message("user", text)
		self._signal("final-transcript", {"text": text})
		self._emit("onTranscript", {"text": text, "isFinal": True})

		self._set_state(TurnState.PROCESSING)
		self._awaiting_dialogue = True
		try:
			result: DialogueResult = await asyncio.wait_for(
				self.dialogue.answer(
					self.session.session_id,
					text,
					system_question=self.session.last_assistant_prompt,
				),
				self.dialogue_timeout,
			)
		except asyncio.TimeoutError:
			self._fail_run(run, DialogueError(f"Chat answer timed out after {self.dialogue_timeout}s"))
			return
		except VoiceError as exc:
			self._fail_run(run, exc)
			return
		finally:
			if run == self._run:
				self._awaiting_dialogue = False

		if run != self._run or not self.session.is_active or self.state != TurnState.PROCESSING:
			LOGGER.info("[%s] dialogue reply arrived after stop; discarded", self.label)
			return
		if result.session_id:
			self.session.session_id = result.session_id
		await self._respond(result.prompt_text, result)

	async def _respond(self, text: str, result: Optional[DialogueResult] = None) -> None:
		completed = bool(result and result.is_completed)
		if text:
			self.session.last_assistant_prompt = text
			self.session.add_message("assistant", text)
			self._signal("assistant-message", {"text": text, "isCompleted": completed})
			self._set_state(TurnState.SPEAKING)
			handle = self.playback.speak(text)
			self._start_interrupt_monitor()
			status = await handle.wait()
			self._stop_interrupt_monitor()
			if status is PlaybackStatus.CANCELLED or self.state != TurnState.SPEAKING:
				return
		self._set_state(TurnState.IDLE)
		if completed:
			self._complete(result)
			return
		self._listen()

	def _complete(self, result: DialogueResult) -> None:
		self.session.completed = True
		LOGGER.info("[%s] conversation completed (next action: %s)", self.label, result.next_action.value)
		if result.next_action is NextAction.EMAIL:
			self._signal("action-required", {"action": NextAction.EMAIL.value, "sessionId": self.session.session_id})
		elif result.next_action is NextAction.DISPLAY_OFFERS:
			self._signal(
				"results-ready",
				{"sessionId": self.session.session_id, "creditInformation": result.structured_data},
			)

	# Barge-in

	def _start_interrupt_monitor(self) -> None:
		if self.interrupt_monitor is None or self.state != TurnState.SPEAKING:
			return
		try:
			self.interrupt_monitor.start(self._on_monitor_interrupt)
		except DeviceError as exc:
			LOGGER.warning("[%s] barge-in detection unavailable: %s", self.label, exc)

	def _stop_interrupt_monitor(self) -> None:
		if self.interrupt_monitor is not None:
			self.interrupt_monitor.stop()

	def _on_monitor_interrupt(self) -> None:
		if self.state == TurnState.SPEAKING:
			self._barge_in()

	def _barge_in(self) -> None:
		handle = self.playback.current
		if handle is not None:
			self.playback.cancel(handle)
		self.barge_ins += 1
		LOGGER.info("[%s] barge-in, playback cancelled", self.label)
		self._set_state(TurnState.LISTENING)
		self._signal("user-speaking", {"speaking": True})
		self._emit("onUserStartedSpeaking", {"sessionId": self.session.session_id})
		if self.streaming:
			return
		try:
			self.capture.start(self._on_audio)
		except DeviceError as exc:
			self._report(exc)

	# Playback callbacks

	def _on_playback_start(self, handle: PlaybackHandle) -> None:
		self._emit("onTTSStart", {"text": handle.text})

	def _on_playback_end(self, handle: PlaybackHandle) -> None:
		self._emit("onTTSStop", {"cancelled": False, "degraded": handle.degraded})

	def _on_playback_cancelled(self, handle: PlaybackHandle) -> None:
		self._emit("onTTSStop", {"cancelled": True, "degraded": False})

	def _on_playback_error(self, handle: PlaybackHandle, exc: PlaybackError) -> None:
		self._report(exc)

	# Failure handling

	def _report(self, exc: VoiceError) -> None:
		LOGGER.warning("[%s] %s error: %s", self.label, exc.source, exc)
		self._signal("error", {"source": exc.source, "message": exc.user_message})
		self._emit("onError", {"source": exc.source, "message": exc.user_message, "detail": str(exc)})

	def _fail(self, exc: VoiceError) -> None:
		if not self.session.is_active and self.state == TurnState.IDLE:
			LOGGER.info("[%s] failure after stop ignored: %s", self.label, exc)
			return
		LOGGER.error("[%s] turn failed: %s", self.label, exc)
		self.session.is_active = False
		self._stop_interrupt_monitor()
		if self.capture is not None:
			self.capture.stop(discard=True)
		self.playback.cancel()
		self._set_state(TurnState.ERROR)
		self._report(exc)
		if self.apology_message:
			self._signal("assistant-message", {"text": self.apology_message, "isCompleted": False})
		self._cancel_recovery()
		self._recovery = asyncio.get_running_loop().call_later(self.error_recovery_ms / 1000.0, self._recover)

	def _fail_run(self, run: int, exc: VoiceError) -> None:
		if run != self._run:
			LOGGER.info("[%s] failure from a stopped run discarded: %s", self.label, exc)
			return
		self._fail(exc)

	def _recover(self) -> None:
		self._recovery = None
		if self.state == TurnState.ERROR:
			LOGGER.info("[%s] recovered from error", self.label)
			self._set_state(TurnState.IDLE)

	def _cancel_recovery(self) -> None:
		if self._recovery is not None:
			self._recovery.cancel()
			self._recovery = None

	# Plumbing

	def _set_state(self, state: TurnState) -> None:
		if state == self.state:
			return
		previous, self.state = self.state, state
		LOGGER.info("[%s] %s -> %s", self.label, previous.value, state.value)
		self._signal("state-changed", {"state": state.value, "previous": previous.value})

	def _signal(self, kind: str, payload: Dict[str, Any]) -> None:
		if self.on_signal is None:
			return
		try:
			self.on_signal(kind, payload)
		except Exception:
			LOGGER.exception("Signal handler failed for %s", kind)

	def _emit(self, event: str, data: Any) -> None:
		self._spawn(self.plugins.emit(event, data))

	def _spawn(self, coro) -> asyncio.Task:
		task = asyncio.get_running_loop().create_task(coro)
		self._tasks.add(task)
		task.add_done_callback(self._task_done)
		return task

	def _task_done(self, task: asyncio.Task) -> None:
		self._tasks.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			LOGGER.error("[%s] coordinator task failed", self.label, exc_info=exc)
