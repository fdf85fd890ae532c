"""Session domain models for the voice relay."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TurnState(str, Enum):
	"""Top-level states of the turn coordinator."""

	IDLE = "idle"
	LISTENING = "listening"
	PROCESSING = "processing"
	SPEAKING = "speaking"
	ERROR = "error"


class NextAction(str, Enum):
	"""Side-channel action requested by the chat API when a conversation ends."""

	EMAIL = "email"
	DISPLAY_OFFERS = "display-offers"
	NONE = "none"


@dataclass
class SessionMessage:
	"""One line of the conversation transcript."""

	role: str
	content: str
	created_at: float = field(default_factory=lambda: time.time())


@dataclass
class Session:
	"""One end-to-end conversation, owned by a single turn coordinator."""

	session_id: Optional[str] = None
	is_active: bool = False
	completed: bool = False
	last_assistant_prompt: Optional[str] = None
	messages: List[SessionMessage] = field(default_factory=list)

	def add_message(self, role: str, content: str) -> SessionMessage:
		message = SessionMessage(role=role, content=content.strip())
		self.messages.append(message)
		return message


@dataclass(frozen=True)
class AudioUnit:
	"""A finished recording of one user utterance."""

	data: bytes
	mime_type: str = "audio/pcm"
	duration_ms: int = 0
	sample_rate: int = 16000

	@property
	def size(self) -> int:
		return len(self.data)


@dataclass(frozen=True)
class TranscriptEvent:
	"""Interim or final recognition result for the current utterance."""

	text: str
	is_final: bool
	timestamp: float = field(default_factory=lambda: time.time())


@dataclass(frozen=True)
class DialogueStart:
	"""Result of opening a conversation with the chat API."""

	session_id: str
	greeting_text: str
	created_at: Optional[str] = None


@dataclass(frozen=True)
class DialogueResult:
	"""Reply from the chat API for one user answer."""

	prompt_text: str
	is_completed: bool = False
	next_action: NextAction = NextAction.NONE
	structured_data: Optional[Dict[str, Any]] = None
	session_id: Optional[str] = None
	current_state: Optional[str] = None
	available_actions: List[str] = field(default_factory=list)
