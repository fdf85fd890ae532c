"""Test doubles for the voice relay gateways and audio plumbing."""

import asyncio
from typing import List, Optional

import numpy as np

from models.session_models import DialogueResult, DialogueStart, NextAction
from services.audio.playback_controller import AudioSink


def pcm_frame(amplitude: float, samples: int = 320) -> bytes:
    """A constant-amplitude PCM16 frame whose normalised RMS equals ``amplitude``."""
    value = int(amplitude * 32767)
    return np.full(samples, value, dtype="<i2").tobytes()


LOUD = pcm_frame(0.3)
QUIET = pcm_frame(0.0)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms / 1000.0
        return self.now


class FakeRecognizer:
    supports_partial_results = False

    def __init__(self, transcripts: Optional[List[object]] = None) -> None:
        self.transcripts = list(transcripts or [])
        self.units = []

    async def transcribe(self, unit):
        self.units.append(unit)
        result = self.transcripts.pop(0) if self.transcripts else ""
        if isinstance(result, Exception):
            raise result
        return result


class FakeDialogue:
    def __init__(self, greeting: str = "Hello", session_id: str = "s1") -> None:
        self.greeting = greeting
        self.session_id = session_id
        self.replies: List[object] = []
        self.start_calls = 0
        self.answers = []
        self.gate: Optional[asyncio.Event] = None

    async def start(self):
        self.start_calls += 1
        return DialogueStart(session_id=self.session_id, greeting_text=self.greeting)

    async def answer(self, session_id, text, system_question=None):
        self.answers.append((session_id, text, system_question))
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else DialogueResult(prompt_text="Anything else?")
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def mortgage_offers(self, session_id):
        return []


class FakeSynthesizer:
    """Yields ``chunks`` per text; blocks on ``gate`` before the last chunk when set."""

    def __init__(self, chunks: int = 2) -> None:
        self.chunks = chunks
        self.texts = []
        self.gate: Optional[asyncio.Event] = None
        self.fail_with: Optional[Exception] = None

    async def stream(self, text):
        self.texts.append(text)
        if self.fail_with is not None:
            raise self.fail_with
        for index in range(self.chunks):
            if self.gate is not None and index == self.chunks - 1:
                await self.gate.wait()
            yield f"{text}:{index}".encode()

    async def synthesize(self, text):
        if self.fail_with is not None:
            raise self.fail_with
        return b"ID3" + text.encode()


class RecordingSink(AudioSink):
    def __init__(self) -> None:
        self.events = []

    async def start(self, handle):
        self.events.append(("start", handle.id))

    async def write(self, handle, chunk):
        self.events.append(("chunk", handle.id, chunk))

    async def end(self, handle):
        self.events.append(("end", handle.id))

    async def abort(self, handle):
        self.events.append(("abort", handle.id))


def result(prompt: str, completed: bool = False, action: NextAction = NextAction.NONE, data=None) -> DialogueResult:
    return DialogueResult(prompt_text=prompt, is_completed=completed, next_action=action, structured_data=data)


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


