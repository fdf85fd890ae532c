import asyncio

import pytest

from fakes import LOUD, FakeDialogue, FakeRecognizer, result, settle
from models.session_models import NextAction, Session, TranscriptEvent, TurnState
from services.audio.playback_controller import PlaybackStatus
from services.errors import AuthError, DialogueError, PlaybackError, SessionError, TransportError
from services.realtime.turn_coordinator import TurnCoordinator


class Harness:
    """Coordinator wired to fakes, recording every signal and plugin event."""

    def __init__(self, capture, playback, monitor, *, recognizer=None, dialogue=None, streaming=False, session=None):
        self.signals = []
        self.violations = []
        self.plugin_events = []
        self.recognizer = recognizer or FakeRecognizer()
        self.dialogue = dialogue or FakeDialogue()
        self.coordinator = TurnCoordinator(
            capture=None if streaming else capture,
            recognizer=self.recognizer,
            dialogue=self.dialogue,
            playback=playback,
            interrupt_monitor=monitor,
            session=session,
            on_signal=self._on_signal,
            streaming=streaming,
            error_recovery_ms=50,
            apology_message="Sorry!",
        )
        self.coordinator.plugins.register(
            "recorder",
            onTranscript=lambda data, ctx: self.plugin_events.append(ctx.event),
            onTTSStart=lambda data, ctx: self.plugin_events.append(ctx.event),
            onTTSStop=lambda data, ctx: self.plugin_events.append((ctx.event, data["cancelled"])),
            onUserStartedSpeaking=lambda data, ctx: self.plugin_events.append(ctx.event),
            onError=lambda data, ctx: self.plugin_events.append((ctx.event, data["source"])),
        )

    def _on_signal(self, kind, payload):
        self.signals.append((kind, payload))
        if len(self.coordinator.activities()) > 1:
            self.violations.append((kind, set(self.coordinator.activities())))

    def kinds(self):
        return [kind for kind, _ in self.signals]

    def payloads(self, kind):
        return [payload for signal_kind, payload in self.signals if signal_kind == kind]

    async def run(self):
        await settle()
        await self.coordinator.drain()
        await settle()


class GatedRecognizer(FakeRecognizer):
    """Holds every transcription until ``gate`` is set."""

    def __init__(self, transcripts):
        super().__init__(transcripts)
        self.gate = asyncio.Event()

    async def transcribe(self, unit):
        await self.gate.wait()
        return await super().transcribe(unit)


async def finish_utterance(capture, microphone, harness):
    microphone.push(LOUD)
    await settle()
    capture.stop()
    await harness.run()


@pytest.fixture
def harness(capture, playback, monitor):
    return Harness(capture, playback, monitor)


class TestConversationLoop:
    @pytest.mark.asyncio
    async def test_greeting_then_answer_then_next_question(self, harness, capture, microphone, synthesizer):
        harness.recognizer.transcripts = ["I need a loan"]
        harness.dialogue.replies = [result("How much?")]

        assert harness.coordinator.start()
        await harness.run()
        assert synthesizer.texts == ["Hello"]
        assert harness.coordinator.session.session_id == "s1"
        assert harness.coordinator.state == TurnState.LISTENING
        assert microphone.holder == "capture"

        await finish_utterance(capture, microphone, harness)

        assert harness.dialogue.answers == [("s1", "I need a loan", "Hello")]
        assert synthesizer.texts == ["Hello", "How much?"]
        assert harness.coordinator.state == TurnState.LISTENING
        assert harness.coordinator.session.last_assistant_prompt == "How much?"
        assert [m.role for m in harness.coordinator.session.messages] == ["assistant", "user", "assistant"]
        assert harness.violations == []
        states = [payload["state"] for payload in harness.payloads("state-changed")]
        assert states == [
            "processing", "speaking", "idle", "listening",
            "processing", "speaking", "idle", "listening",
        ]
        assert harness.payloads("session-started")[0]["sessionId"] == "s1"
        assert "onTranscript" in harness.plugin_events
        assert harness.plugin_events.count("onTTSStart") == 2

    @pytest.mark.asyncio
    async def test_empty_transcript_listens_again_without_dialogue(self, harness, capture, microphone):
        harness.recognizer.transcripts = ["   "]
        harness.coordinator.start()
        await harness.run()
        starts = capture.start_count

        await finish_utterance(capture, microphone, harness)

        assert harness.dialogue.answers == []
        assert harness.coordinator.state == TurnState.LISTENING
        assert capture.start_count == starts + 1
        assert "error" not in harness.kinds()

    @pytest.mark.asyncio
    async def test_near_empty_audio_unit(self, capture, playback, monitor, microphone):
        harness = Harness(capture, playback, monitor, session=Session(session_id="s1"))
        harness.coordinator.start()
        await harness.run()
        capture.stop()
        await harness.run()
        assert harness.recognizer.units[0].size == 0
        assert harness.dialogue.answers == []
        assert harness.coordinator.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_completed_conversation_stops_listening(self, harness, capture, microphone):
        harness.recognizer.transcripts = ["yes"]
        harness.dialogue.replies = [
            result("Preparing your offers", completed=True, action=NextAction.DISPLAY_OFFERS, data={"amount": 1})
        ]
        harness.coordinator.start()
        await harness.run()
        await finish_utterance(capture, microphone, harness)
        starts = capture.start_count

        await asyncio.sleep(0.05)
        assert capture.start_count == starts
        assert harness.coordinator.state == TurnState.IDLE
        assert harness.coordinator.completed
        ready = harness.payloads("results-ready")
        assert ready == [{"sessionId": "s1", "creditInformation": {"amount": 1}}]
        assert not microphone.busy

    @pytest.mark.asyncio
    async def test_email_action_is_signalled(self, harness, capture, microphone):
        harness.recognizer.transcripts = ["send it"]
        harness.dialogue.replies = [result("I will email you", completed=True, action=NextAction.EMAIL)]
        harness.coordinator.start()
        await harness.run()
        await finish_utterance(capture, microphone, harness)
        assert harness.payloads("action-required") == [{"action": "email", "sessionId": "s1"}]
        assert harness.payloads("results-ready") == []

    @pytest.mark.asyncio
    async def test_resume_existing_session_skips_greeting(self, capture, playback, monitor, synthesizer):
        harness = Harness(capture, playback, monitor, session=Session(session_id="abc"))
        harness.coordinator.start()
        await harness.run()
        assert harness.dialogue.start_calls == 0
        assert synthesizer.texts == []
        assert harness.coordinator.state == TurnState.LISTENING
        assert harness.payloads("session-started") == [{"sessionId": "abc", "resumed": True}]

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, harness):
        assert harness.coordinator.start()
        assert not harness.coordinator.start()
        await harness.run()
        assert harness.dialogue.start_calls == 1


class TestBargeIn:
    @pytest.mark.asyncio
    async def test_speech_during_playback_cancels_and_listens(self, harness, capture, microphone, synthesizer, clock):
        synthesizer.gate = asyncio.Event()
        harness.coordinator.start()
        await settle(20)
        assert harness.coordinator.state == TurnState.SPEAKING
        assert microphone.holder == "interrupt"
        handle = harness.coordinator.playback.current
        starts = capture.start_count

        clock.now = 1.2
        microphone.push(LOUD)
        await settle()

        assert clock.now < 1.21
        assert handle.status is PlaybackStatus.CANCELLED
        assert harness.coordinator.state == TurnState.LISTENING
        assert capture.start_count == starts + 1
        assert microphone.holder == "capture"
        assert harness.coordinator.barge_ins == 1
        assert harness.payloads("user-speaking") == [{"speaking": True}]

        await harness.run()
        assert ("onTTSStop", True) in harness.plugin_events
        assert "onUserStartedSpeaking" in harness.plugin_events
        assert ("onTTSStop", False) not in harness.plugin_events
        assert harness.coordinator.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_quiet_frames_do_not_interrupt(self, harness, microphone, synthesizer):
        synthesizer.gate = asyncio.Event()
        harness.coordinator.start()
        await settle(20)
        microphone.push(b"\x00\x00" * 160)
        await settle()
        assert harness.coordinator.state == TurnState.SPEAKING
        synthesizer.gate.set()
        await harness.run()
        assert harness.coordinator.state == TurnState.LISTENING
        assert harness.coordinator.barge_ins == 0

    @pytest.mark.asyncio
    async def test_external_interrupt(self, harness, capture, microphone, synthesizer):
        synthesizer.gate = asyncio.Event()
        harness.coordinator.start()
        await settle(20)
        handle = harness.coordinator.playback.current

        assert harness.coordinator.interrupt()
        assert handle.status is PlaybackStatus.CANCELLED
        assert harness.coordinator.state == TurnState.LISTENING
        assert microphone.holder == "capture"
        assert not harness.coordinator.interrupt()
        await harness.run()

    @pytest.mark.asyncio
    async def test_barge_in_answer_is_processed(self, harness, capture, microphone, synthesizer):
        synthesizer.gate = asyncio.Event()
        harness.recognizer.transcripts = ["stop, I have a question"]
        harness.coordinator.start()
        await settle(20)
        harness.coordinator.interrupt()
        synthesizer.gate.set()
        await finish_utterance(capture, microphone, harness)
        assert harness.dialogue.answers[0][1] == "stop, I have a question"

    @pytest.mark.asyncio
    async def test_stop_during_playback_is_not_a_barge_in(self, harness, synthesizer):
        synthesizer.gate = asyncio.Event()
        harness.coordinator.start()
        await settle(20)
        assert harness.coordinator.state == TurnState.SPEAKING

        harness.coordinator.stop()
        await harness.run()
        assert "user-speaking" not in harness.kinds()
        assert harness.coordinator.barge_ins == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_dialogue_error_enters_error_and_recovers(self, harness, capture, microphone):
        harness.recognizer.transcripts = ["hello"]
        harness.dialogue.replies = [DialogueError("chat down")]
        harness.coordinator.start()
        await harness.run()
        await finish_utterance(capture, microphone, harness)

        assert harness.coordinator.state == TurnState.ERROR
        errors = harness.payloads("error")
        assert errors[-1]["source"] == "dialogue"
        assert errors[-1]["message"] == DialogueError.default_user_message
        assert harness.payloads("assistant-message")[-1]["text"] == "Sorry!"
        assert ("onError", "dialogue") in harness.plugin_events
        assert not microphone.busy

        await asyncio.sleep(0.1)
        assert harness.coordinator.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_session_error_surfaces_apology(self, harness, capture, microphone):
        harness.recognizer.transcripts = ["hello"]
        harness.dialogue.replies = [SessionError("no session")]
        harness.coordinator.start()
        await harness.run()
        await finish_utterance(capture, microphone, harness)
        assert harness.coordinator.state == TurnState.ERROR
        assert harness.payloads("assistant-message")[-1]["text"] == "Sorry!"

    @pytest.mark.asyncio
    async def test_recognition_auth_failure_is_fatal(self, harness, capture, microphone):
        harness.recognizer.transcripts = [AuthError("bad key", source="stt")]
        harness.coordinator.start()
        await harness.run()
        await finish_utterance(capture, microphone, harness)
        assert harness.coordinator.state == TurnState.ERROR
        assert harness.payloads("error")[-1]["source"] == "stt"
        assert harness.dialogue.answers == []

    @pytest.mark.asyncio
    async def test_device_error_keeps_state(self, capture, playback, monitor, microphone):
        microphone.enabled = False
        harness = Harness(capture, playback, monitor, session=Session(session_id="s1"))
        harness.coordinator.start()
        await harness.run()
        assert harness.coordinator.state == TurnState.IDLE
        assert harness.payloads("error")[0]["source"] == "microphone"

    @pytest.mark.asyncio
    async def test_tts_failure_continues_in_text_mode(self, harness, synthesizer):
        synthesizer.fail_with = PlaybackError("quota", user_message="quota exceeded")
        harness.coordinator.start()
        await harness.run()
        assert harness.payloads("error")[0] == {"source": "tts", "message": "quota exceeded"}
        assert harness.coordinator.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_stop_discards_in_flight_reply(self, harness, capture, microphone, synthesizer):
        harness.recognizer.transcripts = ["hello"]
        harness.dialogue.gate = asyncio.Event()
        harness.coordinator.start()
        await harness.run()
        microphone.push(LOUD)
        await settle()
        capture.stop()
        await settle(20)
        assert harness.coordinator.state == TurnState.PROCESSING
        assert harness.coordinator.activities() == {"awaiting-dialogue"}

        harness.coordinator.stop()
        assert harness.coordinator.state == TurnState.IDLE
        harness.dialogue.gate.set()
        await harness.run()
        assert synthesizer.texts == ["Hello"]
        assert harness.coordinator.state == TurnState.IDLE
        assert "session-stopped" in harness.kinds()

    @pytest.mark.asyncio
    async def test_dialogue_timeout_is_a_failure(self, capture, playback, monitor, microphone):
        harness = Harness(capture, playback, monitor)
        harness.coordinator.dialogue_timeout = 0.05
        harness.recognizer.transcripts = ["hello"]
        harness.coordinator.start()
        await harness.run()
        harness.dialogue.gate = asyncio.Event()
        await finish_utterance(capture, microphone, harness)
        assert harness.coordinator.state == TurnState.ERROR

    @pytest.mark.asyncio
    async def test_transcript_from_stopped_run_is_discarded(self, capture, playback, monitor, microphone):
        recognizer = GatedRecognizer(["answer for the old run"])
        harness = Harness(capture, playback, monitor, recognizer=recognizer)
        harness.coordinator.start()
        await harness.run()
        microphone.push(LOUD)
        await settle()
        capture.stop()
        await settle(20)

        harness.coordinator.stop()
        assert harness.coordinator.start()
        await settle(20)
        assert harness.coordinator.state == TurnState.LISTENING

        recognizer.gate.set()
        await harness.run()
        assert harness.dialogue.answers == []
        assert "final-transcript" not in harness.kinds()
        assert harness.coordinator.state == TurnState.LISTENING
        assert capture.active

    @pytest.mark.asyncio
    async def test_failure_from_stopped_run_is_discarded(self, capture, playback, monitor, microphone):
        recognizer = GatedRecognizer([TransportError("late failure", source="stt")])
        harness = Harness(capture, playback, monitor, recognizer=recognizer)
        harness.coordinator.start()
        await harness.run()
        microphone.push(LOUD)
        await settle()
        capture.stop()
        await settle(20)

        harness.coordinator.stop()
        harness.coordinator.start()
        await settle(20)
        recognizer.gate.set()
        await harness.run()
        assert harness.coordinator.state == TurnState.LISTENING
        assert "error" not in harness.kinds()
        assert harness.coordinator.session.is_active

    @pytest.mark.asyncio
    async def test_external_failure_enters_error_and_recovers(self, harness, capture):
        harness.coordinator.start()
        await harness.run()
        assert capture.active

        harness.coordinator.fail(AuthError("stream rejected", source="stt"))
        assert harness.coordinator.state == TurnState.ERROR
        assert not capture.active
        assert harness.payloads("error")[-1]["source"] == "stt"
        assert harness.payloads("assistant-message")[-1]["text"] == "Sorry!"

        await asyncio.sleep(0.1)
        assert harness.coordinator.state == TurnState.IDLE
        assert harness.coordinator.start()
        await harness.run()
        assert harness.coordinator.state == TurnState.LISTENING


class TestSayAndStreaming:
    @pytest.mark.asyncio
    async def test_say_while_listening(self, harness, capture, synthesizer):
        harness.coordinator.start()
        await harness.run()
        assert harness.coordinator.say("Just so you know")
        await harness.run()
        assert synthesizer.texts[-1] == "Just so you know"
        assert harness.coordinator.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_say_rejected_while_speaking(self, harness, synthesizer):
        synthesizer.gate = asyncio.Event()
        harness.coordinator.start()
        await settle(20)
        assert not harness.coordinator.say("overlap")
        synthesizer.gate.set()
        await harness.run()

    @pytest.mark.asyncio
    async def test_streaming_final_transcript_drives_turn(self, playback, monitor, synthesizer):
        harness = Harness(None, playback, monitor, streaming=True, session=Session(session_id="s9"))
        harness.dialogue.replies = [result("Noted")]
        harness.coordinator.start()
        await harness.run()
        assert harness.coordinator.state == TurnState.LISTENING

        harness.coordinator.handle_transcript(TranscriptEvent(text="I need", is_final=False))
        harness.coordinator.handle_transcript(TranscriptEvent(text="I need a loan", is_final=True))
        await harness.run()

        assert harness.payloads("partial-transcript") == [{"text": "I need"}]
        assert harness.dialogue.answers == [("s9", "I need a loan", None)]
        assert synthesizer.texts == ["Noted"]
        assert harness.coordinator.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_streaming_partial_during_speech_interrupts(self, playback, monitor, synthesizer):
        synthesizer.gate = asyncio.Event()
        harness = Harness(None, playback, monitor, streaming=True)
        harness.coordinator.start()
        await settle(20)
        handle = harness.coordinator.playback.current
        assert harness.coordinator.state == TurnState.SPEAKING

        harness.coordinator.handle_transcript(TranscriptEvent(text="wait", is_final=False))
        assert handle.status is PlaybackStatus.CANCELLED
        assert harness.coordinator.state == TurnState.LISTENING
        await harness.run()

    @pytest.mark.asyncio
    async def test_close_tears_everything_down(self, harness, microphone, synthesizer):
        synthesizer.gate = asyncio.Event()
        harness.coordinator.start()
        await settle(20)
        await harness.coordinator.close()
        assert harness.coordinator.state == TurnState.IDLE
        assert not microphone.busy
        assert harness.coordinator.playback.current is None
