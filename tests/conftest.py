"""Shared fixtures for the voice relay tests."""

import pytest

from fakes import FakeClock, FakeSynthesizer, RecordingSink
from services.audio.capture_controller import CaptureController
from services.audio.interrupt_monitor import InterruptMonitor
from services.audio.microphone import StreamMicrophone
from services.audio.playback_controller import SynthesisPlaybackController


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def microphone():
    return StreamMicrophone()


@pytest.fixture
def capture(microphone, clock):
    return CaptureController(
        microphone,
        threshold=0.02,
        silence_delay_ms=700,
        max_duration_ms=6000,
        sample_rate=16000,
        clock=clock,
    )


@pytest.fixture
def monitor(microphone, clock):
    return InterruptMonitor(microphone, threshold=0.05, clock=clock)


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def playback(synthesizer, sink):
    return SynthesisPlaybackController(synthesizer, sink)
