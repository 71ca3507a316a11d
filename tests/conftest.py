"""
Shared fakes: virtual-time scheduler, in-memory transport, sink and capture.
"""

import asyncio
from typing import Optional

import pytest

from polyglot.capture import CaptureAdapter
from polyglot.config import EngineConfig, GeminiConfig
from polyglot.errors import PersistenceError
from polyglot.events import TransportOpened
from polyglot.models import DiscussionRef, DiscussionSummary, Speaker
from polyglot.persistence import PersistenceSink
from polyglot.session import SessionOrchestrator
from polyglot.transport import TransportStrategy


class FakeTimer:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Timers only fire when the test advances the clock."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def call_later(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = sorted((t for t in self.pending() if t.when <= target), key=lambda t: t.when)
            if not due:
                break
            timer = due[0]
            self.now = timer.when
            timer.fired = True
            timer.callback()
        self.now = target


class FakeTransport(TransportStrategy):
    name = "fake"

    def __init__(
        self,
        config: EngineConfig,
        emit,
        connect_error: Optional[Exception] = None,
        connect_gate: Optional[asyncio.Event] = None,
    ):
        super().__init__(config.gemini, emit)
        self.connect_error = connect_error
        self.connect_gate = connect_gate
        self.instructions = None
        self.sent_text = []
        self.sent_audio = []
        self.close_calls = 0
        self._connected = False

    @property
    def is_connected(self):
        return self._connected and not self._closed

    async def connect(self, instructions, model_hint=None):
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.instructions = instructions
        self._connected = True
        self.emit(TransportOpened())
        return "fake-handle"

    def send_audio(self, frame):
        self.sent_audio.append(frame)

    async def send_text(self, text):
        self.sent_text.append(text)

    async def close(self):
        self.close_calls += 1
        self._closed = True
        self._connected = False


class FakeSink(PersistenceSink):
    def __init__(self):
        self.calls = []
        self.turns = {}
        self.feedback = {}
        self.fail_create = False
        self.fail_append = False
        self.create_gate: Optional[asyncio.Event] = None
        self._next = 0

    async def create_discussion(self, name):
        self.calls.append(("create", name))
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.fail_create:
            raise PersistenceError("store offline")
        self._next += 1
        discussion_id = f"d{self._next}"
        self.turns[discussion_id] = []
        return DiscussionRef(id=discussion_id, name=name)

    async def append_turn(self, discussion_id, speaker, text):
        self.calls.append(("append", discussion_id, speaker, text))
        if self.fail_append:
            raise PersistenceError("write failed")
        self.turns[discussion_id].append((speaker, text))

    async def end_discussion(self, discussion_id):
        self.calls.append(("end", discussion_id))
        turns = self.turns.get(discussion_id, [])
        return DiscussionSummary(
            id=discussion_id,
            name="",
            turn_count=len(turns),
            user_turns=sum(1 for s, _ in turns if s is Speaker.USER),
            assistant_turns=sum(1 for s, _ in turns if s is Speaker.ASSISTANT),
        )

    async def attach_feedback(self, discussion_id, rating, notes=""):
        self.calls.append(("feedback", discussion_id, rating, notes))
        self.feedback[discussion_id] = (rating, notes)

    def ops(self):
        return [call[0] for call in self.calls]


class FakeCapture(CaptureAdapter):
    def __init__(
        self,
        on_frame,
        on_result,
        start_error: Optional[Exception] = None,
        start_gate: Optional[asyncio.Event] = None,
    ):
        self.on_frame = on_frame
        self.on_result = on_result
        self.start_error = start_error
        self.start_gate = start_gate
        self.active = False
        self.stop_calls = 0

    @property
    def is_active(self):
        return self.active

    async def start(self):
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_error is not None:
            raise self.start_error
        self.active = True

    def stop(self):
        self.stop_calls += 1
        self.active = False


async def settle(rounds: int = 20):
    """Let spawned tasks (writer, teardown) run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def release_microphone():
    CaptureAdapter._holder = None
    yield
    CaptureAdapter._holder = None


@pytest.fixture
def config():
    return EngineConfig(gemini=GeminiConfig(api_key="test-key"))


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def sink():
    return FakeSink()


class Harness:
    """Orchestrator wired to fakes, with knobs for failure injection."""

    def __init__(self, config, sink, scheduler):
        self.transports = []
        self.captures = []
        self.connect_error = None
        self.capture_error = None
        # Set to an asyncio.Event to hold connect / capture start until it is set.
        self.connect_gate = None
        self.capture_gate = None
        self.orchestrator = SessionOrchestrator(
            config,
            sink,
            transport_factory=self._make_transport,
            capture_factory=self._make_capture,
            scheduler=scheduler,
        )

    def _make_transport(self, config, emit):
        transport = FakeTransport(config, emit, connect_error=self.connect_error, connect_gate=self.connect_gate)
        self.transports.append(transport)
        return transport

    def _make_capture(self, config, on_frame, on_result):
        capture = FakeCapture(on_frame, on_result, start_error=self.capture_error, start_gate=self.capture_gate)
        self.captures.append(capture)
        return capture

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    def emit(self, event):
        self.transport.emit(event)


@pytest.fixture
def harness(config, sink, scheduler):
    return Harness(config, sink, scheduler)
