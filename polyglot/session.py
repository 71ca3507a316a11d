"""
session.py - Polyglot Engine · Session Orchestrator
====================================================
Owns the lifecycle of one conversation at a time.

State machine
-------------
    idle → connecting → active → ending → idle
                 ↘          ↘
                   error  →  idle      (start failure / transport failure)

Every piece of async work captures the session ``generation`` when it is
issued and drops its result if the generation moved on; ``stop()`` bumps it
synchronously, so nothing from a stopped session reaches the UI.

Sealed turns go to two places, in sealing order:
  1. the persistence writer queue (one writer task, never blocks the loop)
  2. the SessionContext the UI subscribes to
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .capture import CaptureAdapter, MicrophoneCapture, RecognizerCapture, RecognizerResult
from .config import EngineConfig
from .context import SessionContext
from .errors import PersistenceError, PolyglotError, SessionError
from .events import (
    AudioChunk,
    EventSink,
    ModelTurnStarted,
    PartialAssistantTranscript,
    PartialUserTranscript,
    TransportClosed,
    TransportEvent,
    TransportFailed,
    TransportOpened,
    TurnComplete,
)
from .models import DiscussionSummary, SessionMode, SessionState, Speaker, Turn, UiStatus
from .persistence import PersistenceSink
from .transport import TransportStrategy, create_transport
from .turns import CompletionPolicy, Scheduler, TurnAccumulator

log = logging.getLogger("polyglot.session")

TransportFactory = Callable[[EngineConfig, EventSink], TransportStrategy]
CaptureFactory = Callable[
    [EngineConfig, Callable[[bytes], None], Callable[[RecognizerResult], None]],
    CaptureAdapter,
]

DEFAULT_TEXT_CONVERSATION = "Text conversation"


def default_capture(
    config: EngineConfig,
    on_frame: Callable[[bytes], None],
    on_result: Callable[[RecognizerResult], None],
) -> CaptureAdapter:
    """Raw microphone for the streaming backend, recognizer results otherwise."""
    if config.backend == "stateless":
        return RecognizerCapture(on_result)
    return MicrophoneCapture(on_frame, audio=config.audio)


async def _release(capture: Optional[CaptureAdapter], transport: Optional[TransportStrategy]) -> None:
    if capture is not None:
        try:
            capture.stop()
        except Exception as exc:
            log.warning("event=capture_stop_error error=%s", exc)
    if transport is not None:
        try:
            await transport.close()
        except Exception as exc:
            log.warning("event=transport_close_error error=%s", exc)


class SessionOrchestrator:
    def __init__(
        self,
        config: EngineConfig,
        sink: PersistenceSink,
        context: Optional[SessionContext] = None,
        transport_factory: Optional[TransportFactory] = None,
        capture_factory: Optional[CaptureFactory] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.config = config
        self.sink = sink
        self.context = context or SessionContext()
        self._transport_factory = transport_factory or create_transport
        self._capture_factory = capture_factory or default_capture

        self.state = SessionState.IDLE
        self.mode: Optional[SessionMode] = None
        self.generation = 0
        self.conversation_id: Optional[str] = None
        self.conversation_name = ""
        self.transport_handle = None
        self.last_discussion_id: Optional[str] = None

        self._accumulator = TurnAccumulator()
        self._policy = CompletionPolicy.from_config(config.turn_policy, self._on_completion_timeout, scheduler)
        self._transport: Optional[TransportStrategy] = None
        self._capture: Optional[CaptureAdapter] = None

        # Persistence writer: turns are queued synchronously, written in order.
        self._writes: Optional[asyncio.Queue[Turn | None]] = None
        self._writer_task: Optional[asyncio.Task] = None

        self._stop_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    @property
    def transport(self) -> Optional[TransportStrategy]:
        return self._transport

    @property
    def capture(self) -> Optional[CaptureAdapter]:
        return self._capture

    @property
    def accumulator(self) -> TurnAccumulator:
        return self._accumulator

    @property
    def policy(self) -> CompletionPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        conversation_name: str,
        mode: SessionMode = SessionMode.VOICE,
        conversation_id: Optional[str] = None,
    ) -> None:
        """idle → connecting; active once the transport reports it is open.

        Any failure leaves the session idle with every partial resource
        released, and re-raises.
        """
        if self.state is not SessionState.IDLE:
            raise SessionError(f"cannot start a session while {self.state.value}")

        self.generation += 1
        generation = self.generation
        self.state = SessionState.CONNECTING
        self.mode = mode
        self.conversation_name = conversation_name
        self.conversation_id = conversation_id

        # Stale partials from a previous session never leak into this one.
        self._policy.cancel_all()
        self._accumulator.reset()
        self.context.clear_partials()
        self.context.set_warning(None)
        self.context.set_status(UiStatus.CONNECTING)
        self._start_writer()
        log.info(
            "event=session_start generation=%d mode=%s backend=%s conversation_id=%s",
            generation, mode.value, self.config.backend, conversation_id,
        )

        transport = capture = None
        try:
            if self.conversation_id is None:
                await self._open_discussion(conversation_name, generation)
                self._ensure_current(generation)

            transport = self._transport = self._transport_factory(self.config, self._event_sink(generation))
            handle = await transport.connect(self.config.system_instruction)
            self._ensure_current(generation)
            self.transport_handle = handle

            if mode is SessionMode.VOICE:
                capture = self._capture = self._capture_factory(
                    self.config,
                    self._frame_sink(generation),
                    self._result_sink(generation),
                )
                await capture.start()
                self._ensure_current(generation)
        except asyncio.CancelledError:
            await self._abandon_start(generation, SessionError("start cancelled"), capture, transport)
            raise
        except Exception as exc:
            await self._abandon_start(generation, exc, capture, transport)
            raise

        log.info("event=session_started generation=%d state=%s", generation, self.state.value)

    async def stop(self) -> Optional[DiscussionSummary]:
        """Tear the session down and end its Discussion.

        Returns the discussion summary, or None when there was nothing to
        end (idle, or the sink never assigned an id).
        """
        if self._stop_task is None:
            if self.state in (SessionState.IDLE, SessionState.ERROR):
                return None
            self._stop_task = asyncio.create_task(self._stop())
            self._stop_task.add_done_callback(self._stop_finished)
        # Concurrent callers share one teardown; cancelling a caller doesn't abort it.
        return await asyncio.shield(self._stop_task)

    def _stop_finished(self, task: asyncio.Task) -> None:
        if self._stop_task is task:
            self._stop_task = None

    async def _stop(self) -> Optional[DiscussionSummary]:
        self.generation += 1
        self.state = SessionState.ENDING
        log.info("event=session_stop generation=%d", self.generation)

        self._policy.cancel_all()
        self._accumulator.reset()
        self.context.clear_partials()

        await self._release_resources()
        summary = await self._finish_discussion()

        self.state = SessionState.IDLE
        self.mode = None
        self.context.set_status(UiStatus.IDLE)
        log.info(
            "event=session_stopped conversation_id=%s turns=%s",
            self.last_discussion_id, summary.turn_count if summary else None,
        )
        return summary

    async def reset(self) -> None:
        """Stop any live session and forget the turns the UI is showing."""
        await self.stop()
        self.context.clear()
        self.context.set_status(UiStatus.IDLE)

    async def send_text_message(self, text: str) -> None:
        """Send typed text as a user turn, auto-starting a text session from idle.

        A still-forming assistant reply is superseded: discarded, not sealed.
        """
        text = text.strip()
        if not text:
            log.debug("event=empty_text_ignored")
            return
        if self.state is SessionState.IDLE:
            await self.start(self.conversation_name or DEFAULT_TEXT_CONVERSATION, SessionMode.TEXT)
        if self.state is not SessionState.ACTIVE or self._transport is None:
            raise SessionError(f"cannot send text while {self.state.value}")

        self._seal_turn(Speaker.USER)

        self._policy.cancel(Speaker.ASSISTANT)
        if self._accumulator.is_active(Speaker.ASSISTANT):
            log.info("event=assistant_superseded chars=%d",
                     len(self._accumulator.pending_text(Speaker.ASSISTANT)))
        self._accumulator.discard(Speaker.ASSISTANT)
        self.context.set_partial(Speaker.ASSISTANT, "")

        self._accumulator.append_fragment(Speaker.USER, text)
        self._seal_turn(Speaker.USER)
        generation = self.generation
        try:
            await self._transport.send_text(text)
        except PolyglotError as exc:
            # Settle the session before the caller sees the rejection.
            await self._fail(generation, exc)
            raise

    async def attach_feedback(self, rating: int, notes: str = "") -> None:
        """Attach a 1-5 rating (and notes) to the most recently ended discussion."""
        if not 1 <= rating <= 5:
            raise ValueError(f"rating must be between 1 and 5, got {rating}")
        if self.last_discussion_id is None:
            raise SessionError("no ended discussion to attach feedback to")
        try:
            await self.sink.attach_feedback(self.last_discussion_id, rating, notes)
        except PersistenceError as exc:
            self._persistence_warning("attach_feedback", exc)
            raise
        log.info("event=feedback_attached conversation_id=%s rating=%d", self.last_discussion_id, rating)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _event_sink(self, generation: int) -> EventSink:
        def emit(event: TransportEvent) -> None:
            if generation != self.generation:
                log.debug("event=stale_event_dropped kind=%s", type(event).__name__)
                return
            self._dispatch(event)

        return emit

    def _dispatch(self, event: TransportEvent) -> None:
        if isinstance(event, TransportOpened):
            if self.state is SessionState.CONNECTING:
                self.state = SessionState.ACTIVE
                self.context.set_status(UiStatus.LISTENING)
                log.info("event=session_active generation=%d", self.generation)
            return

        if self.state not in (SessionState.CONNECTING, SessionState.ACTIVE):
            log.debug("event=event_dropped kind=%s state=%s", type(event).__name__, self.state.value)
            return

        if isinstance(event, PartialUserTranscript):
            self._fragment(Speaker.USER, event.text)
        elif isinstance(event, ModelTurnStarted):
            self._seal_user_on_model_turn()
        elif isinstance(event, PartialAssistantTranscript):
            self._seal_user_on_model_turn()
            self._fragment(Speaker.ASSISTANT, event.text)
        elif isinstance(event, AudioChunk):
            self.context.emit_audio(event.data)
        elif isinstance(event, TurnComplete):
            self._policy.cancel(Speaker.ASSISTANT)
            self._seal_turn(Speaker.ASSISTANT)
        elif isinstance(event, TransportFailed):
            self._spawn(self._fail(self.generation, event.error))
        elif isinstance(event, TransportClosed):
            log.info("event=transport_closed_by_server reason=%s", event.reason or "-")
            self._spawn(self._stop_if_current(self.generation))

    def _fragment(self, speaker: Speaker, text: str) -> None:
        buffered = self._accumulator.append_fragment(speaker, text)
        if not text:
            return
        self.context.set_partial(speaker, buffered)
        self._policy.fragment_received(speaker, buffered)

    def _frame_sink(self, generation: int) -> Callable[[bytes], None]:
        def on_frame(frame: bytes) -> None:
            if generation != self.generation or self.state is not SessionState.ACTIVE:
                return
            if self._transport is not None:
                self._transport.send_audio(frame)

        return on_frame

    def _result_sink(self, generation: int) -> Callable[[RecognizerResult], None]:
        def on_result(result: RecognizerResult) -> None:
            if generation != self.generation or self.state is not SessionState.ACTIVE:
                return
            if not result.is_final:
                self.context.set_partial(Speaker.USER, result.transcript)
                return
            text = result.transcript.strip()
            # Recognizer transcripts are cumulative, so the final one replaces the buffer.
            self._accumulator.discard(Speaker.USER)
            self._policy.cancel(Speaker.USER)
            if not text:
                self.context.set_partial(Speaker.USER, "")
                return
            self._accumulator.append_fragment(Speaker.USER, text)
            self._seal_turn(Speaker.USER)
            self._spawn(self._send_recognized(generation, text))

        return on_result

    async def _send_recognized(self, generation: int, text: str) -> None:
        transport = self._transport
        if generation != self.generation or transport is None:
            return
        try:
            await transport.send_text(text)
        except PolyglotError as exc:
            await self._fail(generation, exc)

    def _on_completion_timeout(self, speaker: Speaker) -> None:
        if self.state is not SessionState.ACTIVE:
            return
        self._seal_turn(speaker)

    # ------------------------------------------------------------------
    # Sealing
    # ------------------------------------------------------------------

    def _seal_user_on_model_turn(self) -> None:
        self._policy.cancel(Speaker.USER)
        turn = self._accumulator.seal_user_on_model_turn()
        if turn is not None:
            self._publish(turn)

    def _seal_turn(self, speaker: Speaker) -> None:
        self._policy.cancel(speaker)
        turn = self._accumulator.seal_turn(speaker)
        if turn is None:
            self.context.set_partial(speaker, "")
            return
        self._publish(turn)

    def _publish(self, turn: Turn) -> None:
        if self._writes is not None:
            self._writes.put_nowait(turn)
        else:
            log.warning("event=turn_not_persisted reason=no_writer turn_id=%s", turn.id)
        self.context.add_turn(turn)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _open_discussion(self, name: str, generation: int) -> None:
        try:
            ref = await self.sink.create_discussion(name)
        except PersistenceError as exc:
            # The writer retries on the first sealed turn.
            self._persistence_warning("create_discussion", exc)
            return
        if generation == self.generation:
            self.conversation_id = ref.id
            return
        # Stopped while the discussion was being created: nothing else will end it.
        log.info("event=discussion_orphaned id=%s generation=%d", ref.id, generation)
        try:
            await self.sink.end_discussion(ref.id)
        except PersistenceError as exc:
            log.warning("event=persistence_failed op=end_discussion id=%s error=%s", ref.id, exc)

    def _start_writer(self) -> None:
        self._writes = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._writer(self._writes))

    async def _writer(self, queue: "asyncio.Queue[Turn | None]") -> None:
        while True:
            turn = await queue.get()
            if turn is None:
                return
            try:
                if self.conversation_id is None:
                    ref = await self.sink.create_discussion(self.conversation_name)
                    self.conversation_id = ref.id
                await self.sink.append_turn(self.conversation_id, turn.speaker, turn.text)
            except PersistenceError as exc:
                self._persistence_warning("append_turn", exc)
            except Exception as exc:
                log.error("event=writer_error turn_id=%s error=%s", turn.id, exc, exc_info=True)
                self.context.set_warning(f"Could not save turn: {exc}")

    async def _drain_writer(self) -> None:
        queue, task = self._writes, self._writer_task
        self._writes = None
        self._writer_task = None
        if task is None:
            return
        queue.put_nowait(None)
        await task

    async def _finish_discussion(self) -> Optional[DiscussionSummary]:
        await self._drain_writer()
        discussion_id = self.conversation_id
        if discussion_id is None:
            return None
        self.last_discussion_id = discussion_id
        try:
            return await self.sink.end_discussion(discussion_id)
        except PersistenceError as exc:
            self._persistence_warning("end_discussion", exc)
            return None

    def _persistence_warning(self, op: str, exc: Exception) -> None:
        log.warning("event=persistence_failed op=%s error=%s", op, exc)
        self.context.set_warning(f"Could not save conversation ({op}): {exc}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _ensure_current(self, generation: int) -> None:
        if generation != self.generation:
            raise SessionError("session was stopped while starting")

    async def _abandon_start(self, generation: int, error: BaseException, capture, transport) -> None:
        if generation == self.generation:
            await self._fail(generation, error)
            return
        # stop() already moved on; whatever this start opened is released here.
        log.info("event=start_abandoned generation=%d error=%s", generation, error)
        await _release(capture, transport)

    async def _release_resources(self) -> None:
        capture, self._capture = self._capture, None
        transport, self._transport = self._transport, None
        self.transport_handle = None
        await _release(capture, transport)

    async def _fail(self, generation: int, error: BaseException) -> None:
        """error → idle.  Sealed turns stay in the UI and the store."""
        if generation != self.generation:
            return
        self.generation += 1
        self.state = SessionState.ERROR
        message = str(error) or type(error).__name__
        log.error("event=session_error kind=%s error=%s", type(error).__name__, message)

        self._policy.cancel_all()
        self._accumulator.reset()
        self.context.clear_partials()
        self.context.set_error(message)

        await self._release_resources()
        await self._finish_discussion()
        self.state = SessionState.IDLE
        self.mode = None

    async def _stop_if_current(self, generation: int) -> None:
        if generation == self.generation:
            await self.stop()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
