"""
turns.py - Polyglot Engine · Turn reconstruction
=================================================
Rebuilds discrete turns from the word-by-word fragments the backend streams.

TurnAccumulator
    One pending buffer per speaker direction.  Fragments are concatenated in
    arrival order; sealing trims, emits an immutable Turn and clears.

CompletionPolicy
    Decides when an assistant turn is over if the backend never says so:
    a debounce window that restarts on every fragment, shortened when the
    buffer ends on sentence-terminal punctuation.  Optionally does the same
    for user speech.  All timing goes through an injectable scheduler so
    tests run on virtual time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .config import TurnPolicyConfig
from .models import Speaker, Turn

log = logging.getLogger("polyglot.turns")

DIRECTIONS = (Speaker.USER, Speaker.ASSISTANT)


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

@dataclass
class PendingBuffer:
    text: str = ""
    active: bool = False
    # Set once the current utterance has been sealed; cleared by new fragments.
    sealed: bool = False


class TurnAccumulator:
    """Per-speaker pending buffers.  Never reorders, never mutates a sealed Turn."""

    def __init__(self) -> None:
        self._buffers: dict[Speaker, PendingBuffer] = {s: PendingBuffer() for s in DIRECTIONS}

    def _buffer(self, speaker: Speaker) -> PendingBuffer:
        try:
            return self._buffers[speaker]
        except KeyError:
            raise ValueError(f"no pending buffer for speaker {speaker.value!r}") from None

    def append_fragment(self, speaker: Speaker, text: str) -> str:
        """Append *text* to the speaker's open turn (opening one if needed).

        Returns the accumulated, untrimmed text so the UI can show it live.
        """
        buf = self._buffer(speaker)
        if not text:
            return buf.text
        buf.text += text
        buf.active = True
        buf.sealed = False
        return buf.text

    def seal_turn(self, speaker: Speaker) -> Optional[Turn]:
        """Finalize the speaker's buffer.  Whitespace-only buffers are dropped."""
        buf = self._buffer(speaker)
        text = buf.text.strip()
        was_active = buf.active
        buf.text = ""
        buf.active = False
        if not text:
            if was_active:
                log.debug("event=empty_turn_dropped speaker=%s", speaker.value)
            return None
        buf.sealed = True
        turn = Turn(speaker=speaker, text=text)
        log.info("event=turn_sealed speaker=%s turn_id=%s chars=%d", speaker.value, turn.id, len(text))
        return turn

    def seal_user_on_model_turn(self) -> Optional[Turn]:
        """The assistant started answering: close the user's utterance once."""
        if self._buffers[Speaker.USER].sealed:
            return None
        return self.seal_turn(Speaker.USER)

    def discard(self, speaker: Speaker) -> None:
        buf = self._buffer(speaker)
        if buf.active and buf.text.strip():
            log.info("event=turn_discarded speaker=%s chars=%d", speaker.value, len(buf.text.strip()))
        buf.text = ""
        buf.active = False
        buf.sealed = False

    def reset(self) -> None:
        for speaker in DIRECTIONS:
            self.discard(speaker)

    def pending_text(self, speaker: Speaker) -> str:
        return self._buffer(speaker).text

    def is_active(self, speaker: Speaker) -> bool:
        return self._buffer(speaker).active


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------

class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Schedules on the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class CompletionPolicy:
    """Debounce/punctuation heuristic for turns without an explicit end signal.

    At most one timer is pending per speaker: every fragment cancels and
    replaces it, an explicit completion cancels it outright.
    """

    def __init__(
        self,
        on_timeout: Callable[[Speaker], None],
        debounce_sec: float = 0.3,
        punctuation_debounce_sec: float = 0.1,
        terminal_punctuation: str = ".!?:;",
        user_silence_timeout_sec: Optional[float] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.on_timeout = on_timeout
        self.debounce_sec = debounce_sec
        self.punctuation_debounce_sec = punctuation_debounce_sec
        self.terminal_punctuation = frozenset(terminal_punctuation)
        self.user_silence_timeout_sec = user_silence_timeout_sec
        self.scheduler: Scheduler = scheduler or LoopScheduler()
        self._timers: dict[Speaker, TimerHandle] = {}
        self._tokens: dict[Speaker, int] = {s: 0 for s in DIRECTIONS}

    @classmethod
    def from_config(
        cls,
        config: TurnPolicyConfig,
        on_timeout: Callable[[Speaker], None],
        scheduler: Optional[Scheduler] = None,
    ) -> "CompletionPolicy":
        user_timeout = config.user_silence_timeout_ms
        return cls(
            on_timeout=on_timeout,
            debounce_sec=config.debounce_ms / 1000.0,
            punctuation_debounce_sec=config.punctuation_debounce_ms / 1000.0,
            terminal_punctuation=config.terminal_punctuation,
            user_silence_timeout_sec=user_timeout / 1000.0 if user_timeout is not None else None,
            scheduler=scheduler,
        )

    def delay_for(self, text: str) -> float:
        """Shorter wait when the buffer already ends a sentence."""
        tail = text.rstrip()[-1:]
        if tail and tail in self.terminal_punctuation:
            return self.punctuation_debounce_sec
        return self.debounce_sec

    def fragment_received(self, speaker: Speaker, buffered_text: str) -> None:
        """(Re)arm the completion timer for *speaker* after a new fragment."""
        self.cancel(speaker)
        if speaker is Speaker.ASSISTANT:
            delay = self.delay_for(buffered_text)
        elif self.user_silence_timeout_sec is not None:
            delay = self.user_silence_timeout_sec
        else:
            return

        self._tokens[speaker] += 1
        token = self._tokens[speaker]
        self._timers[speaker] = self.scheduler.call_later(delay, lambda: self._fire(speaker, token))
        log.debug("event=completion_timer_armed speaker=%s delay_ms=%d", speaker.value, int(delay * 1000))

    def cancel(self, speaker: Speaker) -> None:
        handle = self._timers.pop(speaker, None)
        if handle is not None:
            handle.cancel()
            log.debug("event=completion_timer_cancel speaker=%s", speaker.value)

    def cancel_all(self) -> None:
        for speaker in DIRECTIONS:
            self.cancel(speaker)

    def pending(self, speaker: Speaker) -> bool:
        return speaker in self._timers

    def _fire(self, speaker: Speaker, token: int) -> None:
        # A replaced or cancelled timer must never seal.
        if token != self._tokens[speaker] or speaker not in self._timers:
            return
        del self._timers[speaker]
        log.info("event=completion_timer_fired speaker=%s", speaker.value)
        self.on_timeout(speaker)
