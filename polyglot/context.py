"""
Session context: the state a UI renders, published as immutable snapshots.

Listeners are plain callables invoked synchronously on the event loop.  A
listener that raises is logged and skipped; it never breaks the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from .models import Speaker, Turn, UiStatus

log = logging.getLogger("polyglot.context")

Listener = Callable[["ContextSnapshot"], None]
AudioListener = Callable[[bytes], None]


@dataclass(frozen=True)
class ContextSnapshot:
    status: UiStatus = UiStatus.IDLE
    user_partial: str = ""
    assistant_partial: str = ""
    turns: tuple[Turn, ...] = field(default_factory=tuple)
    error: Optional[str] = None
    warning: Optional[str] = None

    def partial(self, speaker: Speaker) -> str:
        return self.user_partial if speaker is Speaker.USER else self.assistant_partial


class SessionContext:
    def __init__(self) -> None:
        self._snapshot = ContextSnapshot()
        self._listeners: list[Listener] = []
        self._audio_listeners: list[AudioListener] = []

    @property
    def snapshot(self) -> ContextSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; it immediately receives the current snapshot.

        Returns an unsubscribe callable.
        """
        self._listeners.append(listener)
        self._call(listener, self._snapshot)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_audio(self, listener: AudioListener) -> Callable[[], None]:
        self._audio_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._audio_listeners:
                self._audio_listeners.remove(listener)

        return unsubscribe

    # -- mutations --

    def _update(self, **changes) -> None:
        snapshot = replace(self._snapshot, **changes)
        if snapshot == self._snapshot:
            return
        self._snapshot = snapshot
        for listener in list(self._listeners):
            self._call(listener, snapshot)

    @staticmethod
    def _call(listener: Callable, value) -> None:
        try:
            listener(value)
        except Exception:
            log.exception("event=listener_error listener=%r", listener)

    def set_status(self, status: UiStatus) -> None:
        changes: dict = {"status": status}
        if status is not UiStatus.ERROR:
            changes["error"] = None
        self._update(**changes)

    def set_partial(self, speaker: Speaker, text: str) -> None:
        if speaker is Speaker.USER:
            self._update(user_partial=text)
        else:
            self._update(assistant_partial=text)

    def add_turn(self, turn: Turn) -> None:
        partial = "user_partial" if turn.speaker is Speaker.USER else "assistant_partial"
        self._update(turns=self._snapshot.turns + (turn,), **{partial: ""})

    def set_error(self, message: str) -> None:
        self._update(status=UiStatus.ERROR, error=message)

    def set_warning(self, message: Optional[str]) -> None:
        self._update(warning=message)

    def clear_partials(self) -> None:
        self._update(user_partial="", assistant_partial="")

    def emit_audio(self, data: bytes) -> None:
        for listener in list(self._audio_listeners):
            self._call(listener, data)

    def clear(self) -> None:
        """Forget the turn list and partials; status is left to the session."""
        self._update(turns=(), user_partial="", assistant_partial="", error=None, warning=None)
