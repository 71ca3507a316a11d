"""
Inbound transport events.

Both transport strategies report everything through one callback taking a
``TransportEvent``; the orchestrator consumes them in a single dispatcher.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union


@dataclass(frozen=True)
class TransportOpened:
    pass


@dataclass(frozen=True)
class PartialUserTranscript:
    text: str


@dataclass(frozen=True)
class ModelTurnStarted:
    pass


@dataclass(frozen=True)
class PartialAssistantTranscript:
    text: str


@dataclass(frozen=True)
class AudioChunk:
    data: bytes
    mime_type: str = "audio/pcm;rate=24000"


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class TransportFailed:
    error: Exception


@dataclass(frozen=True)
class TransportClosed:
    reason: str = ""


TransportEvent = Union[
    TransportOpened,
    PartialUserTranscript,
    ModelTurnStarted,
    PartialAssistantTranscript,
    AudioChunk,
    TurnComplete,
    TransportFailed,
    TransportClosed,
]

EventSink = Callable[[TransportEvent], None]
