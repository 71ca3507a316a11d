"""
Core value types: speakers, sealed turns, session lifecycle enums and the
persisted discussion records.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Speaker(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDING = "ending"
    ERROR = "error"


class SessionMode(Enum):
    VOICE = "voice"
    TEXT = "text"


class UiStatus(Enum):
    """What the UI shows; ``listening`` covers the whole active phase."""
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    ERROR = "error"


_turn_seq = itertools.count(1)


def new_turn_id() -> str:
    """Millisecond timestamp plus a process-wide sequence so ids never collide."""
    return f"{int(time.time() * 1000)}-{next(_turn_seq):06d}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Turn:
    """One sealed utterance.  Immutable once emitted."""
    speaker: Speaker
    text: str
    id: str = field(default_factory=new_turn_id)
    sealed_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Persisted aggregate (owned by the sink)
# ---------------------------------------------------------------------------

class TurnRecord(BaseModel):
    id: str
    speaker: Speaker
    text: str
    created_at: datetime = Field(default_factory=utc_now)


class Feedback(BaseModel):
    rating: int = Field(ge=1, le=5)
    notes: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class Discussion(BaseModel):
    id: str
    name: str
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    turns: list[TurnRecord] = Field(default_factory=list)
    feedback: Optional[Feedback] = None


class DiscussionRef(BaseModel):
    id: str
    name: str


class DiscussionSummary(BaseModel):
    """What ``stop()`` hands back to the caller."""
    id: str
    name: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    turn_count: int = 0
    user_turns: int = 0
    assistant_turns: int = 0
