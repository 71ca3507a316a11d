"""Polyglot Engine: voice/text conversation sessions over Gemini."""

from .capture import MicrophoneCapture, RecognizerCapture, RecognizerResult, StreamingPlayback
from .config import EngineConfig, configure_logging
from .context import ContextSnapshot, SessionContext
from .errors import (
    AuthInvalid,
    CaptureError,
    ConnectError,
    DeviceUnavailable,
    ModelUnavailable,
    NetworkFailure,
    PermissionDenied,
    PersistenceError,
    PolyglotError,
    SessionError,
    TransportError,
)
from .models import DiscussionSummary, SessionMode, SessionState, Speaker, Turn, UiStatus
from .persistence import JsonFileSink, PersistenceSink, SupabaseSink, open_sink
from .session import SessionOrchestrator
from .transport import StatelessTransport, StreamingTransport, TransportStrategy, create_transport
from .turns import CompletionPolicy, TurnAccumulator

__version__ = "0.1.0"

__all__ = [
    "AuthInvalid",
    "CaptureError",
    "CompletionPolicy",
    "ConnectError",
    "ContextSnapshot",
    "DeviceUnavailable",
    "DiscussionSummary",
    "EngineConfig",
    "JsonFileSink",
    "MicrophoneCapture",
    "ModelUnavailable",
    "NetworkFailure",
    "PermissionDenied",
    "PersistenceError",
    "PersistenceSink",
    "PolyglotError",
    "RecognizerCapture",
    "RecognizerResult",
    "SessionContext",
    "SessionError",
    "SessionMode",
    "SessionOrchestrator",
    "SessionState",
    "Speaker",
    "StatelessTransport",
    "StreamingPlayback",
    "StreamingTransport",
    "SupabaseSink",
    "TransportError",
    "TransportStrategy",
    "Turn",
    "TurnAccumulator",
    "UiStatus",
    "configure_logging",
    "create_transport",
    "open_sink",
]
