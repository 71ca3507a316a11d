"""
errors.py - Polyglot Engine · Error taxonomy
=============================================
Capture and connect errors reject the call that started the work
(``start`` / ``send_text_message``).  Transport errors that happen mid-session
arrive as ``TransportFailed`` events.  Persistence errors are warnings only.
"""

from __future__ import annotations


class PolyglotError(Exception):
    """Base class for every error raised by the engine."""


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------

class CaptureError(PolyglotError):
    """The microphone could not be acquired."""


class PermissionDenied(CaptureError):
    pass


class DeviceUnavailable(CaptureError):
    pass


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class ConnectError(PolyglotError):
    """The backend could not be reached or refused the session."""


class AuthInvalid(ConnectError):
    pass


class ModelUnavailable(ConnectError):
    """The requested model variant does not exist or is not served here."""

    def __init__(self, message: str, model: str | None = None):
        super().__init__(message)
        self.model = model


class NetworkFailure(ConnectError):
    pass


class TransportError(PolyglotError):
    """A live session failed after it was established."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Persistence / lifecycle
# ---------------------------------------------------------------------------

class PersistenceError(PolyglotError):
    """A sink call failed.  Never fatal to the live conversation."""


class SessionError(PolyglotError):
    """Lifecycle misuse, e.g. starting a session that is already running."""
