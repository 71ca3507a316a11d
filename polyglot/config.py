"""
config.py - Polyglot Engine · Runtime Configuration
====================================================
Pydantic models for every tunable parameter of the session engine.
Serialises to / deserialises from JSON.  Used by:
  • session.py      - builds transport, capture and completion policy
  • transport.py    - model identifiers, endpoints, timeouts
  • persistence.py  - which sink to open and where
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("polyglot.config")

# ---------------------------------------------------------------------------
# Default system instruction (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_INSTRUCTION = """\
You are "Polyglot", a friendly, adaptive AI language coach.
Always speak to the learner in the TARGET language unless they explicitly
ask for clarification in their native language.
Keep turns short (8-15 seconds) unless the learner asks for depth.
Provide ONLY ONE response per user input and wait for the learner to finish
speaking before responding.
Correct gently: recast in flow, then prompt, then one brief explicit tip.
At most 2 corrections per turn.
When the learner writes instead of speaking, respond naturally to the
content of their message while correcting spelling and grammar.
"""

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s - %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def configure_logging(debug: Optional[bool] = None) -> None:
    """Install the engine's log format on the root logger.

    DEBUG level is enabled by ``debug=True`` or the POLYGLOT_DEBUG env var.
    """
    if debug is None:
        debug = bool(os.getenv("POLYGLOT_DEBUG"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class GeminiConfig(BaseModel):
    """Backend parameters shared by the streaming and stateless transports."""
    api_key: str = Field(default="", description="Gemini API key")
    live_model: str = Field(
        default="gemini-2.5-flash-native-audio-preview-09-2025",
        description="Model for the bidirectional streaming session",
    )
    text_model: str = Field(default="gemini-2.5-flash", description="Model for stateless calls")
    fallback_models: list[str] = Field(
        default_factory=lambda: ["gemini-2.5-flash", "gemini-1.5-flash", "gemini-1.5-pro"],
        description="Tried in order when the requested model is unavailable",
    )
    live_url: str = Field(
        default=(
            "wss://generativelanguage.googleapis.com/ws/"
            "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
        ),
        description="Streaming endpoint",
    )
    rest_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Stateless endpoint root",
    )
    connect_timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0, description="Setup handshake ceiling")
    request_timeout_sec: float = Field(default=30.0, gt=0.0, le=300.0, description="Per-request ceiling")
    max_history_turns: int = Field(default=10, ge=0, le=100, description="Stateless history exchanges kept")


class AudioConfig(BaseModel):
    """PCM framing contract with the backend."""
    input_sample_rate: int = Field(default=16000, description="Microphone rate (Hz)")
    output_sample_rate: int = Field(default=24000, description="Assistant audio rate (Hz)")
    channels: int = Field(default=1, ge=1, le=2, description="Mono by contract")
    block_size: int = Field(default=4096, ge=256, le=65536, description="Frames per capture block")
    device: Optional[int] = Field(default=None, description="Input device index (None = system default)")


class TurnPolicyConfig(BaseModel):
    """Completion heuristics for turns the backend does not close explicitly."""
    debounce_ms: int = Field(default=300, ge=0, le=10000, description="Assistant silence before sealing")
    punctuation_debounce_ms: int = Field(default=100, ge=0, le=10000, description="Shortened wait after . ! ? : ;")
    terminal_punctuation: str = Field(default=".!?:;", description="Characters that shorten the debounce")
    user_silence_timeout_ms: Optional[int] = Field(
        default=None, ge=0, le=60000,
        description="Seal a user turn after this much fragment silence (None = wait for the assistant)",
    )


class PersistenceConfig(BaseModel):
    """Where sealed turns are written."""
    backend: Literal["json", "supabase"] = Field(default="json", description="Sink implementation")
    path: str = Field(default="discussions.json", description="JSON store location")
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_key: str = Field(default="", description="Supabase anon / service key")
    user_id: Optional[str] = Field(default=None, description="Owner of created conversations")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    """Complete runtime configuration for the session engine."""
    backend: Literal["streaming", "stateless"] = Field(default="streaming", description="Transport strategy")
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    turn_policy: TurnPolicyConfig = Field(default_factory=TurnPolicyConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    system_instruction: str = Field(default=DEFAULT_SYSTEM_INSTRUCTION, description="System prompt for the model")

    @classmethod
    def from_env(cls, base: Optional["EngineConfig"] = None) -> "EngineConfig":
        """Overlay secrets and model choices from the environment (and .env)."""
        load_dotenv()
        patch: dict = {}
        if os.getenv("POLYGLOT_BACKEND"):
            patch["backend"] = os.environ["POLYGLOT_BACKEND"]
        gemini: dict = {}
        if os.getenv("GEMINI_API_KEY"):
            gemini["api_key"] = os.environ["GEMINI_API_KEY"]
        if os.getenv("GEMINI_LIVE_MODEL"):
            gemini["live_model"] = os.environ["GEMINI_LIVE_MODEL"]
        if os.getenv("GEMINI_TEXT_MODEL"):
            gemini["text_model"] = os.environ["GEMINI_TEXT_MODEL"]
        if gemini:
            patch["gemini"] = gemini
        persistence: dict = {}
        if os.getenv("SUPABASE_URL"):
            persistence["supabase_url"] = os.environ["SUPABASE_URL"]
        if os.getenv("SUPABASE_ANON_KEY"):
            persistence["supabase_key"] = os.environ["SUPABASE_ANON_KEY"]
        if persistence:
            patch["persistence"] = persistence
        config = (base or cls()).merge_patch(patch)
        log.info("event=config_from_env backend=%s keys=%s", config.backend, sorted(patch))
        return config

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "EngineConfig":
        """Read a saved config.  A missing or unreadable file yields the defaults."""
        source = Path(path)
        try:
            raw = source.read_bytes()
        except FileNotFoundError:
            log.info("event=config_load_defaults path=%s", source)
            return cls()
        except OSError as exc:
            log.warning("event=config_load_error path=%s error=%s fallback=defaults", source, exc)
            return cls()
        try:
            config = cls.model_validate_json(raw)
        except ValidationError as exc:
            log.warning(
                "event=config_load_error path=%s errors=%d fallback=defaults", source, exc.error_count()
            )
            return cls()
        log.info("event=config_loaded path=%s backend=%s", source, config.backend)
        return config

    def save(self, path: str | Path) -> None:
        """Write the config as indented JSON, leaving the API key out."""
        target = Path(path)
        payload = self.model_dump_json(indent=2, exclude_none=True, exclude={"gemini": {"api_key"}})
        target.write_text(payload, encoding="utf-8")
        log.info("event=config_saved path=%s", target)

    def merge_patch(self, patch: dict) -> "EngineConfig":
        """Apply a partial update and validate the result as a new config.

        Nested tables merge key by key, so ``{"audio": {"device": 2}}`` swaps the
        input device and keeps both sample rates.  Any non-table value replaces
        what was there.
        """
        return EngineConfig.model_validate(_merged(self.model_dump(), patch))


def _merged(current: dict, patch: dict) -> dict:
    out = dict(current)
    for key, value in patch.items():
        below = out.get(key)
        out[key] = _merged(below, value) if isinstance(below, dict) and isinstance(value, dict) else value
    return out
