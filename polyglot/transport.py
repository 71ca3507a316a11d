"""
transport.py - Polyglot Engine · AI Transport Client
=====================================================
Two interchangeable strategies behind one contract:

StreamingTransport
    Gemini Live over a duplex websocket.  The server pushes partial input
    and output transcripts, raw reply audio and a turn-complete marker.

StatelessTransport
    One ``generateContent`` POST per user message.  The single complete reply
    is replayed as one assistant fragment followed by a turn-complete event,
    so the orchestrator handles both backends the same way.  Unavailable
    model variants are retried against an ordered fallback list.

Both report everything through one ``EventSink`` callback, in arrival order.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import quote

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from .capture import encode_pcm
from .config import AudioConfig, EngineConfig, GeminiConfig
from .errors import AuthInvalid, ConnectError, ModelUnavailable, NetworkFailure, TransportError
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

log = logging.getLogger("polyglot.transport")

OUTBOUND_QUEUE_MAX = 200  # ~50 s of 4096-frame blocks at 16 kHz

_MODEL_UNAVAILABLE_RE = re.compile(r"not found|unsupported|not supported", re.IGNORECASE)
_AUTH_RE = re.compile(r"api key|unauthenticated|permission", re.IGNORECASE)


def classify_close(code: Optional[int], reason: str) -> ConnectError:
    """Map a websocket close (code, reason) onto the connect error taxonomy."""
    text = f"closed code={code} reason={reason or '-'}"
    if _AUTH_RE.search(reason or ""):
        return AuthInvalid(text)
    if _MODEL_UNAVAILABLE_RE.search(reason or ""):
        return ModelUnavailable(text)
    return NetworkFailure(text)


class TransportStrategy(ABC):
    """Contract shared by both backends."""

    name = "base"

    def __init__(self, config: GeminiConfig, emit: EventSink):
        self.config = config
        self.emit = emit
        self._closed = False

    @property
    def handle(self) -> Any:
        """The live connection, or None when the strategy keeps none."""
        return None

    @property
    def is_connected(self) -> bool:
        return False

    @abstractmethod
    async def connect(self, instructions: str, model_hint: Optional[str] = None) -> Any:
        """Open the session.  Raises ConnectError subclasses on failure."""

    @abstractmethod
    def send_audio(self, frame: bytes) -> None: ...

    @abstractmethod
    async def send_text(self, text: str) -> None: ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection.  Idempotent."""


# ---------------------------------------------------------------------------
# Streaming strategy
# ---------------------------------------------------------------------------

class StreamingTransport(TransportStrategy):
    name = "streaming"

    def __init__(
        self,
        config: GeminiConfig,
        emit: EventSink,
        audio: Optional[AudioConfig] = None,
        connector=None,
    ):
        super().__init__(config, emit)
        self.audio = audio or AudioConfig()
        self._connector = connector or websockets.connect
        self._ws = None
        self._send_queue: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_MAX)
        self._send_task: asyncio.Task | None = None
        self._recv_task: asyncio.Task | None = None
        self._model_turn_open = False
        self._dropped_frames = 0

    @property
    def handle(self) -> Any:
        return self._ws

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._closed

    def setup_message(self, model: str, instructions: str) -> dict:
        return {
            "setup": {
                "model": model if model.startswith("models/") else f"models/{model}",
                "generationConfig": {"responseModalities": ["AUDIO"]},
                "systemInstruction": {"parts": [{"text": instructions}]},
                "inputAudioTranscription": {},
                "outputAudioTranscription": {},
            }
        }

    async def connect(self, instructions: str, model_hint: Optional[str] = None) -> Any:
        if not self.config.api_key:
            raise AuthInvalid("missing Gemini API key")
        model = model_hint or self.config.live_model
        url = f"{self.config.live_url}?key={quote(self.config.api_key, safe='')}"
        timeout = self.config.connect_timeout_sec
        log.info("event=ws_connect_start model=%s", model)

        try:
            ws = await asyncio.wait_for(self._connector(url, max_size=None), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise NetworkFailure(f"websocket handshake timed out after {timeout:.1f}s") from exc
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise AuthInvalid(f"handshake rejected status={status}") from exc
            if status == 404:
                raise ModelUnavailable(f"handshake rejected status={status}", model=model) from exc
            raise NetworkFailure(f"handshake rejected status={status}") from exc
        except (InvalidHandshake, OSError) as exc:
            raise NetworkFailure(str(exc)) from exc

        # close() may have run while the handshake was pending.
        if self._closed:
            await _close_quietly(ws)
            raise _closed_during_connect()

        self._ws = ws
        try:
            await ws.send(json.dumps(self.setup_message(model, instructions)))
            await asyncio.wait_for(self._await_setup_complete(ws), timeout=timeout)
        except ConnectionClosed as exc:
            await self._abort()
            if self._closed:
                raise _closed_during_connect() from exc
            rcvd = exc.rcvd
            raise classify_close(rcvd.code if rcvd else None, rcvd.reason if rcvd else "") from exc
        except asyncio.TimeoutError as exc:
            await self._abort()
            raise NetworkFailure(f"setup not acknowledged after {timeout:.1f}s") from exc
        except BaseException:
            await self._abort()
            raise
        if self._closed:
            await self._abort()
            raise _closed_during_connect()

        self._send_task = asyncio.create_task(self._sender())
        self._recv_task = asyncio.create_task(self._receiver())
        log.info("event=ws_connected model=%s", model)
        self.emit(TransportOpened())
        return ws

    async def _await_setup_complete(self, ws) -> None:
        while True:
            msg = _decode(await ws.recv())
            if "setupComplete" in msg:
                return
            log.debug("event=pre_setup_message keys=%s", sorted(msg))

    def send_audio(self, frame: bytes) -> None:
        if not self.is_connected:
            return
        message = {
            "realtimeInput": {
                "audio": {
                    "data": encode_pcm(frame),
                    "mimeType": f"audio/pcm;rate={self.audio.input_sample_rate}",
                }
            }
        }
        try:
            self._send_queue.put_nowait(message)
        except asyncio.QueueFull:
            self._dropped_frames += 1
            if self._dropped_frames % 50 == 1:
                log.warning("event=audio_frame_dropped total=%d reason=queue_full", self._dropped_frames)

    async def send_text(self, text: str) -> None:
        if not self.is_connected:
            raise TransportError("streaming session is not connected")
        message = {
            "clientContent": {
                "turns": [{"role": "user", "parts": [{"text": text}]}],
                "turnComplete": True,
            }
        }
        # Shares the audio queue so text and audio leave in call order.
        await self._send_queue.put(message)
        log.info("event=text_sent chars=%d", len(text))

    def translate(self, msg: dict) -> list[TransportEvent]:
        """Turn one server message into zero or more events, in wire order."""
        if "goAway" in msg:
            log.warning("event=go_away time_left=%s", msg["goAway"].get("timeLeft"))
        content = msg.get("serverContent")
        if not content:
            return []

        events: list[TransportEvent] = []
        user_text = (content.get("inputTranscription") or {}).get("text")
        if user_text:
            events.append(PartialUserTranscript(user_text))

        model_turn = content.get("modelTurn")
        if model_turn is not None:
            if not self._model_turn_open:
                self._model_turn_open = True
                events.append(ModelTurnStarted())
            for part in model_turn.get("parts") or []:
                inline = part.get("inlineData") or {}
                if inline.get("data"):
                    events.append(AudioChunk(
                        data=base64.b64decode(inline["data"]),
                        mime_type=inline.get("mimeType", f"audio/pcm;rate={self.audio.output_sample_rate}"),
                    ))

        ai_text = (content.get("outputTranscription") or {}).get("text")
        if ai_text:
            if not self._model_turn_open:
                self._model_turn_open = True
                events.append(ModelTurnStarted())
            events.append(PartialAssistantTranscript(ai_text))

        if content.get("interrupted"):
            log.info("event=model_interrupted")
            self._model_turn_open = False
        if content.get("turnComplete"):
            self._model_turn_open = False
            events.append(TurnComplete())
        return events

    async def _receiver(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                for event in self.translate(_decode(raw)):
                    self.emit(event)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            if not self._closed:
                rcvd = exc.rcvd
                log.error("event=ws_closed_abnormally code=%s", rcvd.code if rcvd else None)
                self.emit(TransportFailed(TransportError(str(exc))))
            return
        except Exception as exc:
            if not self._closed:
                log.error("event=ws_receive_error error=%s", exc, exc_info=True)
                self.emit(TransportFailed(TransportError(str(exc))))
            return
        if not self._closed:
            reason = getattr(ws, "close_reason", None) or ""
            log.info("event=ws_closed reason=server detail=%s", reason)
            self.emit(TransportClosed(reason))

    async def _sender(self) -> None:
        while True:
            item = await self._send_queue.get()
            if item is None:
                return
            try:
                await self._ws.send(json.dumps(item))
            except ConnectionClosed:
                # The receiver reports the close.
                return

    async def _abort(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await _close_quietly(ws)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in (self._send_task, self._recv_task):
            if task and not task.done():
                task.cancel()
        for task in (self._send_task, self._recv_task):
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._send_task = self._recv_task = None
        await self._abort()
        log.info("event=ws_closed reason=client dropped_frames=%d", self._dropped_frames)


# ---------------------------------------------------------------------------
# Stateless strategy
# ---------------------------------------------------------------------------

class StatelessTransport(TransportStrategy):
    name = "stateless"

    def __init__(self, config: GeminiConfig, emit: EventSink, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, emit)
        self._client = client
        self._owns_client = client is None
        self._connected = False
        self._model = config.text_model
        self._instructions = ""
        self.history: list[dict] = []

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def model(self) -> str:
        return self._model

    async def connect(self, instructions: str, model_hint: Optional[str] = None) -> Any:
        if not self.config.api_key:
            raise AuthInvalid("missing Gemini API key")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout_sec)
        self._model = model_hint or self.config.text_model
        self._instructions = instructions
        self._connected = True
        log.info("event=stateless_ready model=%s fallbacks=%d", self._model, len(self.config.fallback_models))
        self.emit(TransportOpened())
        return None

    def send_audio(self, frame: bytes) -> None:
        log.debug("event=audio_ignored reason=stateless bytes=%d", len(frame))

    def model_candidates(self) -> list[str]:
        seen: list[str] = []
        for model in [self._model, *self.config.fallback_models]:
            if model and model not in seen:
                seen.append(model)
        return seen

    def request_body(self, text: str) -> dict:
        body: dict = {"contents": [*self.history, {"role": "user", "parts": [{"text": text}]}]}
        if self._instructions:
            body["systemInstruction"] = {"parts": [{"text": self._instructions}]}
        return body

    async def send_text(self, text: str) -> None:
        if not self.is_connected:
            raise TransportError("stateless transport is not connected")
        try:
            reply, model = await self._generate(self.request_body(text))
        except (ConnectError, TransportError) as exc:
            if self._closed:
                return
            log.error("event=stateless_call_failed error=%s", exc)
            self.emit(TransportFailed(exc))
            raise
        if self._closed:
            log.info("event=stateless_reply_dropped reason=closed")
            return
        if model != self._model:
            log.info("event=model_fallback_adopted from=%s to=%s", self._model, model)
            self._model = model
        if not reply.strip():
            log.warning("event=stateless_empty_reply model=%s", model)
            return

        self.history.append({"role": "user", "parts": [{"text": text}]})
        self.history.append({"role": "model", "parts": [{"text": reply}]})
        self._trim_history()
        self.emit(PartialAssistantTranscript(reply))
        self.emit(TurnComplete())

    async def _generate(self, body: dict) -> tuple[str, str]:
        last_error: ConnectError | None = None
        for model in self.model_candidates():
            url = f"{self.config.rest_url}/models/{quote(model, safe='')}:generateContent"
            try:
                resp = await self._client.post(url, params={"key": self.config.api_key}, json=body)
            except httpx.HTTPError as exc:
                raise NetworkFailure(f"{type(exc).__name__}: {exc}") from exc

            if resp.is_success:
                log.info("event=stateless_reply model=%s status=%d", model, resp.status_code)
                return extract_reply_text(resp.json()), model

            detail = resp.text
            if resp.status_code == 404 or _MODEL_UNAVAILABLE_RE.search(detail):
                log.warning("event=model_unavailable model=%s status=%d", model, resp.status_code)
                last_error = ModelUnavailable(f"model {model} unavailable: {detail[:200]}", model=model)
                continue
            if resp.status_code in (401, 403) or (resp.status_code == 400 and _AUTH_RE.search(detail)):
                raise AuthInvalid(f"HTTP {resp.status_code}: {detail[:200]}")
            raise TransportError(f"HTTP {resp.status_code}: {detail[:200]}", status_code=resp.status_code)

        raise last_error or ModelUnavailable("no model candidates configured")

    def _trim_history(self) -> None:
        keep = self.config.max_history_turns * 2
        if keep == 0:
            self.history.clear()
        elif len(self.history) > keep:
            self.history = self.history[-keep:]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._connected = False
        if self._owns_client and self._client is not None:
            await self._client.aclose()
        log.info("event=stateless_closed")


def extract_reply_text(payload: dict) -> str:
    candidates = payload.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "\n".join(p["text"] for p in parts if p.get("text"))


def _decode(raw: str | bytes) -> dict:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)


async def _close_quietly(ws) -> None:
    try:
        await ws.close()
    except Exception as exc:
        log.debug("event=ws_abort_error error=%s", exc)


def _closed_during_connect() -> NetworkFailure:
    log.info("event=ws_connect_abandoned reason=closed_during_connect")
    return NetworkFailure("transport closed during connect")


def create_transport(config: EngineConfig, emit: EventSink) -> TransportStrategy:
    """Pick the strategy named by ``config.backend``."""
    if config.backend == "stateless":
        return StatelessTransport(config.gemini, emit)
    return StreamingTransport(config.gemini, emit, audio=config.audio)
