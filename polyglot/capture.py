"""
capture.py - Polyglot Engine · Audio Capture Adapter
=====================================================
MicrophoneCapture
    sd.InputStream delivering fixed-size 16 kHz mono int16 PCM frames.  The
    PortAudio callback runs on its own thread; frames are handed to the
    event loop with call_soon_threadsafe so consumers stay single-threaded.

RecognizerCapture
    For platforms that run a native speech recognizer instead of uploading
    raw audio: the recognizer pushes ``{transcript, is_final}`` results in.

StreamingPlayback
    sd.OutputStream sink for the assistant's 24 kHz reply audio.

The microphone is exclusive: only one adapter may hold it process-wide.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, ClassVar, Optional

import numpy as np

from .config import AudioConfig
from .errors import DeviceUnavailable, PermissionDenied

log = logging.getLogger("polyglot.capture")


# ---------------------------------------------------------------------------
# PCM framing
# ---------------------------------------------------------------------------

def float32_to_pcm16(samples: np.ndarray) -> bytes:
    """[-1, 1] float samples to little-endian int16 bytes."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def pcm16_to_float32(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0


def encode_pcm(frame: bytes) -> str:
    """Base64 payload for the backend's ``audio/pcm;rate=...`` blobs."""
    return base64.b64encode(frame).decode("ascii")


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class CaptureAdapter(ABC):
    _holder: ClassVar[Optional["CaptureAdapter"]] = None

    @property
    @abstractmethod
    def is_active(self) -> bool: ...

    @abstractmethod
    async def start(self) -> None:
        """Acquire the microphone.  Raises PermissionDenied / DeviceUnavailable."""

    @abstractmethod
    def stop(self) -> None:
        """Release the microphone.  Idempotent, safe when never started."""

    def _acquire(self) -> None:
        holder = CaptureAdapter._holder
        if holder is not None and holder is not self:
            raise DeviceUnavailable("microphone is held by another capture")
        CaptureAdapter._holder = self

    def _release(self) -> None:
        if CaptureAdapter._holder is self:
            CaptureAdapter._holder = None


class MicrophoneCapture(CaptureAdapter):
    def __init__(self, on_frame: Callable[[bytes], None], audio: Optional[AudioConfig] = None):
        self.on_frame = on_frame
        self.audio = audio or AudioConfig()
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._frames = 0
        self._opening = False
        self._stop_requested = False

    @property
    def is_active(self) -> bool:
        return self._stream is not None

    async def start(self) -> None:
        if self._stream is not None or self._opening:
            return
        self._acquire()
        self._loop = asyncio.get_running_loop()
        self._opening, self._stop_requested = True, False
        try:
            stream = await self._loop.run_in_executor(None, self._open_stream)
        except PermissionDenied:
            self._release()
            raise
        except Exception as exc:
            self._release()
            raise classify_device_error(exc) from exc
        finally:
            self._opening = False
        if self._stop_requested:
            try:
                self._close_stream(stream)
            except Exception as exc:
                log.warning("event=mic_stop_error error=%s", exc)
            finally:
                self._release()
            log.info("event=mic_start_abandoned reason=stopped_while_opening")
            raise DeviceUnavailable("capture stopped while the microphone was opening")
        self._stream = stream
        log.info(
            "event=mic_started rate=%d block=%d device=%s",
            self.audio.input_sample_rate, self.audio.block_size, self.audio.device,
        )

    def _open_stream(self):
        # PortAudio is only loaded when a device is actually opened.
        import sounddevice as sd

        stream = sd.InputStream(
            samplerate=self.audio.input_sample_rate,
            channels=self.audio.channels,
            dtype="int16",
            blocksize=self.audio.block_size,
            device=self.audio.device,
            callback=self._callback,
        )
        try:
            stream.start()
        except BaseException:
            stream.close()
            raise
        return stream

    @staticmethod
    def _close_stream(stream) -> None:
        try:
            stream.stop()
        finally:
            stream.close()

    def _callback(self, indata, frames, time_info, status):
        if status:
            log.warning("event=mic_status status=%s", status)
        loop = self._loop
        if loop is None or self._stream is None:
            return
        try:
            loop.call_soon_threadsafe(self._deliver, indata.tobytes())
        except RuntimeError:
            log.debug("event=mic_frame_dropped reason=loop_closed")

    def _deliver(self, frame: bytes) -> None:
        if self._stream is None:
            return
        self._frames += 1
        self.on_frame(frame)

    def stop(self) -> None:
        if self._opening:
            # The pending start() closes the stream and frees the microphone.
            self._stop_requested = True
            return
        stream, self._stream = self._stream, None
        try:
            if stream is not None:
                self._close_stream(stream)
                log.info("event=mic_stopped frames=%d", self._frames)
        except Exception as exc:
            log.warning("event=mic_stop_error error=%s", exc)
        finally:
            self._release()


def classify_device_error(exc: Exception) -> Exception:
    text = str(exc).lower()
    if "permission" in text or "denied" in text or "not permitted" in text:
        return PermissionDenied(str(exc))
    return DeviceUnavailable(str(exc))


@dataclass(frozen=True)
class RecognizerResult:
    transcript: str
    is_final: bool


class RecognizerCapture(CaptureAdapter):
    """Adapter fed by a native recognizer; ``push`` is called with each result."""

    def __init__(
        self,
        on_result: Callable[[RecognizerResult], None],
        request_permission: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.on_result = on_result
        self.request_permission = request_permission
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    async def start(self) -> None:
        if self._active:
            return
        self._acquire()
        try:
            if self.request_permission is not None and not await self.request_permission():
                raise PermissionDenied("speech recognition permission was not granted")
        except BaseException:
            self._release()
            raise
        self._active = True
        log.info("event=recognizer_started")

    def push(self, transcript: str, is_final: bool) -> None:
        if not self._active:
            log.debug("event=recognizer_result_dropped reason=inactive")
            return
        self.on_result(RecognizerResult(transcript=transcript, is_final=is_final))

    def stop(self) -> None:
        if self._active:
            log.info("event=recognizer_stopped")
        self._active = False
        self._release()


# ---------------------------------------------------------------------------
# Playback
# ---------------------------------------------------------------------------

class StreamingPlayback:
    """Thread-safe in-memory audio output via sd.OutputStream.

    ``write`` accepts 24 kHz int16 PCM reply chunks from the event loop; the
    sounddevice callback drains them on the audio thread.  Instances are
    callable so they can subscribe directly to a SessionContext audio stream.
    """

    CHANNELS = 1

    def __init__(self, audio: Optional[AudioConfig] = None, blocksize: int = 1024):
        self.audio = audio or AudioConfig()
        self.blocksize = blocksize
        self._buf: deque[np.ndarray] = deque()
        self._lock = threading.Lock()
        self._stream = None
        self._active = False

    def open(self) -> None:
        if self._stream is not None:
            return
        import sounddevice as sd

        try:
            self._stream = sd.OutputStream(
                samplerate=self.audio.output_sample_rate,
                channels=self.CHANNELS,
                dtype="float32",
                callback=self._callback,
                blocksize=self.blocksize,
                finished_callback=self._on_finished,
            )
            self._stream.start()
        except Exception as exc:
            self._stream = None
            raise classify_device_error(exc) from exc
        self._active = True
        log.info("event=playback_started rate=%d", self.audio.output_sample_rate)

    def write(self, data: bytes) -> None:
        if not self._active or not data:
            return
        samples = pcm16_to_float32(data)
        with self._lock:
            self._buf.append(samples)

    __call__ = write

    def buffered_samples(self) -> int:
        with self._lock:
            return sum(len(chunk) for chunk in self._buf)

    def flush(self) -> None:
        """Drop queued audio, e.g. when the model is interrupted."""
        with self._lock:
            self._buf.clear()

    def stop(self) -> None:
        self._active = False
        self.flush()
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            log.warning("event=playback_stop_error error=%s", exc)
        log.info("event=playback_stopped")

    @property
    def is_active(self) -> bool:
        return self._active

    # -- sounddevice audio-thread callback --

    def _callback(self, outdata: np.ndarray, frames: int, _time, status):
        if status:
            log.warning("event=playback_status status=%s", status)
        out = outdata[:, 0]
        filled = 0
        with self._lock:
            while filled < frames and self._buf:
                head = self._buf.popleft()
                room = frames - filled
                if len(head) > room:
                    self._buf.appendleft(head[room:])
                    head = head[:room]
                out[filled:filled + len(head)] = head
                filled += len(head)
        # Underrun: pad with silence.
        out[filled:] = 0.0

    def _on_finished(self):
        self._active = False
