"""Voice assistant client: wake word → record until silence → stream to server.

CLI usage:
    wakechat                                   # listen for the wake word
    wakechat --wake-word "hey computer"        # custom phrase
    wakechat --url ws://host:3000/ws           # remote server

Press Enter to toggle listening (or to cut a recording short), q to quit.

State machine (ClientOrchestrator):
    IDLE → (toggle) → WAKE_WORD_LISTENING → (wake word) → RECORDING →
    (silence / toggle) → PROCESSING → (reply done) → WAKE_WORD_LISTENING

The wake-word recogniser and the recorder never hold the microphone at the
same time, and the silence detector only runs while RECORDING. All state
changes happen on one asyncio loop; microphone callbacks from the PortAudio
thread are marshalled onto it.
"""

from __future__ import annotations

import argparse
import asyncio
import datetime
import json
import logging
import math
import os
import random
import sys
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Protocol

import numpy as np
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

SAMPLE_RATE = 16000
FRAME_MS = 20                 # microphone block size (~ one animation frame)
FFT_SIZE = 2048
MIN_DECIBELS = -100.0         # byte-magnitude scale, as in a Web Audio analyser
MAX_DECIBELS = -30.0
SMOOTHING = 0.8
SILENCE_THRESHOLD_DB = -50.0
SILENCE_DURATION_MS = 2000
WAKE_RESTART_DELAY_SEC = 0.1
WAKE_ERROR_RESTART_DELAY_SEC = 1.0
CHUNK_INTERVAL_MS = 250
MIN_CHUNK_BYTES = 2           # one PCM16 sample
RECONNECT_DELAY_SEC = 3.0
REPLY_TIMEOUT_SEC = 200.0       # above the server's slowest tool turn (3 provider calls + tool)
DEFAULT_SERVER_URL = os.getenv("WAKECHAT_URL", "ws://127.0.0.1:3000/ws")
DEFAULT_WAKE_WORD = os.getenv("WAKECHAT_WAKE_WORD", "hey assistant")
DEFAULT_WHISPER_MODEL = "tiny"

FrameCallback = Callable[[np.ndarray], None]


# ── Errors ───────────────────────────────────────────────────────────────────

class CaptureError(Exception):
    """No microphone, or permission to use it was refused."""


class RecognitionError(Exception):
    pass


class TransportError(Exception):
    pass


# ── Microphone ───────────────────────────────────────────────────────────────

class MicrophoneStream:
    """Mono PCM16 input, opened once and kept warm between recordings.

    Frames arrive on the PortAudio thread and are re-dispatched to
    subscribers on the asyncio loop that opened the stream.
    """

    channels = 1

    def __init__(self, *, sample_rate: int = SAMPLE_RATE, frame_ms: int = FRAME_MS, device=None):
        self.sample_rate = sample_rate
        self.blocksize = sample_rate * frame_ms // 1000
        self.device = device
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscribers: list[FrameCallback] = []

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self) -> None:
        if self._stream is not None:
            return
        import sounddevice as sd

        self._loop = asyncio.get_running_loop()
        try:
            sd.check_input_settings(
                device=self.device, channels=1, dtype="int16", samplerate=self.sample_rate
            )
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.blocksize,
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            raise CaptureError(f"Microphone unavailable: {e}") from e
        self._stream = stream
        logger.info("Microphone opened (%d Hz, device=%s)", self.sample_rate, self.device)

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("Input status: %s", status)
        frame = indata[:, 0].copy()
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._dispatch, frame)
        except RuntimeError:
            logger.debug("Event loop closed; dropping microphone frame")

    def _dispatch(self, frame: np.ndarray) -> None:
        for callback in list(self._subscribers):
            callback(frame)

    def subscribe(self, callback: FrameCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def close(self) -> None:
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
            logger.info("Microphone closed")


# ── Silence detection ────────────────────────────────────────────────────────

class FrequencyAnalyser:
    """Rolling FFT over the latest ``fft_size`` samples.

    ``byte_frequency_data`` maps each bin's magnitude onto 0..255 between
    ``min_db`` and ``max_db``, with exponential smoothing across calls.
    """

    def __init__(
        self,
        fft_size: int = FFT_SIZE,
        *,
        min_db: float = MIN_DECIBELS,
        max_db: float = MAX_DECIBELS,
        smoothing: float = SMOOTHING,
    ):
        self.fft_size = fft_size
        self.min_db = min_db
        self.max_db = max_db
        self.smoothing = smoothing
        self._window = np.blackman(fft_size)
        self._samples = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float64)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, frame: np.ndarray) -> None:
        x = np.asarray(frame)
        if np.issubdtype(x.dtype, np.integer):
            x = x.astype(np.float32) / 32768.0
        else:
            x = x.astype(np.float32)
        if x.size >= self.fft_size:
            self._samples = x[-self.fft_size:].copy()
        elif x.size:
            self._samples = np.concatenate((self._samples[x.size:], x))

    def byte_frequency_data(self) -> np.ndarray:
        spectrum = np.fft.rfft(self._samples * self._window)[: self.frequency_bin_count]
        magnitude = np.abs(spectrum) / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1 - self.smoothing) * magnitude
        with np.errstate(divide="ignore"):
            db = 20 * np.log10(self._smoothed)
        scaled = (255.0 / (self.max_db - self.min_db)) * (db - self.min_db)
        return np.clip(np.nan_to_num(np.floor(scaled), neginf=0.0), 0, 255).astype(np.uint8)


def average_volume_db(byte_data: np.ndarray) -> float:
    """Average byte magnitude as dB relative to full scale (255)."""
    if len(byte_data) == 0:
        return float("-inf")
    average = float(np.mean(byte_data))
    if average <= 0:
        return float("-inf")
    return 20 * math.log10(average / 255)


class SilenceDetector:
    """Fires a callback once the input stays quiet for ``duration_ms``.

    One callback per contiguous quiet span: after firing, nothing more
    happens until a loud sample starts a new span.
    """

    def __init__(
        self,
        *,
        threshold_db: float = SILENCE_THRESHOLD_DB,
        duration_ms: float = SILENCE_DURATION_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold_db = threshold_db
        self.duration_ms = duration_ms
        self._clock = clock
        self._callback: Callable[[], None] | None = None
        self._running = False
        self._analyser: FrequencyAnalyser | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._silence_start: float | None = None
        self._span_fired = False

    @property
    def is_running(self) -> bool:
        return self._running

    def configure(self, threshold_db: float, duration_ms: float) -> None:
        logger.debug("Silence config: threshold=%.1f dB, duration=%d ms", threshold_db, duration_ms)
        self.threshold_db = threshold_db
        self.duration_ms = duration_ms

    def on_silence(self, callback: Callable[[], None]) -> None:
        self._callback = callback

    def start(self, stream) -> None:
        if stream is None or not getattr(stream, "channels", 0):
            logger.debug("No input stream; silence detection not started")
            return
        if self._running:
            logger.debug("Silence detection already running")
            return
        self._running = True
        self._silence_start = None
        self._span_fired = False
        self._analyser = FrequencyAnalyser()
        self._unsubscribe = stream.subscribe(self._on_frame)
        logger.debug("Silence detection started")

    def stop(self) -> None:
        if not self._running:
            logger.debug("Silence detection was not running")
            return
        self._running = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._analyser = None
        self._silence_start = None
        logger.debug("Silence detection stopped")

    def _on_frame(self, frame: np.ndarray) -> None:
        if not self._running or self._analyser is None:
            return
        self._analyser.push(frame)
        self.process_level(average_volume_db(self._analyser.byte_frequency_data()))

    def process_level(self, volume_db: float, now: float | None = None) -> bool:
        """Feed one volume sample. Returns True if the callback fired."""
        if now is None:
            now = self._clock()

        if volume_db >= self.threshold_db:
            if self._silence_start is not None:
                logger.debug("Silence broken after %.0f ms", (now - self._silence_start) * 1000)
            self._silence_start = None
            self._span_fired = False
            return False

        if self._span_fired:
            return False
        if self._silence_start is None:
            self._silence_start = now
            return False
        if (now - self._silence_start) * 1000 < self.duration_ms:
            return False

        logger.info("Silence for %.0f ms", (now - self._silence_start) * 1000)
        self._silence_start = None
        self._span_fired = True
        if self._callback is not None:
            self._callback()
        return True


# ── Wake word ────────────────────────────────────────────────────────────────

class RecognitionListener(Protocol):
    def on_result(self, transcripts: list[str]) -> None: ...

    def on_error(self, error: RecognitionError) -> None: ...

    def on_end(self) -> None: ...


class RecognitionEngine(Protocol):
    """Continuous speech recogniser with browser-style session events.

    ``start`` raises RuntimeError while a session is still running; every
    session ends with exactly one ``on_end``, whether stopped or expired.
    """

    def subscribe(self, listener: RecognitionListener) -> Callable[[], None]: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class WhisperRecognitionEngine:
    """Local recognition with faster-whisper over a rolling audio window.

    Every ``interval_sec`` the last ``window_sec`` of microphone audio is
    transcribed and appended as a new result slot. Sessions end by
    themselves after ``max_session_sec``.
    """

    def __init__(
        self,
        microphone: MicrophoneStream,
        *,
        model: str = DEFAULT_WHISPER_MODEL,
        language: str | None = None,
        window_sec: float = 2.0,
        interval_sec: float = 0.75,
        max_session_sec: float = 60.0,
        device: str = "cpu",
        compute_type: str = "int8",
    ):
        self.model_name = model
        self.language = language
        self.interval_sec = interval_sec
        self.max_session_sec = max_session_sec
        self.device = device
        self.compute_type = compute_type
        self._mic = microphone
        self._model = None
        self._listeners: list[RecognitionListener] = []
        self._samples: deque[int] = deque(maxlen=int(window_sec * microphone.sample_rate))
        self._unsubscribe_mic: Callable[[], None] | None = None
        self._task: asyncio.Task | None = None

    def subscribe(self, listener: RecognitionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _get_model(self):
        if self._model is None:
            from faster_whisper import WhisperModel
            logger.info("Loading Whisper model %s...", self.model_name)
            self._model = WhisperModel(self.model_name, device=self.device, compute_type=self.compute_type)
            logger.info("Whisper model ready")
        return self._model

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("Recognition session already running")
        self._mic.open()
        self._samples.clear()
        self._unsubscribe_mic = self._mic.subscribe(lambda frame: self._samples.extend(frame.tolist()))
        self._task = asyncio.get_running_loop().create_task(self._session())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()

    def _transcribe(self, audio: np.ndarray) -> str:
        segments, _ = self._get_model().transcribe(
            audio, language=self.language, beam_size=1, vad_filter=True
        )
        return " ".join(seg.text.strip() for seg in segments).strip()

    async def _session(self) -> None:
        loop = asyncio.get_running_loop()
        results: list[str] = []
        started = loop.time()
        error: RecognitionError | None = None
        try:
            while loop.time() - started < self.max_session_sec:
                await asyncio.sleep(self.interval_sec)
                if not self._samples:
                    continue
                pcm = np.fromiter(self._samples, dtype=np.int16, count=len(self._samples))
                audio = pcm.astype(np.float32) / 32768.0
                text = await loop.run_in_executor(None, self._transcribe, audio)
                if text:
                    results.append(text)
                    for listener in list(self._listeners):
                        listener.on_result(list(results))
        except asyncio.CancelledError:
            logger.debug("Recognition session stopped")
        except Exception as e:
            error = RecognitionError(str(e) or type(e).__name__)
        finally:
            if self._unsubscribe_mic is not None:
                self._unsubscribe_mic()
                self._unsubscribe_mic = None
            self._task = None

        for listener in list(self._listeners):
            if error is not None:
                listener.on_error(error)
            listener.on_end()


class WakeWordRecognizer:
    """Keeps a recognition engine running and watches for the wake phrase.

    Construct one per application and pass it to the orchestrator; it owns
    the engine's event subscription for its whole lifetime.

    On a match the engine is stopped and listening disabled first; the
    wake callback runs only once the engine reports the session ended, so
    whatever the callback starts never overlaps a live recognition session.
    """

    def __init__(
        self,
        engine: RecognitionEngine,
        *,
        wake_word: str = "",
        restart_delay: float = WAKE_RESTART_DELAY_SEC,
        error_restart_delay: float = WAKE_ERROR_RESTART_DELAY_SEC,
    ):
        self.restart_delay = restart_delay
        self.error_restart_delay = error_restart_delay
        self._engine = engine
        self._wake_word = wake_word.strip()
        self._enabled = False
        self._running = False
        self._callback: Callable[[str], Any] | None = None
        self._pending_match: str | None = None
        self._restart_handle: asyncio.TimerHandle | None = None
        self._mic_failures = 0
        self._unsubscribe = engine.subscribe(self)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def running(self) -> bool:
        return self._running

    @property
    def wake_word(self) -> str:
        return self._wake_word

    def set_wake_word(self, phrase: str) -> None:
        self._wake_word = phrase.strip()

    def on_wake_word(self, callback: Callable[[str], Any]) -> None:
        self._callback = callback

    def set_enabled(self, enabled: bool) -> None:
        was_enabled = self._enabled
        self._enabled = enabled
        if not was_enabled and enabled:
            self._start()
        elif was_enabled and not enabled:
            self._cancel_restart()
            self._stop()

    def resume_after_recording(self) -> None:
        self.set_enabled(True)
        self._start()

    def close(self) -> None:
        self.set_enabled(False)
        self._unsubscribe()

    def _start(self) -> None:
        if self._running or not self._enabled:
            return
        try:
            self._engine.start()
        except CaptureError as e:
            if self._mic_failures == 0:
                logger.error("No microphone for wake-word listening, retrying every %.0fs: %s",
                             self.error_restart_delay, e)
            else:
                logger.debug("Microphone still unavailable: %s", e)
            self._mic_failures += 1
            self._schedule_restart(self.error_restart_delay)
            return
        except Exception as e:
            logger.error("Failed to start recognition: %s", e)
            self._schedule_restart(self.error_restart_delay)
            return
        if self._mic_failures:
            logger.info("Microphone available again")
            self._mic_failures = 0
        self._running = True
        logger.debug("Recognition started")

    def _stop(self) -> None:
        if not self._running:
            return
        self._engine.stop()
        self._running = False
        logger.debug("Recognition stopped")

    def _schedule_restart(self, delay: float) -> None:
        if self._restart_handle is not None:
            return
        self._restart_handle = asyncio.get_running_loop().call_later(delay, self._restart)

    def _restart(self) -> None:
        self._restart_handle = None
        self._start()

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    # RecognitionListener

    def on_result(self, transcripts: list[str]) -> None:
        if not transcripts:
            return
        transcript = transcripts[-1].lower().strip()
        logger.debug("Recognition result: %s", transcript)
        if self._enabled and self._wake_word and self._wake_word.lower() in transcript:
            logger.info("Wake word detected: '%s'", transcript)
            self._stop()
            self.set_enabled(False)
            self._pending_match = transcript

    def on_error(self, error: RecognitionError) -> None:
        logger.warning("Recognition error: %s", error)
        self._running = False
        if self._enabled:
            self._schedule_restart(self.error_restart_delay)

    def on_end(self) -> None:
        self._running = False
        if self._pending_match is not None:
            transcript, self._pending_match = self._pending_match, None
            if self._callback is not None:
                self._callback(transcript)
        elif self._enabled:
            self._schedule_restart(self.restart_delay)
        else:
            logger.debug("Recognition ended; not restarting (disabled)")


# ── Audio capture ────────────────────────────────────────────────────────────

class PcmChunkEncoder:
    """Cuts microphone frames into PCM16 chunks on a fixed cadence.

    ``finalize`` flushes whatever is buffered as the final chunk and returns
    once that chunk has been handed to ``on_chunk``.
    """

    def __init__(
        self,
        stream: MicrophoneStream,
        on_chunk: Callable[[bytes], Awaitable[None]],
        *,
        interval_ms: int = CHUNK_INTERVAL_MS,
    ):
        self.interval = interval_ms / 1000
        self.chunks_emitted = 0
        self.finished = asyncio.Event()
        self._stream = stream
        self._on_chunk = on_chunk
        self._pending: list[bytes] = []
        self._stop_requested = asyncio.Event()
        self._unsubscribe: Callable[[], None] | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_recording(self) -> bool:
        return self._task is not None and not self.finished.is_set()

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("Encoder already started")
        self._unsubscribe = self._stream.subscribe(self._on_frame)
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _on_frame(self, frame: np.ndarray) -> None:
        self._pending.append(np.asarray(frame, dtype=np.int16).tobytes())

    def request_data(self) -> bytes:
        data = b"".join(self._pending)
        self._pending.clear()
        return data

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await asyncio.wait_for(self._stop_requested.wait(), timeout=self.interval)
                    break
                except asyncio.TimeoutError:
                    await self._emit(self.request_data())
            self._detach()
            await self._emit(self.request_data())
        finally:
            self._detach()
            self.finished.set()

    def _detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def _emit(self, data: bytes) -> None:
        if not data:
            return
        self.chunks_emitted += 1
        try:
            await self._on_chunk(data)
        except Exception as e:
            logger.error("Chunk handler failed: %s", e)

    async def finalize(self) -> None:
        if self._task is None:
            return
        self._stop_requested.set()
        await self.finished.wait()


@dataclass
class CaptureSession:
    stream: MicrophoneStream
    encoder: PcmChunkEncoder
    is_active: bool = True


class AudioCaptureSession:
    """Records from the shared microphone, one session at a time.

    With ``on_chunk`` set, every chunk is forwarded as it is produced;
    without it, chunks are kept and ``stop`` returns the whole recording.
    """

    def __init__(
        self,
        microphone: MicrophoneStream,
        on_chunk: Callable[[bytes], Awaitable[Any]] | None = None,
        *,
        interval_ms: int = CHUNK_INTERVAL_MS,
        min_chunk_bytes: int = MIN_CHUNK_BYTES,
    ):
        self.interval_ms = interval_ms
        self.min_chunk_bytes = min_chunk_bytes
        self.encoders_created = 0
        self._microphone = microphone
        self._on_chunk = on_chunk
        self._session: CaptureSession | None = None
        self._recorded: list[bytes] = []
        self._lock = asyncio.Lock()

    @property
    def is_active(self) -> bool:
        return self._session is not None and self._session.is_active

    @property
    def streaming(self) -> bool:
        return self._on_chunk is not None

    @property
    def stream(self) -> MicrophoneStream | None:
        return self._session.stream if self._session is not None else None

    async def start(self) -> None:
        async with self._lock:
            if self.is_active:
                logger.warning("Recording already in progress; ignoring start")
                return
            self._microphone.open()
            self._recorded = []
            encoder = PcmChunkEncoder(self._microphone, self._handle_chunk, interval_ms=self.interval_ms)
            encoder.start()
            self.encoders_created += 1
            self._session = CaptureSession(self._microphone, encoder)
            logger.info("Recording started")

    async def stop(self) -> bytes:
        """Finish the recording; returns the audio when not streaming."""
        async with self._lock:
            session = self._session
            if session is None:
                return b""
            await session.encoder.finalize()
            session.is_active = False
            self._session = None
            audio = b"".join(self._recorded)
            self._recorded = []
            logger.info("Recording stopped (%d chunks)", session.encoder.chunks_emitted)
            return audio

    async def _handle_chunk(self, chunk: bytes) -> None:
        if len(chunk) < self.min_chunk_bytes:
            return
        if self._on_chunk is None:
            self._recorded.append(chunk)
        else:
            await self._on_chunk(chunk)

    def release(self) -> None:
        self._microphone.close()


# ── Transport ────────────────────────────────────────────────────────────────

class ChunkTransport:
    """Persistent WebSocket to the server with fixed-delay reconnect.

    Outbound: binary audio chunks and ``{"type": "end"}``. Inbound JSON
    frames are routed by ``type`` to the handler registered with ``on``.
    Chunks sent while disconnected are dropped.
    """

    def __init__(
        self,
        url: str = DEFAULT_SERVER_URL,
        *,
        reconnect_delay: float = RECONNECT_DELAY_SEC,
        reconnect_jitter: float = 0.0,
        max_reconnect_attempts: int | None = None,
        audio_format: dict | None = None,
        connect: Callable[[str], Awaitable[Any]] | None = None,
    ):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.reconnect_jitter = reconnect_jitter
        self.max_reconnect_attempts = max_reconnect_attempts
        self.audio_format = audio_format or {"format": "pcm_s16le", "sample_rate": SAMPLE_RATE}
        self.connections_opened = 0
        self._connect = connect or websockets.connect
        self._ws = None
        self._connecting = False
        self._closing = False
        self._failures = 0
        self._reader: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._handlers: dict[str, Callable[[dict], Any]] = {}

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    def on(self, event_type: str, handler: Callable[[dict], Any]) -> None:
        self._handlers[event_type] = handler

    def connect(self) -> None:
        if self._ws is not None:
            logger.debug("WebSocket already connected")
            return
        if self._connecting:
            logger.debug("WebSocket connection already in progress")
            return
        self._closing = False
        self._cancel_reconnect()
        self._connecting = True
        self._reader = asyncio.get_running_loop().create_task(self._run())

    async def _open(self):
        try:
            return await self._connect(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"Failed to connect to {self.url}: {e}") from e

    async def _run(self) -> None:
        logger.info("Connecting to WebSocket: %s", self.url)
        try:
            ws = await self._open()
        except TransportError as e:
            logger.error("%s", e)
            self._connecting = False
            self._failures += 1
            self._dispatch({"type": "error", "message": "WebSocket connection error"})
            self._schedule_reconnect()
            return

        self._ws = ws
        self._connecting = False
        self._failures = 0
        self.connections_opened += 1
        logger.info("WebSocket connection established")
        try:
            await ws.send(json.dumps({"type": "session.update", "session": self.audio_format}))
            async for raw in ws:
                if isinstance(raw, bytes):
                    continue
                self._handle_frame(raw)
        except ConnectionClosed as e:
            logger.info("WebSocket connection closed: %s", e)
        finally:
            self._ws = None
        if not self._closing:
            self._schedule_reconnect()

    def _handle_frame(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Error parsing WebSocket message: %r", raw[:80])
            return
        if isinstance(message, dict):
            self._dispatch(message)

    def _dispatch(self, message: dict) -> None:
        handler = self._handlers.get(message.get("type"))
        if handler is None:
            logger.debug("No handler for message type %r", message.get("type"))
            return
        try:
            handler(message)
        except Exception as e:
            logger.error("Handler for %r failed: %s", message.get("type"), e)

    def _schedule_reconnect(self) -> None:
        if self._closing or self._reconnect_handle is not None:
            return
        if self.max_reconnect_attempts is not None and self._failures >= self.max_reconnect_attempts:
            logger.error("Giving up after %d failed connection attempts", self._failures)
            return
        delay = self.reconnect_delay
        if self.reconnect_jitter:
            delay += random.uniform(0, self.reconnect_jitter)
        logger.info("Reconnecting in %.1fs", delay)
        self._reconnect_handle = asyncio.get_running_loop().call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def send_chunk(self, chunk: bytes) -> bool:
        ws = self._ws
        if ws is None:
            logger.warning("WebSocket not connected; dropped %d-byte chunk, reconnecting", len(chunk))
            self.connect()
            return False
        try:
            await ws.send(chunk)
        except ConnectionClosed as e:
            logger.error("Error sending audio chunk: %s", e)
            self._dispatch({"type": "error", "message": "Failed to send audio chunk"})
            return False
        logger.debug("Sent audio chunk, size: %d", len(chunk))
        return True

    async def send_end_of_utterance(self) -> bool:
        ws = self._ws
        if ws is None:
            logger.warning("WebSocket not connected for end-of-audio signal")
            return False
        try:
            await ws.send(json.dumps({"type": "end"}))
        except ConnectionClosed as e:
            logger.error("Error sending end-of-audio signal: %s", e)
            return False
        logger.debug("Sent end-of-audio signal")
        return True

    async def close(self) -> None:
        self._closing = True
        self._cancel_reconnect()
        ws = self._ws
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._connecting = False


# ── Orchestrator ─────────────────────────────────────────────────────────────

class ListeningMode(Enum):
    IDLE = auto()
    WAKE_WORD_LISTENING = auto()
    RECORDING = auto()
    PROCESSING = auto()


class ClientOrchestrator:
    """Single source of truth for ListeningMode.

    Every transition runs under one lock and re-checks the current mode
    before acting, so late events (silence after a manual stop, a reply
    after the user switched off) are ignored.
    """

    def __init__(
        self,
        recognizer: WakeWordRecognizer,
        capture: AudioCaptureSession,
        detector: SilenceDetector,
        transport: ChunkTransport,
        *,
        cue: Callable[[], None] | None = None,
        reply_timeout: float = REPLY_TIMEOUT_SEC,
        on_mode_change: Callable[[ListeningMode], None] | None = None,
        on_transcription: Callable[[str], None] | None = None,
        on_response: Callable[[str], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ):
        self.reply_timeout = reply_timeout
        self.on_mode_change = on_mode_change
        self.on_transcription = on_transcription
        self.on_response = on_response
        self.on_error = on_error
        self._recognizer = recognizer
        self._capture = capture
        self._detector = detector
        self._transport = transport
        self._cue = cue
        self._mode = ListeningMode.IDLE
        self._lock = asyncio.Lock()
        self._reply_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

        recognizer.on_wake_word(self._on_wake_word)
        detector.on_silence(self._on_silence)
        transport.on("transcription", lambda m: self._notify(self.on_transcription, m.get("text", "")))
        transport.on("response", lambda m: self._notify(self.on_response, m.get("text", "")))
        transport.on("error", lambda m: self._notify(self.on_error, m.get("message", "")))
        transport.on("done", self._on_reply_done)

    @property
    def mode(self) -> ListeningMode:
        return self._mode

    def _set_mode(self, mode: ListeningMode) -> None:
        old = self._mode
        if old is mode:
            return
        self._mode = mode
        logger.info("Mode: %s → %s", old.name, mode.name)
        self._notify(self.on_mode_change, mode)

    def _notify(self, callback, value) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as e:
            logger.error("UI callback failed: %s", e)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def settle(self) -> None:
        """Wait until no transition is pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # Commands

    async def start_listening(self) -> None:
        async with self._lock:
            if self._mode is not ListeningMode.IDLE:
                return
            self._transport.connect()
            self._recognizer.set_enabled(True)
            self._set_mode(ListeningMode.WAKE_WORD_LISTENING)

    async def stop_listening(self) -> None:
        async with self._lock:
            await self._shutdown_subsystems()
            self._set_mode(ListeningMode.IDLE)

    async def toggle(self) -> None:
        mode = self._mode
        if mode is ListeningMode.IDLE:
            await self.start_listening()
        elif mode is ListeningMode.RECORDING:
            await self.finish_recording()
        else:
            await self.stop_listening()

    async def finish_recording(self) -> None:
        async with self._lock:
            if self._mode is not ListeningMode.RECORDING:
                return
            self._set_mode(ListeningMode.PROCESSING)
            self._detector.stop()
            await self._capture.stop()
            if not await self._transport.send_end_of_utterance():
                logger.warning("End of utterance not delivered; waiting for reply timeout")
            self._arm_reply_timer()

    # Events

    def _on_wake_word(self, transcript: str) -> None:
        self._spawn(self._begin_recording())

    async def _begin_recording(self) -> None:
        async with self._lock:
            if self._mode is not ListeningMode.WAKE_WORD_LISTENING:
                logger.debug("Wake word ignored in mode %s", self._mode.name)
                return
            self._set_mode(ListeningMode.RECORDING)
            self._play_cue()
            try:
                await self._capture.start()
            except CaptureError as e:
                await self._fail(str(e))
                return
            self._detector.start(self._capture.stream)

    def _on_silence(self) -> None:
        if self._mode is ListeningMode.RECORDING:
            self._spawn(self.finish_recording())

    def _on_reply_done(self, message: dict) -> None:
        self._spawn(self._reply_finished())

    async def _reply_finished(self, timed_out: bool = False) -> None:
        async with self._lock:
            if self._mode is not ListeningMode.PROCESSING:
                return
            self._cancel_reply_timer()
            if timed_out:
                logger.warning("No reply from server within %.0fs", self.reply_timeout)
            self._set_mode(ListeningMode.WAKE_WORD_LISTENING)
            self._recognizer.resume_after_recording()

    # Helpers (lock held)

    async def _fail(self, message: str) -> None:
        logger.error("Capture failed: %s", message)
        await self._shutdown_subsystems()
        self._set_mode(ListeningMode.IDLE)
        self._notify(self.on_error, message)

    async def _shutdown_subsystems(self) -> None:
        self._cancel_reply_timer()
        self._detector.stop()
        self._recognizer.set_enabled(False)
        await self._capture.stop()

    def _play_cue(self) -> None:
        if self._cue is None:
            return
        try:
            self._cue()
        except Exception as e:
            logger.warning("Activation cue failed: %s", e)

    def _arm_reply_timer(self) -> None:
        self._cancel_reply_timer()
        self._reply_timer = asyncio.get_running_loop().call_later(
            self.reply_timeout, lambda: self._spawn(self._reply_finished(timed_out=True))
        )

    def _cancel_reply_timer(self) -> None:
        if self._reply_timer is not None:
            self._reply_timer.cancel()
            self._reply_timer = None


def play_activation_cue(frequency: float = 880.0, duration: float = 0.12) -> None:
    """Short sine blip through the default output device (non-blocking)."""
    import sounddevice as sd

    t = np.arange(int(SAMPLE_RATE * duration)) / SAMPLE_RATE
    tone = 0.2 * np.sin(2 * np.pi * frequency * t) * np.hanning(t.size)
    sd.play(tone.astype(np.float32), SAMPLE_RATE)


# ── Console rendering ────────────────────────────────────────────────────────

DIM_ITALIC = "\033[2;3m"
RED = "\033[31m"
RESET = "\033[0m"

_MODE_LABELS = {
    ListeningMode.IDLE: "idle (Enter to start)",
    ListeningMode.WAKE_WORD_LISTENING: "waiting for wake word...",
    ListeningMode.RECORDING: "listening...",
    ListeningMode.PROCESSING: "processing...",
}


def _ts() -> str:
    return f"{DIM_ITALIC}{datetime.datetime.now():%H:%M:%S}{RESET}"


class ConsoleRenderer:
    """Prints transcriptions, streamed replies and mode changes."""

    def __init__(self, tty: bool = True, out=None):
        self._tty = tty
        self._out = out or sys.stdout
        self._reply_active = False

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()

    def _end_reply(self) -> None:
        if self._reply_active:
            self._write("\n")
            self._reply_active = False

    def mode_changed(self, mode: ListeningMode) -> None:
        if mode is not ListeningMode.PROCESSING:
            self._end_reply()
        label = _MODE_LABELS[mode]
        if self._tty:
            self._write(f"{_ts()} {DIM_ITALIC}({label}){RESET}\n")
        else:
            self._write(f"({label})\n")

    def transcription(self, text: str) -> None:
        self._end_reply()
        prefix = f"{_ts()} " if self._tty else ""
        self._write(f"{prefix}❯ {text.strip()}\n")

    def response(self, delta: str) -> None:
        if not self._reply_active:
            prefix = f"{_ts()} " if self._tty else ""
            self._write(f"{prefix}⏺ ")
            self._reply_active = True
        self._write(delta)

    def error(self, message: str) -> None:
        self._end_reply()
        if self._tty:
            self._write(f"{_ts()} {RED}error:{RESET} {message}\n")
        else:
            self._write(f"error: {message}\n")


# ── CLI ──────────────────────────────────────────────────────────────────────

async def _stdin_reader_line(loop, queue: asyncio.Queue) -> None:
    """Read lines from stdin, put into queue. Puts None on EOF."""
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                await queue.put(None)
                break
            await queue.put(line.strip())
    except asyncio.CancelledError:
        pass


async def run_client(args: argparse.Namespace) -> None:
    microphone = MicrophoneStream(device=args.device)
    transport = ChunkTransport(
        args.url,
        reconnect_jitter=args.reconnect_jitter,
        max_reconnect_attempts=args.max_reconnects,
    )
    engine = WhisperRecognitionEngine(microphone, model=args.whisper_model, language=args.language)
    recognizer = WakeWordRecognizer(engine, wake_word=args.wake_word)
    detector = SilenceDetector(threshold_db=args.silence_threshold, duration_ms=args.silence_duration)
    capture = AudioCaptureSession(microphone, transport.send_chunk)
    renderer = ConsoleRenderer(tty=sys.stdout.isatty())
    orchestrator = ClientOrchestrator(
        recognizer, capture, detector, transport,
        cue=None if args.no_cue else play_activation_cue,
        reply_timeout=args.reply_timeout,
        on_mode_change=renderer.mode_changed,
        on_transcription=renderer.transcription,
        on_response=renderer.response,
        on_error=renderer.error,
    )

    loop = asyncio.get_running_loop()
    stdin_queue: asyncio.Queue[str | None] = asyncio.Queue()
    reader_task = asyncio.create_task(_stdin_reader_line(loop, stdin_queue))
    try:
        await orchestrator.start_listening()
        while True:
            line = await stdin_queue.get()
            if line is None or line.lower() in ("q", "quit", "exit"):
                break
            await orchestrator.toggle()
    finally:
        reader_task.cancel()
        try:
            await reader_task
        except asyncio.CancelledError:
            pass
        await orchestrator.stop_listening()
        recognizer.close()
        await transport.close()
        capture.release()


def main():
    parser = argparse.ArgumentParser(
        description="Wake-word voice assistant client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  %(prog)s                                   # default server and wake word
  %(prog)s --wake-word "привет" --language ru
  %(prog)s --url ws://192.168.1.10:3000/ws --silence-duration 1500
""",
    )
    parser.add_argument("--url", default=DEFAULT_SERVER_URL, help="Server WebSocket URL")
    parser.add_argument("--wake-word", default=DEFAULT_WAKE_WORD, help="Phrase that starts a recording")
    parser.add_argument("--language", default=None, help="Recognition language (e.g. en, ru)")
    parser.add_argument("--whisper-model", default=DEFAULT_WHISPER_MODEL, help="faster-whisper model for wake word")
    parser.add_argument("--device", default=None, help="Input device name or index")
    parser.add_argument("--silence-threshold", type=float, default=SILENCE_THRESHOLD_DB,
                        help="Silence threshold in dB")
    parser.add_argument("--silence-duration", type=float, default=SILENCE_DURATION_MS,
                        help="Milliseconds of silence that end a recording")
    parser.add_argument("--reply-timeout", type=float, default=REPLY_TIMEOUT_SEC,
                        help="Seconds to wait for a reply before listening again")
    parser.add_argument("--max-reconnects", type=int, default=None,
                        help="Give up after this many failed connection attempts (default: never)")
    parser.add_argument("--reconnect-jitter", type=float, default=0.0,
                        help="Random extra seconds added to each reconnect delay")
    parser.add_argument("--no-cue", action="store_true", help="Don't beep on wake word")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if isinstance(args.device, str) and args.device.isdigit():
        args.device = int(args.device)

    try:
        asyncio.run(run_client(args))
    except KeyboardInterrupt:
        sys.stdout.write("\n")
        sys.exit(130)


if __name__ == "__main__":
    main()
