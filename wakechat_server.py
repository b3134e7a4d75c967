"""Voice assistant server: streamed audio in, streamed chat reply out.

Usage:
    wakechat-server                       # http://127.0.0.1:3000
    wakechat-server --port 8080 --model gpt-4o-mini

Environment:
    OPENAI_API_KEY, OPENAI_BASE_URL       # any OpenAI-compatible provider
    OPENAI_MODEL, OPENAI_STT_MODEL
    OPENWEATHER_API_KEY                   # for the get_weather tool
    WAKECHAT_SYSTEM_PROMPT

HTTP endpoints:
    GET  /            — Info
    GET  /health      — Health check
    POST /speech      — One-shot turn (multipart field "audio")
    WS   /ws          — Streaming protocol (below)

WebSocket protocol:
    client → server  binary                 audio chunk
    client → server  {"type": "end"}        utterance boundary
    client → server  {"type": "session.update", "session": {"format", "sample_rate"}}
    server → client  {"type": "transcription", "text"}
    server → client  {"type": "response", "text"}     one per streamed delta
    server → client  {"type": "error", "message"}
    server → client  {"type": "done"}                 end of every turn
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import io
import json
import logging
import os
import struct
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Protocol

import httpx
from starlette.applications import Starlette
from starlette.datastructures import UploadFile
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from wakechat_tools import ToolExecutionError, ToolRegistry, default_registry

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_PORT = 3000
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
DEFAULT_CHAT_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
DEFAULT_STT_MODEL = os.getenv("OPENAI_STT_MODEL", "whisper-1")
SYSTEM_PROMPT = os.getenv(
    "WAKECHAT_SYSTEM_PROMPT",
    "You are a smart assistant running on a smart speaker. "
    "Answer briefly, in plain sentences suitable for reading aloud.",
)
HISTORY_WINDOW_SEC = 10 * 60
PROVIDER_TIMEOUT_SEC = 60.0
DEFAULT_SAMPLE_RATE = 16000

PCM_ENCODING = "pcm_s16le"
CONTAINER_FORMATS = {"webm", "ogg", "wav", "mp3", "mp4", "m4a"}


# ── Errors ───────────────────────────────────────────────────────────────────

class ProviderError(Exception):
    pass


class TranscriptionProviderError(ProviderError):
    pass


class CompletionProviderError(ProviderError):
    pass


class ChannelClosed(Exception):
    """The client went away; stop producing output for it."""


# ── Conversation model ───────────────────────────────────────────────────────

class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    function_name: str
    arguments_json: str

    def arguments(self) -> dict:
        return json.loads(self.arguments_json)

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.function_name, "arguments": self.arguments_json},
        }


@dataclass(frozen=True)
class ConversationMessage:
    role: Role
    content: str | None
    timestamp: float
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    def to_wire(self) -> dict:
        msg: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        if self.name is not None and self.role is Role.TOOL:
            msg["name"] = self.name
        return msg


class ConversationLog:
    """Append-only message history with a time-windowed view.

    The first message is always the system prompt and is never dropped from
    the window. Everything else is visible to the model only while it is
    younger than ``window_sec``.
    """

    def __init__(
        self,
        system_prompt: str,
        *,
        window_sec: float = HISTORY_WINDOW_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.window_sec = window_sec
        self._clock = clock
        self._messages: list[ConversationMessage] = [
            ConversationMessage(Role.SYSTEM, system_prompt, clock())
        ]

    @property
    def system(self) -> ConversationMessage:
        return self._messages[0]

    @property
    def messages(self) -> tuple[ConversationMessage, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, role: Role, content: str | None, **extra: Any) -> ConversationMessage:
        if role is Role.SYSTEM:
            raise ValueError("The system message is fixed")
        if "tool_calls" in extra:
            extra["tool_calls"] = tuple(extra["tool_calls"])
        message = ConversationMessage(role, content, self._clock(), **extra)
        self._messages.append(message)
        return message

    def window(self, now: float | None = None) -> list[ConversationMessage]:
        if now is None:
            now = self._clock()
        cutoff = now - self.window_sec
        recent = [m for m in self._messages[1:] if m.timestamp > cutoff]
        # A tool result is only valid after the assistant message that requested it
        known_calls: set[str] = set()
        visible = [self.system]
        for m in recent:
            if m.role is Role.TOOL and m.tool_call_id not in known_calls:
                continue
            known_calls.update(call.id for call in m.tool_calls)
            visible.append(m)
        return visible

    def wire_window(self, now: float | None = None) -> list[dict]:
        return [m.to_wire() for m in self.window(now)]


@dataclass
class _ToolCallBuilder:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Collects streamed tool-call fragments keyed by their index."""

    def __init__(self):
        self._builders: dict[int, _ToolCallBuilder] = {}

    def __bool__(self) -> bool:
        return bool(self._builders)

    def add(self, fragment: dict) -> None:
        index = int(fragment.get("index") or 0)
        builder = self._builders.setdefault(index, _ToolCallBuilder())
        if fragment.get("id") and not builder.id:
            builder.id = fragment["id"]
        function = fragment.get("function") or {}
        if function.get("name"):
            builder.name += function["name"]
        if function.get("arguments"):
            builder.arguments += function["arguments"]

    def finalize(self) -> list[ToolCallRequest]:
        calls = []
        for index in sorted(self._builders):
            b = self._builders[index]
            if not b.name:
                logger.warning("Skipping tool call #%d with no name", index)
                continue
            try:
                args = json.loads(b.arguments) if b.arguments else None
            except json.JSONDecodeError:
                args = None
            if not isinstance(args, dict):
                logger.warning("Skipping tool call %s: malformed arguments %r", b.name, b.arguments)
                continue
            calls.append(ToolCallRequest(b.id or f"call_{uuid.uuid4().hex[:12]}", b.name, b.arguments))
        return calls


# ── Audio ingestion ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AudioUpload:
    data: bytes
    filename: str = "audio.webm"
    content_type: str = "audio/webm"


@dataclass(frozen=True)
class AudioFormat:
    """How a connection's binary frames are encoded."""

    encoding: str = "webm"
    sample_rate: int = DEFAULT_SAMPLE_RATE

    @classmethod
    def from_dict(cls, data: dict) -> "AudioFormat":
        encoding = str(data.get("format", "webm")).lower()
        if encoding != PCM_ENCODING and encoding not in CONTAINER_FORMATS:
            raise ValueError(f"Unsupported audio format: {encoding}")
        sample_rate = int(data.get("sample_rate", DEFAULT_SAMPLE_RATE))
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        return cls(encoding, sample_rate)

    def to_dict(self) -> dict:
        return {"format": self.encoding, "sample_rate": self.sample_rate}

    def package(self, payload: bytes) -> AudioUpload:
        if self.encoding == PCM_ENCODING:
            return AudioUpload(pcm16_to_wav(payload, self.sample_rate), "audio.wav", "audio/wav")
        return AudioUpload(payload, f"audio.{self.encoding}", f"audio/{self.encoding}")


def pcm16_to_wav(pcm: bytes, sample_rate: int = DEFAULT_SAMPLE_RATE) -> bytes:
    """Wrap mono PCM16 LE samples in a WAV container."""
    if len(pcm) % 2:
        pcm = pcm[:-1]
    buf = io.BytesIO()
    data_size = len(pcm)
    buf.write(b"RIFF")
    buf.write(struct.pack("<I", 36 + data_size))
    buf.write(b"WAVE")
    buf.write(b"fmt ")
    buf.write(struct.pack("<IHHIIHH", 16, 1, 1, sample_rate, sample_rate * 2, 2, 16))
    buf.write(b"data")
    buf.write(struct.pack("<I", data_size))
    buf.write(pcm)
    return buf.getvalue()


class IngestionBuffer:
    """Binary chunks of the utterance in progress on one connection."""

    def __init__(self):
        self._chunks: list[bytes] = []

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def size(self) -> int:
        return sum(len(c) for c in self._chunks)

    def append(self, chunk: bytes) -> None:
        if chunk:
            self._chunks.append(bytes(chunk))

    def drain(self) -> bytes:
        payload = b"".join(self._chunks)
        self._chunks.clear()
        return payload

    def clear(self) -> None:
        self._chunks.clear()


# ── Providers ────────────────────────────────────────────────────────────────

class TranscriptionProvider(Protocol):
    async def transcribe(self, audio: AudioUpload) -> str: ...


class CompletionProvider(Protocol):
    def stream(self, messages: list[dict], tools: list[dict]) -> AsyncIterator[dict]: ...


_SSE_DONE = object()


def parse_sse_line(line: str) -> Any:
    """Decode one server-sent-events line.

    Returns the JSON payload of a ``data:`` line, ``_SSE_DONE`` for the
    terminating ``data: [DONE]``, or None for anything else.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data:
        return None
    if data == "[DONE]":
        return _SSE_DONE
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed stream chunk: %r", data[:120])
        return None


class _OpenAIClient:
    def __init__(self, api_key, base_url, timeout, client):
        self.api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class OpenAITranscriptionProvider(_OpenAIClient):
    """POST /audio/transcriptions against an OpenAI-compatible API."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str = OPENAI_BASE_URL,
        model: str = DEFAULT_STT_MODEL,
        language: str | None = None,
        timeout: float = PROVIDER_TIMEOUT_SEC,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(api_key, base_url, timeout, client)
        self.model = model
        self.language = language

    async def transcribe(self, audio: AudioUpload) -> str:
        form = {"model": self.model}
        if self.language:
            form["language"] = self.language
        try:
            resp = await self._client.post(
                f"{self.base_url}/audio/transcriptions",
                headers=self._headers(),
                data=form,
                files={"file": (audio.filename, audio.data, audio.content_type)},
            )
        except httpx.HTTPError as e:
            raise TranscriptionProviderError(f"Transcription request failed: {e}") from e
        if resp.status_code != 200:
            raise TranscriptionProviderError(
                f"Transcription failed: HTTP {resp.status_code} {resp.text[:200]}"
            )
        return str(resp.json().get("text", ""))


class OpenAICompletionProvider(_OpenAIClient):
    """Streaming POST /chat/completions; yields each choice delta."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str = OPENAI_BASE_URL,
        model: str = DEFAULT_CHAT_MODEL,
        timeout: float = PROVIDER_TIMEOUT_SEC,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(api_key, base_url, timeout, client)
        self.model = model

    async def stream(self, messages: list[dict], tools: list[dict]) -> AsyncIterator[dict]:
        payload: dict[str, Any] = {"model": self.model, "messages": messages, "stream": True}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        try:
            async with self._client.stream(
                "POST", f"{self.base_url}/chat/completions",
                headers=self._headers(), json=payload,
            ) as resp:
                if resp.status_code != 200:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise CompletionProviderError(
                        f"Chat completion failed: HTTP {resp.status_code} {body[:200]}"
                    )
                async for line in resp.aiter_lines():
                    chunk = parse_sse_line(line)
                    if chunk is None:
                        continue
                    if chunk is _SSE_DONE:
                        break
                    for choice in chunk.get("choices") or []:
                        yield choice.get("delta") or {}
        except httpx.HTTPError as e:
            raise CompletionProviderError(f"Chat completion request failed: {e}") from e


# ── Conversation engine ──────────────────────────────────────────────────────

class EventChannel(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_event(self, event: dict) -> None: ...


@dataclass
class ConversationSession:
    """History and turn lock for one connection (one speaker)."""

    log: ConversationLog
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    turns: int = 0


class ConversationEngine:
    """Transcribe → chat (with one optional tool round) → stream reply.

    One engine serves every connection; per-connection state lives in the
    ConversationSession handed to ``run_turn``.
    """

    def __init__(
        self,
        transcriber: TranscriptionProvider,
        completer: CompletionProvider,
        tools: ToolRegistry,
        *,
        system_prompt: str = SYSTEM_PROMPT,
        window_sec: float = HISTORY_WINDOW_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.transcriber = transcriber
        self.completer = completer
        self.tools = tools
        self.system_prompt = system_prompt
        self.window_sec = window_sec
        self._clock = clock

    def new_session(self) -> ConversationSession:
        return ConversationSession(
            ConversationLog(self.system_prompt, window_sec=self.window_sec, clock=self._clock)
        )

    async def run_turn(
        self, session: ConversationSession, audio: AudioUpload, channel: EventChannel
    ) -> None:
        """Run one user turn. Errors are reported on the channel, never raised."""
        async with session.turn_lock:
            session.turns += 1
            started = time.monotonic()
            try:
                await self._run_turn(session, audio, channel)
            except ChannelClosed:
                logger.info("Turn %d abandoned: client disconnected", session.turns)
                return
            except Exception as e:
                logger.error("Turn %d failed: %s", session.turns, e)
                await _send_if_open(channel, {"type": "error", "message": str(e) or type(e).__name__})
            else:
                logger.info("Turn %d done in %.2fs", session.turns, time.monotonic() - started)
            await _send_if_open(channel, {"type": "done"})

    async def reject_turn(
        self, session: ConversationSession, message: str, channel: EventChannel
    ) -> None:
        """Report a turn that cannot run, in order with the turns before it."""
        async with session.turn_lock:
            logger.warning("Turn rejected: %s", message)
            await _send_if_open(channel, {"type": "error", "message": message})
            await _send_if_open(channel, {"type": "done"})

    async def _run_turn(
        self, session: ConversationSession, audio: AudioUpload, channel: EventChannel
    ) -> None:
        text = (await self.transcriber.transcribe(audio)).strip()
        logger.info("Transcription: '%s'", text[:80])
        await channel.send_event({"type": "transcription", "text": text})
        session.log.append(Role.USER, text)

        reply, calls = await self._stream_reply(session, channel)
        if not calls:
            session.log.append(Role.ASSISTANT, reply)
            return

        session.log.append(Role.ASSISTANT, reply or None, tool_calls=calls)
        for call in calls:
            result = await self._execute_tool(call)
            session.log.append(
                Role.TOOL, result, tool_call_id=call.id, name=call.function_name
            )

        reply, nested = await self._stream_reply(session, channel)
        if nested:
            logger.warning("Ignoring %d nested tool call(s) in follow-up", len(nested))
        session.log.append(Role.ASSISTANT, reply)

    async def _stream_reply(
        self, session: ConversationSession, channel: EventChannel
    ) -> tuple[str, list[ToolCallRequest]]:
        parts: list[str] = []
        pending = ToolCallAccumulator()
        async for delta in self.completer.stream(session.log.wire_window(), self.tools.schemas()):
            content = delta.get("content")
            if content:
                if not channel.is_open:
                    raise ChannelClosed("channel closed during streaming")
                parts.append(content)
                await channel.send_event({"type": "response", "text": content})
            for fragment in delta.get("tool_calls") or []:
                pending.add(fragment)
        return "".join(parts), pending.finalize()

    async def _execute_tool(self, call: ToolCallRequest) -> str:
        logger.info("Tool call %s(%s)", call.function_name, call.arguments_json)
        try:
            result = await self.tools.execute(call.function_name, call.arguments())
        except ToolExecutionError as e:
            logger.warning("Tool %s failed: %s", call.function_name, e)
            result = {"error": str(e)}
        return json.dumps(result, ensure_ascii=False, default=str)

    async def aclose(self) -> None:
        for provider in (self.transcriber, self.completer):
            closer = getattr(provider, "aclose", None)
            if closer is not None:
                await closer()


async def _send_if_open(channel: EventChannel, event: dict) -> None:
    if not channel.is_open:
        return
    try:
        await channel.send_event(event)
    except ChannelClosed:
        logger.debug("Dropped %s event: channel closed", event.get("type"))


class WebSocketChannel:
    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send_event(self, event: dict) -> None:
        if not self.is_open:
            raise ChannelClosed("websocket is closed")
        try:
            await self._ws.send_json(event)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._closed = True
            raise ChannelClosed(str(e)) from e


class CollectingChannel:
    """Gathers a whole turn's events, for the non-streaming endpoint."""

    def __init__(self):
        self.events: list[dict] = []

    @property
    def is_open(self) -> bool:
        return True

    async def send_event(self, event: dict) -> None:
        self.events.append(event)

    @property
    def transcription(self) -> str:
        return next((e["text"] for e in self.events if e["type"] == "transcription"), "")

    @property
    def response(self) -> str:
        return "".join(e["text"] for e in self.events if e["type"] == "response")

    @property
    def error(self) -> str | None:
        return next((e["message"] for e in self.events if e["type"] == "error"), None)


# ── HTTP Endpoints ──────────────────────────────────────────────────────────

async def index(request: Request) -> JSONResponse:
    """Info endpoint."""
    return JSONResponse({
        "service": "wakechat",
        "endpoints": {
            "GET /": "This info endpoint",
            "GET /health": "Health check",
            "POST /speech": "One-shot transcription + reply (multipart 'audio')",
            "WS /ws": "Streaming audio in, streamed reply out",
        },
        "tools": request.app.state.engine.tools.names(),
    })


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def speech_endpoint(request: Request) -> JSONResponse:
    form = await request.form()
    upload = form.get("audio")
    if not isinstance(upload, UploadFile):
        return JSONResponse({"error": "No audio file provided"}, status_code=400)
    data = await upload.read()
    if not data:
        return JSONResponse({"error": "Audio file is empty"}, status_code=400)

    engine: ConversationEngine = request.app.state.engine
    channel = CollectingChannel()
    audio = AudioUpload(
        data,
        upload.filename or "recording.webm",
        upload.content_type or "audio/webm",
    )
    await engine.run_turn(engine.new_session(), audio, channel)
    if channel.error is not None:
        return JSONResponse({"error": channel.error}, status_code=502)
    return JSONResponse({"transcription": channel.transcription, "response": channel.response})


# ── WebSocket Endpoint ───────────────────────────────────────────────────────

async def ws_endpoint(websocket: WebSocket) -> None:
    """WebSocket /ws — one conversation per connection."""
    await websocket.accept()

    engine: ConversationEngine = websocket.app.state.engine
    session = engine.new_session()
    buffer = IngestionBuffer()
    channel = WebSocketChannel(websocket)
    audio_format = AudioFormat()
    turns: set[asyncio.Task] = set()
    logger.info("WS connection opened")

    async def _handle_message(data: dict) -> None:
        nonlocal audio_format
        msg_type = data.get("type")

        if msg_type == "end":
            payload = buffer.drain()
            if payload:
                logger.info("Utterance complete: %d bytes (%s)", len(payload), audio_format.encoding)
                turn = engine.run_turn(session, audio_format.package(payload), channel)
            else:
                turn = engine.reject_turn(session, "No audio received", channel)
            task = asyncio.create_task(turn)
            turns.add(task)
            task.add_done_callback(turns.discard)

        elif msg_type == "session.update":
            try:
                audio_format = AudioFormat.from_dict(data.get("session") or {})
            except (TypeError, ValueError) as e:
                await channel.send_event({"type": "error", "message": str(e)})
                return
            await channel.send_event({"type": "session.created", "session": audio_format.to_dict()})

        else:
            logger.debug("Ignoring message type %r", msg_type)

    try:
        while True:
            msg = await websocket.receive()
            if msg["type"] == "websocket.disconnect":
                break
            if msg.get("bytes") is not None:
                buffer.append(msg["bytes"])
            elif msg.get("text") is not None:
                try:
                    data = json.loads(msg["text"])
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON text frame: %r", msg["text"][:80])
                    continue
                if isinstance(data, dict):
                    await _handle_message(data)
    except (WebSocketDisconnect, ChannelClosed):
        pass
    except Exception as e:
        logger.error("WS error: %s", e)
    finally:
        channel.mark_closed()
        buffer.clear()
        for task in list(turns):
            task.cancel()
        logger.info("WS connection closed (%d turn(s))", session.turns)


# ── App Composition ──────────────────────────────────────────────────────────

def build_engine(
    *,
    api_key: str | None = None,
    base_url: str = OPENAI_BASE_URL,
    model: str = DEFAULT_CHAT_MODEL,
    stt_model: str = DEFAULT_STT_MODEL,
    language: str | None = None,
    system_prompt: str = SYSTEM_PROMPT,
    window_sec: float = HISTORY_WINDOW_SEC,
    timeout: float = PROVIDER_TIMEOUT_SEC,
    tools: ToolRegistry | None = None,
) -> ConversationEngine:
    return ConversationEngine(
        OpenAITranscriptionProvider(
            api_key, base_url=base_url, model=stt_model, language=language, timeout=timeout
        ),
        OpenAICompletionProvider(api_key, base_url=base_url, model=model, timeout=timeout),
        tools if tools is not None else default_registry(),
        system_prompt=system_prompt,
        window_sec=window_sec,
    )


def create_app(engine: ConversationEngine | None = None) -> Starlette:
    if engine is None:
        engine = build_engine()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        yield
        await engine.aclose()

    routes = [
        Route("/", index),
        Route("/health", health),
        Route("/api/health", health),
        Route("/speech", speech_endpoint, methods=["POST"]),
        WebSocketRoute("/ws", ws_endpoint),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.engine = engine
    return app


def main():
    parser = argparse.ArgumentParser(
        description="Voice assistant server: streamed transcription + tool-calling chat",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port")
    parser.add_argument("--base-url", default=OPENAI_BASE_URL, help="OpenAI-compatible API base URL")
    parser.add_argument("--model", default=DEFAULT_CHAT_MODEL, help="Chat completion model")
    parser.add_argument("--stt-model", default=DEFAULT_STT_MODEL, help="Transcription model")
    parser.add_argument("--language", default=None, help="Transcription language hint (e.g. ru)")
    parser.add_argument("--system-prompt", default=SYSTEM_PROMPT, help="System message")
    parser.add_argument("--history-minutes", type=float, default=HISTORY_WINDOW_SEC / 60,
                        help="How far back the model sees the conversation")
    parser.add_argument("--provider-timeout", type=float, default=PROVIDER_TIMEOUT_SEC,
                        help="Seconds before a provider call is abandoned")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if not os.getenv("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY is not set; provider calls will likely fail")

    engine = build_engine(
        base_url=args.base_url,
        model=args.model,
        stt_model=args.stt_model,
        language=args.language,
        system_prompt=args.system_prompt,
        window_sec=args.history_minutes * 60,
        timeout=args.provider_timeout,
    )
    app = create_app(engine)

    import uvicorn
    logger.info("Starting wakechat server at http://%s:%d", args.host, args.port)
    logger.info("  Health:  http://%s:%d/health", args.host, args.port)
    logger.info("  Speech:  http://%s:%d/speech", args.host, args.port)
    logger.info("  WS:      ws://%s:%d/ws", args.host, args.port)
    try:
        uvicorn.run(app, host=args.host, port=args.port, loop="asyncio")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
