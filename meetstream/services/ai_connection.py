"""
AIConnection: long-lived WebSocket to the chat backend used for meeting summaries.

- One per process (get_ai_connection()); sessions reuse it one request at a time.
  Each request holds an asyncio.Lock for the whole request/response pair, so
  concurrent callers queue.
- send() is one-shot: only the prompt goes out, so one meeting never leaks into
  the next summary. chat() carries and extends the conversation history.
- Request body: {"messages": [...], "imageBytes": null, "smarterAnalysisEnabled": false}.
- The reply arrives as plain-text chunks. They are accumulated until a completion
  marker shows up or the response timeout expires; on timeout the partial text is
  returned if there is any, else SummaryTimeout.
- Unexpected drops trigger auto-reconnect with capped exponential backoff
  (min(base * 2**(n-1), max)), at most AI_RECONNECT_MAX_ATTEMPTS in a row; the
  counter resets on a successful connect.
- Message-update listeners (called with the accumulated text per chunk) are
  bounded by AI_MAX_LISTENERS.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from meetstream.config import Settings, get_settings
from meetstream.errors import SummaryError, SummaryTimeout

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]
MessageListener = Callable[[str], None]

COMPLETION_MARKERS = ("</response>", "COMPLETE", "###END###", "[END]")
# An empty chunk only ends the reply once this much text has arrived
EMPTY_CHUNK_MIN_CHARS = 100


def is_completion_chunk(chunk: str, accumulated_chars: int) -> bool:
    if any(marker in chunk for marker in COMPLETION_MARKERS):
        return True
    if chunk.endswith("\n\n"):
        return True
    return accumulated_chars > EMPTY_CHUNK_MIN_CHARS and chunk.strip() == ""


class ResponseAccumulator:
    """Collects streamed chunks of one reply."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self.complete = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: str) -> bool:
        """Add a chunk; True once the reply is complete."""
        self._parts.append(chunk)
        if is_completion_chunk(chunk, len(self.text)):
            self.complete = True
        return self.complete


class AIConnection:
    def __init__(self, settings: Settings | None = None, connector: Connector | None = None) -> None:
        self._settings = settings or get_settings()
        self._connector: Connector = connector or websockets.connect
        self._ws: Any = None
        self._connected = asyncio.Event()
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._maintain = False
        self._lock = asyncio.Lock()
        self._history_lock = asyncio.Lock()
        self._chunks: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._history: list[dict[str, Any]] = []
        self._listeners: list[MessageListener] = []

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    def add_listener(self, listener: MessageListener) -> None:
        if len(self._listeners) >= self._settings.AI_MAX_LISTENERS:
            raise RuntimeError(f"AIConnection listener limit reached ({self._settings.AI_MAX_LISTENERS})")
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear_conversation(self) -> None:
        self._history.clear()

    async def connect(self) -> None:
        """Open the socket if needed. Failures schedule a reconnect and are not raised."""
        self._maintain = True
        if self.is_connected:
            return
        try:
            self._ws = await self._connector(self._settings.AI_CHAT_URL, open_timeout=self._settings.AI_CONNECT_WAIT_SECONDS)
        except Exception as e:
            logger.warning("AI service connection failed: %s", e)
            self._schedule_reconnect()
            return
        self._reconnect_attempts = 0
        self._connected.set()
        self._reader_task = asyncio.create_task(self._reader(self._ws))
        logger.info("Connected to AI service")

    async def _reader(self, ws: Any) -> None:
        try:
            while True:
                raw = await ws.recv()
                chunk = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
                self._chunks.put_nowait(chunk)
        except ConnectionClosed as e:
            logger.info("AI service connection closed: %s", e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("AI service receive failed: %s", e)
        self._connected.clear()
        self._ws = None
        # Wake a waiting send()
        self._chunks.put_nowait(None)
        if self._maintain:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self._reconnect_attempts >= self._settings.AI_RECONNECT_MAX_ATTEMPTS:
            logger.warning("AI service: max reconnection attempts reached")
            return
        self._reconnect_attempts += 1
        delay = self.backoff_delay(self._reconnect_attempts)
        logger.info(
            "AI service: reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._reconnect_attempts,
            self._settings.AI_RECONNECT_MAX_ATTEMPTS,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._maintain and not self.is_connected:
            self._reconnect_task = None
            await self.connect()

    def backoff_delay(self, attempt: int) -> float:
        s = self._settings
        return min(s.AI_RECONNECT_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), s.AI_RECONNECT_MAX_DELAY_SECONDS)

    async def _ensure_connected(self) -> None:
        if self.is_connected:
            return
        await self.connect()
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self._settings.AI_CONNECT_WAIT_SECONDS)
        except asyncio.TimeoutError as e:
            raise SummaryError("Not connected to AI service") from e

    def _notify(self, text: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(text)
            except Exception:
                logger.exception("AI message listener failed")

    async def send(self, prompt: str, timeout: float | None = None) -> str:
        """
        One-shot request: the prompt alone, no conversation history. Used for summaries.
        Raises SummaryTimeout when nothing arrived in time, SummaryError when the
        connection is unavailable or drops before any text arrived.
        """
        return await self._request([{"role": "user", "content": prompt}], timeout)

    async def chat(self, prompt: str, timeout: float | None = None) -> str:
        """Conversational request: the prompt is sent with the history and both are kept."""
        async with self._history_lock:
            messages = self._history + [{"role": "user", "content": prompt}]
            text = await self._request(messages, timeout)
            self._history = messages + [{"role": "assistant", "content": text}]
            return text

    async def _request(self, messages: list[dict[str, Any]], timeout: float | None) -> str:
        timeout = timeout if timeout is not None else self._settings.AI_RESPONSE_IDLE_TIMEOUT_SECONDS
        async with self._lock:
            await self._ensure_connected()
            while not self._chunks.empty():
                self._chunks.get_nowait()
            request = {"messages": messages, "imageBytes": None, "smarterAnalysisEnabled": False}
            try:
                await self._ws.send(json.dumps(request))
            except Exception as e:
                raise SummaryError(f"AI request failed: {e}") from e
            logger.info("AI request sent (%d messages, %d chars)", len(messages), len(messages[-1]["content"]))
            return await self._collect(timeout)

    async def _collect(self, timeout: float) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        acc = ResponseAccumulator()
        while not acc.complete:
            remaining = deadline - loop.time()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError
                chunk = await asyncio.wait_for(self._chunks.get(), timeout=remaining)
            except asyncio.TimeoutError:
                if acc.text.strip():
                    logger.warning("AI response timed out after %.0fs, using partial reply", timeout)
                    return acc.text
                raise SummaryTimeout(f"AI response timed out after {timeout:.0f}s") from None
            if chunk is None:
                if acc.text.strip():
                    logger.warning("AI connection dropped mid-response, using partial reply")
                    return acc.text
                raise SummaryError("AI connection lost before a reply arrived")
            acc.feed(chunk)
            self._notify(acc.text)
        logger.info("AI response completed (%d chars)", len(acc.text))
        return acc.text

    async def close(self) -> None:
        self._maintain = False
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        ws, self._ws = self._ws, None
        self._connected.clear()
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning("AI service close failed: %s", e)
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None


_connection: AIConnection | None = None


def get_ai_connection(settings: Settings | None = None) -> AIConnection:
    """Process-wide connection; created on first use."""
    global _connection
    if _connection is None:
        _connection = AIConnection(settings)
    return _connection


async def shutdown_ai_connection() -> None:
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
