"""
StreamingTransport: one persistent WebSocket per audio channel to the speech backend.

- Outbound: raw binary PCM16LE mono frames, drained from a queue by a sender task
  so send() never blocks and never raises into the audio path.
- Inbound: JSON messages, normalized to TranscriptEvent and handed to on_event.
  Malformed messages are logged and skipped; the channel keeps running.
- close(): stop sending, send the termination signal, wait (bounded) for the
  backend's session-end so trailing finals arrive, then release the socket.
- A drop that we did not initiate is reported once through on_disconnected. The
  transport never reconnects by itself; the session owner decides.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from meetstream.audio.encoder import PCMFrame
from meetstream.config import Settings, get_settings
from meetstream.errors import ProtocolError, StreamingConnectionError
from meetstream.transport.events import ErrorEvent, MessageNormalizer, SessionEnd, TranscriptEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, TranscriptEvent], None]
DisconnectCallback = Callable[[str, str], None]
Connector = Callable[..., Awaitable[Any]]

# ~65s of audio at 4096-sample frames; older frames are dropped beyond this
SEND_QUEUE_MAX_FRAMES = 256

_V3_TERMINATE = {"type": "Terminate"}
_V2_TERMINATE = {"terminate_session": True}


class TransportState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def _flag(value: bool) -> str:
    return "true" if value else "false"


def use_header_auth(settings: Settings) -> bool:
    if settings.STREAMING_AUTH_MODE == "auto":
        return settings.STREAMING_API_VERSION == "v3"
    return settings.STREAMING_AUTH_MODE == "header"


def build_stream_url(settings: Settings, auth_token: str | None = None) -> str:
    """
    Streaming URL with connect-time protocol parameters.
    auth_token is added as `token` only when query-param auth is in effect.
    """
    if settings.STREAMING_API_VERSION == "v3":
        base = settings.STREAMING_URL_V3
        params: dict[str, Any] = {
            "sample_rate": settings.SAMPLE_RATE,
            "format_turns": "true",
            "end_of_turn_confidence_threshold": settings.END_OF_TURN_CONFIDENCE_THRESHOLD,
            "min_end_of_turn_silence_when_confident": settings.MIN_END_OF_TURN_SILENCE_WHEN_CONFIDENT_MS,
            "max_turn_silence": settings.MAX_TURN_SILENCE_MS,
            "speaker_labels": _flag(settings.SPEAKER_LABELS),
            "speakers_expected": settings.SPEAKERS_EXPECTED,
        }
    else:
        base = settings.STREAMING_URL_V2
        params = {"sample_rate": settings.SAMPLE_RATE}
    if auth_token and not use_header_auth(settings):
        params["token"] = auth_token
    return f"{base}?{urlencode(params)}"


def termination_message(settings: Settings) -> str:
    return json.dumps(_V3_TERMINATE if settings.STREAMING_API_VERSION == "v3" else _V2_TERMINATE)


class StreamingTransport:
    """
    Full-duplex connection for one channel. Callbacks run on the event loop.
    Exactly one on_event and one on_disconnected subscriber per transport.
    """

    def __init__(
        self,
        channel: str,
        on_event: EventCallback,
        on_disconnected: DisconnectCallback,
        settings: Settings | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.channel = channel
        self._settings = settings or get_settings()
        self._on_event = on_event
        self._on_disconnected = on_disconnected
        self._connector: Connector = connector or websockets.connect
        self._normalizer = MessageNormalizer()
        self._ws: Any = None
        self._state = TransportState.IDLE
        self._queue: asyncio.Queue[Optional[PCMFrame]] = asyncio.Queue(maxsize=SEND_QUEUE_MAX_FRAMES)
        self._sender_task: asyncio.Task[Any] | None = None
        self._receiver_task: asyncio.Task[Any] | None = None
        self._session_ended = asyncio.Event()
        self._not_open_reported = False
        self._close_requested = False
        self._dropped_frames = 0

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == TransportState.OPEN

    async def connect(self, url: str | None = None, auth_token: str | None = None) -> None:
        """Open the socket and start sender/receiver tasks. Raises StreamingConnectionError."""
        if self._state != TransportState.IDLE:
            raise StreamingConnectionError(f"Transport already used (state={self._state.value})", self.channel)
        settings = self._settings
        token = auth_token if auth_token is not None else settings.ASSEMBLYAI_API_KEY
        url = url or build_stream_url(settings, token)
        headers = {"Authorization": token} if token and use_header_auth(settings) else None
        self._state = TransportState.CONNECTING
        try:
            self._ws = await asyncio.wait_for(
                self._connector(url, additional_headers=headers, open_timeout=settings.CONNECT_TIMEOUT_SECONDS),
                timeout=settings.CONNECT_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            self._state = TransportState.CLOSED
            raise StreamingConnectionError(f"{self.channel} channel: connection timed out", self.channel) from e
        except Exception as e:
            self._state = TransportState.CLOSED
            raise StreamingConnectionError(f"{self.channel} channel: connection failed: {e}", self.channel) from e
        self._state = TransportState.OPEN
        self._sender_task = asyncio.create_task(self._sender())
        self._receiver_task = asyncio.create_task(self._receiver())
        logger.info("%s channel connected to speech backend (%s)", self.channel, settings.STREAMING_API_VERSION)

    def send(self, frame: PCMFrame) -> None:
        """Fire-and-forget. Never raises; a send on a dead channel surfaces as one error event."""
        if self._state != TransportState.OPEN:
            if not self._close_requested and not self._not_open_reported:
                self._not_open_reported = True
                self._on_event(self.channel, ErrorEvent(message=f"{self.channel} channel is not open"))
            return
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self._dropped_frames += 1
            if self._dropped_frames == 1 or self._dropped_frames % 100 == 0:
                logger.warning("%s channel send queue full, dropped %d frames", self.channel, self._dropped_frames)

    async def _sender(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                break
            try:
                await self._ws.send(frame.data)
            except ConnectionClosed:
                break
            except Exception as e:
                logger.warning("%s channel send failed: %s", self.channel, e)
                break

    async def _receiver(self) -> None:
        reason = "connection closed"
        try:
            while True:
                raw = await self._ws.recv()
                try:
                    event = self._normalizer.parse(raw)
                except ProtocolError as e:
                    logger.warning("%s channel: %s (skipped)", self.channel, e.message)
                    continue
                if event is None:
                    continue
                if isinstance(event, SessionEnd):
                    self._session_ended.set()
                try:
                    self._on_event(self.channel, event)
                except Exception:
                    logger.exception("%s channel event handler failed", self.channel)
        except ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"receive failed: {e}"
            logger.warning("%s channel %s", self.channel, reason)
        self._session_ended.set()
        if self._state == TransportState.OPEN:
            self._state = TransportState.CLOSED
            self._stop_sender()
            logger.warning("%s channel disconnected: %s", self.channel, reason)
            self._on_disconnected(self.channel, reason)

    def _stop_sender(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(None)

    async def close(self) -> None:
        """Send termination, wait for the session end (bounded), release the socket. Idempotent."""
        self._close_requested = True
        if self._state in (TransportState.IDLE, TransportState.CLOSED) and self._ws is None:
            self._state = TransportState.CLOSED
            return
        was_open = self._state == TransportState.OPEN
        self._state = TransportState.CLOSING
        grace = self._settings.CLOSE_GRACE_SECONDS
        try:
            if self._sender_task is not None:
                # Let queued audio go out before the termination signal
                try:
                    self._queue.put_nowait(None)
                except asyncio.QueueFull:
                    self._stop_sender()
                try:
                    await asyncio.wait_for(self._sender_task, timeout=grace)
                except asyncio.TimeoutError:
                    self._sender_task.cancel()
            if was_open and self._ws is not None:
                try:
                    await self._ws.send(termination_message(self._settings))
                    await asyncio.wait_for(self._session_ended.wait(), timeout=grace)
                except asyncio.TimeoutError:
                    logger.info("%s channel: no session end within %.1fs, closing anyway", self.channel, grace)
                except ConnectionClosed:
                    pass
        finally:
            if self._ws is not None:
                try:
                    await self._ws.close()
                finally:
                    self._ws = None
            for task in (self._receiver_task, self._sender_task):
                if task is not None and not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass
            self._state = TransportState.CLOSED
            logger.info("%s channel transport closed", self.channel)


TransportFactory = Callable[[str, EventCallback, DisconnectCallback], StreamingTransport]


def default_transport_factory(settings: Settings | None = None) -> TransportFactory:
    def factory(channel: str, on_event: EventCallback, on_disconnected: DisconnectCallback) -> StreamingTransport:
        return StreamingTransport(channel, on_event, on_disconnected, settings=settings)

    return factory
