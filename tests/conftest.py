"""
Pytest fixtures for meetstream tests: settings, fake audio sources, fake WebSocket
connections and a fake AI backend. Nothing here touches real devices or the network.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import numpy as np
import pytest
from websockets.exceptions import ConnectionClosedError

from meetstream import session_store
from meetstream.audio.channels import AudioChannelAcquirer, AudioSource, ChannelKind
from meetstream.config import Settings
from meetstream.errors import ChannelUnavailable, SummaryTimeout
from meetstream.transport.streaming import StreamingTransport

_CLOSED = object()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        ASSEMBLYAI_API_KEY="test-key",
        TRANSCRIPT_DIR=str(tmp_path / "transcripts"),
        SESSION_RECORD_DIR=str(tmp_path / "recordings"),
        CONNECT_TIMEOUT_SECONDS=1.0,
        CLOSE_GRACE_SECONDS=0.5,
        RECONNECT_MAX_ATTEMPTS=2,
        RECONNECT_BASE_DELAY_SECONDS=0.01,
        TURN_WATCHDOG_INTERVAL_SECONDS=0.05,
        SUMMARY_BACKEND="none",
        SUMMARY_TIMEOUT_SECONDS=0.2,
        AI_RESPONSE_IDLE_TIMEOUT_SECONDS=0.2,
        AI_CONNECT_WAIT_SECONDS=0.5,
        AI_RECONNECT_BASE_DELAY_SECONDS=0.01,
        AI_RECONNECT_MAX_DELAY_SECONDS=0.05,
    )


@pytest.fixture(autouse=True)
def _clean_session_store():
    session_store.clear_sessions()
    yield
    session_store.clear_sessions()


# --- audio ---


class FakeAudioSource(AudioSource):
    def __init__(self, kind: ChannelKind) -> None:
        self.kind = kind
        self.on_block = None
        self.started = False
        self.stopped = False
        self.released = False

    def start(self, on_block) -> None:
        self.on_block = on_block
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def release(self) -> None:
        self.released = True

    def feed(self, samples: Optional[np.ndarray] = None) -> None:
        """Simulate one audio callback."""
        if samples is None:
            samples = np.zeros(1600, dtype=np.float32)
        self.on_block(samples)


class FakeAcquirer(AudioChannelAcquirer):
    def __init__(self, unavailable: tuple[ChannelKind, ...] = ()) -> None:
        self.unavailable = set(unavailable)
        self.sources: dict[ChannelKind, FakeAudioSource] = {}

    def acquire(self, kind: ChannelKind) -> AudioSource:
        if kind in self.unavailable:
            raise ChannelUnavailable(f"{kind.value} unavailable in test", channel=kind.value)
        source = FakeAudioSource(kind)
        self.sources[kind] = source
        return source


@pytest.fixture
def acquirer():
    return FakeAcquirer()


# --- speech backend sockets ---


class FakeWebSocket:
    """Scripted server side: `script` is delivered on connect, `on_terminate` after the termination signal."""

    def __init__(self, script: list[Any] = (), on_terminate: list[Any] = ()) -> None:
        self.sent: list[Any] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._on_terminate = [_encode(m) for m in on_terminate]
        for message in script:
            self._incoming.put_nowait(_encode(message))

    def push(self, message: Any) -> None:
        self._incoming.put_nowait(_encode(message))

    def drop(self) -> None:
        """Simulate the server going away."""
        self._incoming.put_nowait(_CLOSED)

    @property
    def audio_frames(self) -> list[bytes]:
        return [m for m in self.sent if isinstance(m, bytes)]

    @property
    def text_messages(self) -> list[dict]:
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    async def send(self, data: Any) -> None:
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.sent.append(data)
        if isinstance(data, str) and ("Terminate" in data or "terminate_session" in data):
            for message in self._on_terminate:
                self._incoming.put_nowait(message)

    async def recv(self) -> Any:
        item = await self._incoming.get()
        if item is _CLOSED:
            raise ConnectionClosedError(None, None)
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLOSED)


def _encode(message: Any) -> Any:
    if isinstance(message, (dict, list)):
        return json.dumps(message)
    return message


class FakeConnector:
    """Stands in for websockets.connect. `failures` are raised by successive calls (None = succeed)."""

    def __init__(self, script: list[Any] = (), on_terminate: list[Any] = (), failures: list[Any] = ()) -> None:
        self.script = list(script)
        self.on_terminate = list(on_terminate)
        self.failures = list(failures)
        self.calls: list[dict[str, Any]] = []
        self.sockets: list[FakeWebSocket] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.calls.append({"url": url, **kwargs})
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        ws = FakeWebSocket(self.script, self.on_terminate)
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]


def make_transport_factory(settings: Settings, connectors: dict[str, FakeConnector]):
    def factory(channel, on_event, on_disconnected):
        return StreamingTransport(channel, on_event, on_disconnected, settings=settings, connector=connectors[channel])

    return factory


def v3_begin(session_id: str = "sess") -> dict:
    return {"type": "Begin", "id": session_id, "expires_at": 1700000000}


def v3_turn(text: str, turn_order: int = 0, final: bool = False, end_of_turn: bool = False, turn_id: str | None = None, words=None) -> dict:
    message = {
        "type": "Turn",
        "turn_order": turn_order,
        "transcript": text,
        "turn_is_formatted": final,
        "end_of_turn": end_of_turn,
        "end_of_turn_confidence": 0.9 if end_of_turn else 0.1,
        "words": words or [],
    }
    if turn_id is not None:
        message["turn_id"] = turn_id
    return message


def v3_termination() -> dict:
    return {"type": "Termination", "audio_duration_seconds": 3.2, "session_duration_seconds": 3.5}


# --- AI backend ---


class FakeSummaryBackend:
    def __init__(self, reply: str = "", delay: float = 0.0, error: Exception | None = None) -> None:
        self.reply = reply
        self.delay = delay
        self.error = error
        self.prompts: list[str] = []

    async def send(self, prompt: str, timeout: float | None = None) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def timeout_backend():
    return FakeSummaryBackend(error=SummaryTimeout("AI response timed out"))
