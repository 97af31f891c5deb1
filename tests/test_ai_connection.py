import asyncio
import json

import pytest

from meetstream.errors import SummaryError, SummaryTimeout
from meetstream.services.ai_connection import AIConnection, ResponseAccumulator, is_completion_chunk
from meetstream.services.summary import SummaryGenerator
from meetstream.transcript.models import TranscriptLog, Turn
from tests.conftest import FakeWebSocket


class ChatServer(FakeWebSocket):
    """Answers every request with the next list of chunks."""

    def __init__(self, replies):
        super().__init__()
        self.replies = list(replies)
        self.requests = []

    async def send(self, data):
        await super().send(data)
        self.requests.append(json.loads(data))
        for chunk in self.replies.pop(0) if self.replies else []:
            self.push(chunk)


class ChatConnector:
    def __init__(self, *servers, failures=0):
        self.servers = list(servers)
        self.failures = failures
        self.calls = 0

    async def __call__(self, url, **kwargs):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        return self.servers.pop(0)


@pytest.mark.parametrize(
    "chunk,accumulated,expected",
    [
        ("done </response>", 10, True),
        ("TASK COMPLETE", 10, True),
        ("end ###END###", 10, True),
        ("[END]", 5, True),
        ("paragraph\n\n", 10, True),
        ("", 150, True),
        ("", 50, False),
        ("still streaming", 500, False),
    ],
)
def test_completion_markers(chunk, accumulated, expected):
    assert is_completion_chunk(chunk, accumulated) is expected


def test_accumulator_joins_chunks():
    acc = ResponseAccumulator()
    assert not acc.feed("Hello ")
    assert acc.feed("world [END]")
    assert acc.text == "Hello world [END]"


def test_send_accumulates_until_marker(settings):
    server = ChatServer([["The meeting ", "covered the roadmap.", " ###END###"]])

    async def scenario():
        conn = AIConnection(settings, connector=ChatConnector(server))
        updates = []
        conn.add_listener(updates.append)
        reply = await conn.send("Summarize please")
        await conn.close()
        return conn, reply, updates

    conn, reply, updates = asyncio.run(scenario())
    assert reply == "The meeting covered the roadmap. ###END###"
    assert updates[-1] == reply
    assert len(updates) == 3
    request = server.requests[0]
    assert request["imageBytes"] is None
    assert request["smarterAnalysisEnabled"] is False
    assert request["messages"] == [{"role": "user", "content": "Summarize please"}]
    assert conn.history == []


def test_timeout_returns_partial_text(settings):
    server = ChatServer([["Partial answer without a marker"]])

    async def scenario():
        conn = AIConnection(settings, connector=ChatConnector(server))
        try:
            return await conn.send("hi")
        finally:
            await conn.close()

    assert asyncio.run(scenario()) == "Partial answer without a marker"


def test_timeout_without_text_raises(settings):
    server = ChatServer([[]])

    async def scenario():
        conn = AIConnection(settings, connector=ChatConnector(server))
        try:
            await conn.send("hi")
        finally:
            await conn.close()

    with pytest.raises(SummaryTimeout):
        asyncio.run(scenario())


def test_unreachable_service_raises_summary_error(settings):
    async def scenario():
        conn = AIConnection(settings, connector=ChatConnector(failures=100))
        try:
            await conn.send("hi")
        finally:
            await conn.close()

    with pytest.raises(SummaryError):
        asyncio.run(scenario())


def test_concurrent_sends_are_serialized_and_stateless(settings):
    server = ChatServer([["first [END]"], ["second [END]"]])

    async def scenario():
        conn = AIConnection(settings, connector=ChatConnector(server))
        results = await asyncio.gather(conn.send("one"), conn.send("two"))
        await conn.close()
        return conn, results

    conn, results = asyncio.run(scenario())
    assert results == ["first [END]", "second [END]"]
    assert [r["messages"] for r in server.requests] == [
        [{"role": "user", "content": "one"}],
        [{"role": "user", "content": "two"}],
    ]
    assert conn.history == []


def test_chat_carries_history(settings):
    server = ChatServer([["hello there [END]"], ["as I said [END]"]])

    async def scenario():
        conn = AIConnection(settings, connector=ChatConnector(server))
        await conn.chat("hi")
        await conn.chat("again?")
        await conn.close()
        return conn

    conn = asyncio.run(scenario())
    assert [len(r["messages"]) for r in server.requests] == [1, 3]
    assert conn.history[-1] == {"role": "assistant", "content": "as I said [END]"}


def test_reconnects_after_drop(settings):
    first = ChatServer([])
    second = ChatServer([["back online [END]"]])
    connector = ChatConnector(first, second)

    async def scenario():
        conn = AIConnection(settings, connector=connector)
        await conn.connect()
        first.drop()
        for _ in range(50):
            await asyncio.sleep(0.01)
            if connector.calls == 2 and conn.is_connected:
                break
        reply = await conn.send("still there?")
        await conn.close()
        return reply

    assert asyncio.run(scenario()) == "back online [END]"
    assert connector.calls == 2


def test_backoff_is_capped(settings):
    conn = AIConnection(settings.model_copy(update={"AI_RECONNECT_BASE_DELAY_SECONDS": 1.0, "AI_RECONNECT_MAX_DELAY_SECONDS": 30.0}))
    assert [conn.backoff_delay(n) for n in (1, 2, 3, 5, 6, 10)] == [1.0, 2.0, 4.0, 16.0, 30.0, 30.0]


def test_listener_limit_and_clear_conversation(settings):
    conn = AIConnection(settings.model_copy(update={"AI_MAX_LISTENERS": 2}))
    conn.add_listener(lambda text: None)
    conn.add_listener(lambda text: None)
    with pytest.raises(RuntimeError):
        conn.add_listener(lambda text: None)
    conn._history.append({"role": "user", "content": "x"})
    conn.clear_conversation()
    assert conn.history == []


def meeting_log():
    log = TranscriptLog()
    sentence = "We should finalize the roadmap and we will follow up with the hiring plan next week."
    for i in range(6):
        log.append(Turn(turn_id=f"t{i}", channel="system", speaker="You" if i % 2 else "Remote", text=sentence, turn_order=i, timestamp=float(i)))
    return log


def test_summary_deadline_discards_stalled_reply(settings):
    # Reply starts streaming, then stalls with no completion marker
    server = ChatServer([["The team reviewed the roadmap and discussed the hiring plan for next quarter in"]])
    patient = settings.model_copy(update={"AI_RESPONSE_IDLE_TIMEOUT_SECONDS": 5.0, "SUMMARY_TIMEOUT_SECONDS": 0.2})

    async def scenario():
        conn = AIConnection(patient, connector=ChatConnector(server))
        try:
            return await SummaryGenerator(conn, patient).generate(meeting_log(), duration_sec=60)
        finally:
            await conn.close()

    result = asyncio.run(scenario())
    assert result.startswith("# Meeting Summary (Basic)")
    assert "discussed the hiring plan for next quarter in" not in result


def test_consecutive_summaries_do_not_share_history(settings):
    reply = "## Topics\n- Roadmap finalization and the hiring plan follow-up were agreed on. [END]"
    server = ChatServer([[reply], [reply]])

    async def scenario():
        conn = AIConnection(settings, connector=ChatConnector(server))
        generator = SummaryGenerator(conn, settings)
        try:
            first = await generator.generate(meeting_log(), duration_sec=60)
            second = await generator.generate(meeting_log(), duration_sec=60)
        finally:
            await conn.close()
        return first, second

    first, second = asyncio.run(scenario())
    assert first.startswith("# Meeting Summary\n") and second.startswith("# Meeting Summary\n")
    assert [len(r["messages"]) for r in server.requests] == [1, 1]
