import asyncio
import os

import pytest

from meetstream import session_store
from meetstream.audio.channels import ChannelKind
from meetstream.errors import ChannelUnavailable, NotRecording, SessionAlreadyActive, StreamingConnectionError
from meetstream.events import EventType
from meetstream.pipeline import PipelineState, TranscriptionPipeline
from meetstream.services.summary import SummaryGenerator
from meetstream.transcript.models import PartialUpdate, Turn
from tests.conftest import (
    FakeAcquirer,
    FakeConnector,
    make_transport_factory,
    v3_begin,
    v3_termination,
    v3_turn,
)

MIC = ChannelKind.MICROPHONE
SYSTEM = ChannelKind.SYSTEM


def one_turn_script(text):
    return [
        v3_begin(),
        v3_turn(text[:3], turn_id="t1"),
        v3_turn(text[:8], turn_id="t1"),
        v3_turn(text, turn_id="t1", final=True, end_of_turn=True),
    ]


def make_pipeline(settings, acquirer, connectors):
    return TranscriptionPipeline(
        acquirer=acquirer,
        transport_factory=make_transport_factory(settings, connectors),
        summary_generator=SummaryGenerator(None, settings),
        settings=settings,
    )


@pytest.fixture
def connectors():
    return {
        "microphone": FakeConnector(script=one_turn_script("Hello from my side."), on_terminate=[v3_termination()]),
        "system": FakeConnector(script=one_turn_script("Hello from the other side."), on_terminate=[v3_termination()]),
    }


async def wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def test_two_channel_session_end_to_end(settings, acquirer, connectors):
    events = []

    async def scenario():
        pipeline = make_pipeline(settings, acquirer, connectors)
        pipeline.events.subscribe(events.append)
        started = await pipeline.start_transcription()
        acquirer.sources[MIC].feed()
        acquirer.sources[SYSTEM].feed()
        await asyncio.sleep(0.05)
        await wait_for(lambda: len(pipeline.current_session.transcript) == 2)
        session = await pipeline.stop_transcription()
        return pipeline, started, session

    pipeline, started, session = asyncio.run(scenario())

    assert session.id == started.id
    assert len(session.transcript) == 2
    assert {t.turn_id for t in session.transcript} == {"t1"}
    assert sorted(session.speakers) == ["Remote", "You"]
    assert session.duration > 0
    assert session.summary
    assert session.finalized
    assert session.channels == ["microphone", "system"]
    assert pipeline.state == PipelineState.IDLE

    kinds = [e.type for e in events]
    assert kinds.count(EventType.STARTED) == 1
    assert kinds.count(EventType.CONNECTED) == 2
    assert kinds.count(EventType.PARTIAL) == 4
    assert kinds.count(EventType.FINAL) == 2
    assert kinds.count(EventType.TURN_END) == 2
    assert kinds[-1] == EventType.STOPPED

    for channel in ("microphone", "system"):
        ws = connectors[channel].last
        assert ws.audio_frames
        assert ws.text_messages == [{"type": "Terminate"}]
        assert ws.closed
    for source in acquirer.sources.values():
        assert source.stopped and source.released

    assert session_store.get_session(session.id) is session
    with open(os.path.join(settings.TRANSCRIPT_DIR, f"{session.id}.txt"), encoding="utf-8") as f:
        lines = f.read().splitlines()
    assert len(lines) == 2
    assert any("[You] Hello from my side." in line for line in lines)


def test_system_unavailable_rejects_start_and_releases_microphone(settings, connectors):
    acquirer = FakeAcquirer(unavailable=(SYSTEM,))

    async def scenario():
        pipeline = make_pipeline(settings, acquirer, connectors)
        with pytest.raises(ChannelUnavailable):
            await pipeline.start_transcription()
        return pipeline

    pipeline = asyncio.run(scenario())
    assert acquirer.sources[MIC].released
    assert not acquirer.sources[MIC].started
    assert pipeline.state == PipelineState.IDLE
    assert pipeline.current_session is None
    assert connectors["microphone"].calls == []


def test_system_connect_failure_rejects_start(settings, acquirer, connectors):
    connectors["system"].failures = [OSError("refused")]

    async def scenario():
        pipeline = make_pipeline(settings, acquirer, connectors)
        with pytest.raises(StreamingConnectionError):
            await pipeline.start_transcription()
        return pipeline

    pipeline = asyncio.run(scenario())
    assert all(s.released for s in acquirer.sources.values())
    assert all(ws.closed for ws in connectors["microphone"].sockets)
    assert pipeline.state == PipelineState.IDLE


def test_microphone_connect_failure_degrades_to_system_only(settings, acquirer, connectors):
    connectors["microphone"].failures = [OSError("refused")]
    events = []

    async def scenario():
        pipeline = make_pipeline(settings, acquirer, connectors)
        pipeline.events.subscribe(events.append, EventType.ERROR)
        session = await pipeline.start_transcription()
        channels = list(session.channels)
        await wait_for(lambda: len(pipeline.current_session.transcript) == 1)
        result = await pipeline.stop_transcription()
        return channels, result

    channels, session = asyncio.run(scenario())
    assert channels == ["system"]
    assert acquirer.sources[MIC].released
    assert [e.channel for e in events] == ["microphone"]
    assert [t.channel for t in session.transcript] == ["system"]


def test_second_start_and_stop_without_session(settings, acquirer, connectors):
    async def scenario():
        pipeline = make_pipeline(settings, acquirer, connectors)
        with pytest.raises(NotRecording):
            await pipeline.stop_transcription()
        await pipeline.start_transcription()
        with pytest.raises(SessionAlreadyActive):
            await pipeline.start_transcription()
        await pipeline.stop_transcription()

    asyncio.run(scenario())


def test_missing_api_key_rejected(settings, acquirer, connectors):
    from meetstream.errors import ConfigurationError

    keyless = settings.model_copy(update={"ASSEMBLYAI_API_KEY": ""})

    async def scenario():
        await make_pipeline(keyless, acquirer, connectors).start_transcription()

    with pytest.raises(ConfigurationError):
        asyncio.run(scenario())
    assert acquirer.sources == {}


def test_mid_session_drop_reconnects(settings, acquirer, connectors):
    system = FakeConnector(script=[v3_begin(), v3_turn("lost in", turn_id="x1")], on_terminate=[v3_termination()])
    connectors["system"] = system
    events = []

    async def scenario():
        pipeline = make_pipeline(settings, acquirer, connectors)
        pipeline.events.subscribe(events.append)
        await pipeline.start_transcription()
        await wait_for(lambda: "system" in {p.channel for p in pipeline.live_partials()})
        system.script = [v3_begin()]
        system.last.drop()
        await wait_for(lambda: len(system.sockets) == 2 and pipeline.status()["channels"]["system"]["connected"])
        return await pipeline.stop_transcription()

    session = asyncio.run(scenario())
    kinds = [(e.type, e.channel) for e in events]
    assert (EventType.DISCONNECTED, "system") in kinds
    reconnected = [e for e in events if e.type == EventType.CONNECTED and e.data.get("reconnected")]
    assert len(reconnected) == 1
    forced = [t for t in session.transcript if t.channel == "system"]
    assert [t.text for t in forced] == ["lost in"]
    assert forced[0].synthetic


def test_reconnect_exhausted_drops_channel(settings, acquirer, connectors):
    system = connectors["system"]
    events = []

    async def scenario():
        pipeline = make_pipeline(settings, acquirer, connectors)
        pipeline.events.subscribe(events.append, EventType.ERROR)
        await pipeline.start_transcription()
        system.failures = [OSError("down"), OSError("still down")]
        system.last.drop()
        await wait_for(lambda: bool(events))
        status = pipeline.status()
        session = await pipeline.stop_transcription()
        return status, session

    status, session = asyncio.run(scenario())
    assert status["state"] == "recording"
    assert status["channels"]["system"]["dropped"]
    assert acquirer.sources[SYSTEM].released
    assert events[0].channel == "system"
    assert session.finalized


def test_stop_flushes_in_flight_partial(settings, acquirer, connectors):
    connectors["microphone"] = FakeConnector(script=[v3_begin(), v3_turn("unfinished thought", turn_id="m1")])

    async def scenario():
        pipeline = make_pipeline(settings.model_copy(update={"CLOSE_GRACE_SECONDS": 0.05}), acquirer, connectors)
        await pipeline.start_transcription()
        await wait_for(lambda: "microphone" in {p.channel for p in pipeline.live_partials()})
        return await pipeline.stop_transcription()

    session = asyncio.run(scenario())
    mic_turns = [t for t in session.transcript if t.channel == "microphone"]
    assert [t.text for t in mic_turns] == ["unfinished thought"]
    assert mic_turns[0].synthetic


def test_transcript_events_carry_channel_once(settings, acquirer, connectors):
    pipeline = make_pipeline(settings, acquirer, connectors)
    events = []
    pipeline.events.subscribe(events.append)
    turn = Turn(turn_id="t9", channel="system", speaker="Remote", text="Budget is approved.", turn_order=9, timestamp=1.0, end_of_turn=True)

    pipeline.on_partial(PartialUpdate(channel="system", turn_id="t9", turn_order=9, speaker="Remote", text="Budget is"))
    pipeline.on_final(turn)
    pipeline.on_turn_end(turn)

    assert [e.type for e in events] == [EventType.PARTIAL, EventType.FINAL, EventType.TURN_END]
    assert all(e.channel == "system" and "channel" not in e.data for e in events)
    assert events[1].data["text"] == "Budget is approved."


def test_started_precedes_connected(settings, acquirer, connectors):
    events = []

    async def scenario():
        pipeline = make_pipeline(settings, acquirer, connectors)
        pipeline.events.subscribe(events.append)
        await pipeline.start_transcription()
        await pipeline.stop_transcription()

    asyncio.run(scenario())
    lifecycle = [e.type for e in events if e.type in (EventType.STARTED, EventType.CONNECTED)]
    assert lifecycle == [EventType.STARTED, EventType.CONNECTED, EventType.CONNECTED]
