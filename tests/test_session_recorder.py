import asyncio

import pytest

from meetstream.errors import SessionAlreadyActive
from meetstream.transcript.models import PartialUpdate, TranscriptLog, Turn
from meetstream.transcript.session import SessionRecorder, generate_session_id


def make_turn(text, speaker="You", channel="microphone", turn_id="t1", final=True):
    return Turn(turn_id=turn_id, channel=channel, speaker=speaker, text=text, turn_order=0, timestamp=0.0, is_final=final)


class Ticker:
    def __init__(self, start=0.0, step=2.5):
        self.now = start
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class StubSummary:
    def __init__(self):
        self.calls = []

    async def generate(self, transcript, duration_sec=0.0, speakers=None):
        self.calls.append((len(transcript), duration_sec, list(speakers or [])))
        return "summary text"


def test_session_id_format():
    sid = generate_session_id()
    prefix, millis, suffix = sid.split("_")
    assert prefix == "session"
    assert millis.isdigit()
    assert suffix
    assert generate_session_id() != sid


def test_second_start_rejected():
    recorder = SessionRecorder()
    recorder.start_session()
    with pytest.raises(SessionAlreadyActive):
        recorder.start_session()


def test_final_turns_and_speakers_tracked():
    recorder = SessionRecorder()
    session = recorder.start_session()
    recorder.on_final_turn(make_turn("hi", "You"))
    recorder.on_final_turn(make_turn("hello", "Remote", "system"))
    recorder.on_final_turn(make_turn("again", "You", turn_id="t2"))
    assert len(session.transcript) == 3
    assert session.speakers == ["You", "Remote"]


def test_transcript_rejects_non_final():
    log = TranscriptLog()
    with pytest.raises(ValueError):
        log.append(make_turn("draft", final=False))


def test_turn_without_session_is_dropped():
    recorder = SessionRecorder()
    recorder.on_final_turn(make_turn("orphan"))
    assert recorder.current is None


def test_end_session_sets_timing_and_summary():
    summary = StubSummary()
    recorder = SessionRecorder(summary, clock=Ticker(1000.0, 10.0), monotonic=Ticker(5.0, 42.0))
    recorder.start_session("session_x")
    recorder.on_final_turn(make_turn("one two three"))

    session = asyncio.run(recorder.end_session())

    assert session.id == "session_x"
    assert session.start_time == 1000.0
    assert session.end_time == 1010.0
    assert session.duration == 42.0
    assert session.finalized
    assert session.summary == "summary text"
    assert summary.calls == [(1, 42.0, ["You"])]
    assert not recorder.active
    recorder.start_session()


def test_ended_session_transcript_is_read_only():
    recorder = SessionRecorder()
    recorder.start_session()
    recorder.on_final_turn(make_turn("before stop"))
    session = asyncio.run(recorder.end_session())

    assert session.transcript.closed
    with pytest.raises(ValueError):
        session.transcript.append(make_turn("after stop", turn_id="t2"))
    assert [t.text for t in session.transcript] == ["before stop"]


def test_discard_session_allows_restart():
    recorder = SessionRecorder()
    recorder.start_session()
    recorder.discard_session()
    assert not recorder.active
    recorder.start_session()


def test_end_without_session_raises():
    with pytest.raises(RuntimeError):
        asyncio.run(SessionRecorder().end_session())


def test_session_to_dict_contains_transcript():
    recorder = SessionRecorder()
    session = recorder.start_session("s1")
    recorder.on_final_turn(make_turn("hi"))
    data = session.to_dict()
    assert data["id"] == "s1"
    assert data["transcript"][0]["text"] == "hi"
    assert data["speakers"] == ["You"]


def test_partial_update_to_dict():
    update = PartialUpdate(channel="system", turn_id="t", turn_order=1, speaker="Remote", text="x", timestamp=1.0)
    assert update.to_dict()["speaker"] == "Remote"
