"""
Reconciled transcript structures.

- Turn: one finalized span of speech on one channel. Frozen: once final, never changes.
- PartialUpdate: live, provisional text for the in-flight turn of a channel
  (replace-not-append; never persisted).
- TranscriptLog: append-only, in finalization (arrival) order across channels.
- Session: one transcription run; mutated only by the SessionRecorder, read-only
  after end_session().

Ordering limitation: the two channels are independent recognition streams. Turns
are ordered by when their final arrived, not merged by wall-clock speech time, so
a short remote remark can appear after a longer local turn that started later.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from meetstream.transport.events import Word


@dataclass(frozen=True)
class Turn:
    turn_id: str
    channel: str
    speaker: str
    text: str
    turn_order: int
    timestamp: float  # unix seconds at finalization
    is_final: bool = True
    end_of_turn: bool = False
    end_of_turn_confidence: float = 0.0
    words: tuple[Word, ...] = ()
    synthetic: bool = False  # forced by timeout, flush on stop, or channel loss

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "channel": self.channel,
            "speaker": self.speaker,
            "text": self.text,
            "turn_order": self.turn_order,
            "timestamp": self.timestamp,
            "is_final": self.is_final,
            "end_of_turn": self.end_of_turn,
            "end_of_turn_confidence": self.end_of_turn_confidence,
            "synthetic": self.synthetic,
        }


@dataclass
class PartialUpdate:
    channel: str
    turn_id: str
    turn_order: int
    speaker: str
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "turn_id": self.turn_id,
            "turn_order": self.turn_order,
            "speaker": self.speaker,
            "text": self.text,
            "timestamp": self.timestamp,
        }


class TranscriptLog:
    """Append-only sequence of finalized turns."""

    def __init__(self) -> None:
        self._turns: list[Turn] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """No more appends; the session has ended."""
        self._closed = True

    def append(self, turn: Turn) -> None:
        if self._closed:
            raise ValueError("Transcript is closed")
        if not turn.is_final:
            raise ValueError("Only final turns can be appended to the transcript")
        self._turns.append(turn)

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

    def __len__(self) -> int:
        return len(self._turns)

    def word_count(self) -> int:
        return sum(t.word_count for t in self._turns)

    def text(self) -> str:
        """Speaker-prefixed lines, one per turn."""
        return "\n".join(f"{t.speaker}: {t.text}" for t in self._turns)


@dataclass
class Session:
    id: str
    start_time: float  # unix seconds
    transcript: TranscriptLog = field(default_factory=TranscriptLog)
    speakers: list[str] = field(default_factory=list)  # distinct, first-seen order
    end_time: Optional[float] = None
    duration: float = 0.0  # seconds
    summary: str = ""
    finalized: bool = False
    audio_source: str = "multichannel"
    channels: list[str] = field(default_factory=list)
    recording_path: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "transcript": [t.to_dict() for t in self.transcript],
            "speakers": list(self.speakers),
            "summary": self.summary,
            "audio_source": self.audio_source,
            "channels": list(self.channels),
            "recording_path": self.recording_path,
        }
