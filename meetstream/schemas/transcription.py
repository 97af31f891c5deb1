"""Schemas for the transcription HTTP API and the /ws/events stream."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from meetstream.transcript.models import PartialUpdate, Session, Turn


class TurnOut(BaseModel):
    turn_id: str
    channel: str
    speaker: str = Field(..., description='Diarization label ("Speaker A") or channel label ("You" / "Remote")')
    text: str
    turn_order: int
    timestamp: float = Field(..., description="Unix seconds when the turn became final")
    end_of_turn: bool = False
    synthetic: bool = Field(False, description="Forced final: timeout, stop, or lost channel")

    @classmethod
    def from_turn(cls, turn: Turn) -> "TurnOut":
        return cls(
            turn_id=turn.turn_id,
            channel=turn.channel,
            speaker=turn.speaker,
            text=turn.text,
            turn_order=turn.turn_order,
            timestamp=turn.timestamp,
            end_of_turn=turn.end_of_turn,
            synthetic=turn.synthetic,
        )


class SessionResponse(BaseModel):
    id: str
    start_time: float
    end_time: float | None = None
    duration: float = Field(0.0, description="Seconds")
    speakers: list[str] = Field(default_factory=list)
    transcript: list[TurnOut] = Field(default_factory=list)
    summary: str = ""
    channels: list[str] = Field(default_factory=list)
    recording_path: str | None = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            start_time=session.start_time,
            end_time=session.end_time,
            duration=session.duration,
            speakers=list(session.speakers),
            transcript=[TurnOut.from_turn(t) for t in session.transcript],
            summary=session.summary,
            channels=list(session.channels),
            recording_path=session.recording_path,
        )


class SessionListItem(BaseModel):
    id: str
    start_time: float
    duration: float
    turns: int
    speakers: list[str]


class StartResponse(BaseModel):
    session_id: str
    channels: list[str]


class StatusResponse(BaseModel):
    state: str = Field(..., description="idle | starting | recording | stopping")
    session_id: str | None = None
    turns: int = 0
    speakers: list[str] = Field(default_factory=list)
    channels: dict[str, dict[str, Any]] = Field(default_factory=dict)


class PartialOut(BaseModel):
    channel: str
    turn_id: str
    turn_order: int
    speaker: str
    text: str
    timestamp: float

    @classmethod
    def from_update(cls, update: PartialUpdate) -> "PartialOut":
        return cls(**update.to_dict())


class EventMessage(BaseModel):
    """One pipeline event as sent over /ws/events."""

    type: str = Field(..., description="started | connected | partial | final | turnEnd | stopped | disconnected | error")
    channel: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: float
