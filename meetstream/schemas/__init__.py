"""Pydantic schemas for API request/response."""
from meetstream.schemas.transcription import (
    EventMessage,
    PartialOut,
    SessionListItem,
    SessionResponse,
    StartResponse,
    StatusResponse,
    TurnOut,
)

__all__ = [
    "EventMessage",
    "PartialOut",
    "SessionListItem",
    "SessionResponse",
    "StartResponse",
    "StatusResponse",
    "TurnOut",
]
