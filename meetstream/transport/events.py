"""
TranscriptEvent variants and the normalizer for inbound backend messages.

Two message shapes are observed from the speech backend:
- v3 (Universal Streaming): {"type": "Begin" | "Turn" | "Termination", ...}
- v2 (legacy realtime):     {"message_type": "SessionBegins" | "PartialTranscript"
                             | "FinalTranscript" | "SessionTerminated", ...}
Any payload carrying an "error" key is an error in both versions.

Both are normalized into SessionBegin / TurnEvent / SessionEnd / ErrorEvent so
the reconciliation engine never sees wire formats.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from meetstream.errors import ProtocolError

logger = logging.getLogger(__name__)


@dataclass
class Word:
    """One recognized word. speaker is the backend's diarization cluster id, if any."""

    text: str
    start: float = 0.0
    end: float = 0.0
    confidence: float = 0.0
    speaker: Optional[str] = None


@dataclass
class SessionBegin:
    session_id: str


@dataclass
class TurnEvent:
    turn_id: str
    turn_order: int
    text: str
    is_final: bool
    end_of_turn: bool = False
    words: list[Word] = field(default_factory=list)
    end_of_turn_confidence: float = 0.0


@dataclass
class SessionEnd:
    audio_duration_sec: float = 0.0
    session_duration_sec: float = 0.0


@dataclass
class ErrorEvent:
    message: str


TranscriptEvent = Union[SessionBegin, TurnEvent, SessionEnd, ErrorEvent]


def _words(raw: Any) -> list[Word]:
    out: list[Word] = []
    if not isinstance(raw, list):
        return out
    for w in raw:
        if not isinstance(w, dict):
            continue
        speaker = w.get("speaker")
        out.append(
            Word(
                text=str(w.get("text", "")),
                start=float(w.get("start") or 0.0),
                end=float(w.get("end") or 0.0),
                confidence=float(w.get("confidence") or 0.0),
                speaker=str(speaker) if speaker not in (None, "") else None,
            )
        )
    return out


class MessageNormalizer:
    """
    Stateful per connection: legacy messages carry no turn id, so one synthetic
    id is assigned per utterance (partials share it until the FinalTranscript).
    """

    def __init__(self) -> None:
        self._legacy_order = 0

    def parse(self, raw: Union[str, bytes]) -> Optional[TranscriptEvent]:
        """Decode one frame. Raises ProtocolError on non-JSON / non-object payloads."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid JSON from speech backend: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected JSON object from speech backend, got {type(data).__name__}")
        return self.normalize(data)

    def normalize(self, data: dict[str, Any]) -> Optional[TranscriptEvent]:
        """Map one decoded message to a TranscriptEvent; None for messages we ignore."""
        if data.get("error"):
            return ErrorEvent(message=str(data["error"]))
        msg_type = data.get("type")
        if msg_type is not None:
            return self._normalize_v3(msg_type, data)
        legacy_type = data.get("message_type")
        if legacy_type is not None:
            return self._normalize_legacy(legacy_type, data)
        logger.debug("Ignoring untyped backend message: %s", list(data.keys()))
        return None

    def _normalize_v3(self, msg_type: str, data: dict[str, Any]) -> Optional[TranscriptEvent]:
        if msg_type == "Begin":
            return SessionBegin(session_id=str(data.get("id", "")))
        if msg_type == "Turn":
            turn_order = int(data.get("turn_order") or 0)
            turn_id = data.get("turn_id") or f"turn-{turn_order}"
            return TurnEvent(
                turn_id=str(turn_id),
                turn_order=turn_order,
                text=data.get("transcript") or "",
                # Formatted turns are the locked-in text; unformatted ones may still change
                is_final=bool(data.get("turn_is_formatted", False)),
                end_of_turn=bool(data.get("end_of_turn", False)),
                words=_words(data.get("words")),
                end_of_turn_confidence=float(data.get("end_of_turn_confidence") or 0.0),
            )
        if msg_type == "Termination":
            return SessionEnd(
                audio_duration_sec=float(data.get("audio_duration_seconds") or 0.0),
                session_duration_sec=float(data.get("session_duration_seconds") or 0.0),
            )
        if msg_type == "Error":
            return ErrorEvent(message=str(data.get("message") or data.get("error") or "Unknown error"))
        logger.debug("Ignoring v3 message type %r", msg_type)
        return None

    def _normalize_legacy(self, legacy_type: str, data: dict[str, Any]) -> Optional[TranscriptEvent]:
        if legacy_type == "SessionBegins":
            return SessionBegin(session_id=str(data.get("session_id", "")))
        if legacy_type in ("PartialTranscript", "FinalTranscript"):
            is_final = legacy_type == "FinalTranscript"
            event = TurnEvent(
                turn_id=f"legacy-{self._legacy_order}",
                turn_order=self._legacy_order,
                text=data.get("text") or "",
                is_final=is_final,
                end_of_turn=is_final,
                words=_words(data.get("words")),
                end_of_turn_confidence=float(data.get("confidence") or 0.0) if is_final else 0.0,
            )
            if is_final:
                self._legacy_order += 1
            return event
        if legacy_type == "SessionTerminated":
            return SessionEnd()
        logger.debug("Ignoring legacy message type %r", legacy_type)
        return None
