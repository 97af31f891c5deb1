"""
SessionRecorder: owns the active Session, its TranscriptLog and speaker set.

Exactly one active session per pipeline. Final turns are appended in arrival
order; end_session() stamps end time and duration, closes the transcript to
further appends, runs the summary generator and returns the read-only Session.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Callable, Optional

from meetstream.errors import SessionAlreadyActive
from meetstream.transcript.models import Session, Turn

if TYPE_CHECKING:
    from meetstream.services.summary import SummaryGenerator

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Process-unique id: session_<unix_ms>_<random>."""
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SessionRecorder:
    def __init__(
        self,
        summary_generator: Optional["SummaryGenerator"] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._summary_generator = summary_generator
        self._clock = clock
        self._monotonic = monotonic
        self._session: Session | None = None
        self._started_mono = 0.0

    @property
    def active(self) -> bool:
        return self._session is not None

    @property
    def current(self) -> Session | None:
        return self._session

    def start_session(self, session_id: str | None = None) -> Session:
        if self._session is not None:
            raise SessionAlreadyActive(f"Session {self._session.id} is already active")
        self._session = Session(id=session_id or generate_session_id(), start_time=self._clock())
        self._started_mono = self._monotonic()
        logger.info("Session %s started", self._session.id)
        return self._session

    def register_speaker(self, speaker: str) -> None:
        session = self._session
        if session is not None and speaker and speaker not in session.speakers:
            session.speakers.append(speaker)

    def on_final_turn(self, turn: Turn) -> None:
        session = self._session
        if session is None:
            logger.warning("Dropping final turn %s [%s]: no active session", turn.turn_id, turn.channel)
            return
        session.transcript.append(turn)
        self.register_speaker(turn.speaker)

    def discard_session(self) -> None:
        """Drop the active session without finalizing it (failed start)."""
        if self._session is not None:
            logger.info("Session %s discarded", self._session.id)
        self._session = None

    async def end_session(self) -> Session:
        """Finalize the active session. Summary failures never escape (generator falls back)."""
        session = self._session
        if session is None:
            raise RuntimeError("No active session")
        self._session = None
        session.end_time = self._clock()
        session.transcript.close()
        session.duration = max(0.0, self._monotonic() - self._started_mono)
        if self._summary_generator is not None:
            session.summary = await self._summary_generator.generate(
                session.transcript,
                duration_sec=session.duration,
                speakers=session.speakers,
            )
        session.finalized = True
        logger.info(
            "Session %s ended: %.1fs, %d turns, %d speakers",
            session.id,
            session.duration,
            len(session.transcript),
            len(session.speakers),
        )
        return session
