"""
Session transcript file: append-only, one line per final turn.

Lines look like `[MM:SS.ss] [Speaker] text` with the timestamp taken as elapsed time
since session start. Partials never reach this file. A background task drains a
queue so the reconciler never blocks on disk; write errors are logged and the
session keeps going.
"""
from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

from meetstream.config import Settings, get_settings
from meetstream.transcript.models import Turn

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT_SEC = 5.0


def format_turn_line(turn: Turn, session_start: float, add_timestamps: bool = True) -> str:
    parts: list[str] = []
    if add_timestamps:
        elapsed = max(0.0, turn.timestamp - session_start)
        parts.append(f"[{int(elapsed // 60):02d}:{elapsed % 60:05.2f}]")
    parts.append(f"[{turn.speaker}]")
    parts.append(turn.text.strip())
    return " ".join(parts)


class TranscriptWriterBase(ABC):
    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    def append_turn(self, turn: Turn) -> None:
        """Queue one final turn. Never blocks."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @property
    def path(self) -> Optional[str]:
        return None


class NoOpTranscriptWriter(TranscriptWriterBase):
    """TRANSCRIPT_SAVE_ENABLED=false."""

    async def start(self) -> None:
        pass

    def append_turn(self, turn: Turn) -> None:
        pass

    async def close(self) -> None:
        pass


class TranscriptWriter(TranscriptWriterBase):
    """One file per session: {TRANSCRIPT_DIR}/{session_id}.txt."""

    def __init__(self, session_id: str, session_start: float, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._session_id = session_id
        self._session_start = session_start
        self._dir = settings.TRANSCRIPT_DIR
        self._add_timestamps = settings.TRANSCRIPT_ADD_TIMESTAMPS
        self._path = os.path.join(self._dir, f"{session_id}.txt")
        self._file = None
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def path(self) -> Optional[str]:
        return self._path

    async def _worker(self) -> None:
        while True:
            line = await self._queue.get()
            if line is None:
                break
            if self._file is None:
                continue
            try:
                self._file.write(line + "\n")
                self._file.flush()
            except OSError as e:
                logger.warning("Transcript write failed for %s: %s", self._path, e)
        try:
            if self._file is not None:
                self._file.close()
        except OSError as e:
            logger.warning("Transcript close failed for %s: %s", self._path, e)
        finally:
            self._file = None

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        try:
            os.makedirs(self._dir, exist_ok=True)
            self._file = open(self._path, "a", encoding="utf-8")
        except OSError as e:
            logger.warning("Transcript file open failed for %s: %s", self._path, e)
        self._worker_task = asyncio.create_task(self._worker())

    def append_turn(self, turn: Turn) -> None:
        if not self._started or not turn.text.strip():
            return
        self._queue.put_nowait(format_turn_line(turn, self._session_start, self._add_timestamps))

    async def close(self) -> None:
        """Drain pending lines and close the file. Safe to call twice."""
        if self._worker_task is None:
            return
        task, self._worker_task = self._worker_task, None
        self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(task, timeout=CLOSE_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            logger.warning("Transcript writer for %s did not drain in time", self._session_id)


def create_transcript_writer(
    session_id: str, session_start: float, settings: Settings | None = None
) -> TranscriptWriterBase:
    settings = settings or get_settings()
    if not settings.TRANSCRIPT_SAVE_ENABLED:
        return NoOpTranscriptWriter()
    return TranscriptWriter(session_id, session_start, settings)
