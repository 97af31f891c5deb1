"""
TurnReconciler: fan-in of both channels' transcript events into one speaker-attributed transcript.

Per channel a small state machine:

    IDLE --partial--> RECEIVING --partial--> RECEIVING (text replaced, not appended)
    RECEIVING --final--> FINALIZING --commit--> IDLE
    RECEIVING --timeout / flush / channel lost--> FINALIZING (synthetic final) --> IDLE

- Partials are live previews only: at most one per channel, replaced on every update.
- A final builds an immutable Turn, appends it to the session transcript (through the
  SessionRecorder), registers the speaker and emits `final`; `turnEnd` follows when
  the backend marked a conversational boundary.
- Each turn id is finalized at most once per channel; later finals for it are dropped.
- Backend errors are reported and leave the state untouched; the other channel is
  unaffected.
- Cross-channel order is arrival order of finals (see models.py).

All methods run on the event loop; nothing here is touched from the audio thread.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from meetstream.config import Settings, get_settings
from meetstream.errors import TranscriptionError, TurnTimeout
from meetstream.transcript.models import PartialUpdate, Turn
from meetstream.transcript.session import SessionRecorder
from meetstream.transcript.speakers import SpeakerResolver
from meetstream.transport.events import (
    ErrorEvent,
    SessionBegin,
    SessionEnd,
    TranscriptEvent,
    TurnEvent,
    Word,
)

logger = logging.getLogger(__name__)


class ChannelPhase(str, enum.Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    FINALIZING = "finalizing"


@dataclass
class ChannelTurnState:
    channel: str
    phase: ChannelPhase = ChannelPhase.IDLE
    turn_id: Optional[str] = None
    turn_order: int = 0
    text: str = ""
    words: list[Word] = field(default_factory=list)
    receiving_since: float = 0.0
    backend_session_id: Optional[str] = None
    finalized_ids: set[str] = field(default_factory=set)

    @property
    def is_receiving(self) -> bool:
        return self.phase == ChannelPhase.RECEIVING

    def reset(self) -> None:
        self.phase = ChannelPhase.IDLE
        self.turn_id = None
        self.text = ""
        self.words = []
        self.receiving_since = 0.0


class ReconcilerListener:
    """Internal callbacks of the engine. Override what you need; defaults do nothing."""

    def on_session_begin(self, channel: str, backend_session_id: str) -> None:
        pass

    def on_partial(self, update: PartialUpdate) -> None:
        pass

    def on_final(self, turn: Turn) -> None:
        pass

    def on_turn_end(self, turn: Turn) -> None:
        pass

    def on_session_end(self, channel: str, event: SessionEnd) -> None:
        pass

    def on_error(self, channel: str, message: str) -> None:
        pass


class TurnReconciler:
    def __init__(
        self,
        recorder: SessionRecorder,
        settings: Settings | None = None,
        resolver: SpeakerResolver | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._recorder = recorder
        self._resolver = resolver or SpeakerResolver(self._settings)
        self._monotonic = monotonic
        self._clock = clock
        self._listener: ReconcilerListener = ReconcilerListener()
        self._listener_set = False
        self._states: dict[str, ChannelTurnState] = {}
        self._partials: dict[str, PartialUpdate] = {}
        self._timeout_sec = self._settings.TURN_TIMEOUT_SECONDS

    def set_listener(self, listener: ReconcilerListener) -> None:
        """One subscriber per engine; the session owner."""
        if self._listener_set:
            raise RuntimeError("TurnReconciler already has a listener")
        self._listener = listener
        self._listener_set = True

    def state(self, channel: str) -> ChannelTurnState:
        if channel not in self._states:
            self._states[channel] = ChannelTurnState(channel=channel)
        return self._states[channel]

    def reset_channel(self, channel: str) -> None:
        """Fresh state for a new backend connection on this channel (turn ids restart)."""
        self._states[channel] = ChannelTurnState(channel=channel)
        self._partials.pop(channel, None)

    def live_partials(self) -> dict[str, PartialUpdate]:
        return dict(self._partials)

    def handle_event(self, channel: str, event: TranscriptEvent) -> None:
        state = self.state(channel)
        if isinstance(event, TurnEvent):
            if event.is_final:
                self._on_final(state, event)
            else:
                self._on_partial(state, event)
        elif isinstance(event, SessionBegin):
            state.backend_session_id = event.session_id
            logger.info("%s channel backend session began: %s", channel, event.session_id)
            self._listener.on_session_begin(channel, event.session_id)
        elif isinstance(event, SessionEnd):
            logger.info(
                "%s channel backend session ended: audio=%.1fs session=%.1fs",
                channel,
                event.audio_duration_sec,
                event.session_duration_sec,
            )
            self._listener.on_session_end(channel, event)
        elif isinstance(event, ErrorEvent):
            logger.warning("%s channel error: %s", channel, event.message)
            self._listener.on_error(channel, event.message)

    def _on_partial(self, state: ChannelTurnState, event: TurnEvent) -> None:
        if state.phase == ChannelPhase.IDLE and not event.text.strip():
            # Silence keep-alives; nothing is in flight yet
            return
        if event.turn_id in state.finalized_ids:
            logger.debug("%s: partial for already-final turn %s ignored", state.channel, event.turn_id)
            return
        if state.phase == ChannelPhase.IDLE or state.turn_id != event.turn_id:
            state.phase = ChannelPhase.RECEIVING
            state.turn_id = event.turn_id
            state.receiving_since = self._monotonic()
        state.turn_order = event.turn_order
        state.text = event.text
        state.words = list(event.words)
        update = PartialUpdate(
            channel=state.channel,
            turn_id=event.turn_id,
            turn_order=event.turn_order,
            speaker=self._resolver.resolve(state.channel, event.words),
            text=event.text,
            timestamp=self._clock(),
        )
        self._partials[state.channel] = update
        logger.debug("%s partial [%s]: %s", state.channel, event.turn_id, event.text)
        self._listener.on_partial(update)

    def _on_final(self, state: ChannelTurnState, event: TurnEvent) -> None:
        same_turn = state.turn_id == event.turn_id
        if event.turn_id in state.finalized_ids:
            logger.debug("%s: duplicate final for turn %s dropped", state.channel, event.turn_id)
            if same_turn:
                self._clear(state)
            return
        if not event.text.strip():
            logger.debug("%s: empty final for turn %s skipped", state.channel, event.turn_id)
            state.finalized_ids.add(event.turn_id)
            if same_turn:
                self._clear(state)
            return
        if same_turn:
            state.phase = ChannelPhase.FINALIZING
        turn = Turn(
            turn_id=event.turn_id,
            channel=state.channel,
            speaker=self._resolver.resolve(state.channel, event.words),
            text=event.text,
            turn_order=event.turn_order,
            timestamp=self._clock(),
            end_of_turn=event.end_of_turn,
            end_of_turn_confidence=event.end_of_turn_confidence,
            words=tuple(event.words),
        )
        # A final for another turn leaves the in-flight partial of this channel alone
        self._commit(state, turn, clear=same_turn)
        if turn.end_of_turn:
            logger.info("Turn %s ended [%s] %s: %s", turn.turn_order, turn.channel, turn.speaker, turn.text)
            self._listener.on_turn_end(turn)

    def _commit(self, state: ChannelTurnState, turn: Turn, clear: bool) -> None:
        state.finalized_ids.add(turn.turn_id)
        self._recorder.on_final_turn(turn)
        if clear:
            self._clear(state)
        logger.info("Turn %s final [%s] %s: %s", turn.turn_order, turn.channel, turn.speaker, turn.text)
        self._listener.on_final(turn)

    def _clear(self, state: ChannelTurnState) -> None:
        state.reset()
        self._partials.pop(state.channel, None)

    def force_finalize(self, channel: str, cause: TranscriptionError | None = None) -> Optional[Turn]:
        """
        Finalize the channel's in-flight partial as a synthetic final.
        Timeouts with no text produce the placeholder; other causes with no text produce nothing.
        """
        state = self.state(channel)
        if state.phase != ChannelPhase.RECEIVING or state.turn_id is None:
            return None
        state.phase = ChannelPhase.FINALIZING
        text = state.text.strip()
        if not text:
            if not isinstance(cause, TurnTimeout):
                self._clear(state)
                return None
            text = self._settings.TIMEOUT_PLACEHOLDER_TEXT
        words = tuple(state.words)
        turn = Turn(
            turn_id=state.turn_id,
            channel=channel,
            speaker=self._resolver.resolve(channel, words),
            text=text,
            turn_order=state.turn_order,
            timestamp=self._clock(),
            words=words,
            synthetic=True,
        )
        if cause is not None:
            logger.warning("%s (turn %s force-finalized)", cause.message, turn.turn_id)
        self._commit(state, turn, clear=True)
        return turn

    def check_timeouts(self, now: float | None = None) -> list[Turn]:
        """Force-finalize every channel that has been receiving for TURN_TIMEOUT_SECONDS or longer."""
        now = self._monotonic() if now is None else now
        forced: list[Turn] = []
        for channel, state in list(self._states.items()):
            if not state.is_receiving:
                continue
            elapsed = now - state.receiving_since
            if elapsed < self._timeout_sec:
                continue
            cause = TurnTimeout(f"{channel} channel: turn open for {elapsed:.0f}s without a final", channel)
            turn = self.force_finalize(channel, cause)
            if turn is not None:
                forced.append(turn)
        return forced

    def flush(self) -> list[Turn]:
        """On stop: finalize whatever is still in flight so spoken text is not lost."""
        flushed: list[Turn] = []
        for channel in list(self._states):
            turn = self.force_finalize(channel)
            if turn is not None:
                flushed.append(turn)
        return flushed

    async def run_watchdog(self) -> None:
        """Periodic timeout check; cancelled by the session owner."""
        interval = self._settings.TURN_WATCHDOG_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            try:
                self.check_timeouts()
            except Exception:
                logger.exception("Turn timeout check failed")
