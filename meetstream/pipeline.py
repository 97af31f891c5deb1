"""
TranscriptionPipeline: owns one transcription session end to end.

start_transcription() is all-or-nothing:
  acquire microphone, acquire system audio (both required), connect one transport
  per channel, then start audio. Any failure releases everything acquired so far
  and re-raises (ChannelUnavailable, StreamingConnectionError, ConfigurationError).
  A system-channel connect failure cancels the microphone connect. A microphone
  connect failure alone degrades the session to system audio only.

Audio path (PortAudio thread -> event loop):
  block -> encode() -> loop.call_soon_threadsafe(deliver) -> transport.send + recording.
  Reconciler, recorder and transcript file are only touched on the event loop.

Mid-session drop on a channel: its in-flight partial is force-finalized, `disconnected`
is emitted, and the channel is reconnected up to RECONNECT_MAX_ATTEMPTS times with
exponential backoff. If that fails the channel is dropped (`error`) and the session
continues on the other one.

stop_transcription() tears down in order, each step isolated so one failure never
blocks the rest: close transports (termination + grace), stop audio, release audio,
flush in-flight partials, close transcript file, write recording, end session
(summary), store it, emit `stopped`.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from meetstream import session_store
from meetstream.audio import (
    AudioChannelAcquirer,
    AudioSource,
    ChannelKind,
    SessionAudioRecorderBase,
    SoundDeviceAcquirer,
    create_session_audio_recorder,
    encode,
)
from meetstream.audio.encoder import PCMFrame
from meetstream.config import Settings, get_settings
from meetstream.errors import (
    ConfigurationError,
    NotRecording,
    SessionAlreadyActive,
    StreamingConnectionError,
)
from meetstream.events import EventBus, EventType
from meetstream.services.summary import SummaryGenerator, create_summary_generator
from meetstream.transcript import (
    PartialUpdate,
    ReconcilerListener,
    Session,
    SessionRecorder,
    TranscriptWriterBase,
    Turn,
    TurnReconciler,
    create_transcript_writer,
)
from meetstream.transport import StreamingTransport, TransportFactory, TranscriptEvent, default_transport_factory

logger = logging.getLogger(__name__)

CHANNEL_ORDER = (ChannelKind.MICROPHONE, ChannelKind.SYSTEM)


def _payload(fields: dict[str, Any]) -> dict[str, Any]:
    """Event data without the channel, which travels on the event itself."""
    fields.pop("channel", None)
    return fields


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"


@dataclass
class ChannelRuntime:
    kind: ChannelKind
    source: Optional[AudioSource] = None
    transport: Optional[StreamingTransport] = None
    connected: bool = False
    dropped: bool = False
    reconnect_task: Optional[asyncio.Task] = None


class TranscriptionPipeline(ReconcilerListener):
    def __init__(
        self,
        acquirer: AudioChannelAcquirer | None = None,
        transport_factory: TransportFactory | None = None,
        summary_generator: SummaryGenerator | None = None,
        settings: Settings | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._acquirer = acquirer or SoundDeviceAcquirer(self._settings)
        self._transport_factory = transport_factory or default_transport_factory(self._settings)
        self.events = events or EventBus()
        self._recorder = SessionRecorder(summary_generator or create_summary_generator(self._settings))
        self._state = PipelineState.IDLE
        self._loop: asyncio.AbstractEventLoop | None = None
        self._channels: dict[ChannelKind, ChannelRuntime] = {}
        self._reconciler: TurnReconciler | None = None
        self._writer: TranscriptWriterBase | None = None
        self._audio_recorder: SessionAudioRecorderBase | None = None
        self._watchdog_task: asyncio.Task | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state == PipelineState.RECORDING

    @property
    def current_session(self) -> Session | None:
        return self._recorder.current

    # --- start ---

    async def start_transcription(self) -> Session:
        if self._state != PipelineState.IDLE or self._recorder.active:
            raise SessionAlreadyActive("A transcription session is already active")
        if not self._settings.ASSEMBLYAI_API_KEY:
            raise ConfigurationError("ASSEMBLYAI_API_KEY is required for transcription")
        self._state = PipelineState.STARTING
        self._loop = asyncio.get_running_loop()
        session = self._recorder.start_session()
        try:
            await self._start_channels(session)
        except BaseException:
            logger.warning("Session %s start failed, releasing resources", session.id)
            await self._release_all()
            if self._writer is not None:
                await self._writer.close()
            self._recorder.discard_session()
            self._reset()
            raise
        self._state = PipelineState.RECORDING
        self.events.emit(EventType.STARTED, session_id=session.id, channels=list(session.channels))
        for channel in session.channels:
            self.events.emit(EventType.CONNECTED, channel)
        logger.info("Transcription started: session %s on %s", session.id, ", ".join(session.channels))
        return session

    async def _start_channels(self, session: Session) -> None:
        reconciler = TurnReconciler(self._recorder, self._settings)
        reconciler.set_listener(self)
        self._reconciler = reconciler

        for kind in CHANNEL_ORDER:
            rt = ChannelRuntime(kind=kind)
            self._channels[kind] = rt
            rt.source = await self._loop.run_in_executor(None, self._acquirer.acquire, kind)
            logger.info("%s channel acquired", kind.value)

        # Finals can arrive as soon as a socket opens
        self._writer = create_transcript_writer(session.id, session.start_time, self._settings)
        await self._writer.start()
        self._audio_recorder = create_session_audio_recorder(session.id, self._settings)

        for rt in self._channels.values():
            rt.transport = self._transport_factory(rt.kind.value, self._on_transport_event, self._on_transport_disconnected)
        mic = self._channels[ChannelKind.MICROPHONE]
        system = self._channels[ChannelKind.SYSTEM]
        mic_connect = asyncio.create_task(mic.transport.connect())
        system_connect = asyncio.create_task(system.transport.connect())
        try:
            await system_connect
        except BaseException:
            mic_connect.cancel()
            await asyncio.gather(mic_connect, return_exceptions=True)
            raise
        system.connected = True
        try:
            await mic_connect
            mic.connected = True
        except StreamingConnectionError as e:
            logger.warning("Continuing without microphone: %s", e.message)
            self.events.emit(EventType.ERROR, ChannelKind.MICROPHONE.value, message=e.message, fatal=False)
            await self._drop_channel(mic)

        session.channels = [rt.kind.value for rt in self._channels.values() if not rt.dropped]

        for rt in self._channels.values():
            if rt.dropped:
                continue
            rt.source.start(self._block_handler(rt.kind))
        self._watchdog_task = asyncio.create_task(reconciler.run_watchdog())

    def _block_handler(self, kind: ChannelKind):
        loop = self._loop
        sample_rate = self._settings.SAMPLE_RATE

        def on_block(samples: np.ndarray) -> None:
            frame = encode(samples, sample_rate)
            try:
                loop.call_soon_threadsafe(self._deliver_frame, kind, frame)
            except RuntimeError:
                # Loop already closed; the source is about to be stopped
                pass

        return on_block

    def _deliver_frame(self, kind: ChannelKind, frame: PCMFrame) -> None:
        rt = self._channels.get(kind)
        if rt is None or rt.dropped:
            return
        if self._audio_recorder is not None:
            self._audio_recorder.append(kind, frame.data)
        if rt.connected and rt.transport is not None:
            rt.transport.send(frame)

    # --- transport callbacks ---

    def _on_transport_event(self, channel: str, event: TranscriptEvent) -> None:
        if self._reconciler is not None:
            self._reconciler.handle_event(channel, event)

    def _on_transport_disconnected(self, channel: str, reason: str) -> None:
        if self._state != PipelineState.RECORDING:
            return
        rt = self._channels.get(ChannelKind(channel))
        if rt is None or rt.dropped:
            return
        rt.connected = False
        if self._reconciler is not None:
            self._reconciler.force_finalize(channel, StreamingConnectionError(f"{channel} channel lost: {reason}", channel))
        self.events.emit(EventType.DISCONNECTED, channel, reason=reason)
        if rt.reconnect_task is None or rt.reconnect_task.done():
            rt.reconnect_task = asyncio.create_task(self._reconnect(rt))

    async def _reconnect(self, rt: ChannelRuntime) -> None:
        s = self._settings
        channel = rt.kind.value
        if rt.transport is not None:
            try:
                await rt.transport.close()
            except Exception as e:
                logger.warning("%s channel: closing dropped transport failed: %s", channel, e)
        for attempt in range(1, s.RECONNECT_MAX_ATTEMPTS + 1):
            delay = s.RECONNECT_BASE_DELAY_SECONDS * (2 ** (attempt - 1))
            logger.info("%s channel: reconnecting in %.1fs (attempt %d/%d)", channel, delay, attempt, s.RECONNECT_MAX_ATTEMPTS)
            await asyncio.sleep(delay)
            if self._state != PipelineState.RECORDING:
                return
            transport = self._transport_factory(channel, self._on_transport_event, self._on_transport_disconnected)
            try:
                await transport.connect()
            except StreamingConnectionError as e:
                logger.warning("%s channel: reconnect attempt %d failed: %s", channel, attempt, e.message)
                continue
            if self._state != PipelineState.RECORDING:
                await transport.close()
                return
            if self._reconciler is not None:
                self._reconciler.reset_channel(channel)
            rt.transport = transport
            rt.connected = True
            self.events.emit(EventType.CONNECTED, channel, reconnected=True, attempt=attempt)
            return
        message = f"{channel} channel lost after {s.RECONNECT_MAX_ATTEMPTS} reconnect attempts"
        logger.warning("%s", message)
        rt.transport = None
        await self._drop_channel(rt)
        self.events.emit(EventType.ERROR, channel, message=message, fatal=False)

    async def _drop_channel(self, rt: ChannelRuntime) -> None:
        rt.dropped = True
        rt.connected = False
        if rt.transport is not None:
            try:
                await rt.transport.close()
            except Exception as e:
                logger.warning("%s channel: transport close failed: %s", rt.kind.value, e)
            rt.transport = None
        self._stop_source(rt)
        self._release_source(rt)

    # --- reconciler listener ---

    def on_partial(self, update: PartialUpdate) -> None:
        self.events.emit(EventType.PARTIAL, update.channel, **_payload(update.to_dict()))

    def on_final(self, turn: Turn) -> None:
        if self._writer is not None:
            self._writer.append_turn(turn)
        self.events.emit(EventType.FINAL, turn.channel, **_payload(turn.to_dict()))

    def on_turn_end(self, turn: Turn) -> None:
        self.events.emit(EventType.TURN_END, turn.channel, **_payload(turn.to_dict()))

    def on_error(self, channel: str, message: str) -> None:
        self.events.emit(EventType.ERROR, channel, message=message, fatal=False)

    # --- stop ---

    async def stop_transcription(self) -> Session:
        if self._state != PipelineState.RECORDING:
            raise NotRecording("No transcription session is active")
        self._state = PipelineState.STOPPING
        try:
            await self._release_all()
            if self._reconciler is not None:
                try:
                    flushed = self._reconciler.flush()
                    if flushed:
                        logger.info("Flushed %d in-flight turn(s) at stop", len(flushed))
                except Exception:
                    logger.exception("Flushing in-flight turns failed")
            if self._writer is not None:
                try:
                    await self._writer.close()
                except Exception:
                    logger.exception("Closing transcript file failed")
            recording_path = await self._finalize_recording()
            current = self._recorder.current
            if current is not None:
                current.recording_path = recording_path
            session = await self._recorder.end_session()
            session_store.save_session(session)
        finally:
            self._reset()
        self.events.emit(
            EventType.STOPPED,
            session_id=session.id,
            duration=session.duration,
            turns=len(session.transcript),
            speakers=list(session.speakers),
        )
        logger.info("Transcription stopped: session %s", session.id)
        return session

    async def _finalize_recording(self) -> Optional[str]:
        recorder = self._audio_recorder
        if recorder is None:
            return None
        try:
            return await asyncio.get_running_loop().run_in_executor(None, recorder.finalize)
        except Exception:
            logger.exception("Session recording failed")
            return None

    async def _release_all(self) -> None:
        """Best-effort teardown of every channel resource; each step isolated."""
        for rt in self._channels.values():
            task = rt.reconnect_task
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            await asyncio.gather(self._watchdog_task, return_exceptions=True)
            self._watchdog_task = None

        transports = [rt for rt in self._channels.values() if rt.transport is not None]
        results = await asyncio.gather(*(rt.transport.close() for rt in transports), return_exceptions=True)
        for rt, result in zip(transports, results):
            rt.connected = False
            if isinstance(result, BaseException):
                logger.warning("%s channel: transport close failed: %s", rt.kind.value, result)
        for rt in self._channels.values():
            self._stop_source(rt)
        for rt in self._channels.values():
            self._release_source(rt)

    def _stop_source(self, rt: ChannelRuntime) -> None:
        if rt.source is None:
            return
        try:
            rt.source.stop()
        except Exception as e:
            logger.warning("%s channel: stopping audio failed: %s", rt.kind.value, e)

    def _release_source(self, rt: ChannelRuntime) -> None:
        if rt.source is None:
            return
        try:
            rt.source.release()
        except Exception as e:
            logger.warning("%s channel: releasing audio failed: %s", rt.kind.value, e)
        finally:
            rt.source = None

    def _reset(self) -> None:
        self._state = PipelineState.IDLE
        self._channels = {}
        self._reconciler = None
        self._writer = None
        self._audio_recorder = None
        self._watchdog_task = None

    # --- introspection ---

    def live_partials(self) -> list[PartialUpdate]:
        if self._reconciler is None:
            return []
        return list(self._reconciler.live_partials().values())

    def status(self) -> dict[str, Any]:
        session = self._recorder.current
        return {
            "state": self._state.value,
            "session_id": session.id if session else None,
            "turns": len(session.transcript) if session else 0,
            "speakers": list(session.speakers) if session else [],
            "channels": {
                rt.kind.value: {
                    "connected": rt.connected,
                    "dropped": rt.dropped,
                    "transport": rt.transport.state.value if rt.transport is not None else None,
                }
                for rt in self._channels.values()
            },
        }


def create_pipeline(settings: Settings | None = None) -> TranscriptionPipeline:
    settings = settings or get_settings()
    return TranscriptionPipeline(settings=settings)
