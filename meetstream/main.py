"""
FastAPI app: control and observe the meeting transcription pipeline.

HTTP:
  POST /api/transcription/start   -> {session_id, channels}
  POST /api/transcription/stop    -> completed session (transcript + summary)
  GET  /api/transcription/status
  GET  /api/transcription/partials
  GET  /api/sessions, GET /api/sessions/{id}
WebSocket:
  /ws/events streams every pipeline event as JSON {type, channel, data, timestamp}.

Errors: SessionAlreadyActive / NotRecording -> 409, ChannelUnavailable /
ConfigurationError -> 400, StreamingConnectionError -> 502; body {"detail": message}.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from meetstream import session_store
from meetstream.config import get_settings
from meetstream.errors import (
    ChannelUnavailable,
    ConfigurationError,
    NotRecording,
    SessionAlreadyActive,
    StreamingConnectionError,
    TranscriptionError,
)
from meetstream.logging_setup import setup_logging
from meetstream.pipeline import TranscriptionPipeline, create_pipeline
from meetstream.schemas import (
    PartialOut,
    SessionListItem,
    SessionResponse,
    StartResponse,
    StatusResponse,
)
from meetstream.services.ai_connection import shutdown_ai_connection

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[TranscriptionError], int] = {
    SessionAlreadyActive: 409,
    NotRecording: 409,
    ChannelUnavailable: 400,
    ConfigurationError: 400,
    StreamingConnectionError: 502,
}


def error_status(error: TranscriptionError) -> int:
    for cls in type(error).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings)
    # Tests install their own pipeline before startup
    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = create_pipeline(settings)
    yield
    pipeline: TranscriptionPipeline = app.state.pipeline
    if pipeline.is_recording:
        try:
            await pipeline.stop_transcription()
        except Exception:
            logger.exception("Stopping transcription at shutdown failed")
    await shutdown_ai_connection()
    app.state.pipeline = None


app = FastAPI(
    title="Meeting Transcription",
    description="Real-time two-channel meeting transcription with speaker attribution and summaries",
    lifespan=lifespan,
)


@app.exception_handler(TranscriptionError)
async def transcription_error_handler(request: Request, exc: TranscriptionError) -> JSONResponse:
    status = error_status(exc)
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"detail": exc.message})


def get_pipeline(app_: FastAPI | None = None) -> TranscriptionPipeline:
    pipeline = getattr((app_ or app).state, "pipeline", None)
    if pipeline is None:
        raise RuntimeError("App not initialized (lifespan not run?)")
    return pipeline


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.post("/api/transcription/start", response_model=StartResponse)
async def start_transcription() -> StartResponse:
    session = await get_pipeline().start_transcription()
    return StartResponse(session_id=session.id, channels=list(session.channels))


@app.post("/api/transcription/stop", response_model=SessionResponse)
async def stop_transcription() -> SessionResponse:
    session = await get_pipeline().stop_transcription()
    return SessionResponse.from_session(session)


@app.get("/api/transcription/status", response_model=StatusResponse)
async def transcription_status() -> StatusResponse:
    return StatusResponse(**get_pipeline().status())


@app.get("/api/transcription/partials", response_model=list[PartialOut])
async def transcription_partials() -> list[PartialOut]:
    return [PartialOut.from_update(p) for p in get_pipeline().live_partials()]


@app.get("/api/sessions", response_model=list[SessionListItem])
async def list_sessions() -> list[SessionListItem]:
    return [
        SessionListItem(
            id=s.id,
            start_time=s.start_time,
            duration=s.duration,
            turns=len(s.transcript),
            speakers=list(s.speakers),
        )
        for s in session_store.list_sessions()
    ]


@app.get("/api/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str) -> SessionResponse:
    session = session_store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionResponse.from_session(session)


@app.websocket("/ws/events")
async def websocket_events(websocket: WebSocket) -> None:
    """Push pipeline events until the client goes away. Client messages are ignored."""
    bus = get_pipeline().events
    queue = bus.open_queue()
    receiver = None
    try:
        await websocket.accept()
        receiver = asyncio.create_task(_drain_client(websocket))
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result().to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        bus.close_queue(queue)
        if receiver is not None:
            receiver.cancel()
            await asyncio.gather(receiver, return_exceptions=True)


async def _drain_client(websocket: WebSocket) -> None:
    while True:
        msg = await websocket.receive()
        if msg.get("type") == "websocket.disconnect":
            return
