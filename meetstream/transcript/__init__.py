from .models import PartialUpdate, Session, TranscriptLog, Turn
from .reconciler import ReconcilerListener, TurnReconciler
from .session import SessionRecorder, generate_session_id
from .speakers import SpeakerResolver
from .writer import TranscriptWriterBase, create_transcript_writer

__all__ = [
    "PartialUpdate",
    "Session",
    "TranscriptLog",
    "Turn",
    "ReconcilerListener",
    "TurnReconciler",
    "SessionRecorder",
    "generate_session_id",
    "SpeakerResolver",
    "TranscriptWriterBase",
    "create_transcript_writer",
]
