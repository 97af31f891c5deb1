"""
In-memory history of completed sessions, keyed by session id.

Written once by the pipeline at stop; read by the API. This is the handoff point
for an external persistence layer; nothing here touches disk.
"""
from __future__ import annotations

from meetstream.transcript.models import Session

_session_store: dict[str, Session] = {}


def save_session(session: Session) -> None:
    """Store or overwrite a finalized session."""
    _session_store[session.id] = session


def get_session(session_id: str) -> Session | None:
    return _session_store.get(session_id)


def list_sessions() -> list[Session]:
    """Newest first."""
    return sorted(_session_store.values(), key=lambda s: s.start_time, reverse=True)


def delete_session(session_id: str) -> bool:
    """Remove session from store. Return True if it existed."""
    if session_id in _session_store:
        del _session_store[session_id]
        return True
    return False


def clear_sessions() -> None:
    _session_store.clear()
