"""
Error taxonomy for the transcription pipeline.

Start-time errors (ChannelUnavailable, StreamingConnectionError on the system
channel, ConfigurationError) reject startTranscription. Everything else is
recovered inside the pipeline: protocol errors are skipped, turn timeouts are
force-finalized, summary failures fall back to the basic summary.
"""
from __future__ import annotations


class TranscriptionError(Exception):
    """Base class. `channel` is set when the error belongs to one audio channel."""

    def __init__(self, message: str, channel: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.channel = channel


class ConfigurationError(TranscriptionError):
    """Missing or invalid configuration (e.g. no API key)."""


class ChannelUnavailable(TranscriptionError):
    """Audio channel could not be acquired (permission denied, no device, no loopback)."""


class StreamingConnectionError(TranscriptionError, ConnectionError):
    """Speech backend connection failed or was lost."""


class ProtocolError(TranscriptionError):
    """Malformed inbound message from the speech backend."""


class TurnTimeout(TranscriptionError):
    """In-flight turn exceeded the receive timeout; recovered by forced finalization."""


class SummaryError(TranscriptionError):
    """AI summary backend failed or returned an unusable response."""


class SummaryTimeout(SummaryError):
    """AI summary backend did not answer in time."""


class SessionAlreadyActive(TranscriptionError):
    """A session is already running on this pipeline."""


class NotRecording(TranscriptionError):
    """stopTranscription called with no active session."""
