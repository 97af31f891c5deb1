"""Speech backend transport: one WebSocket per channel; wire messages normalized to TranscriptEvent."""
from .events import (
    ErrorEvent,
    MessageNormalizer,
    SessionBegin,
    SessionEnd,
    TranscriptEvent,
    TurnEvent,
    Word,
)
from .streaming import (
    StreamingTransport,
    TransportFactory,
    TransportState,
    build_stream_url,
    default_transport_factory,
)

__all__ = [
    "ErrorEvent",
    "MessageNormalizer",
    "SessionBegin",
    "SessionEnd",
    "TranscriptEvent",
    "TurnEvent",
    "Word",
    "StreamingTransport",
    "TransportFactory",
    "TransportState",
    "build_stream_url",
    "default_transport_factory",
]
