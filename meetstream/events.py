"""
Caller-facing pipeline events and the EventBus that fans them out.

Kinds: started | connected | partial | final | turnEnd | stopped | disconnected | error.
Any number of subscribers; a subscriber can listen to one kind or to all (kind=None).
Callback subscribers run synchronously on the event loop; queue subscribers
(used by the /ws/events endpoint) receive events through an asyncio.Queue. A
subscriber that raises is logged and the rest still get the event.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# Events beyond this are dropped for a slow queue subscriber
SUBSCRIBER_QUEUE_MAX = 1000


class EventType(str, enum.Enum):
    STARTED = "started"
    CONNECTED = "connected"
    PARTIAL = "partial"
    FINAL = "final"
    TURN_END = "turnEnd"
    STOPPED = "stopped"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass
class PipelineEvent:
    type: EventType
    channel: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "channel": self.channel,
            "data": self.data,
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[PipelineEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: list[tuple[Optional[EventType], Subscriber]] = []
        self._queues: list[asyncio.Queue[PipelineEvent]] = []

    def subscribe(self, callback: Subscriber, kind: EventType | None = None) -> Callable[[], None]:
        """Register a callback; returns an unsubscribe function."""
        entry = (kind, callback)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def open_queue(self) -> asyncio.Queue[PipelineEvent]:
        queue: asyncio.Queue[PipelineEvent] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_MAX)
        self._queues.append(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue[PipelineEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def emit(self, kind: EventType, channel: str | None = None, **data: Any) -> PipelineEvent:
        event = PipelineEvent(type=kind, channel=channel, data=data)
        self.publish(event)
        return event

    def publish(self, event: PipelineEvent) -> None:
        for kind, callback in list(self._subscribers):
            if kind is not None and kind != event.type:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event.type.value)
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s event", event.type.value)
