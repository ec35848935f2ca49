"""
Outbound production events.

Contract:
    The engine hands every ``ProductionEvent`` to an injected
    ``EventPublisher`` after the state change that caused it has been
    flushed.  Delivery (email, push, websocket) is the publisher's
    concern.  ``LoggingEventPublisher`` is the default and writes one
    structured log line per event; ``RecordingEventPublisher`` keeps
    events in memory for tests.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from production_batch.domain.types import EventType, ProductionEvent
from production_kernel.logging_config import get_logger

logger = get_logger("batch.events")


@runtime_checkable
class EventPublisher(Protocol):
    def publish(self, event: ProductionEvent) -> None: ...


class LoggingEventPublisher:
    """Publishes events as ``production_event`` log records."""

    def publish(self, event: ProductionEvent) -> None:
        logger.info(
            "production_event",
            extra={
                "event_type": event.event_type.value,
                "batch_id": event.batch_id,
                "batch_name": event.batch_name,
                "occurred_at": event.occurred_at,
                "payload": event.payload,
            },
        )


class RecordingEventPublisher:
    """Keeps published events in order."""

    def __init__(self) -> None:
        self.events: list[ProductionEvent] = []

    def publish(self, event: ProductionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType | str) -> list[ProductionEvent]:
        wanted = EventType(event_type)
        return [e for e in self.events if e.event_type == wanted]

    def clear(self) -> None:
        self.events.clear()
