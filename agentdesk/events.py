"""Change events for tasks, agents and virtual sessions.

Every state transition in the core emits a ``ChangeEvent``. Delivery is
best-effort: ``EventBus.emit`` hands the event to each subscriber
synchronously and subscribers must not block (queue-backed subscribers drop
on overflow). A failing subscriber never fails the transition that emitted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any

from sqlmodel import Field, SQLModel

from agentdesk.logging import get_logger
from agentdesk.metrics import record_event_dropped
from agentdesk.orchestration.models import utc_now

logger = get_logger(__name__)


class EntityType(str, Enum):
    TASK = "task"
    AGENT = "agent"
    SESSION = "session"


class ChangeEvent(SQLModel):
    entity_type: EntityType
    entity_id: str
    new_state: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


Subscriber = Callable[[ChangeEvent], None]


class EventBus:
    """Fan-out of change events to registered subscribers."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscribers: dict[str, Subscriber] = {}

    def subscribe(self, name: str, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a callable that unsubscribes it."""
        with self._lock:
            if name in self._subscribers:
                raise ValueError(f"Subscriber already registered: {name}")
            self._subscribers[name] = subscriber

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(name, None)

        return unsubscribe

    def emit(
        self,
        entity_type: EntityType,
        entity_id: str,
        new_state: str,
        payload: dict[str, Any] | None = None,
    ) -> ChangeEvent:
        event = ChangeEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            new_state=new_state,
            payload=payload or {},
        )
        with self._lock:
            subscribers = list(self._subscribers.items())
        for name, subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception("event_subscriber_failed", subscriber=name, entity_id=entity_id)
        return event


class QueueSubscriber:
    """Subscriber that buffers events in a bounded asyncio queue.

    Must be created and fed from the event loop thread.
    """

    def __init__(self, name: str, maxsize: int = 1000) -> None:
        self.name = name
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, event: ChangeEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            record_event_dropped(self.name)
            logger.warning(
                "event_dropped",
                subscriber=self.name,
                entity_type=event.entity_type.value,
                entity_id=event.entity_id,
            )


class RecordingSubscriber:
    """Keeps every event in memory; used by tests and the CLI smoke path."""

    def __init__(self) -> None:
        self.events: list[ChangeEvent] = []

    def __call__(self, event: ChangeEvent) -> None:
        self.events.append(event)

    def states_for(self, entity_id: str) -> list[str]:
        return [event.new_state for event in self.events if event.entity_id == entity_id]
