"""Database tables for agentdesk persistence."""

from datetime import datetime
from typing import Any

from sqlmodel import JSON, Column, Field, SQLModel

from agentdesk.events import ChangeEvent
from agentdesk.orchestration.models import generate_id, utc_now


class ChangeEventLog(SQLModel, table=True):
    """One persisted change event (task, agent or session transition)."""

    __tablename__ = "change_events"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=lambda: generate_id("evt"), primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    new_state: str
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    timestamp: datetime = Field(default_factory=utc_now, index=True)
    recorded_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_event(cls, event: ChangeEvent) -> "ChangeEventLog":
        return cls(
            entity_type=event.entity_type.value,
            entity_id=event.entity_id,
            new_state=event.new_state,
            payload=event.payload,
            timestamp=event.timestamp,
        )
