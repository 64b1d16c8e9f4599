"""Persistence for the change-event audit log."""

from agentdesk.db.engine import close_db, get_session, init_db
from agentdesk.db.models import ChangeEventLog
from agentdesk.db.recorder import EventRecorder

__all__ = [
    "close_db",
    "get_session",
    "init_db",
    "ChangeEventLog",
    "EventRecorder",
]
