"""Id-indexed in-memory stores for orchestration entities.

The stores stand in for an external keyed document store. Uniqueness rules
that span entities (one active virtual session per user) are enforced here,
at the data-access boundary, under the store lock.
"""

from __future__ import annotations

from collections.abc import Callable
from threading import RLock
from typing import Generic, TypeVar

from agentdesk.errors import SessionAlreadyActive
from agentdesk.orchestration.models import Task, VirtualSession

T = TypeVar("T")


class KeyedStore(Generic[T]):
    """Thread-safe mapping of entity id -> entity."""

    def __init__(self, key: Callable[[T], str] = lambda item: item.id) -> None:
        self._key = key
        self._items: dict[str, T] = {}
        self._lock = RLock()

    def add(self, item: T) -> T:
        item_id = self._key(item)
        with self._lock:
            if item_id in self._items:
                raise KeyError(f"Duplicate id: {item_id}")
            self._items[item_id] = item
        return item

    def get(self, item_id: str) -> T | None:
        with self._lock:
            return self._items.get(item_id)

    def values(self) -> list[T]:
        with self._lock:
            return list(self._items.values())

    def filter(self, predicate: Callable[[T], bool]) -> list[T]:
        with self._lock:
            return [item for item in self._items.values() if predicate(item)]


class TaskStore(KeyedStore[Task]):
    """Task records; never deleted, only driven to a terminal state."""


class SessionStore(KeyedStore[VirtualSession]):
    """Virtual sessions with a per-user index of the active (non-terminal) one."""

    def __init__(self) -> None:
        super().__init__()
        self._active_by_user: dict[str, str] = {}

    def claim(self, session: VirtualSession) -> VirtualSession:
        """Insert a new session, taking the user's active slot atomically."""
        with self._lock:
            holder_id = self._active_by_user.get(session.user_id)
            if holder_id is not None:
                holder = self._items[holder_id]
                raise SessionAlreadyActive(
                    f"User already has session {holder_id} in state {holder.state.value}",
                    session_id=holder_id,
                    state=holder.state.value,
                )
            self.add(session)
            self._active_by_user[session.user_id] = session.id
        return session

    def release(self, session: VirtualSession) -> None:
        """Free the user's active slot once the session reached a terminal state."""
        with self._lock:
            if self._active_by_user.get(session.user_id) == session.id:
                del self._active_by_user[session.user_id]

    def latest_for(self, user_id: str) -> VirtualSession | None:
        sessions = self.filter(lambda session: session.user_id == user_id)
        if not sessions:
            return None
        return max(sessions, key=lambda session: session.created_at)
