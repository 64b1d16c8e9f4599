"""Tests for the change-event audit log."""

import uuid

import pytest
import pytest_asyncio
from sqlmodel import select

from agentdesk.db import ChangeEventLog, EventRecorder, close_db, get_session, init_db
from agentdesk.events import EntityType, EventBus, QueueSubscriber


@pytest_asyncio.fixture
async def db(monkeypatch):
    """Create an isolated in-memory database for each test."""
    import agentdesk.config
    import agentdesk.db.engine

    monkeypatch.setenv(
        "AGENTDESK_DATABASE_URL",
        f"sqlite+aiosqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true",
    )
    agentdesk.config.get_settings.cache_clear()
    agentdesk.db.engine._engine = None

    await init_db()
    yield
    await close_db()
    agentdesk.config.get_settings.cache_clear()


async def stored(entity_id: str | None = None) -> list[ChangeEventLog]:
    async with get_session() as session:
        query = select(ChangeEventLog).order_by(ChangeEventLog.timestamp)
        if entity_id:
            query = query.where(ChangeEventLog.entity_id == entity_id)
        result = await session.execute(query)
        return list(result.scalars().all())


class TestEventRecorder:
    """Tests for persisting events from a queue subscriber."""

    @pytest.mark.asyncio
    async def test_flush_persists_queued_events(self, db):
        bus = EventBus()
        subscriber = QueueSubscriber("audit")
        bus.subscribe(subscriber.name, subscriber)
        recorder = EventRecorder(subscriber, batch_size=2)

        for state in ["pending", "running", "completed"]:
            bus.emit(EntityType.TASK, "task_1", state, {"user_id": "user-1"})

        assert await recorder.flush() == 3
        rows = await stored("task_1")
        assert sorted(row.new_state for row in rows) == ["completed", "pending", "running"]
        assert rows[0].entity_type == "task"
        assert rows[0].payload == {"user_id": "user-1"}
        assert rows[0].id.startswith("evt_")

    @pytest.mark.asyncio
    async def test_background_loop_and_stop(self, db):
        bus = EventBus()
        subscriber = QueueSubscriber("audit")
        bus.subscribe(subscriber.name, subscriber)
        recorder = EventRecorder(subscriber)
        recorder.start()
        assert recorder.running

        bus.emit(EntityType.SESSION, "vm-1", "starting")
        bus.emit(EntityType.SESSION, "vm-1", "running")
        await recorder.stop()

        assert not recorder.running
        assert recorder.persisted == 2
        assert sorted(row.new_state for row in await stored("vm-1")) == ["running", "starting"]

    @pytest.mark.asyncio
    async def test_persist_failure_drops_batch(self, db):
        bus = EventBus()
        subscriber = QueueSubscriber("audit")
        bus.subscribe(subscriber.name, subscriber)
        recorder = EventRecorder(subscriber)

        bus.emit(EntityType.AGENT, "agent_turbo", "active", {"unserializable": object()})
        assert await recorder.flush() == 0
        assert recorder.persisted == 0

        bus.emit(EntityType.AGENT, "agent_turbo", "idle")
        assert await recorder.flush() == 1
        assert [row.new_state for row in await stored("agent_turbo")] == ["idle"]
