"""Background writer that persists change events to the audit log.

The recorder drains a ``QueueSubscriber`` in batches. Persistence failures
are logged and the batch is dropped; the core never waits on the database.
"""

from __future__ import annotations

import asyncio

from agentdesk.db.engine import get_session
from agentdesk.db.models import ChangeEventLog
from agentdesk.events import ChangeEvent, QueueSubscriber
from agentdesk.logging import get_logger

logger = get_logger(__name__)


class EventRecorder:
    def __init__(self, subscriber: QueueSubscriber, batch_size: int = 100) -> None:
        self.subscriber = subscriber
        self.batch_size = batch_size
        self.persisted = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="event-recorder")

    async def _loop(self) -> None:
        queue = self.subscriber.queue
        while True:
            batch = [await queue.get()]
            batch.extend(self._drain(self.batch_size - 1))
            await self._persist(batch)

    def _drain(self, limit: int) -> list[ChangeEvent]:
        events = []
        queue = self.subscriber.queue
        while len(events) < limit and not queue.empty():
            events.append(queue.get_nowait())
        return events

    async def _persist(self, batch: list[ChangeEvent]) -> None:
        try:
            async with get_session() as session:
                session.add_all([ChangeEventLog.from_event(event) for event in batch])
        except Exception:
            logger.exception("change_events_persist_failed", count=len(batch))
            return
        self.persisted += len(batch)

    async def flush(self) -> int:
        """Persist whatever is queued right now; returns the number of events written."""
        written = 0
        while True:
            batch = self._drain(self.batch_size)
            if not batch:
                return written
            before = self.persisted
            await self._persist(batch)
            written += self.persisted - before

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        flushed = await self.flush()
        logger.info("event_recorder_stopped", persisted=self.persisted, flushed_on_stop=flushed)
