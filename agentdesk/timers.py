"""Cancellable delayed transitions.

A ``Timer`` runs a coroutine callback after a delay on the running event
loop. Callers can cancel it, await its completion, or inspect whether it is
still pending, so a later request (e.g. stopping a session that is still
provisioning) can be composed with the pending completion instead of racing
it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from agentdesk.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Awaitable[None]]


class Timer:
    """A single scheduled callback."""

    def __init__(self, delay: float, callback: Callback, name: str | None = None) -> None:
        self.delay = max(0.0, delay)
        self.name = name or getattr(callback, "__name__", "timer")
        self._callback = callback
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        self._task.add_done_callback(self._log_failure)

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        await self._callback()

    def _log_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("timer_callback_failed", timer=self.name, error=str(error), error_type=type(error).__name__)

    @property
    def pending(self) -> bool:
        return not self._task.done()

    def is_current(self) -> bool:
        """True when called from inside this timer's own callback."""
        return asyncio.current_task() is self._task

    def cancel(self) -> bool:
        """Cancel the timer; returns False if it already fired."""
        return self._task.cancel()

    async def wait(self) -> None:
        """Wait until the timer fired (or was cancelled)."""
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise


class TimerRegistry:
    """Tracks the outstanding timer per owner key (e.g. one per session)."""

    def __init__(self) -> None:
        self._timers: dict[str, Timer] = {}

    def schedule(self, key: str, delay: float, callback: Callback) -> Timer:
        previous = self._timers.get(key)
        # A firing callback may chain the next transition for its own key
        if previous is not None and previous.pending and not previous.is_current():
            raise RuntimeError(f"Timer already pending for {key}")
        timer = Timer(delay, callback, name=f"{key}:{getattr(callback, '__name__', 'callback')}")
        self._timers[key] = timer
        return timer

    def pending(self, key: str) -> bool:
        timer = self._timers.get(key)
        return timer is not None and timer.pending

    async def wait(self, key: str) -> None:
        """Wait for the key's timers, including any scheduled by a firing callback."""
        while True:
            timer = self._timers.get(key)
            if timer is None or not timer.pending:
                return
            await timer.wait()

    def cancel_all(self) -> int:
        cancelled = 0
        for timer in self._timers.values():
            if timer.cancel():
                cancelled += 1
        self._timers.clear()
        return cancelled
