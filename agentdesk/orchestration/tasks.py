"""Task lifecycle manager.

A task moves through a subsequence of

    pending -> running -> {completed | failed | cancelled}

and never leaves a terminal state. Every state change goes through
``TaskManager.transition``, which re-checks the current state under the
manager lock, so a provider call that returns after its task was reaped or
cancelled is discarded instead of overwriting the terminal record.

Provider failures are caught here and recorded on the task; they are never
retried. ``TaskReaper`` periodically fails tasks that have been running
longer than the stale threshold.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from threading import Lock
from typing import Any

from agentdesk.errors import (
    AgentBusy,
    Forbidden,
    OrchestratorError,
    ProviderRequestFailed,
    ProviderUnavailable,
    TaskCancelled,
    TaskNotFound,
    TaskTimeout,
    ValidationError,
)
from agentdesk.events import EntityType, EventBus
from agentdesk.logging import bind_context, get_logger
from agentdesk.metrics import record_task_transition
from agentdesk.orchestration.agents import AgentRegistry, DispatchHandle
from agentdesk.orchestration.models import (
    Agent,
    DispatchOutcome,
    SubscriptionTier,
    Task,
    TaskError,
    TaskMetadata,
    TaskMode,
    TaskState,
    UserContext,
    utc_now,
)
from agentdesk.orchestration.providers import InvokeOptions, ProviderGateway
from agentdesk.store import TaskStore

logger = get_logger(__name__)

MULTI_AGENT = "multi-agent"

_ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.RUNNING, TaskState.FAILED, TaskState.CANCELLED}),
    TaskState.RUNNING: frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED}),
}


def build_prompt(
    system_prompt: str,
    message: str,
    files: list[str] | None = None,
    external_repo: str | None = None,
) -> str:
    """Assemble the provider prompt: context lines, agent instructions, then the request."""
    context = ""
    if files:
        context += f"Attached files: {', '.join(files)}\n"
    if external_repo:
        context += f"External repository: {external_repo}\n"
    return f"{context}\n{system_prompt}\n\nUser request: {message}"


class TaskHandle:
    """Awaitable reference to a started task."""

    def __init__(self, manager: TaskManager, task_id: str, done: asyncio.Event) -> None:
        self._manager = manager
        self.task_id = task_id
        self._done = done

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> Task:
        """Wait until the task is terminal and return its record."""
        await self._done.wait()
        return self._manager.get(self.task_id)


class TaskManager:
    """Creates tasks, drives them through agent dispatch, and records outcomes."""

    def __init__(
        self,
        gateway: ProviderGateway,
        agents: AgentRegistry,
        events: EventBus | None = None,
        premium_agent_types: list[str] | None = None,
        store: TaskStore | None = None,
    ) -> None:
        self.gateway = gateway
        self.agents = agents
        self.events = events or agents.events
        self.premium_agent_types = frozenset(premium_agent_types or [])
        self.store = store or TaskStore()
        self._lock = Lock()
        self._done: dict[str, asyncio.Event] = {}
        self._dispatches: dict[str, DispatchHandle] = {}
        self._runners: dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def start(
        self,
        user: UserContext,
        agent_type: str,
        message: str,
        mode: str | TaskMode = TaskMode.STANDARD,
        files: list[str] | None = None,
        external_repo: str | None = None,
    ) -> TaskHandle:
        """Create a task, dispatch its agent and schedule the provider call.

        Must be called from the event loop. Validation, entitlement and busy
        conditions are raised synchronously; a busy agent also leaves a
        ``failed`` task record behind.
        """
        try:
            task_mode = TaskMode(mode)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown task mode '{mode}'",
                allowed=[m.value for m in TaskMode],
            ) from exc
        if not message or not message.strip():
            raise ValidationError("Task message must not be empty")

        agent = self.agents.get(agent_type)
        if agent.type.value in self.premium_agent_types and user.tier is not SubscriptionTier.ULTRA:
            raise Forbidden(
                f"Agent '{agent.type.value}' requires the {SubscriptionTier.ULTRA.value} tier",
                agent_type=agent.type.value,
                tier=user.tier.value,
            )

        task = Task(
            user_id=user.user_id,
            agent_type=agent.type.value,
            description=message,
            mode=task_mode,
            files=list(files or []),
            external_repo=external_repo,
            metadata_=TaskMetadata(model=agent.model_id, agent=agent.name),
        )
        done = asyncio.Event()
        with self._lock:
            self.store.add(task)
            self._done[task.id] = done
        self._changed(task, TaskState.PENDING)

        try:
            handle = self.agents.dispatch(agent.type, task.id)
        except AgentBusy as exc:
            self.transition(task.id, TaskState.FAILED, error=exc)
            raise

        with self._lock:
            self._dispatches[task.id] = handle
        self.transition(task.id, TaskState.RUNNING)

        prompt = build_prompt(agent.configuration.system_prompt, message, task.files, external_repo)
        options = InvokeOptions(
            temperature=agent.configuration.temperature,
            max_tokens=agent.configuration.max_tokens,
        )
        runner = asyncio.get_running_loop().create_task(
            self._run(task.id, handle, agent, prompt, options),
            name=f"task:{task.id}",
        )
        with self._lock:
            self._runners[task.id] = runner
        runner.add_done_callback(lambda _: self._forget_runner(task.id))
        return TaskHandle(self, task.id, done)

    async def submit(
        self,
        user: UserContext,
        agent_type: str,
        message: str,
        mode: str | TaskMode = TaskMode.STANDARD,
        files: list[str] | None = None,
        external_repo: str | None = None,
    ) -> Task:
        """Start a task and wait for its terminal record."""
        handle = self.start(user, agent_type, message, mode, files, external_repo)
        return await handle.wait()

    async def _run(
        self,
        task_id: str,
        handle: DispatchHandle,
        agent: Agent,
        prompt: str,
        options: InvokeOptions,
    ) -> None:
        # Runner tasks get a copy of the context, so this does not leak into the caller
        bind_context(task_id=task_id, agent_type=agent.type.value)
        started = time.perf_counter()
        try:
            response = await self.gateway.invoke(agent.model_id, prompt, options)
        except ProviderUnavailable as exc:
            # No key could be taken, so the agent did nothing wrong
            self._release(task_id, DispatchOutcome.REJECTED)
            self.transition(task_id, TaskState.FAILED, error=exc)
            return
        except OrchestratorError as exc:
            self._release(task_id, DispatchOutcome.FAILED, (time.perf_counter() - started) * 1000)
            self.transition(task_id, TaskState.FAILED, error=exc)
            return
        except Exception as exc:
            logger.exception("task_execution_crashed", task_id=task_id, agent_type=agent.type.value)
            self._release(task_id, DispatchOutcome.FAILED, (time.perf_counter() - started) * 1000)
            failure = ProviderRequestFailed(f"Unexpected provider error: {type(exc).__name__}")
            self.transition(task_id, TaskState.FAILED, error=failure)
            return

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._release(task_id, DispatchOutcome.SUCCEEDED, elapsed_ms)
        task = self.store.get(task_id)
        mode = task.mode.value if task else TaskMode.STANDARD.value
        usage = response.usage
        result: dict[str, Any] = {
            "content": response.content,
            "agent": agent.name,
            "model": response.model_id,
            "mode": mode,
            "timestamp": utc_now().isoformat(),
            "usage": {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "total_tokens": usage.total_tokens,
            },
        }
        metadata = TaskMetadata(
            tokens_used=usage.total_tokens,
            execution_time_ms=int(elapsed_ms),
            model=response.model_id,
            agent=agent.name,
        )
        self.transition(task_id, TaskState.COMPLETED, result=result, metadata=metadata)

    def _release(self, task_id: str, outcome: DispatchOutcome, latency_ms: float | None = None) -> None:
        with self._lock:
            handle = self._dispatches.pop(task_id, None)
        if handle is not None:
            self.agents.complete(handle, outcome, latency_ms)

    def _forget_runner(self, task_id: str) -> None:
        with self._lock:
            self._runners.pop(task_id, None)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def transition(
        self,
        task_id: str,
        new_state: TaskState,
        *,
        result: dict[str, Any] | None = None,
        metadata: TaskMetadata | None = None,
        error: OrchestratorError | None = None,
    ) -> bool:
        """Move a task to ``new_state`` if the current state allows it.

        Returns False for a disallowed transition (including any transition
        out of a terminal state); the record is left untouched.
        """
        with self._lock:
            task = self.store.get(task_id)
            if task is None:
                raise TaskNotFound(f"Task '{task_id}' not found", task_id=task_id)
            current = task.state
            if new_state not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
                logger.info(
                    "task_transition_discarded",
                    task_id=task_id,
                    current_state=current.value,
                    requested_state=new_state.value,
                )
                return False

            now = utc_now()
            task.state = new_state
            if new_state is TaskState.RUNNING:
                task.started_at = now
                task.progress = 10
            if result is not None:
                task.result = result
            if metadata is not None:
                task.metadata_ = metadata
            if error is not None:
                task.error = TaskError(kind=error.kind, detail=error.detail)
            if new_state.is_terminal:
                task.completed_at = now
                if new_state is TaskState.COMPLETED:
                    task.progress = 100
                done = self._done.pop(task_id, None)
            else:
                done = None

        duration = None
        if new_state.is_terminal and task.started_at is not None:
            duration = (task.completed_at - task.started_at).total_seconds()
        if error is not None:
            logger.warning(
                "task_failed" if new_state is TaskState.FAILED else "task_cancelled",
                task_id=task_id,
                agent_type=task.agent_type,
                error_kind=error.kind,
                error=error.detail,
            )
        self._changed(task, new_state, duration)
        if done is not None:
            done.set()
        return True

    def _changed(self, task: Task, state: TaskState, duration: float | None = None) -> None:
        record_task_transition(task.agent_type, state.value, duration)
        logger.info("task_state_changed", task_id=task.id, agent_type=task.agent_type, state=state.value)
        payload: dict[str, Any] = {"user_id": task.user_id, "agent_type": task.agent_type}
        if task.error is not None and state.is_terminal:
            payload["error"] = task.error.model_dump()
        self.events.emit(EntityType.TASK, task.id, state.value, payload)

    # -------------------------------------------------------------------------
    # Coordination records
    # -------------------------------------------------------------------------

    def open_task(self, user: UserContext, description: str, agent_type: str = MULTI_AGENT) -> Task:
        """Create a running task that is not dispatched to a single agent."""
        task = Task(
            user_id=user.user_id,
            agent_type=agent_type,
            description=description,
            metadata_=TaskMetadata(agent=agent_type),
        )
        with self._lock:
            self.store.add(task)
        self._changed(task, TaskState.PENDING)
        self.transition(task.id, TaskState.RUNNING)
        return self.get(task.id)

    def finish_task(self, task_id: str, result: dict[str, Any], tokens_used: int = 0) -> bool:
        task = self.get(task_id)
        elapsed_ms = 0
        if task.started_at is not None:
            elapsed_ms = int((utc_now() - task.started_at).total_seconds() * 1000)
        metadata = task.metadata_.model_copy(update={"tokens_used": tokens_used, "execution_time_ms": elapsed_ms})
        return self.transition(task_id, TaskState.COMPLETED, result=result, metadata=metadata)

    def fail_task(self, task_id: str, error: OrchestratorError) -> bool:
        return self.transition(task_id, TaskState.FAILED, error=error)

    # -------------------------------------------------------------------------
    # Cancellation and reaping
    # -------------------------------------------------------------------------

    def cancel(self, task_id: str) -> Task:
        """Cancel a pending or running task; terminal tasks are returned unchanged."""
        error = TaskCancelled(f"Task '{task_id}' was cancelled", task_id=task_id)
        if self.transition(task_id, TaskState.CANCELLED, error=error):
            self._release(task_id, DispatchOutcome.CANCELLED)
            with self._lock:
                runner = self._runners.get(task_id)
            if runner is not None:
                runner.cancel()
        return self.get(task_id)

    def reap_stale(self, threshold: float, now: datetime | None = None) -> list[str]:
        """Fail running tasks older than ``threshold`` seconds.

        The in-flight provider call is left alone; its eventual result is
        discarded by the guarded transition. The bound agent is released so
        it stays dispatchable.
        """
        now = now or utc_now()
        candidates = self.store.filter(
            lambda task: task.state is TaskState.RUNNING
            and (now - task.created_at).total_seconds() > threshold
        )
        reaped = []
        for task in candidates:
            age = (now - task.created_at).total_seconds()
            error = TaskTimeout(
                f"Task exceeded the {threshold:g}s running limit",
                task_id=task.id,
                age_seconds=round(age, 3),
            )
            if self.transition(task.id, TaskState.FAILED, error=error):
                self._release(task.id, DispatchOutcome.TIMED_OUT)
                reaped.append(task.id)
        if reaped:
            logger.warning("tasks_reaped", count=len(reaped), task_ids=reaped, threshold_seconds=threshold)
        return reaped

    async def shutdown(self) -> None:
        """Cancel in-flight tasks and wait for their runners to unwind."""
        with self._lock:
            task_ids = list(self._runners)
        for task_id in task_ids:
            self.cancel(task_id)
        with self._lock:
            runners = list(self._runners.values())
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self.store.get(task_id)
            if task is None:
                raise TaskNotFound(f"Task '{task_id}' not found", task_id=task_id)
            return task.model_copy(deep=True)

    def list_tasks(self, user_id: str | None = None, state: TaskState | None = None) -> list[Task]:
        with self._lock:
            tasks = [
                task.model_copy(deep=True)
                for task in self.store.values()
                if (user_id is None or task.user_id == user_id) and (state is None or task.state is state)
            ]
        return sorted(tasks, key=lambda task: task.created_at, reverse=True)

    def counts_by_state(self) -> dict[str, int]:
        counts = {state.value: 0 for state in TaskState}
        for task in self.store.values():
            counts[task.state.value] += 1
        return counts


class TaskReaper:
    """Background loop that periodically reaps stale running tasks."""

    def __init__(self, manager: TaskManager, threshold_seconds: float, interval_seconds: float) -> None:
        self.manager = manager
        self.threshold_seconds = threshold_seconds
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="task-reaper")
        logger.info(
            "task_reaper_started",
            threshold_seconds=self.threshold_seconds,
            interval_seconds=self.interval_seconds,
        )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.manager.reap_stale(self.threshold_seconds)
            except Exception:
                logger.exception("task_reaper_sweep_failed")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("task_reaper_stopped")
