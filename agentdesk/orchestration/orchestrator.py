"""Top-level orchestrator context.

Owns every registry of the core and wires them together explicitly:

    ModelCatalog, KeyPool -> ProviderGateway -> TaskManager -> WorkflowCoordinator
    AgentRegistry ---------------------------^
    VirtualSessionManager
    EventBus (shared by agents, tasks and sessions)

The HTTP layer and the CLI only talk to this class.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
from sqlmodel import SQLModel

from agentdesk.config import Settings, get_settings
from agentdesk.errors import SessionNotFound, TaskNotFound, ValidationError, error_from_record
from agentdesk.events import EventBus
from agentdesk.logging import get_logger
from agentdesk.orchestration.agents import AgentRegistry, default_agents
from agentdesk.orchestration.catalog import LOCAL_ECHO_MODEL, ModelCatalog
from agentdesk.orchestration.keypool import KeyPool, build_rate_limits
from agentdesk.orchestration.models import (
    Agent,
    KeyRateLimits,
    ModelSpec,
    ProviderKey,
    ProviderName,
    Task,
    TaskMode,
    TaskState,
    UserContext,
    VirtualSession,
)
from agentdesk.orchestration.providers import (
    InvokeOptions,
    ProviderAdapter,
    ProviderGateway,
    ProviderResponse,
    build_adapters,
)
from agentdesk.orchestration.sessions import CommandResult, Provisioner, VirtualSessionManager
from agentdesk.orchestration.tasks import TaskManager, TaskReaper
from agentdesk.orchestration.workflow import WorkflowCoordinator, WorkflowResult, WorkflowStep

logger = get_logger(__name__)

LOCAL_CREDENTIAL = "local-echo"


class TaskSubmission(SQLModel):
    task_id: str
    result: dict[str, Any]
    execution_time_ms: int


def seed_keys(
    pool: KeyPool,
    catalog: ModelCatalog,
    credentials: Mapping[str, str],
    limits: KeyRateLimits,
) -> list[ProviderKey]:
    """Add one key per catalog model of every provider with a credential, plus the local echo key."""
    seeded = []
    for provider_name, credential in credentials.items():
        provider = ProviderName(provider_name)
        for model in catalog.for_provider(provider):
            key = ProviderKey(
                name=model.display_name,
                provider=provider,
                model_id=model.model_id,
                credential=credential,
                rate_limits=limits.model_copy(),
            )
            seeded.append(pool.add_key(key))
    echo = ProviderKey(
        name="Local Echo",
        provider=ProviderName.LOCAL,
        model_id=LOCAL_ECHO_MODEL,
        credential=LOCAL_CREDENTIAL,
        rate_limits=limits.model_copy(),
    )
    seeded.append(pool.add_key(echo))
    return seeded


def bind_agent_models(agents: list[Agent], catalog: ModelCatalog, overrides: Mapping[str, str]) -> list[Agent]:
    """Rebind agent types to other catalog models."""
    known = {agent.type.value for agent in agents}
    for agent_type, model_id in overrides.items():
        if agent_type not in known:
            raise ValueError(f"Unknown agent type in agent_models: {agent_type}")
        if model_id not in catalog:
            raise ValueError(f"Unknown model in agent_models: {model_id}")
    for agent in agents:
        agent.model_id = overrides.get(agent.type.value, agent.model_id)
    return agents


class Orchestrator:
    def __init__(
        self,
        catalog: ModelCatalog,
        pool: KeyPool,
        gateway: ProviderGateway,
        agents: AgentRegistry,
        tasks: TaskManager,
        workflows: WorkflowCoordinator,
        sessions: VirtualSessionManager,
        events: EventBus,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog
        self.pool = pool
        self.gateway = gateway
        self.agents = agents
        self.tasks = tasks
        self.workflows = workflows
        self.sessions = sessions
        self.events = events
        self.reaper = TaskReaper(
            tasks,
            threshold_seconds=self.settings.stale_task_seconds,
            interval_seconds=self.settings.reaper_interval_seconds,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        adapters: Mapping[ProviderName, ProviderAdapter] | None = None,
        provisioner: Provisioner | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        catalog: ModelCatalog | None = None,
    ) -> Orchestrator:
        settings = settings or get_settings()
        events = EventBus()
        catalog = catalog or ModelCatalog.default()
        pool = KeyPool(window_seconds=settings.key_window_seconds)
        limits = KeyRateLimits(
            requests_per_window=settings.key_requests_per_window,
            tokens_per_window=settings.key_tokens_per_window,
        )
        seeded = seed_keys(pool, catalog, settings.provider_credentials(), limits)
        if adapters is None:
            adapters = build_adapters(
                settings.provider_base_urls,
                timeout=settings.provider_timeout_seconds,
                transport=transport,
            )
        gateway = ProviderGateway(catalog, pool, adapters)
        agents = AgentRegistry(
            agents=bind_agent_models(default_agents(), catalog, settings.agent_models),
            events=events,
            failure_threshold=settings.agent_failure_threshold,
            latency_smoothing=settings.latency_smoothing,
        )
        tasks = TaskManager(gateway, agents, events, premium_agent_types=settings.premium_agent_types)
        sessions = VirtualSessionManager(
            events=events,
            provisioner=provisioner,
            start_delay=settings.session_start_delay_seconds,
            stop_delay=settings.session_stop_delay_seconds,
            max_command_length=settings.max_command_length,
        )
        logger.info(
            "orchestrator_ready",
            models=len(catalog),
            keys=len(seeded),
            providers=sorted(settings.provider_credentials()),
            agents=len(agents.list_agents()),
        )
        return cls(
            catalog=catalog,
            pool=pool,
            gateway=gateway,
            agents=agents,
            tasks=tasks,
            workflows=WorkflowCoordinator(tasks),
            sessions=sessions,
            events=events,
            settings=settings,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start_background(self) -> None:
        self.reaper.start()

    async def aclose(self) -> None:
        await self.reaper.stop()
        await self.tasks.shutdown()
        self.sessions.shutdown()
        await self.gateway.aclose()
        logger.info("orchestrator_closed")

    # -------------------------------------------------------------------------
    # Tasks and workflows
    # -------------------------------------------------------------------------

    async def submit_task(
        self,
        user: UserContext,
        agent_type: str,
        message: str,
        mode: str | TaskMode = TaskMode.STANDARD,
        files: list[str] | None = None,
        external_repo: str | None = None,
    ) -> TaskSubmission:
        """Run a task to completion; a failed task raises its typed error."""
        task = await self.tasks.submit(user, agent_type, message, mode, files, external_repo)
        if task.state is not TaskState.COMPLETED:
            kind = task.error.kind if task.error else "orchestrator_error"
            detail = task.error.detail if task.error else f"Task ended {task.state.value}"
            raise error_from_record(kind, detail, task_id=task.id)
        return TaskSubmission(
            task_id=task.id,
            result=task.result or {},
            execution_time_ms=task.metadata_.execution_time_ms,
        )

    async def coordinate_workflow(
        self,
        user: UserContext,
        task: str,
        agent_types: list[str],
        steps: list[WorkflowStep | dict[str, Any]],
    ) -> WorkflowResult:
        parsed = [step if isinstance(step, WorkflowStep) else WorkflowStep.model_validate(step) for step in steps]
        return await self.workflows.coordinate(user, task, agent_types, parsed)

    def get_task(self, task_id: str, user_id: str | None = None) -> Task:
        task = self.tasks.get(task_id)
        if user_id is not None and task.user_id != user_id:
            raise TaskNotFound(f"Task '{task_id}' not found", task_id=task_id)
        return task

    def list_tasks(self, user_id: str | None = None, state: str | None = None) -> list[Task]:
        try:
            wanted = TaskState(state) if state is not None else None
        except ValueError as exc:
            raise ValidationError(f"Unknown task state '{state}'") from exc
        return self.tasks.list_tasks(user_id=user_id, state=wanted)

    def cancel_task(self, task_id: str, user_id: str | None = None) -> Task:
        self.get_task(task_id, user_id)
        return self.tasks.cancel(task_id)

    # -------------------------------------------------------------------------
    # Agents and models
    # -------------------------------------------------------------------------

    def list_agents(self) -> list[Agent]:
        return self.agents.list_agents()

    def reset_agent(self, agent_type: str) -> Agent:
        return self.agents.reset(agent_type)

    def list_models(self, category: str | None = None) -> list[ModelSpec]:
        return self.catalog.list_models(category)

    async def chat_model(
        self,
        model_id: str,
        message: str,
        options: InvokeOptions | None = None,
    ) -> ProviderResponse:
        """Send one message straight to a catalog model, without an agent or task.

        Key selection, rate limits and usage accounting are the same as for
        agent tasks; failures propagate as typed errors.
        """
        if not message or not message.strip():
            raise ValidationError("Message must not be empty", model_id=model_id)
        response = await self.gateway.invoke(model_id, message, options)
        logger.info("model_chat_completed", model_id=model_id, tokens=response.usage.total_tokens)
        return response

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def start_session(self, user: UserContext, size_class: str) -> VirtualSession:
        return self.sessions.start(user.user_id, size_class)

    def _owned_session(self, session_id: str, user_id: str | None) -> VirtualSession:
        session = self.sessions.get(session_id)
        if user_id is not None and session.user_id != user_id:
            raise SessionNotFound(f"Session '{session_id}' not found", session_id=session_id)
        return session

    def stop_session(self, session_id: str, user_id: str | None = None) -> VirtualSession:
        self._owned_session(session_id, user_id)
        return self.sessions.stop(session_id)

    async def execute_session_command(
        self,
        session_id: str,
        command: str,
        user_id: str | None = None,
    ) -> CommandResult:
        self._owned_session(session_id, user_id)
        return await self.sessions.execute(session_id, command)

    def session_status(self, user_id: str) -> VirtualSession | None:
        return self.sessions.status(user_id)

    # -------------------------------------------------------------------------
    # Key administration
    # -------------------------------------------------------------------------

    def add_key(
        self,
        name: str,
        model_id: str,
        credential: str,
        requests_per_window: int | None = None,
        tokens_per_window: int | None = None,
    ) -> ProviderKey:
        model = self.catalog.get(model_id)
        if model is None:
            raise ValidationError(f"Model '{model_id}' is not in the catalog", model_id=model_id)
        if not credential:
            raise ValidationError("Credential must not be empty")
        limits = build_rate_limits(
            self.settings.key_requests_per_window if requests_per_window is None else requests_per_window,
            self.settings.key_tokens_per_window if tokens_per_window is None else tokens_per_window,
        )
        key = ProviderKey(
            name=name,
            provider=model.provider,
            model_id=model_id,
            credential=credential,
            rate_limits=limits,
        )
        return self.pool.add_key(key)

    def list_keys(self, model_id: str | None = None) -> list[ProviderKey]:
        return self.pool.list_keys(model_id)

    def deactivate_key(self, key_id: str) -> ProviderKey:
        return self.pool.deactivate(key_id)

    def reactivate_key(self, key_id: str) -> ProviderKey:
        return self.pool.reactivate(key_id)

    def update_key(
        self,
        key_id: str,
        name: str | None = None,
        requests_per_window: int | None = None,
        tokens_per_window: int | None = None,
    ) -> ProviderKey:
        """Rename a key and/or change its window limits; omitted fields are kept."""
        if name is not None and not name.strip():
            raise ValidationError("Key name must not be empty", key_id=key_id)
        key = self.pool.update_limits(key_id, requests_per_window, tokens_per_window)
        if name is not None:
            key.name = name
        return key

    def remove_key(self, key_id: str) -> ProviderKey:
        return self.pool.remove_key(key_id)

    # -------------------------------------------------------------------------
    # Dashboard
    # -------------------------------------------------------------------------

    def dashboard_stats(self) -> dict[str, Any]:
        keys = sorted(self.pool.list_keys(), key=lambda key: key.usage.requests, reverse=True)
        usage = self.pool.usage_by_model()
        return {
            "agents": self.agents.counts_by_state(),
            "tasks": self.tasks.counts_by_state(),
            "sessions": self.sessions.counts_by_state(),
            "keys": {
                "total": len(keys),
                "active": sum(1 for key in keys if key.active),
                "usage_by_model": {model_id: total.model_dump() for model_id, total in usage.items()},
                "top": [
                    {
                        "id": key.id,
                        "name": key.name,
                        "model_id": key.model_id,
                        "requests": key.usage.requests,
                        "tokens": key.usage.tokens,
                        "cost": round(key.usage.cost, 6),
                    }
                    for key in keys[:10]
                ],
            },
        }
