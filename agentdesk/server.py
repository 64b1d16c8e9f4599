"""FastAPI server for the agentdesk orchestration core.

Exposes:
- Model catalog, direct model chat and agent listing
- Task execution, lookup and cancellation
- Multi-agent workflows
- Virtual session lifecycle and command execution
- Provider key administration and the usage dashboard
- The persisted change-event log

Callers are authenticated upstream; the user id and subscription tier arrive
in the X-User-ID and X-User-Tier headers.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlmodel import select
from starlette.responses import PlainTextResponse

from agentdesk import __version__
from agentdesk.config import get_settings
from agentdesk.db import ChangeEventLog, EventRecorder, close_db, get_session, init_db
from agentdesk.errors import OrchestratorError
from agentdesk.events import QueueSubscriber
from agentdesk.logging import configure_logging, get_logger
from agentdesk.metrics import metrics
from agentdesk.middleware import RequestTracingMiddleware
from agentdesk.orchestration.models import SubscriptionTier, UserContext
from agentdesk.orchestration.orchestrator import Orchestrator
from agentdesk.orchestration.providers import InvokeOptions
from agentdesk.orchestration.workflow import WorkflowStep
from agentdesk.schemas.api import (
    AgentListResponse,
    CommandRequest,
    CommandResponse,
    EventListResponse,
    KeyCreateRequest,
    KeyUpdateRequest,
    KeyListResponse,
    KeyResponse,
    ModelChatRequest,
    ModelChatResponse,
    ModelListResponse,
    ModelResponse,
    SessionResponse,
    SessionStartRequest,
    SessionStatusResponse,
    SessionStopResponse,
    TaskExecuteRequest,
    TaskExecuteResponse,
    TaskListResponse,
    TaskResponse,
    WorkflowRequest,
    WorkflowResponse,
)

logger = get_logger(__name__)

STATUS_BY_KIND: dict[str, int] = {
    "agent_not_found": status.HTTP_404_NOT_FOUND,
    "task_not_found": status.HTTP_404_NOT_FOUND,
    "session_not_found": status.HTTP_404_NOT_FOUND,
    "key_not_found": status.HTTP_404_NOT_FOUND,
    "agent_busy": status.HTTP_409_CONFLICT,
    "session_already_active": status.HTTP_409_CONFLICT,
    "session_not_running": status.HTTP_409_CONFLICT,
    "task_cancelled": status.HTTP_409_CONFLICT,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "rate_limit_exceeded": status.HTTP_429_TOO_MANY_REQUESTS,
    "provider_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "provider_request_failed": status.HTTP_502_BAD_GATEWAY,
    "workflow_step_failed": status.HTTP_502_BAD_GATEWAY,
    "task_timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()

    configure_logging(
        json_format=not settings.debug,
        level="DEBUG" if settings.debug else settings.log_level,
    )
    logger.info(
        "server_starting",
        version=__version__,
        host=settings.host,
        port=settings.port,
        debug=settings.debug,
    )

    await init_db()
    logger.info("database_ready")

    orchestrator = getattr(app.state, "orchestrator", None) or Orchestrator.from_settings(settings)
    app.state.orchestrator = orchestrator

    subscriber = QueueSubscriber("audit-log", maxsize=settings.event_queue_size)
    unsubscribe = orchestrator.events.subscribe(subscriber.name, subscriber)
    recorder = EventRecorder(subscriber)
    recorder.start()
    app.state.recorder = recorder
    orchestrator.start_background()

    yield

    unsubscribe()
    await orchestrator.aclose()
    await recorder.stop()
    await close_db()
    logger.info("server_shutdown")


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def current_user(
    x_user_id: str | None = Header(default=None),
    x_user_tier: str | None = Header(default=None),
) -> UserContext:
    """The caller as identified by the upstream authentication layer."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
    try:
        tier = SubscriptionTier(x_user_tier or SubscriptionTier.NINJA.value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown subscription tier '{x_user_tier}'",
        ) from exc
    return UserContext(user_id=x_user_id, tier=tier)


def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Pass an ``orchestrator`` to serve a pre-built core (tests do this);
    otherwise one is built from settings at startup.
    """
    settings = get_settings()

    app = FastAPI(
        title="agentdesk",
        description="Agent routing and orchestration core",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.add_middleware(RequestTracingMiddleware)

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
        status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
        logger.info("request_rejected", kind=exc.kind, detail=exc.detail, status_code=status_code)
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy", "version": __version__}

    @app.get("/metrics", include_in_schema=False)
    async def get_metrics() -> PlainTextResponse:
        """Return Prometheus-formatted metrics."""
        return PlainTextResponse(
            content=metrics.to_prometheus(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.get("/metrics/json")
    async def get_metrics_json() -> dict:
        return metrics.get_stats()

    # =========================================================================
    # Models and agents
    # =========================================================================

    @app.get("/v1/models", response_model=ModelListResponse)
    async def list_models(
        category: str | None = Query(default=None, description="Filter by model category"),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> ModelListResponse:
        models = [
            ModelResponse(
                model_id=model.model_id,
                display_name=model.display_name,
                provider=model.provider.value,
                category=model.category.value,
                input_cost=model.pricing.input_cost,
                output_cost=model.pricing.output_cost,
            )
            for model in core.list_models(category)
        ]
        return ModelListResponse(models=models, count=len(models))

    @app.post(
        "/v1/models/{model_id}/chat",
        response_model=ModelChatResponse,
        dependencies=[Depends(current_user)],
    )
    async def chat_model(
        model_id: str,
        body: ModelChatRequest,
        core: Orchestrator = Depends(get_orchestrator),
    ) -> ModelChatResponse:
        """Send a message straight to one model, outside any agent or task."""
        options = InvokeOptions(**body.model_dump(exclude={"message"}, exclude_none=True))
        response = await core.chat_model(model_id, body.message, options)
        usage = response.usage
        return ModelChatResponse(
            model_id=response.model_id,
            content=response.content,
            usage={
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "total_tokens": usage.total_tokens,
            },
        )

    @app.get("/v1/agents", response_model=AgentListResponse)
    async def list_agents(core: Orchestrator = Depends(get_orchestrator)) -> AgentListResponse:
        agents = core.list_agents()
        return AgentListResponse(agents=[agent.model_dump(mode="json") for agent in agents], count=len(agents))

    @app.post("/v1/agents/{agent_type}/execute", response_model=TaskExecuteResponse)
    async def execute_agent(
        agent_type: str,
        body: TaskExecuteRequest,
        user: UserContext = Depends(current_user),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> TaskExecuteResponse:
        """Run a task on an agent and wait for its result.

        A failed task is returned as an error with the task id in its context.
        """
        submission = await core.submit_task(
            user,
            agent_type,
            body.message,
            mode=body.mode,
            files=body.files,
            external_repo=body.external_repo,
        )
        return TaskExecuteResponse(**submission.model_dump())

    @app.post("/v1/agents/{agent_type}/reset")
    async def reset_agent(agent_type: str, core: Orchestrator = Depends(get_orchestrator)) -> dict:
        agent = core.reset_agent(agent_type)
        return agent.model_dump(mode="json")

    # =========================================================================
    # Tasks and workflows
    # =========================================================================

    @app.get("/v1/tasks", response_model=TaskListResponse)
    async def list_tasks(
        state: str | None = Query(default=None, description="Filter by task state"),
        user: UserContext = Depends(current_user),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> TaskListResponse:
        tasks = [TaskResponse.from_task(task) for task in core.list_tasks(user_id=user.user_id, state=state)]
        return TaskListResponse(tasks=tasks, count=len(tasks))

    @app.get("/v1/tasks/{task_id}", response_model=TaskResponse)
    async def get_task(
        task_id: str,
        user: UserContext = Depends(current_user),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> TaskResponse:
        return TaskResponse.from_task(core.get_task(task_id, user.user_id))

    @app.post("/v1/tasks/{task_id}/cancel", response_model=TaskResponse)
    async def cancel_task(
        task_id: str,
        user: UserContext = Depends(current_user),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> TaskResponse:
        return TaskResponse.from_task(core.cancel_task(task_id, user.user_id))

    @app.post("/v1/workflows/coordinate", response_model=WorkflowResponse)
    async def coordinate_workflow(
        body: WorkflowRequest,
        user: UserContext = Depends(current_user),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> WorkflowResponse:
        steps = [WorkflowStep(**step.model_dump()) for step in body.workflow]
        result = await core.coordinate_workflow(user, body.task, body.agents, steps)
        return WorkflowResponse(task_id=result.task_id, results=result.results)

    # =========================================================================
    # Virtual sessions
    # =========================================================================

    @app.post("/v1/sessions", response_model=SessionResponse, status_code=201)
    async def start_session(
        body: SessionStartRequest,
        user: UserContext = Depends(current_user),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> SessionResponse:
        return SessionResponse.from_session(core.start_session(user, body.size_class))

    @app.get("/v1/sessions/status", response_model=SessionStatusResponse)
    async def session_status(
        user: UserContext = Depends(current_user),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> SessionStatusResponse:
        session = core.session_status(user.user_id)
        return SessionStatusResponse(session=SessionResponse.from_session(session) if session else None)

    @app.post("/v1/sessions/{session_id}/stop", response_model=SessionStopResponse)
    async def stop_session(
        session_id: str,
        user: UserContext = Depends(current_user),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> SessionStopResponse:
        session = core.stop_session(session_id, user.user_id)
        return SessionStopResponse(session_id=session.id, state=session.state.value)

    @app.post("/v1/sessions/{session_id}/execute", response_model=CommandResponse)
    async def execute_command(
        session_id: str,
        body: CommandRequest,
        user: UserContext = Depends(current_user),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> CommandResponse:
        result = await core.execute_session_command(session_id, body.command, user.user_id)
        return CommandResponse(**result.model_dump())

    # =========================================================================
    # Administration
    # =========================================================================

    @app.get("/v1/admin/keys", response_model=KeyListResponse)
    async def list_keys(
        model_id: str | None = Query(default=None, description="Filter by model"),
        core: Orchestrator = Depends(get_orchestrator),
    ) -> KeyListResponse:
        keys = [KeyResponse.from_key(key) for key in core.list_keys(model_id)]
        return KeyListResponse(keys=keys, count=len(keys))

    @app.post("/v1/admin/keys", response_model=KeyResponse, status_code=201)
    async def add_key(body: KeyCreateRequest, core: Orchestrator = Depends(get_orchestrator)) -> KeyResponse:
        key = core.add_key(
            body.name,
            body.model_id,
            body.credential,
            requests_per_window=body.requests_per_window,
            tokens_per_window=body.tokens_per_window,
        )
        return KeyResponse.from_key(key)

    @app.post("/v1/admin/keys/{key_id}/deactivate", response_model=KeyResponse)
    async def deactivate_key(key_id: str, core: Orchestrator = Depends(get_orchestrator)) -> KeyResponse:
        return KeyResponse.from_key(core.deactivate_key(key_id))

    @app.post("/v1/admin/keys/{key_id}/reactivate", response_model=KeyResponse)
    async def reactivate_key(key_id: str, core: Orchestrator = Depends(get_orchestrator)) -> KeyResponse:
        return KeyResponse.from_key(core.reactivate_key(key_id))

    @app.patch("/v1/admin/keys/{key_id}", response_model=KeyResponse)
    async def update_key(
        key_id: str,
        body: KeyUpdateRequest,
        core: Orchestrator = Depends(get_orchestrator),
    ) -> KeyResponse:
        key = core.update_key(
            key_id,
            name=body.name,
            requests_per_window=body.requests_per_window,
            tokens_per_window=body.tokens_per_window,
        )
        return KeyResponse.from_key(key)

    @app.delete("/v1/admin/keys/{key_id}", response_model=KeyResponse)
    async def remove_key(key_id: str, core: Orchestrator = Depends(get_orchestrator)) -> KeyResponse:
        return KeyResponse.from_key(core.remove_key(key_id))

    @app.get("/v1/admin/dashboard")
    async def dashboard(core: Orchestrator = Depends(get_orchestrator)) -> dict:
        return core.dashboard_stats()

    # =========================================================================
    # Change events
    # =========================================================================

    @app.get("/v1/events", response_model=EventListResponse)
    async def list_events(
        request: Request,
        entity_type: str | None = Query(default=None, description="task, agent or session"),
        entity_id: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000, description="Max results"),
    ) -> EventListResponse:
        """List persisted change events, newest first."""
        await request.app.state.recorder.flush()
        async with get_session() as session:
            query = select(ChangeEventLog).order_by(ChangeEventLog.timestamp.desc())
            if entity_type:
                query = query.where(ChangeEventLog.entity_type == entity_type)
            if entity_id:
                query = query.where(ChangeEventLog.entity_id == entity_id)
            result = await session.execute(query.limit(limit))
            events = result.scalars().all()
            return EventListResponse(events=list(events), count=len(events))

    return app


app = create_app()
