"""HTTP API schema definitions.

Request bodies are validated here; everything else (known agent types, size
classes, modes) is validated by the orchestration core so the same rules
apply to the CLI.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from agentdesk.orchestration.models import ProviderKey, Task


class ErrorBody(BaseModel):
    kind: str
    detail: str
    context: dict[str, Any] | None = None
    partial_results: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ErrorBody


# Models and agents


class ModelResponse(BaseModel):
    model_id: str
    display_name: str
    provider: str
    category: str
    input_cost: float = Field(..., description="USD per 1M input tokens")
    output_cost: float = Field(..., description="USD per 1M output tokens")


class ModelListResponse(BaseModel):
    models: list[ModelResponse]
    count: int


class ModelChatRequest(BaseModel):
    """Send one message directly to a catalog model."""

    message: str = Field(..., min_length=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    system_prompt: str | None = None


class ModelChatResponse(BaseModel):
    model_id: str
    content: str
    usage: dict[str, int]


class AgentListResponse(BaseModel):
    agents: list[Any]  # Agent snapshots
    count: int


# Tasks


class TaskExecuteRequest(BaseModel):
    """Run one task on an agent."""

    message: str = Field(..., min_length=1, description="The user request")
    mode: str = Field(default="standard", description="standard, complex or fast")
    files: list[str] = Field(default_factory=list, description="Names of attached files")
    external_repo: str | None = Field(default=None, description="External repository reference")


class TaskExecuteResponse(BaseModel):
    task_id: str
    result: dict[str, Any]
    execution_time_ms: int


class TaskResponse(BaseModel):
    id: str
    user_id: str
    agent_type: str
    description: str
    state: str
    progress: int
    result: dict[str, Any] | None = None
    files: list[str] = Field(default_factory=list)
    external_repo: str | None = None
    mode: str
    metadata: dict[str, Any]
    error: dict[str, str] | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            user_id=task.user_id,
            agent_type=task.agent_type,
            description=task.description,
            state=task.state.value,
            progress=task.progress,
            result=task.result,
            files=task.files,
            external_repo=task.external_repo,
            mode=task.mode.value,
            metadata=task.metadata_.model_dump(),
            error=task.error.model_dump() if task.error else None,
            created_at=task.created_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )


class TaskListResponse(BaseModel):
    tasks: list[TaskResponse]
    count: int


# Workflows


class WorkflowStepRequest(BaseModel):
    name: str = Field(..., min_length=1)
    agent: str
    task: str = Field(..., min_length=1)
    pass_results: bool = Field(default=False, description="Hand this step's output to the next step")


class WorkflowRequest(BaseModel):
    task: str = Field(..., min_length=1, description="Description of the overall workflow")
    agents: list[str] = Field(default_factory=list, description="Agent types allowed in the workflow")
    workflow: list[WorkflowStepRequest]


class WorkflowResponse(BaseModel):
    task_id: str
    results: dict[str, dict[str, Any]]


# Virtual sessions


class SessionStartRequest(BaseModel):
    size_class: str = Field(default="standard", description="standard, premium or enterprise")


class SessionResponse(BaseModel):
    session_id: str
    user_id: str
    state: str
    size_class: str
    specs: dict[str, int]
    address: str | None = None
    port: int | None = None
    stop_requested: bool = False
    error: str | None = None
    created_at: datetime
    last_active: datetime

    @classmethod
    def from_session(cls, session: Any) -> "SessionResponse":
        return cls(
            session_id=session.id,
            user_id=session.user_id,
            state=session.state.value,
            size_class=session.size_class.value,
            specs=session.specs.model_dump(),
            address=session.address,
            port=session.port,
            stop_requested=session.stop_requested,
            error=session.error,
            created_at=session.created_at,
            last_active=session.last_active,
        )


class SessionStatusResponse(BaseModel):
    session: SessionResponse | None = None


class SessionStopResponse(BaseModel):
    ok: bool = True
    session_id: str
    state: str


class CommandRequest(BaseModel):
    command: str = Field(..., description="Shell-style command line")


class CommandResponse(BaseModel):
    output: str
    exit_code: int
    execution_time_ms: int


# Key administration


class KeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    model_id: str
    credential: str = Field(..., min_length=1)
    requests_per_window: int | None = Field(default=None, gt=0)
    tokens_per_window: int | None = Field(default=None, gt=0)


class KeyUpdateRequest(BaseModel):
    """Fields left out keep their current value."""

    name: str | None = Field(default=None, min_length=1)
    requests_per_window: int | None = Field(default=None, gt=0)
    tokens_per_window: int | None = Field(default=None, gt=0)


class KeyResponse(BaseModel):
    """A provider key with its credential masked."""

    id: str
    name: str
    provider: str
    model_id: str
    credential: str
    active: bool
    usage: dict[str, Any]
    failures: int
    rate_limits: dict[str, int]
    deactivated_reason: str | None = None
    created_at: datetime

    @classmethod
    def from_key(cls, key: ProviderKey) -> "KeyResponse":
        return cls(
            id=key.id,
            name=key.name,
            provider=key.provider.value,
            model_id=key.model_id,
            credential=key.masked_credential(),
            active=key.active,
            usage=key.usage.model_dump(),
            failures=key.failures,
            rate_limits=key.rate_limits.model_dump(),
            deactivated_reason=key.deactivated_reason,
            created_at=key.created_at,
        )


class KeyListResponse(BaseModel):
    keys: list[KeyResponse]
    count: int


# Change events


class EventListResponse(BaseModel):
    events: list[Any]  # ChangeEventLog rows
    count: int
