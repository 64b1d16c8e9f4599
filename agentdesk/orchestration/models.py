"""Entity models and enumerations for the orchestration core.

Entities are SQLModel (pydantic) models held in id-indexed in-memory stores;
they are mutated only by the component that owns them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Generate a prefixed identifier such as ``task_3f2a...``."""
    return f"{prefix}_{uuid4().hex[:16]}"


class ProviderName(str, Enum):
    """External model backends. Every member must have an adapter."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    AMAZON = "amazon"
    META = "meta"
    DEEPSEEK = "deepseek"
    XAI = "xai"
    NINJA = "ninja"
    LOCAL = "local"


class ModelCategory(str, Enum):
    STANDARD = "standard"
    COMPLEX = "complex"
    FAST = "fast"
    CODING = "coding"
    IMAGE = "image"
    MULTIMODAL = "multimodal"


class AgentKind(str, Enum):
    TURBO = "turbo"
    APEX = "apex"
    REASONING = "reasoning"
    DEEP_CODER = "deep-coder"
    DATA_ANALYST = "data-analyst"
    CONTENT_CREATOR = "content-creator"
    RESEARCHER = "researcher"
    SCHEDULER = "scheduler"


class AgentState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ERROR = "error"
    TRAINING = "training"


class DispatchOutcome(str, Enum):
    """How a dispatch ended, as reported back to the agent registry."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    # Turned away by the key pool before any upstream request was made
    REJECTED = "rejected"


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATES


TERMINAL_TASK_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})


class TaskMode(str, Enum):
    STANDARD = "standard"
    COMPLEX = "complex"
    FAST = "fast"


class SessionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        """Starting, running and stopping sessions hold the user's single slot."""
        return self in ACTIVE_SESSION_STATES


ACTIVE_SESSION_STATES = frozenset({SessionState.STARTING, SessionState.RUNNING, SessionState.STOPPING})


class SizeClass(str, Enum):
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class SubscriptionTier(str, Enum):
    NINJA = "ninja"
    ULTRA = "ultra"


# =============================================================================
# Catalog
# =============================================================================


class ModelPricing(SQLModel):
    """Cost per 1M tokens."""

    input_cost: float = Field(default=0.0, ge=0.0)
    output_cost: float = Field(default=0.0, ge=0.0)


class ModelSpec(SQLModel):
    """Immutable catalog entry for one model."""

    model_id: str
    display_name: str
    provider: ProviderName
    category: ModelCategory
    pricing: ModelPricing = Field(default_factory=ModelPricing)


# =============================================================================
# Provider keys
# =============================================================================


class KeyUsage(SQLModel):
    requests: int = 0
    tokens: int = 0
    cost: float = 0.0


class KeyRateLimits(SQLModel):
    requests_per_window: int = Field(default=60, gt=0)
    tokens_per_window: int = Field(default=10000, gt=0)


class ProviderKey(SQLModel):
    """A credential bound to one provider+model, with its own accounting."""

    id: str = Field(default_factory=lambda: generate_id("key"))
    name: str
    provider: ProviderName
    model_id: str
    credential: str = Field(repr=False)
    active: bool = True
    usage: KeyUsage = Field(default_factory=KeyUsage)
    failures: int = 0
    rate_limits: KeyRateLimits = Field(default_factory=KeyRateLimits)
    last_used: float | None = None
    deactivated_reason: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def masked_credential(self) -> str:
        if len(self.credential) <= 8:
            return "****"
        return f"{self.credential[:4]}...{self.credential[-4:]}"


# =============================================================================
# Agents
# =============================================================================


class AgentConfiguration(SQLModel):
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, gt=0)
    system_prompt: str = ""


class AgentPerformance(SQLModel):
    tasks_completed: int = 0
    tasks_failed: int = 0
    average_latency_ms: float = 0.0
    success_rate: float = 100.0
    consecutive_failures: int = 0


class Agent(SQLModel):
    id: str = Field(default_factory=lambda: generate_id("agent"))
    name: str
    type: AgentKind
    model_id: str
    capabilities: list[str] = Field(default_factory=list)
    state: AgentState = AgentState.IDLE
    current_task: str | None = None
    configuration: AgentConfiguration = Field(default_factory=AgentConfiguration)
    performance: AgentPerformance = Field(default_factory=AgentPerformance)


# =============================================================================
# Tasks
# =============================================================================


class TaskMetadata(SQLModel):
    tokens_used: int = 0
    execution_time_ms: int = 0
    model: str | None = None
    agent: str | None = None


class TaskError(SQLModel):
    kind: str
    detail: str


class Task(SQLModel):
    id: str = Field(default_factory=lambda: generate_id("task"))
    user_id: str
    agent_type: str
    description: str
    state: TaskState = TaskState.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    result: dict[str, Any] | None = None
    files: list[str] = Field(default_factory=list)
    external_repo: str | None = None
    mode: TaskMode = TaskMode.STANDARD
    metadata_: TaskMetadata = Field(default_factory=TaskMetadata)
    error: TaskError | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None


# =============================================================================
# Virtual sessions
# =============================================================================


class SessionSpecs(SQLModel):
    cpu: int
    memory: int
    storage: int


SIZE_SPECS: dict[SizeClass, SessionSpecs] = {
    SizeClass.STANDARD: SessionSpecs(cpu=8, memory=32, storage=500),
    SizeClass.PREMIUM: SessionSpecs(cpu=16, memory=64, storage=1000),
    SizeClass.ENTERPRISE: SessionSpecs(cpu=32, memory=128, storage=2000),
}


class VirtualSession(SQLModel):
    id: str = Field(default_factory=lambda: f"vm-{uuid4().hex[:12]}")
    user_id: str
    state: SessionState = SessionState.STARTING
    size_class: SizeClass
    specs: SessionSpecs
    address: str | None = None
    port: int | None = None
    stop_requested: bool = False
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    last_active: datetime = Field(default_factory=utc_now)


# =============================================================================
# Callers
# =============================================================================


class UserContext(SQLModel):
    """The authenticated caller, as handed over by the HTTP layer."""

    user_id: str = Field(min_length=1)
    tier: SubscriptionTier = SubscriptionTier.NINJA


__all__ = [
    "utc_now",
    "generate_id",
    "ProviderName",
    "ModelCategory",
    "AgentKind",
    "AgentState",
    "DispatchOutcome",
    "TaskState",
    "TERMINAL_TASK_STATES",
    "TaskMode",
    "SessionState",
    "ACTIVE_SESSION_STATES",
    "SizeClass",
    "SubscriptionTier",
    "ModelPricing",
    "ModelSpec",
    "KeyUsage",
    "KeyRateLimits",
    "ProviderKey",
    "AgentConfiguration",
    "AgentPerformance",
    "Agent",
    "TaskMetadata",
    "TaskError",
    "Task",
    "SessionSpecs",
    "SIZE_SPECS",
    "VirtualSession",
    "UserContext",
]
