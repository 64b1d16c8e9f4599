"""Error taxonomy for the orchestration core.

Every failure surfaced to a caller is an ``OrchestratorError`` subclass with
a stable ``kind``. Task records store ``{"kind", "detail"}`` and
``error_from_record`` rebuilds the typed error from that pair.
"""

from __future__ import annotations

from typing import Any, ClassVar


class OrchestratorError(Exception):
    """Base exception for orchestration failures."""

    kind: ClassVar[str] = "orchestrator_error"

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "detail": self.detail}
        if self.context:
            payload["context"] = self.context
        return payload


class ProviderUnavailable(OrchestratorError):
    """No eligible provider key (none bound, all inactive, or unknown model)."""

    kind = "provider_unavailable"


class RateLimitExceeded(ProviderUnavailable):
    """Active keys exist but every key's sliding window is full."""

    kind = "rate_limit_exceeded"


class ProviderRequestFailed(OrchestratorError):
    """Upstream error, timeout or malformed response."""

    kind = "provider_request_failed"

    def __init__(
        self,
        detail: str,
        *,
        status_code: int | None = None,
        timeout: bool = False,
        exhausts_key: bool = False,
        **context: Any,
    ) -> None:
        super().__init__(detail, **context)
        self.status_code = status_code
        self.timeout = timeout
        self.exhausts_key = exhausts_key


class KeyNotFound(OrchestratorError):
    kind = "key_not_found"


class AgentNotFound(OrchestratorError):
    kind = "agent_not_found"


class AgentBusy(OrchestratorError):
    kind = "agent_busy"


class Forbidden(OrchestratorError):
    """The caller's entitlement tier does not cover the requested agent."""

    kind = "forbidden"


class TaskNotFound(OrchestratorError):
    kind = "task_not_found"


class TaskTimeout(OrchestratorError):
    """A running task outlived the stale threshold and was reaped."""

    kind = "task_timeout"


class TaskCancelled(OrchestratorError):
    kind = "task_cancelled"


class WorkflowStepFailed(OrchestratorError):
    """A workflow step failed; remaining steps were not run."""

    kind = "workflow_step_failed"

    def __init__(
        self,
        detail: str,
        *,
        step: str,
        partial_results: dict[str, Any],
        cause_kind: str,
        **context: Any,
    ) -> None:
        super().__init__(detail, step=step, cause_kind=cause_kind, **context)
        self.step = step
        self.partial_results = partial_results
        self.cause_kind = cause_kind

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["partial_results"] = self.partial_results
        return payload


class SessionNotFound(OrchestratorError):
    kind = "session_not_found"


class SessionAlreadyActive(OrchestratorError):
    kind = "session_already_active"


class SessionNotRunning(OrchestratorError):
    kind = "session_not_running"


class ValidationError(OrchestratorError):
    kind = "validation_error"


_ERRORS_BY_KIND: dict[str, type[OrchestratorError]] = {
    cls.kind: cls
    for cls in (
        ProviderUnavailable,
        RateLimitExceeded,
        ProviderRequestFailed,
        KeyNotFound,
        AgentNotFound,
        AgentBusy,
        Forbidden,
        TaskNotFound,
        TaskTimeout,
        TaskCancelled,
        SessionNotFound,
        SessionAlreadyActive,
        SessionNotRunning,
        ValidationError,
    )
}


def error_from_record(kind: str, detail: str, **context: Any) -> OrchestratorError:
    """Rebuild a typed error from a stored ``{kind, detail}`` pair."""
    error_class = _ERRORS_BY_KIND.get(kind, OrchestratorError)
    return error_class(detail, **context)


__all__ = [
    "OrchestratorError",
    "ProviderUnavailable",
    "RateLimitExceeded",
    "ProviderRequestFailed",
    "KeyNotFound",
    "AgentNotFound",
    "AgentBusy",
    "Forbidden",
    "TaskNotFound",
    "TaskTimeout",
    "TaskCancelled",
    "WorkflowStepFailed",
    "SessionNotFound",
    "SessionAlreadyActive",
    "SessionNotRunning",
    "ValidationError",
    "error_from_record",
]
