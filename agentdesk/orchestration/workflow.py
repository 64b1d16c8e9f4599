"""Sequential multi-agent workflows.

Steps run strictly in order, each through the task manager's submit path,
bound to the step's agent. A step flagged ``pass_results`` hands its output
content to the next step as extra input context. The first failing step
aborts the workflow; the caller gets ``WorkflowStepFailed`` with the results
of the steps that did complete. A parent task that is reaped or cancelled
while the workflow runs aborts it the same way, with the parent's error kind
as the cause.
"""

from __future__ import annotations

from typing import Any

from sqlmodel import Field, SQLModel

from agentdesk.errors import OrchestratorError, ValidationError, WorkflowStepFailed, error_from_record
from agentdesk.logging import get_logger
from agentdesk.orchestration.models import TaskState, UserContext
from agentdesk.orchestration.tasks import TaskManager

logger = get_logger(__name__)


class WorkflowStep(SQLModel):
    name: str = Field(min_length=1)
    agent: str
    task: str
    pass_results: bool = False


class WorkflowResult(SQLModel):
    task_id: str
    results: dict[str, dict[str, Any]]


def with_context(message: str, context: tuple[str, str] | None) -> str:
    """Append the previous step's output under a ``Context from <step>:`` header."""
    if context is None:
        return message
    step_name, content = context
    return f"{message}\n\nContext from {step_name}:\n{content}"


class WorkflowCoordinator:
    def __init__(self, tasks: TaskManager) -> None:
        self.tasks = tasks

    def validate(self, agent_types: list[str], steps: list[WorkflowStep]) -> None:
        if not steps:
            raise ValidationError("A workflow needs at least one step")
        names = [step.name for step in steps]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate workflow step names: {', '.join(duplicates)}", steps=duplicates)
        for step in steps:
            if agent_types and step.agent not in agent_types:
                raise ValidationError(
                    f"Step '{step.name}' uses agent '{step.agent}' which is not part of the workflow",
                    step=step.name,
                    agent_types=agent_types,
                )
            # Raises AgentNotFound before anything is recorded
            self.tasks.agents.get(step.agent)

    async def coordinate(
        self,
        user: UserContext,
        task: str,
        agent_types: list[str],
        steps: list[WorkflowStep],
    ) -> WorkflowResult:
        self.validate(agent_types, steps)
        parent = self.tasks.open_task(user, task)
        log = logger.bind(task_id=parent.id, user_id=user.user_id)
        log.info("workflow_started", steps=[step.name for step in steps])

        results: dict[str, dict[str, Any]] = {}
        context: tuple[str, str] | None = None
        tokens_used = 0
        for step in steps:
            # The parent record can be reaped or cancelled between steps
            self._check_parent(parent.id, step.name, results)

            cause: OrchestratorError | None = None
            record = None
            try:
                record = await self.tasks.submit(user, step.agent, with_context(step.task, context))
            except OrchestratorError as exc:
                cause = exc
            else:
                if record.state is not TaskState.COMPLETED:
                    kind = record.error.kind if record.error else "orchestrator_error"
                    detail = record.error.detail if record.error else f"Task ended {record.state.value}"
                    cause = error_from_record(kind, detail, task_id=record.id)

            if cause is not None:
                error = WorkflowStepFailed(
                    f"Workflow step '{step.name}' failed: {cause.detail}",
                    step=step.name,
                    partial_results=dict(results),
                    cause_kind=cause.kind,
                    task_id=parent.id,
                    step_task_id=record.id if record else None,
                )
                self.tasks.fail_task(parent.id, error)
                log.warning("workflow_step_failed", step=step.name, cause_kind=cause.kind)
                raise error

            step_result = dict(record.result or {})
            step_result["task_id"] = record.id
            results[step.name] = step_result
            tokens_used += record.metadata_.tokens_used
            context = (step.name, step_result.get("content", "")) if step.pass_results else None
            log.info("workflow_step_completed", step=step.name, step_task_id=record.id)

        if not self.tasks.finish_task(parent.id, {"results": results}, tokens_used=tokens_used):
            self._check_parent(parent.id, steps[-1].name, results)
        log.info("workflow_completed", steps=len(results), tokens_used=tokens_used)
        return WorkflowResult(task_id=parent.id, results=results)

    def _check_parent(self, parent_id: str, step_name: str, results: dict[str, dict[str, Any]]) -> None:
        """Raise ``WorkflowStepFailed`` if the parent task is no longer running."""
        parent = self.tasks.get(parent_id)
        if parent.state is TaskState.RUNNING:
            return
        cause_kind = parent.error.kind if parent.error else parent.state.value
        cause_detail = parent.error.detail if parent.error else f"Task ended {parent.state.value}"
        logger.warning(
            "workflow_parent_ended",
            task_id=parent_id,
            step=step_name,
            state=parent.state.value,
            cause_kind=cause_kind,
        )
        raise WorkflowStepFailed(
            f"Workflow aborted at step '{step_name}': {cause_detail}",
            step=step_name,
            partial_results=dict(results),
            cause_kind=cause_kind,
            task_id=parent_id,
        )
