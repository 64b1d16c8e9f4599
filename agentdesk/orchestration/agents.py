"""Agent registry and per-agent state machine.

States: idle -> active -> {idle, error}. At most one dispatch per agent is
active at a time; the idle -> active check-and-set runs under the agent's own
lock so two concurrent dispatches cannot both observe ``idle``.

An agent whose consecutive failed dispatches reach the configured threshold
moves to ``error`` and must be reset before it is dispatched again.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import Lock

from agentdesk.errors import AgentBusy, AgentNotFound
from agentdesk.events import EntityType, EventBus
from agentdesk.logging import get_logger
from agentdesk.metrics import record_agent_state
from agentdesk.orchestration.models import (
    Agent,
    AgentConfiguration,
    AgentKind,
    AgentState,
    DispatchOutcome,
)

logger = get_logger(__name__)


def _agent(
    kind: AgentKind,
    name: str,
    model_id: str,
    capabilities: list[str],
    temperature: float,
    max_tokens: int,
    system_prompt: str,
) -> Agent:
    return Agent(
        id=f"agent_{kind.value}",
        name=name,
        type=kind,
        model_id=model_id,
        capabilities=capabilities,
        configuration=AgentConfiguration(
            temperature=temperature,
            max_tokens=max_tokens,
            system_prompt=system_prompt,
        ),
    )


def default_agents() -> list[Agent]:
    """The specialized agents seeded at startup."""
    return [
        _agent(
            AgentKind.TURBO,
            "SuperAgent Turbo",
            "ninja-405b",
            ["research", "coding", "analysis", "chat", "quick-response"],
            0.5,
            2048,
            "You are SuperAgent Turbo, optimized for speed and efficiency. Provide quick, accurate responses.",
        ),
        _agent(
            AgentKind.APEX,
            "SuperAgent Apex",
            "claude-3-5-sonnet-20241022",
            ["deep-research", "complex-coding", "advanced-analysis", "multimodal", "in-depth-reasoning"],
            0.7,
            8192,
            "You are SuperAgent Apex, built for in-depth analysis and high-accuracy tasks.",
        ),
        _agent(
            AgentKind.REASONING,
            "SuperAgent-R 2.0",
            "claude-sonnet-20241022",
            ["math", "science", "advanced-reasoning", "proof-writing", "logical-deduction"],
            0.1,
            4096,
            "You are SuperAgent-R 2.0, an advanced reasoning system excelling at math, science, "
            "and coding with precise logical deduction.",
        ),
        _agent(
            AgentKind.DEEP_CODER,
            "Deep Coder",
            "deepseek-coder-v2",
            ["full-stack-development", "code-review", "debugging", "architecture-design", "testing"],
            0.3,
            16384,
            "You are Deep Coder, specialized in complete application development, from frontend to "
            "backend, with expertise in all modern frameworks.",
        ),
        _agent(
            AgentKind.DATA_ANALYST,
            "Data Analyst",
            "gpt-4-turbo",
            ["data-analysis", "visualization", "statistics", "machine-learning", "business-intelligence"],
            0.2,
            8192,
            "You are Data Analyst, expert in transforming raw data into actionable insights with "
            "advanced visualization and statistical analysis.",
        ),
        _agent(
            AgentKind.CONTENT_CREATOR,
            "Content Creator",
            "gpt-4o",
            ["writing", "creative-content", "marketing", "seo", "documentation"],
            0.8,
            4096,
            "You are Content Creator, specialized in professional and creative writing, marketing "
            "content, and comprehensive documentation.",
        ),
        _agent(
            AgentKind.RESEARCHER,
            "Deep Researcher 2.0",
            "gemini-1.5-pro",
            ["multi-hop-research", "source-verification", "comprehensive-analysis", "citation-management"],
            0.4,
            16384,
            "You are Deep Researcher 2.0, providing accurate multi-hop results with verified sources "
            "and comprehensive analysis.",
        ),
        _agent(
            AgentKind.SCHEDULER,
            "AI Scheduler",
            "claude-3-haiku-20240307",
            ["meeting-scheduling", "time-zone-management", "calendar-integration", "negotiation"],
            0.1,
            2048,
            "You are AI Scheduler, automating meeting scheduling and negotiating optimal times "
            "across different time zones.",
        ),
    ]


@dataclass(frozen=True)
class DispatchHandle:
    """Proof of an accepted dispatch, handed back on completion."""

    agent_type: AgentKind
    agent_id: str
    task_id: str
    model_id: str
    dispatched_at: float = field(default_factory=time.monotonic)


class AgentRegistry:
    """Owns the agents and serializes their state transitions."""

    def __init__(
        self,
        agents: list[Agent] | None = None,
        events: EventBus | None = None,
        failure_threshold: int = 3,
        latency_smoothing: float = 0.5,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if not 0.0 < latency_smoothing <= 1.0:
            raise ValueError("latency_smoothing must be in (0, 1]")
        self.events = events or EventBus()
        self.failure_threshold = failure_threshold
        self.latency_smoothing = latency_smoothing
        self._agents: dict[AgentKind, Agent] = {}
        self._locks: dict[AgentKind, Lock] = {}
        for agent in agents if agents is not None else default_agents():
            self._agents[agent.type] = agent
            self._locks[agent.type] = Lock()

    def _resolve(self, agent_type: str | AgentKind) -> Agent:
        try:
            kind = AgentKind(agent_type)
        except ValueError:
            kind = None
        agent = self._agents.get(kind) if kind is not None else None
        if agent is None:
            raise AgentNotFound(f"Agent '{agent_type}' not found", agent_type=str(agent_type))
        return agent

    def get(self, agent_type: str | AgentKind) -> Agent:
        """Snapshot of one agent."""
        agent = self._resolve(agent_type)
        with self._locks[agent.type]:
            return agent.model_copy(deep=True)

    def list_agents(self) -> list[Agent]:
        snapshots = []
        for kind, agent in self._agents.items():
            with self._locks[kind]:
                snapshots.append(agent.model_copy(deep=True))
        return snapshots

    def dispatch(self, agent_type: str | AgentKind, task_id: str) -> DispatchHandle:
        """Take the agent for ``task_id``.

        Raises:
            AgentNotFound: unknown agent type.
            AgentBusy: the agent is not idle.
        """
        agent = self._resolve(agent_type)
        with self._locks[agent.type]:
            if agent.state is not AgentState.IDLE:
                if agent.state is AgentState.ACTIVE:
                    detail = f"Agent '{agent.type.value}' is running task {agent.current_task}"
                else:
                    detail = f"Agent '{agent.type.value}' is in state {agent.state.value} and must be reset"
                raise AgentBusy(
                    detail,
                    agent_type=agent.type.value,
                    state=agent.state.value,
                    current_task=agent.current_task,
                )
            agent.state = AgentState.ACTIVE
            agent.current_task = task_id
            handle = DispatchHandle(
                agent_type=agent.type,
                agent_id=agent.id,
                task_id=task_id,
                model_id=agent.model_id,
            )
        self._changed(agent, AgentState.ACTIVE, task_id=task_id)
        return handle

    def complete(
        self,
        handle: DispatchHandle,
        outcome: DispatchOutcome,
        latency_ms: float | None = None,
    ) -> bool:
        """Release the agent from the handle's task and update its performance.

        Returns False (and changes nothing) when the agent is no longer bound
        to the handle's task, e.g. a late completion after the task was reaped.
        """
        agent = self._agents[handle.agent_type]
        with self._locks[agent.type]:
            if agent.current_task != handle.task_id:
                logger.info(
                    "agent_completion_discarded",
                    agent_type=agent.type.value,
                    task_id=handle.task_id,
                    current_task=agent.current_task,
                )
                return False

            perf = agent.performance
            if outcome is DispatchOutcome.SUCCEEDED:
                perf.tasks_completed += 1
                perf.consecutive_failures = 0
            elif outcome is DispatchOutcome.FAILED:
                perf.tasks_failed += 1
                perf.consecutive_failures += 1
            elif outcome is DispatchOutcome.TIMED_OUT:
                # Counts against success rate; the agent stays dispatchable
                perf.tasks_failed += 1
            # REJECTED and CANCELLED leave the counters and the failure streak alone

            if latency_ms is not None and outcome in (DispatchOutcome.SUCCEEDED, DispatchOutcome.FAILED):
                if perf.average_latency_ms == 0.0:
                    perf.average_latency_ms = latency_ms
                else:
                    alpha = self.latency_smoothing
                    perf.average_latency_ms = alpha * latency_ms + (1 - alpha) * perf.average_latency_ms

            total = perf.tasks_completed + perf.tasks_failed
            perf.success_rate = (perf.tasks_completed / total) * 100 if total else 100.0

            agent.current_task = None
            if perf.consecutive_failures >= self.failure_threshold:
                agent.state = AgentState.ERROR
            else:
                agent.state = AgentState.IDLE
            new_state = agent.state

        if new_state is AgentState.ERROR:
            logger.warning(
                "agent_error_threshold_reached",
                agent_type=agent.type.value,
                consecutive_failures=perf.consecutive_failures,
            )
        self._changed(agent, new_state, task_id=handle.task_id, outcome=outcome.value)
        return True

    def reset(self, agent_type: str | AgentKind) -> Agent:
        """Return an agent in ``error`` to ``idle`` and clear its failure streak."""
        agent = self._resolve(agent_type)
        with self._locks[agent.type]:
            if agent.state is AgentState.ACTIVE:
                raise AgentBusy(
                    f"Agent '{agent.type.value}' is running task {agent.current_task}",
                    agent_type=agent.type.value,
                    state=agent.state.value,
                    current_task=agent.current_task,
                )
            previous = agent.state
            agent.state = AgentState.IDLE
            agent.performance.consecutive_failures = 0
            snapshot = agent.model_copy(deep=True)
        logger.info("agent_reset", agent_type=agent.type.value, previous_state=previous.value)
        if previous is not AgentState.IDLE:
            self._changed(agent, AgentState.IDLE, reset=True)
        return snapshot

    def counts_by_state(self) -> dict[str, int]:
        counts = {state.value: 0 for state in AgentState}
        for agent in self.list_agents():
            counts[agent.state.value] += 1
        return counts

    def _changed(self, agent: Agent, state: AgentState, **payload: object) -> None:
        record_agent_state(agent.type.value, state.value)
        logger.debug("agent_state_changed", agent_type=agent.type.value, state=state.value, **payload)
        self.events.emit(
            EntityType.AGENT,
            agent.id,
            state.value,
            {"agent_type": agent.type.value, **payload},
        )
