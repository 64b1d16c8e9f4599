"""Tests for the task lifecycle manager and the stale-task reaper."""

import asyncio
from datetime import timedelta

import pytest

from agentdesk.errors import (
    AgentBusy,
    AgentNotFound,
    Forbidden,
    ProviderRequestFailed,
    ProviderUnavailable,
    TaskNotFound,
    ValidationError,
)
from agentdesk.orchestration.models import AgentState, TaskState, utc_now
from agentdesk.orchestration.tasks import TaskReaper, build_prompt


async def drain():
    """Let pending runners make progress."""
    await asyncio.sleep(0.01)


class TestPromptAssembly:
    """Tests for the provider prompt layout."""

    def test_plain_prompt(self):
        assert build_prompt("Be fast.", "hello") == "\nBe fast.\n\nUser request: hello"

    def test_context_lines_come_first(self):
        prompt = build_prompt("Be fast.", "hello", ["a.py", "b.py"], "https://git.example/repo")
        assert prompt == (
            "Attached files: a.py, b.py\n"
            "External repository: https://git.example/repo\n"
            "\nBe fast.\n\nUser request: hello"
        )


class TestSubmit:
    """Tests for running a task to completion."""

    @pytest.mark.asyncio
    async def test_completed_task_carries_result(self, orchestrator, user, recorder):
        task = await orchestrator.tasks.submit(user, "turbo", "Summarize the news")

        assert task.state is TaskState.COMPLETED
        assert task.progress == 100
        assert task.started_at is not None
        assert task.completed_at >= task.started_at
        assert task.result["content"] == "answer from ninja-405b #1"
        assert task.result["agent"] == "SuperAgent Turbo"
        assert task.result["model"] == "ninja-405b"
        assert task.result["mode"] == "standard"
        assert task.result["usage"] == {"input_tokens": 12, "output_tokens": 8, "total_tokens": 20}
        assert task.metadata_.tokens_used == 20
        assert task.metadata_.agent == "SuperAgent Turbo"
        assert recorder.states_for(task.id) == ["pending", "running", "completed"]

        agent = orchestrator.agents.get("turbo")
        assert agent.state is AgentState.IDLE
        assert agent.performance.tasks_completed == 1

    @pytest.mark.asyncio
    async def test_agent_configuration_reaches_provider(self, orchestrator, user, fake_adapter):
        await orchestrator.tasks.submit(
            user,
            "turbo",
            "Fix the bug",
            files=["main.py"],
            external_repo="https://git.example/app",
        )

        call = fake_adapter.calls[0]
        assert call["model_id"] == "ninja-405b"
        assert call["prompt"].startswith("Attached files: main.py\nExternal repository: https://git.example/app\n")
        assert call["prompt"].endswith("User request: Fix the bug")
        assert "SuperAgent Turbo" in call["prompt"]
        assert call["options"].temperature == 0.5
        assert call["options"].max_tokens == 2048

    @pytest.mark.asyncio
    async def test_orchestrator_submission_reports_timing(self, orchestrator, user):
        submission = await orchestrator.submit_task(user, "content-creator", "Write a tagline", mode="fast")
        assert submission.result["mode"] == "fast"
        assert submission.execution_time_ms >= 0
        assert orchestrator.get_task(submission.task_id, user.user_id).state is TaskState.COMPLETED


class TestFailures:
    """Tests for failures recorded on the task."""

    @pytest.mark.asyncio
    async def test_provider_failure_fails_task(self, orchestrator, user, fake_adapter, recorder):
        fake_adapter.fail_next()
        task = await orchestrator.tasks.submit(user, "turbo", "hello")

        assert task.state is TaskState.FAILED
        assert task.error.kind == "provider_request_failed"
        assert task.result is None
        assert recorder.states_for(task.id) == ["pending", "running", "failed"]

        agent = orchestrator.agents.get("turbo")
        assert agent.state is AgentState.IDLE
        assert agent.performance.tasks_failed == 1
        assert agent.performance.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_orchestrator_raises_typed_error(self, orchestrator, user, fake_adapter):
        fake_adapter.fail_next()
        with pytest.raises(ProviderRequestFailed) as exc_info:
            await orchestrator.submit_task(user, "turbo", "hello")
        task_id = exc_info.value.context["task_id"]
        assert orchestrator.get_task(task_id).state is TaskState.FAILED

    @pytest.mark.asyncio
    async def test_missing_key_fails_task(self, orchestrator, user):
        for key in orchestrator.list_keys("ninja-405b"):
            orchestrator.deactivate_key(key.id)

        with pytest.raises(ProviderUnavailable):
            await orchestrator.submit_task(user, "turbo", "hello")
        assert orchestrator.agents.get("turbo").state is AgentState.IDLE

    @pytest.mark.asyncio
    async def test_rate_limit_rejections_do_not_break_the_agent(self, orchestrator, user, fake_adapter):
        (key,) = orchestrator.list_keys("ninja-405b")
        orchestrator.update_key(key.id, requests_per_window=1)
        assert (await orchestrator.tasks.submit(user, "turbo", "first")).state is TaskState.COMPLETED

        for _ in range(orchestrator.agents.failure_threshold):
            task = await orchestrator.tasks.submit(user, "turbo", "again")
            assert task.state is TaskState.FAILED
            assert task.error.kind == "rate_limit_exceeded"

        agent = orchestrator.agents.get("turbo")
        assert agent.state is AgentState.IDLE
        assert agent.performance.consecutive_failures == 0
        assert agent.performance.tasks_failed == 0
        assert len(fake_adapter.calls) == 1

        # Once the window has room again the agent takes work without a reset
        orchestrator.update_key(key.id, requests_per_window=10)
        assert (await orchestrator.tasks.submit(user, "turbo", "later")).state is TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_unexpected_adapter_error_is_recorded(self, orchestrator, user, fake_adapter):
        fake_adapter.fail_next(RuntimeError("boom"))
        task = await orchestrator.tasks.submit(user, "turbo", "hello")
        assert task.state is TaskState.FAILED
        assert task.error.kind == "provider_request_failed"
        assert "RuntimeError" in task.error.detail

    @pytest.mark.asyncio
    async def test_repeated_failures_put_agent_in_error(self, orchestrator, user, fake_adapter):
        for _ in range(3):
            fake_adapter.fail_next()
            await orchestrator.tasks.submit(user, "turbo", "hello")

        assert orchestrator.agents.get("turbo").state is AgentState.ERROR
        with pytest.raises(AgentBusy):
            await orchestrator.tasks.submit(user, "turbo", "hello")

        orchestrator.reset_agent("turbo")
        task = await orchestrator.tasks.submit(user, "turbo", "hello")
        assert task.state is TaskState.COMPLETED


class TestAdmission:
    """Tests for checks made before a task runs."""

    @pytest.mark.asyncio
    async def test_validation(self, orchestrator, user):
        with pytest.raises(ValidationError):
            await orchestrator.tasks.submit(user, "turbo", "   ")
        with pytest.raises(ValidationError):
            await orchestrator.tasks.submit(user, "turbo", "hello", mode="turbo-charged")
        with pytest.raises(AgentNotFound):
            await orchestrator.tasks.submit(user, "janitor", "hello")
        assert orchestrator.list_tasks() == []

    @pytest.mark.asyncio
    async def test_premium_agent_needs_ultra_tier(self, orchestrator, user, ultra_user):
        with pytest.raises(Forbidden):
            await orchestrator.tasks.submit(user, "apex", "hello")
        assert orchestrator.list_tasks() == []

        task = await orchestrator.tasks.submit(ultra_user, "apex", "hello")
        assert task.state is TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_busy_agent_leaves_failed_task(self, orchestrator, user, fake_adapter, recorder):
        fake_adapter.gate = asyncio.Event()
        first = orchestrator.tasks.start(user, "turbo", "first")

        with pytest.raises(AgentBusy):
            orchestrator.tasks.start(user, "turbo", "second")

        failed = orchestrator.list_tasks(state="failed")
        assert len(failed) == 1
        assert failed[0].error.kind == "agent_busy"
        assert recorder.states_for(failed[0].id) == ["pending", "failed"]

        fake_adapter.gate.set()
        task = await first.wait()
        assert task.state is TaskState.COMPLETED
        assert len(fake_adapter.calls) == 1


class TestCancellation:
    """Tests for cancelling tasks."""

    @pytest.mark.asyncio
    async def test_cancel_running_task(self, orchestrator, user, fake_adapter, recorder):
        fake_adapter.gate = asyncio.Event()
        handle = orchestrator.tasks.start(user, "turbo", "slow one")
        await drain()

        task = orchestrator.cancel_task(handle.task_id, user.user_id)
        assert task.state is TaskState.CANCELLED
        assert task.error.kind == "task_cancelled"
        assert handle.done
        assert recorder.states_for(task.id) == ["pending", "running", "cancelled"]

        agent = orchestrator.agents.get("turbo")
        assert agent.state is AgentState.IDLE
        assert agent.performance.tasks_failed == 0

    @pytest.mark.asyncio
    async def test_cancel_terminal_task_is_noop(self, orchestrator, user):
        task = await orchestrator.tasks.submit(user, "turbo", "hello")
        again = orchestrator.cancel_task(task.id)
        assert again.state is TaskState.COMPLETED
        assert again.error is None

    @pytest.mark.asyncio
    async def test_other_users_task_is_not_found(self, orchestrator, user):
        task = await orchestrator.tasks.submit(user, "turbo", "hello")
        with pytest.raises(TaskNotFound):
            orchestrator.get_task(task.id, "someone-else")
        with pytest.raises(TaskNotFound):
            orchestrator.cancel_task(task.id, "someone-else")

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight(self, orchestrator, user, fake_adapter):
        fake_adapter.gate = asyncio.Event()
        handle = orchestrator.tasks.start(user, "turbo", "slow one")
        await drain()

        await orchestrator.tasks.shutdown()
        assert orchestrator.get_task(handle.task_id).state is TaskState.CANCELLED


class TestReaping:
    """Tests for failing stale running tasks."""

    @pytest.mark.asyncio
    async def test_only_stale_running_tasks_are_reaped(self, orchestrator, user, fake_adapter):
        done = await orchestrator.tasks.submit(user, "scheduler", "finished")
        fake_adapter.gate = asyncio.Event()
        handle = orchestrator.tasks.start(user, "turbo", "stuck")

        assert orchestrator.tasks.reap_stale(60.0) == []

        later = utc_now() + timedelta(seconds=120)
        assert orchestrator.tasks.reap_stale(60.0, now=later) == [handle.task_id]

        task = orchestrator.get_task(handle.task_id)
        assert task.state is TaskState.FAILED
        assert task.error.kind == "task_timeout"
        assert orchestrator.get_task(done.id).state is TaskState.COMPLETED

        agent = orchestrator.agents.get("turbo")
        assert agent.state is AgentState.IDLE
        assert agent.performance.tasks_failed == 1
        assert agent.performance.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_late_result_is_discarded(self, orchestrator, user, fake_adapter, recorder):
        fake_adapter.gate = asyncio.Event()
        handle = orchestrator.tasks.start(user, "turbo", "stuck")
        await drain()
        orchestrator.tasks.reap_stale(60.0, now=utc_now() + timedelta(seconds=120))

        fake_adapter.gate.set()
        await drain()

        task = orchestrator.get_task(handle.task_id)
        assert task.state is TaskState.FAILED
        assert task.result is None
        assert recorder.states_for(task.id) == ["pending", "running", "failed"]
        assert orchestrator.agents.get("turbo").performance.tasks_completed == 0

    @pytest.mark.asyncio
    async def test_reaped_agent_takes_new_work(self, orchestrator, user, fake_adapter):
        fake_adapter.gate = asyncio.Event()
        stale = orchestrator.tasks.start(user, "turbo", "stuck")
        orchestrator.tasks.reap_stale(60.0, now=utc_now() + timedelta(seconds=120))

        fresh = orchestrator.tasks.start(user, "turbo", "next")
        fake_adapter.gate.set()
        task = await fresh.wait()
        await drain()

        assert task.state is TaskState.COMPLETED
        assert orchestrator.get_task(stale.task_id).state is TaskState.FAILED
        assert orchestrator.agents.get("turbo").state is AgentState.IDLE

    @pytest.mark.asyncio
    async def test_reaper_loop(self, orchestrator, user, fake_adapter):
        fake_adapter.gate = asyncio.Event()
        handle = orchestrator.tasks.start(user, "turbo", "stuck")

        reaper = TaskReaper(orchestrator.tasks, threshold_seconds=0.0, interval_seconds=0.01)
        reaper.start()
        assert reaper.running
        try:
            task = await asyncio.wait_for(handle.wait(), timeout=2.0)
        finally:
            await reaper.stop()

        assert task.state is TaskState.FAILED
        assert task.error.kind == "task_timeout"
        assert not reaper.running


class TestQueries:
    """Tests for task listing and transitions."""

    @pytest.mark.asyncio
    async def test_list_tasks_newest_first(self, orchestrator, user, ultra_user):
        first = await orchestrator.tasks.submit(user, "turbo", "one")
        second = await orchestrator.tasks.submit(user, "turbo", "two")
        await orchestrator.tasks.submit(ultra_user, "turbo", "three")

        mine = orchestrator.list_tasks(user.user_id)
        assert [task.id for task in mine] == [second.id, first.id]
        assert len(orchestrator.list_tasks(state="completed")) == 3

        with pytest.raises(ValidationError):
            orchestrator.list_tasks(state="exploded")

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self, orchestrator, user):
        task = await orchestrator.tasks.submit(user, "turbo", "hello")
        assert orchestrator.tasks.transition(task.id, TaskState.RUNNING) is False
        assert orchestrator.tasks.transition(task.id, TaskState.FAILED) is False
        assert orchestrator.get_task(task.id).state is TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_task(self, orchestrator):
        with pytest.raises(TaskNotFound):
            orchestrator.get_task("task_missing")
        with pytest.raises(TaskNotFound):
            orchestrator.tasks.transition("task_missing", TaskState.FAILED)

    @pytest.mark.asyncio
    async def test_counts_by_state(self, orchestrator, user, fake_adapter):
        await orchestrator.tasks.submit(user, "turbo", "ok")
        fake_adapter.fail_next()
        await orchestrator.tasks.submit(user, "scheduler", "not ok")
        counts = orchestrator.tasks.counts_by_state()
        assert counts["completed"] == 1
        assert counts["failed"] == 1
        assert counts["running"] == 0
