from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence

import allure
import pytest
from sqlalchemy.exc import OperationalError

from overseer.scheduling.backend import AgentBackendError, AgentExecutionContext, AgentRunResult
from overseer.scheduling.jobs import CronJobStore
from overseer.scheduling.models import (
    AgentTaskCreate,
    AgentTaskStatus,
    CronExecutionStatus,
    CronJobCreate,
    JobRunStatus,
    SubAgentStatus,
)
from overseer.scheduling.runner import TaskRunner
from overseer.scheduling.sub_agents import SubAgentRegistry
from overseer.scheduling.task_queue import TaskQueue

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Task Runner"),
]


class ScriptedExecutor:
    """Replays one scripted step per attempt: a result, an exception or a delay."""

    def __init__(self, steps: Sequence[AgentRunResult | Exception | float]) -> None:
        self.steps = list(steps)
        self.contexts: list[AgentExecutionContext] = []

    async def execute(self, prompt: str, context: AgentExecutionContext) -> AgentRunResult:
        self.contexts.append(context)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        if isinstance(step, float):
            await asyncio.sleep(step)
            return AgentRunResult(success=True, output_text="slept")
        return step


class _Harness:
    def __init__(self, database, system_tenant, clock, executor, **runner_kwargs) -> None:
        self.jobs = CronJobStore(database, system_tenant, clock=clock)
        self.tasks = TaskQueue(database, system_tenant, clock=clock)
        self.sub_agents = SubAgentRegistry(database, system_tenant, clock=clock)
        self.sleeps: list[float] = []

        async def _record_sleep(delay: float) -> None:
            self.sleeps.append(delay)

        options = {"retry_base_seconds": 0.0, "retry_max_seconds": 0.0}
        options.update(runner_kwargs)
        self.runner = TaskRunner(
            jobs=self.jobs,
            tasks=self.tasks,
            sub_agents=self.sub_agents,
            executor=executor,
            clock=clock,
            sleep=_record_sleep,
            **options,
        )

    def claim_job(self, *, prompt: str = "check inbox", max_retries: int = 0, timeout_ms=None):
        job = self.jobs.create(
            CronJobCreate(
                name="job",
                cron_expression="0 9 * * *",
                prompt=prompt,
                owner_user_id=1,
                max_retries=max_retries,
                timeout_ms=timeout_ms,
            ),
        )
        return self.jobs.claim_due_job(job.id, force=True)


def test_timeout_is_enforced_and_terminal(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor([1.0])
    harness = _Harness(database, system_tenant, clock, executor)
    claim = harness.claim_job(timeout_ms=100, max_retries=3)

    started = time.monotonic()
    execution = asyncio.run(harness.runner.run_cron_job(claim))
    elapsed = time.monotonic() - started

    assert execution is not None
    assert execution.status == CronExecutionStatus.FAILED
    assert execution.error_code == "timeout"
    assert execution.error == "Agent run timed out after 100ms."
    assert execution.attempts == 1
    assert elapsed < 0.9
    assert executor.contexts[0].cancel_event.is_set()
    assert harness.jobs.get(claim.job.id).last_status == JobRunStatus.FAILED


def test_transient_failures_are_retried_and_usage_summed(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor(
        [
            AgentRunResult(success=False, error="503 overloaded", tokens_in=3, tokens_out=2),
            AgentBackendError("connection reset by peer", transient=True),
            AgentRunResult(
                success=True,
                output_text="  all clear  ",
                tokens_in=4,
                tokens_out=6,
                tool_calls_count=2,
                step_count=3,
            ),
        ],
    )
    harness = _Harness(
        database,
        system_tenant,
        clock,
        executor,
        retry_base_seconds=1.0,
        retry_max_seconds=2.0,
    )
    claim = harness.claim_job(max_retries=3)

    execution = asyncio.run(harness.runner.run_cron_job(claim))

    assert execution is not None
    assert execution.status == CronExecutionStatus.SUCCESS
    assert execution.attempts == 3
    assert execution.output_summary == "all clear"
    assert (execution.input_tokens, execution.output_tokens) == (7, 8)
    assert execution.tool_calls_count == 2
    assert [context.attempt for context in executor.contexts] == [1, 2, 3]
    assert len(harness.sleeps) == 2
    assert 0 <= harness.sleeps[0] <= 1.0
    assert 0 <= harness.sleeps[1] <= 2.0

    job = harness.jobs.get(claim.job.id)
    assert job.run_count == 1
    assert job.last_status == JobRunStatus.SUCCESS
    assert len(harness.jobs.list_executions(job_id=job.id)) == 1


def test_retry_budget_exhaustion_fails_once(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor([AgentRunResult(success=False, error="temporarily unavailable")])
    harness = _Harness(database, system_tenant, clock, executor)
    claim = harness.claim_job(max_retries=2)

    execution = asyncio.run(harness.runner.run_cron_job(claim))

    assert execution is not None
    assert execution.status == CronExecutionStatus.FAILED
    assert execution.attempts == 3
    assert execution.error_code == "backend_transient"
    assert harness.sleeps == []


def test_terminal_failure_is_not_retried(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor([AgentRunResult(success=False, error="Invalid API key")])
    harness = _Harness(database, system_tenant, clock, executor)
    claim = harness.claim_job(max_retries=5)

    execution = asyncio.run(harness.runner.run_cron_job(claim))

    assert execution is not None
    assert execution.attempts == 1
    assert execution.error_code == "access_or_auth"


def test_cron_run_registers_sub_agent(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor([AgentRunResult(success=True, output_text="ok", tokens_in=5)])
    harness = _Harness(database, system_tenant, clock, executor)
    claim = harness.claim_job(prompt="Plan next week")

    asyncio.run(harness.runner.run_cron_job(claim))

    agents = harness.sub_agents.list_by_parent_session(f"cron-job-{claim.job.id}")
    assert len(agents) == 1
    assert agents[0].agent_type == "planner"
    assert agents[0].status == SubAgentStatus.COMPLETED
    assert agents[0].tokens_used == 5
    assert executor.contexts[0].sub_agent_id == agents[0].sub_agent_id
    assert executor.contexts[0].source == "cron"


def test_output_summary_is_truncated(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor([AgentRunResult(success=True, output_text="x" * 50)])
    harness = _Harness(database, system_tenant, clock, executor, output_summary_max_chars=10)
    claim = harness.claim_job()

    execution = asyncio.run(harness.runner.run_cron_job(claim))

    assert execution is not None
    assert execution.output_summary == "x" * 10


def test_agent_task_success_records_result_and_sub_agent(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor(
        [AgentRunResult(success=True, output_text="patched 3 files", tokens_in=2, tokens_out=3)],
    )
    harness = _Harness(database, system_tenant, clock, executor)
    harness.tasks.enqueue(
        AgentTaskCreate(title="Refactor module", input="refactor the code", owner_user_id=1),
    )
    task = harness.tasks.claim_next(1)
    assert task is not None

    assert asyncio.run(harness.runner.run_agent_task(task)) is True

    stored = harness.tasks.get(task.id)
    assert stored.status == AgentTaskStatus.COMPLETED
    assert stored.result_summary == "patched 3 files"
    assert stored.result_full == "patched 3 files"
    assert stored.assigned_sub_agent_id is not None

    agent = harness.sub_agents.get(stored.assigned_sub_agent_id)
    assert agent.agent_type == "code"
    assert agent.status == SubAgentStatus.COMPLETED
    assert agent.tokens_used == 5
    assert agent.parent_session_id == f"task-{task.id}"


def test_agent_task_gets_single_attempt(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor([RuntimeError("boom")])
    harness = _Harness(database, system_tenant, clock, executor)
    harness.tasks.enqueue(AgentTaskCreate(title="t", input="x", owner_user_id=1))
    task = harness.tasks.claim_next(1)
    assert task is not None

    assert asyncio.run(harness.runner.run_agent_task(task)) is False

    stored = harness.tasks.get(task.id)
    assert stored.status == AgentTaskStatus.FAILED
    assert stored.error == "RuntimeError: boom"
    assert stored.error_code == "backend_transient"
    assert len(executor.contexts) == 1
    assert harness.sub_agents.get(stored.assigned_sub_agent_id).status == SubAgentStatus.ERROR


def test_agent_task_timeout_falls_back_to_default(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor([1.0])
    harness = _Harness(database, system_tenant, clock, executor, default_timeout_ms=50)
    harness.tasks.enqueue(AgentTaskCreate(title="slow", input="x", owner_user_id=1))
    task = harness.tasks.claim_next(1)
    assert task is not None

    assert asyncio.run(harness.runner.run_agent_task(task)) is False
    assert harness.tasks.get(task.id).error_code == "timeout"
    assert executor.contexts[0].timeout_ms == 50


def test_cancellation_records_interrupted_and_propagates(database, system_tenant, clock) -> None:
    executor = ScriptedExecutor([5.0])
    harness = _Harness(database, system_tenant, clock, executor)
    claim = harness.claim_job()

    async def _cancel_midway() -> None:
        run = asyncio.create_task(harness.runner.run_cron_job(claim))
        await asyncio.sleep(0.05)
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run

    asyncio.run(_cancel_midway())

    execution = harness.jobs.get_execution(claim.execution.id)
    assert execution is not None
    assert execution.status == CronExecutionStatus.FAILED
    assert execution.error_code == "interrupted"
    assert executor.contexts[0].cancel_event.is_set()


def _locked(*_args, **_kwargs):
    raise OperationalError("UPDATE agent_tasks", {}, Exception("database is locked"))


def test_agent_task_setup_error_fails_task(database, system_tenant, clock, monkeypatch) -> None:
    executor = ScriptedExecutor([AgentRunResult(success=True, output_text="unused")])
    harness = _Harness(database, system_tenant, clock, executor)
    harness.tasks.enqueue(AgentTaskCreate(title="t", input="x", owner_user_id=1))
    task = harness.tasks.claim_next(1)
    assert task is not None
    monkeypatch.setattr(harness.sub_agents, "create", _locked)

    with pytest.raises(OperationalError):
        asyncio.run(harness.runner.run_agent_task(task))

    stored = harness.tasks.get(task.id)
    assert stored.status == AgentTaskStatus.FAILED
    assert stored.error_code == "backend_non_retryable"
    assert "database is locked" in stored.error
    assert stored.assigned_sub_agent_id is None
    assert executor.contexts == []
    assert harness.tasks.count(status=AgentTaskStatus.RUNNING) == 0


def test_agent_task_outcome_write_error_fails_task_and_sub_agent(
    database, system_tenant, clock, monkeypatch,
) -> None:
    executor = ScriptedExecutor([AgentRunResult(success=True, output_text="done")])
    harness = _Harness(database, system_tenant, clock, executor)
    harness.tasks.enqueue(AgentTaskCreate(title="t", input="x", owner_user_id=1))
    task = harness.tasks.claim_next(1)
    assert task is not None
    monkeypatch.setattr(harness.tasks, "complete", _locked)

    with pytest.raises(OperationalError):
        asyncio.run(harness.runner.run_agent_task(task))

    stored = harness.tasks.get(task.id)
    assert stored.status == AgentTaskStatus.FAILED
    assert stored.error_code == "backend_non_retryable"
    agent = harness.sub_agents.get(stored.assigned_sub_agent_id)
    assert agent.status == SubAgentStatus.ERROR
