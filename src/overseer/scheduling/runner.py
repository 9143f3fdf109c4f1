"""Bridge between claimed work and the external agent loop.

The runner owns timeout and retry policy. Every attempt is reduced to an
`AttemptOutcome`; only after the final attempt are the ledger, the task row and
the sub-agent record written, each exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from overseer.scheduling.backend.base import (
    AgentBackendError,
    AgentExecutionContext,
    AgentExecutor,
    AgentRunResult,
)
from overseer.scheduling.errors import ExecutionTimeout, ExternalLoopError, InvalidTransition
from overseer.scheduling.failure_classifier import classify_agent_failure
from overseer.scheduling.jobs import INTERRUPTED_ERROR, CronJobStore
from overseer.scheduling.models import (
    AgentTaskView,
    CronExecutionFinish,
    CronExecutionStatus,
    CronExecutionView,
    DueJobClaim,
    FailureClass,
    SubAgentCreate,
    SubAgentStatus,
    TaskResult,
)
from overseer.scheduling.retry import (
    AttemptOutcome,
    AttemptSucceeded,
    RetryableFailure,
    TerminalFailure,
    retry_delay_seconds,
    should_retry,
)
from overseer.scheduling.sub_agents import SubAgentRegistry, select_agent_type
from overseer.scheduling.task_queue import TaskQueue
from overseer.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UsageTotals:
    """Usage summed over every attempt of one run."""

    input_tokens: int = 0
    output_tokens: int = 0
    tool_calls_count: int = 0
    step_count: int = 0

    def add(self, result: AgentRunResult | None) -> None:
        if result is None:
            return
        self.input_tokens += max(0, result.tokens_in)
        self.output_tokens += max(0, result.tokens_out)
        self.tool_calls_count += max(0, result.tool_calls_count)
        self.step_count += max(0, result.step_count)

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class TaskRunner:
    """Executes cron runs and agent tasks through an `AgentExecutor`."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        jobs: CronJobStore,
        tasks: TaskQueue,
        sub_agents: SubAgentRegistry,
        executor: AgentExecutor,
        default_timeout_ms: int = 300_000,
        retry_base_seconds: float = 5.0,
        retry_max_seconds: float = 60.0,
        output_summary_max_chars: int = 2_000,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.jobs = jobs
        self.tasks = tasks
        self.sub_agents = sub_agents
        self.executor = executor
        self.default_timeout_ms = default_timeout_ms
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.output_summary_max_chars = output_summary_max_chars
        self.clock = clock
        self._sleep = sleep
        self._random = random.Random()  # noqa: S311

    async def run_cron_job(self, claim: DueJobClaim) -> CronExecutionView | None:
        """Run a claimed job with retries and write its single ledger outcome."""

        job, execution = claim.job, claim.execution
        sub_agent_id: str | None = None
        totals = UsageTotals()
        attempts = 0
        try:
            sub_agent = self.sub_agents.create(
                SubAgentCreate(
                    owner_user_id=job.owner_user_id,
                    agent_type=select_agent_type(job.prompt),
                    parent_session_id=f"cron-job-{job.id}",
                    assigned_task=job.prompt,
                    metadata={"cron_job_id": job.id, "cron_execution_id": execution.id},
                ),
            )
            sub_agent_id = sub_agent.sub_agent_id
            self.sub_agents.transition(sub_agent_id, SubAgentStatus.WORKING)

            while True:
                attempts += 1
                context = AgentExecutionContext(
                    owner_user_id=job.owner_user_id,
                    source="cron",
                    source_id=job.id,
                    sub_agent_id=sub_agent_id,
                    agent_type=sub_agent.agent_type,
                    timeout_ms=job.timeout_ms,
                    attempt=attempts,
                )
                outcome = await self._attempt(execution.prompt, context)
                totals.add(outcome.result)
                if not isinstance(outcome, RetryableFailure) or not should_retry(
                    attempts,
                    job.max_retries,
                    outcome.failure_class,
                ):
                    break
                delay = retry_delay_seconds(
                    attempts,
                    base_seconds=self.retry_base_seconds,
                    max_seconds=self.retry_max_seconds,
                    rng=self._random,
                )
                logger.info(
                    "Cron job %s attempt %d failed (%s); retrying in %.1fs",
                    job.id,
                    attempts,
                    outcome.failure_class.value,
                    delay,
                )
                if delay > 0:
                    await self._sleep(delay)
        except asyncio.CancelledError:
            logger.warning("Cron job %s execution %s interrupted", job.id, execution.id)
            self._finish_cron(
                execution.id,
                TerminalFailure(error=INTERRUPTED_ERROR, failure_class=FailureClass.INTERRUPTED),
                attempts=attempts,
                totals=totals,
            )
            self._resolve_sub_agent(sub_agent_id, ok=False, text=INTERRUPTED_ERROR, totals=totals)
            raise
        except Exception as exc:
            logger.exception("Cron job %s execution %s crashed", job.id, execution.id)
            self._finish_cron(
                execution.id,
                TerminalFailure(error=str(exc), failure_class=FailureClass.BACKEND_NON_RETRYABLE),
                attempts=attempts,
                totals=totals,
            )
            self._resolve_sub_agent(sub_agent_id, ok=False, text=str(exc), totals=totals)
            raise

        finished = self._finish_cron(execution.id, outcome, attempts=attempts, totals=totals)
        ok = isinstance(outcome, AttemptSucceeded)
        self._resolve_sub_agent(
            sub_agent_id,
            ok=ok,
            text=finished.output_summary if ok and finished else _error_text(outcome),
            totals=totals,
        )
        logger.info(
            "Cron job %s execution %s finished: %s after %d attempt(s)",
            job.id,
            execution.id,
            "success" if ok else "failed",
            attempts,
        )
        return finished

    async def run_agent_task(self, task: AgentTaskView) -> bool:
        """Run a claimed task once; returns True when it completed.

        Any failure after the claim, including storage errors while registering
        the sub-agent or recording the outcome, still moves the task out of
        `running` before the error propagates.
        """

        totals = UsageTotals()
        sub_agent_id: str | None = None
        try:
            sub_agent = self.sub_agents.create(
                SubAgentCreate(
                    owner_user_id=task.owner_user_id,
                    agent_type=select_agent_type(f"{task.title}\n{task.input}"),
                    parent_session_id=f"task-{task.id}",
                    assigned_task=task.title,
                    metadata={"agent_task_id": task.id},
                ),
            )
            sub_agent_id = sub_agent.sub_agent_id
            self.tasks.assign_sub_agent(task.id, sub_agent_id)
            self.sub_agents.transition(sub_agent_id, SubAgentStatus.WORKING)
            context = AgentExecutionContext(
                owner_user_id=task.owner_user_id,
                source="task",
                source_id=task.id,
                sub_agent_id=sub_agent_id,
                agent_type=sub_agent.agent_type,
                timeout_ms=task.timeout_ms or self.default_timeout_ms,
            )
            outcome = await self._attempt(task.input, context)

            totals.add(outcome.result)
            if isinstance(outcome, AttemptSucceeded):
                output = outcome.result.output_text
                summary = self._summarize(output)
                stored = self.tasks.complete(task.id, TaskResult(summary=summary, full=output))
                self._resolve_sub_agent(sub_agent_id, ok=True, text=summary, totals=totals)
            else:
                stored = self.tasks.fail(
                    task.id,
                    outcome.error,
                    error_code=outcome.failure_class,
                )
                self._resolve_sub_agent(sub_agent_id, ok=False, text=outcome.error, totals=totals)
        except asyncio.CancelledError:
            logger.warning("Task %s interrupted", task.id)
            self.tasks.fail(task.id, INTERRUPTED_ERROR, error_code=FailureClass.INTERRUPTED)
            self._resolve_sub_agent(sub_agent_id, ok=False, text=INTERRUPTED_ERROR, totals=totals)
            raise
        except Exception as exc:
            logger.exception("Task %s crashed", task.id)
            self.tasks.fail(task.id, str(exc), error_code=FailureClass.BACKEND_NON_RETRYABLE)
            self._resolve_sub_agent(sub_agent_id, ok=False, text=str(exc), totals=totals)
            raise

        if not stored:
            logger.info("Task %s left running state before its outcome was recorded", task.id)
        return stored and isinstance(outcome, AttemptSucceeded)

    async def _attempt(self, prompt: str, context: AgentExecutionContext) -> AttemptOutcome:
        timeout_seconds = max(1, context.timeout_ms) / 1000.0
        try:
            result = await asyncio.wait_for(
                self.executor.execute(prompt, context),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            context.cancel_event.set()
            timeout = ExecutionTimeout(context.timeout_ms)
            logger.warning("%s %s: %s", context.source, context.source_id, timeout)
            return TerminalFailure(error=str(timeout), failure_class=FailureClass.TIMEOUT)
        except asyncio.CancelledError:
            context.cancel_event.set()
            raise
        except AgentBackendError as exc:
            classification = classify_agent_failure(str(exc), transient_default=exc.transient)
            return _failure(str(exc), classification.failure_class)
        except Exception as exc:  # noqa: BLE001
            error = ExternalLoopError(f"{type(exc).__name__}: {exc}")
            logger.warning("%s %s: agent loop raised %s", context.source, context.source_id, error)
            return _failure(str(error), classify_agent_failure(str(exc)).failure_class)

        if result.success:
            return AttemptSucceeded(result=result)
        error_text = result.error or "Agent run reported failure."
        return _failure(error_text, classify_agent_failure(error_text).failure_class, result)

    def _finish_cron(
        self,
        execution_id: int,
        outcome: AttemptOutcome,
        *,
        attempts: int,
        totals: UsageTotals,
    ) -> CronExecutionView | None:
        if isinstance(outcome, AttemptSucceeded):
            finish = CronExecutionFinish(
                status=CronExecutionStatus.SUCCESS,
                completed_at=self.clock(),
                output_summary=self._summarize(outcome.result.output_text),
            )
        else:
            output = outcome.result.output_text if outcome.result is not None else ""
            finish = CronExecutionFinish(
                status=CronExecutionStatus.FAILED,
                completed_at=self.clock(),
                output_summary=self._summarize(output) or None,
                error=outcome.error,
                error_code=outcome.failure_class.value,
            )
        finish.attempts = attempts
        finish.input_tokens = totals.input_tokens
        finish.output_tokens = totals.output_tokens
        finish.tool_calls_count = totals.tool_calls_count
        finished = self.jobs.finish_execution(execution_id, finish)
        if finished is None:
            logger.warning("Execution %s was already finalized; outcome dropped", execution_id)
        return finished

    def _resolve_sub_agent(
        self,
        sub_agent_id: str | None,
        *,
        ok: bool,
        text: str | None,
        totals: UsageTotals,
    ) -> None:
        if sub_agent_id is None:
            return
        try:
            self.sub_agents.transition(
                sub_agent_id,
                SubAgentStatus.COMPLETED if ok else SubAgentStatus.ERROR,
                task_result=text,
                step_count=totals.step_count,
                tokens_used=totals.tokens_used,
            )
        except InvalidTransition:
            logger.warning("Sub-agent %s was already resolved", sub_agent_id)

    def _summarize(self, text: str) -> str:
        return text.strip()[: self.output_summary_max_chars]


def _failure(
    error: str,
    failure_class: FailureClass,
    result: AgentRunResult | None = None,
) -> RetryableFailure | TerminalFailure:
    if failure_class == FailureClass.BACKEND_TRANSIENT:
        return RetryableFailure(error=error, failure_class=failure_class, result=result)
    return TerminalFailure(error=error, failure_class=failure_class, result=result)


def _error_text(outcome: AttemptOutcome) -> str | None:
    if isinstance(outcome, AttemptSucceeded):
        return None
    return outcome.error