"""Polling scheduler that dispatches due cron jobs and queued agent tasks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from overseer.scheduling.errors import ClaimConflict, JobNotFound
from overseer.scheduling.jobs import CronJobStore
from overseer.scheduling.models import (
    AgentTaskView,
    CronExecutionView,
    EngineStatus,
    SweepResult,
)
from overseer.scheduling.runner import TaskRunner
from overseer.scheduling.sub_agents import SubAgentRegistry
from overseer.scheduling.task_queue import TaskQueue
from overseer.storage.common import utc_now

logger = logging.getLogger(__name__)

_CRON_PREFIX = "cron"
_TASK_PREFIX = "task"


@dataclass(slots=True)
class TickSummary:
    """What one poll tick dispatched."""

    dispatched_jobs: int = 0
    dispatched_tasks: int = 0
    deferred_jobs: int = 0
    conflicts: int = 0
    storage_error: bool = False


class SchedulerEngine:
    """Owned scheduler with an explicit start/stop lifecycle.

    Each tick claims due jobs and queued tasks and hands them to the runner as
    asyncio tasks; the loop never waits for a run to finish. At most
    `max_concurrent_executions` runs are in flight at once, surplus due jobs
    stay due and are picked up by a later tick.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        jobs: CronJobStore,
        tasks: TaskQueue,
        sub_agents: SubAgentRegistry,
        runner: TaskRunner,
        poll_interval_seconds: float = 30.0,
        max_concurrent_executions: int = 3,
        shutdown_grace_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.jobs = jobs
        self.tasks = tasks
        self.sub_agents = sub_agents
        self.runner = runner
        self.poll_interval_seconds = poll_interval_seconds
        self.max_concurrent_executions = max_concurrent_executions
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.clock = clock
        self._active: dict[str, asyncio.Task[Any]] = {}
        self._running = False
        self._wakeup: asyncio.Event | None = None
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> SweepResult:
        """Sweep runs orphaned by a previous process, then begin polling."""

        if self._running:
            return SweepResult()
        swept = self.sweep()
        self._running = True
        self._wakeup = asyncio.Event()
        self._loop_task = asyncio.create_task(self._poll_loop(), name="overseer-poll-loop")
        logger.info(
            "Scheduler started (poll=%.1fs, max_concurrent=%d)",
            self.poll_interval_seconds,
            self.max_concurrent_executions,
        )
        return swept

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Stop polling, let in-flight runs finish within the grace period, cancel the rest."""

        grace = self.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        pending = list(self._active.values())
        if pending:
            logger.info("Waiting up to %.1fs for %d in-flight run(s)", grace, len(pending))
            _, still_running = await asyncio.wait(pending, timeout=max(0.0, grace))
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("Canceled %d run(s) at shutdown", len(still_running))
                await asyncio.gather(*still_running, return_exceptions=True)
        logger.info("Scheduler stopped")

    def notify(self) -> None:
        """Wake the poll loop early, e.g. right after a task was enqueued."""

        if self._wakeup is not None:
            self._wakeup.set()

    def sweep(self) -> SweepResult:
        """Finalize rows left running by a dead process. Safe to repeat.

        Every running row in the database is treated as orphaned, so only call
        this when no other engine process shares the database.
        """

        now = self.clock()
        executions, jobs = self.jobs.sweep_interrupted(now)
        result = SweepResult(
            executions=executions,
            jobs=jobs,
            tasks=self.tasks.sweep_interrupted(now),
            sub_agents=self.sub_agents.sweep_interrupted(now),
        )
        if result.total:
            logger.warning(
                "Startup sweep: %d executions, %d jobs, %d tasks, %d sub-agents",
                result.executions,
                result.jobs,
                result.tasks,
                result.sub_agents,
            )
        return result

    async def tick(self) -> TickSummary:
        """Run one reconciliation pass. Storage errors end the pass, not the engine."""

        summary = TickSummary()
        now = self.clock()
        try:
            self._dispatch_due_jobs(now, summary)
            self._drain_task_queue(summary)
        except SQLAlchemyError:
            summary.storage_error = True
            logger.exception("Scheduler tick aborted by a storage error")
        return summary

    async def run_once(self) -> TickSummary:
        """Sweep, tick once and wait for everything dispatched to finish."""

        self.sweep()
        summary = await self.tick()
        await self.wait_idle()
        return summary

    async def wait_idle(self) -> None:
        while self._active:
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)

    async def trigger_job(self, job_id: int) -> CronExecutionView:
        """Run a job now regardless of its schedule; still one run per job."""

        if self._free_slots() <= 0:
            raise ClaimConflict("All execution slots are busy; try again later.")
        claim = self.jobs.claim_due_job(job_id, now=self.clock(), force=True)
        self._dispatch(_CRON_PREFIX, job_id, self.runner.run_cron_job(claim))
        logger.info("Manually triggered cron job %s (execution %s)", job_id, claim.execution.id)
        return claim.execution

    def cancel_task(self, task_id: int) -> AgentTaskView:
        """Cancel the task row and interrupt its run if it is in flight here."""

        view = self.tasks.cancel(task_id)
        in_flight = self._active.get(_key(_TASK_PREFIX, task_id))
        if in_flight is not None:
            in_flight.cancel()
        return view

    def status(self) -> EngineStatus:
        return EngineStatus(
            running=self._running,
            active_jobs=self._count_active(_CRON_PREFIX),
            total_jobs=self.jobs.count(),
            enabled_jobs=self.jobs.count(enabled=True),
            poll_interval_ms=int(self.poll_interval_seconds * 1000),
            active_tasks=self._count_active(_TASK_PREFIX),
            max_concurrent_executions=self.max_concurrent_executions,
        )

    async def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM, then shut down gracefully."""

        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, stop_requested.set)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform or outside the main thread.
                logger.debug("Signal handler for %s not installed", signum.name)
                continue
            installed.append(signum)

        await self.start()
        try:
            await stop_requested.wait()
            logger.info("Shutdown requested")
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
            await self.stop()

    async def _poll_loop(self) -> None:
        assert self._wakeup is not None
        while self._running:
            self._wakeup.clear()
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            if not self._running:
                break
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval_seconds)

    def _dispatch_due_jobs(self, now: datetime, summary: TickSummary) -> None:
        due = self.jobs.find_due(now)
        for index, job in enumerate(due):
            if self._free_slots() <= 0:
                summary.deferred_jobs = len(due) - index
                logger.warning(
                    "Concurrency cap %d reached; deferring %d due job(s)",
                    self.max_concurrent_executions,
                    summary.deferred_jobs,
                )
                return
            if _key(_CRON_PREFIX, job.id) in self._active:
                continue
            try:
                claim = self.jobs.claim_due_job(job.id, now=now)
            except (ClaimConflict, JobNotFound) as conflict:
                summary.conflicts += 1
                logger.debug("Skipping cron job %s: %s", job.id, conflict)
                continue
            self._dispatch(_CRON_PREFIX, job.id, self.runner.run_cron_job(claim))
            summary.dispatched_jobs += 1

    def _drain_task_queue(self, summary: TickSummary) -> None:
        while (capacity := self._free_slots()) > 0:
            task = self.tasks.claim_next(capacity)
            if task is None:
                return
            self._dispatch(_TASK_PREFIX, task.id, self.runner.run_agent_task(task))
            summary.dispatched_tasks += 1

    def _dispatch(self, prefix: str, item_id: int, run: Coroutine[Any, Any, Any]) -> None:
        key = _key(prefix, item_id)
        task = asyncio.create_task(run, name=f"overseer-{key}")
        self._active[key] = task
        task.add_done_callback(partial(self._on_run_done, key))

    def _on_run_done(self, key: str, task: asyncio.Task[Any]) -> None:
        self._active.pop(key, None)
        if not task.cancelled():
            error = task.exception()
            if error is not None:
                logger.error("Run %s ended with an error: %s", key, error, exc_info=error)
        if self._running:
            self.notify()

    def _free_slots(self) -> int:
        return self.max_concurrent_executions - len(self._active)

    def _count_active(self, prefix: str) -> int:
        return sum(1 for key in self._active if key.startswith(f"{prefix}:"))


def _key(prefix: str, item_id: int) -> str:
    return f"{prefix}:{item_id}"
