"""Tenant-facing use-case services and engine wiring."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from overseer.config import AgentSettings, SchedulerSettings
from overseer.scheduling.backend import AgentExecutor, CommandAgentExecutor, EchoAgentExecutor
from overseer.scheduling.cron import describe, validate_expression
from overseer.scheduling.engine import SchedulerEngine
from overseer.scheduling.errors import InvalidJobDefinition
from overseer.scheduling.jobs import CronJobStore
from overseer.scheduling.models import (
    AgentTaskCreate,
    AgentTaskStatus,
    AgentTaskView,
    CronExecutionStatus,
    CronExecutionView,
    CronJobCreate,
    CronJobListing,
    CronJobUpdate,
    CronJobView,
    SubAgentStats,
    SubAgentStatus,
    SubAgentView,
)
from overseer.scheduling.runner import TaskRunner
from overseer.scheduling.sub_agents import SubAgentRegistry, SubAgentType
from overseer.scheduling.task_queue import TaskQueue
from overseer.scheduling.tenant import TenantContext
from overseer.storage.common import utc_now
from overseer.storage.database import Database

DEFAULT_HISTORY_LIMIT = 5


class CronJobService:
    """Cron job CRUD and ledger listing for one tenant.

    Configuration errors are raised here, synchronously, so a bad schedule
    never reaches the engine.
    """

    def __init__(
        self,
        *,
        database: Database,
        tenant: TenantContext,
        settings: SchedulerSettings | None = None,
        engine: SchedulerEngine | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        settings = settings or SchedulerSettings()
        self.store = CronJobStore(
            database,
            tenant,
            clock=clock,
            default_max_retries=settings.default_max_retries,
            default_timeout_ms=settings.default_timeout_ms,
        )
        self.engine = engine

    def create(self, payload: CronJobCreate) -> CronJobView:
        _validate_job_fields(
            name=payload.name,
            prompt=payload.prompt,
            max_retries=payload.max_retries,
            timeout_ms=payload.timeout_ms,
        )
        validate_expression(payload.cron_expression, payload.timezone)
        return self.store.create(payload)

    def update(self, job_id: int, changes: CronJobUpdate) -> CronJobView:
        _validate_job_fields(
            name=changes.name,
            prompt=changes.prompt,
            max_retries=changes.max_retries,
            timeout_ms=changes.timeout_ms,
        )
        if changes.cron_expression is not None:
            validate_expression(changes.cron_expression, changes.timezone or "UTC")
        return self.store.update(job_id, changes)

    def enable(self, job_id: int) -> CronJobView:
        return self.store.enable(job_id)

    def disable(self, job_id: int) -> CronJobView:
        return self.store.disable(job_id)

    def delete(self, job_id: int) -> None:
        self.store.delete(job_id)

    def get(self, job_id: int, *, history: int = 0) -> CronJobListing:
        """Job with its schedule description and, optionally, recent runs."""

        return self._listing(self.store.get(job_id), history=history)

    def list_jobs(
        self,
        *,
        enabled: bool | None = None,
        history: int = 0,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[CronJobListing]:
        jobs = self.store.list_jobs(enabled=enabled, limit=limit, offset=offset)
        return [self._listing(job, history=history) for job in jobs]

    def list_executions(
        self,
        *,
        job_id: int | None = None,
        status: CronExecutionStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[CronExecutionView]:
        if job_id is not None:
            self.store.get(job_id)
        return self.store.list_executions(
            job_id=job_id,
            status=status,
            limit=limit,
            offset=offset,
        )

    async def trigger(self, job_id: int) -> CronExecutionView:
        """Run a job now through the engine, after checking the caller owns it."""

        if self.engine is None:
            raise RuntimeError("Manual runs need a scheduler engine.")
        self.store.get(job_id)
        return await self.engine.trigger_job(job_id)

    def _listing(self, job: CronJobView, *, history: int) -> CronJobListing:
        recent = (
            self.store.list_executions(job_id=job.id, limit=history) if history > 0 else None
        )
        return CronJobListing(
            job=job,
            schedule_description=describe(job.cron_expression, job.timezone),
            recent_executions=recent,
        )


class TaskService:
    """Enqueue, inspect and cancel agent tasks for one tenant."""

    def __init__(
        self,
        *,
        database: Database,
        tenant: TenantContext,
        engine: SchedulerEngine | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = TaskQueue(database, tenant, clock=clock)
        self.engine = engine

    def enqueue(self, payload: AgentTaskCreate) -> AgentTaskView:
        task_id = self.queue.enqueue(payload)
        if self.engine is not None:
            self.engine.notify()
        return self.queue.get(task_id)

    def get(self, task_id: int) -> AgentTaskView:
        return self.queue.get(task_id)

    def children(self, task_id: int) -> list[AgentTaskView]:
        self.queue.get(task_id)
        return self.queue.children(task_id)

    def list_tasks(
        self,
        *,
        status: AgentTaskStatus | None = None,
        conversation_id: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AgentTaskView]:
        return self.queue.list_tasks(
            status=status,
            conversation_id=conversation_id,
            limit=limit,
            offset=offset,
        )

    def cancel(self, task_id: int) -> AgentTaskView:
        if self.engine is None:
            return self.queue.cancel(task_id)
        self.queue.get(task_id)
        return self.engine.cancel_task(task_id)

    def delete(self, task_id: int) -> None:
        self.queue.delete(task_id)


class SubAgentService:
    """Read-only sub-agent views for one tenant."""

    def __init__(self, *, database: Database, tenant: TenantContext) -> None:
        self.registry = SubAgentRegistry(database, tenant)

    def get(self, sub_agent_id: str) -> SubAgentView:
        return self.registry.get(sub_agent_id)

    def list_sub_agents(
        self,
        *,
        status: SubAgentStatus | None = None,
        agent_type: SubAgentType | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[SubAgentView]:
        return self.registry.list_sub_agents(
            status=status,
            agent_type=agent_type,
            limit=limit,
            offset=offset,
        )

    def list_by_parent_session(self, parent_session_id: str) -> list[SubAgentView]:
        return self.registry.list_by_parent_session(parent_session_id)

    def stats(self) -> SubAgentStats:
        return self.registry.stats()


def build_executor(settings: AgentSettings) -> AgentExecutor:
    if settings.backend == "command":
        return CommandAgentExecutor(settings.command_template)
    return EchoAgentExecutor()


def build_engine(
    *,
    database: Database,
    settings: SchedulerSettings,
    executor: AgentExecutor,
    clock: Callable[[], datetime] = utc_now,
) -> SchedulerEngine:
    """Wire process-wide stores, runner and engine under the system tenant."""

    system = TenantContext.system()
    jobs = CronJobStore(
        database,
        system,
        clock=clock,
        default_max_retries=settings.default_max_retries,
        default_timeout_ms=settings.default_timeout_ms,
    )
    tasks = TaskQueue(database, system, clock=clock)
    sub_agents = SubAgentRegistry(database, system, clock=clock)
    runner = TaskRunner(
        jobs=jobs,
        tasks=tasks,
        sub_agents=sub_agents,
        executor=executor,
        default_timeout_ms=settings.default_timeout_ms,
        retry_base_seconds=settings.retry_base_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        output_summary_max_chars=settings.output_summary_max_chars,
        clock=clock,
    )
    return SchedulerEngine(
        jobs=jobs,
        tasks=tasks,
        sub_agents=sub_agents,
        runner=runner,
        poll_interval_seconds=settings.poll_interval_seconds,
        max_concurrent_executions=settings.max_concurrent_executions,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
        clock=clock,
    )


def _validate_job_fields(
    *,
    name: str | None,
    prompt: str | None,
    max_retries: int | None,
    timeout_ms: int | None,
) -> None:
    if name is not None and not name.strip():
        raise InvalidJobDefinition("Job name must not be empty.")
    if prompt is not None and not prompt.strip():
        raise InvalidJobDefinition("Job prompt must not be empty.")
    if max_retries is not None and max_retries < 0:
        raise InvalidJobDefinition("max_retries must be >= 0.")
    if timeout_ms is not None and timeout_ms <= 0:
        raise InvalidJobDefinition("timeout_ms must be > 0.")
