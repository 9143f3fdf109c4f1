"""Controllers for scheduler CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from overseer.config import Settings
from overseer.scheduling.engine import SchedulerEngine
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
    SubAgentStatus,
    SubAgentView,
)
from overseer.scheduling.services import (
    CronJobService,
    SubAgentService,
    TaskService,
    build_engine,
    build_executor,
)
from overseer.scheduling.task_queue import DEFAULT_PRIORITY
from overseer.scheduling.tenant import TenantContext
from overseer.storage.database import Database

_PREVIEW_CHARS = 80


@dataclass(slots=True)
class CronAddCommand:
    """CLI input for cron job creation."""

    db_path: Path | None
    name: str
    cron_expression: str
    prompt: str
    timezone: str = "UTC"
    description: str | None = None
    enabled: bool = True
    max_retries: int | None = None
    timeout_ms: int | None = None


@dataclass(slots=True)
class CronUpdateCommand:
    """CLI input for partial cron job updates."""

    db_path: Path | None
    job_id: int
    name: str | None = None
    cron_expression: str | None = None
    timezone: str | None = None
    prompt: str | None = None
    description: str | None = None
    max_retries: int | None = None
    timeout_ms: int | None = None


@dataclass(slots=True)
class CronListCommand:
    """CLI input for cron job listing."""

    db_path: Path | None
    enabled: bool | None = None
    history: int = 0
    limit: int = 50
    offset: int = 0


@dataclass(slots=True)
class CronJobCommand:
    """CLI input for commands addressing one cron job."""

    db_path: Path | None
    job_id: int
    history: int = 5


@dataclass(slots=True)
class CronExecutionsCommand:
    """CLI input for execution ledger listing."""

    db_path: Path | None
    job_id: int | None = None
    status: str | None = None
    limit: int = 20
    offset: int = 0


@dataclass(slots=True)
class TaskEnqueueCommand:
    """CLI input for agent task enqueue."""

    db_path: Path | None
    title: str
    input: str
    priority: int = DEFAULT_PRIORITY
    parent_task_id: int | None = None
    conversation_id: int | None = None
    timeout_ms: int | None = None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None = None
    conversation_id: int | None = None
    limit: int = 50
    offset: int = 0


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for show/cancel/delete operations."""

    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class SubAgentListCommand:
    """CLI input for sub-agent listing."""

    db_path: Path | None
    status: str | None = None
    agent_type: str | None = None
    parent_session_id: str | None = None
    limit: int = 50


@dataclass(slots=True)
class EngineCommand:
    """CLI input for engine commands."""

    db_path: Path | None
    once: bool = False


class SchedulerCliController:
    """Coordinates cron, task, sub-agent and engine CLI operations."""

    # Cron jobs

    def cron_add(self, command: CronAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            job = _cron_service(database, settings).create(
                CronJobCreate(
                    name=command.name,
                    cron_expression=command.cron_expression,
                    prompt=command.prompt,
                    timezone=command.timezone,
                    description=command.description,
                    enabled=command.enabled,
                    created_by="cli",
                    max_retries=command.max_retries,
                    timeout_ms=command.timeout_ms,
                ),
            )
        return [
            f"Cron job created: job_id={job.id} name={job.name}",
            f"Next run: {_format_dt(job.next_run_at)}",
        ]

    def cron_list(self, command: CronListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            listings = _cron_service(database, settings).list_jobs(
                enabled=command.enabled,
                history=command.history,
                limit=command.limit,
                offset=command.offset,
            )
        if not listings:
            return ["No cron jobs found."]
        lines = [f"Cron jobs: {len(listings)}"]
        for listing in listings:
            lines.append(_job_line(listing))
            for execution in listing.recent_executions or []:
                lines.append(f"    {_execution_line(execution)}")
        return lines

    def cron_show(self, command: CronJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            listing = _cron_service(database, settings).get(
                command.job_id,
                history=command.history,
            )
        job = listing.job
        lines = [
            f"job_id={job.id} owner={job.owner_user_id} name={job.name}",
            f"schedule={job.cron_expression} ({listing.schedule_description})",
            f"enabled={_yes_no(job.enabled)} created_by={job.created_by}",
            f"max_retries={job.max_retries} timeout_ms={job.timeout_ms}",
            f"last_run_at={_format_dt(job.last_run_at)} next_run_at={_format_dt(job.next_run_at)}",
            f"run_count={job.run_count} last_status={_enum_value(job.last_status)}",
        ]
        if job.description:
            lines.append(f"description={job.description}")
        lines.append(f"prompt={_preview(job.prompt)}")
        if job.metadata:
            lines.append(f"metadata={json.dumps(job.metadata, sort_keys=True)}")
        if listing.recent_executions:
            lines.append("Recent executions:")
            lines.extend(f"  {_execution_line(item)}" for item in listing.recent_executions)
        return lines

    def cron_update(self, command: CronUpdateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            job = _cron_service(database, settings).update(
                command.job_id,
                CronJobUpdate(
                    name=command.name,
                    description=command.description,
                    cron_expression=command.cron_expression,
                    timezone=command.timezone,
                    prompt=command.prompt,
                    max_retries=command.max_retries,
                    timeout_ms=command.timeout_ms,
                ),
            )
        return [f"Cron job updated: {_job_summary(job)}"]

    def cron_set_enabled(self, command: CronJobCommand, *, enabled: bool) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            service = _cron_service(database, settings)
            job = service.enable(command.job_id) if enabled else service.disable(command.job_id)
        verb = "enabled" if enabled else "disabled"
        return [f"Cron job {verb}: {_job_summary(job)}"]

    def cron_delete(self, command: CronJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            _cron_service(database, settings).delete(command.job_id)
        return [f"Cron job deleted: job_id={command.job_id}"]

    def cron_run(self, command: CronJobCommand) -> list[str]:
        """Run a job now in this process and wait for its ledger outcome."""

        settings = _settings(command.db_path)
        with _database(settings) as database:
            engine = build_engine(
                database=database,
                settings=settings.scheduler,
                executor=build_executor(settings.agent),
            )
            service = _cron_service(database, settings, engine=engine)

            async def _run() -> CronExecutionView:
                started = await service.trigger(command.job_id)
                await engine.wait_idle()
                return service.store.get_execution(started.id) or started

            execution = asyncio.run(_run())
        lines = [f"Execution finished: {_execution_line(execution)}"]
        if execution.output_summary:
            lines.append(f"Output: {_preview(execution.output_summary)}")
        if execution.error:
            lines.append(f"Error: {execution.error}")
        return lines

    def cron_executions(self, command: CronExecutionsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = CronExecutionStatus(command.status) if command.status else None
        with _database(settings) as database:
            executions = _cron_service(database, settings).list_executions(
                job_id=command.job_id,
                status=status,
                limit=command.limit,
                offset=command.offset,
            )
        if not executions:
            return ["No executions found."]
        return [f"Executions: {len(executions)}"] + [
            _execution_line(execution) for execution in executions
        ]

    # Agent tasks

    def task_enqueue(self, command: TaskEnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            task = _task_service(database, settings).enqueue(
                AgentTaskCreate(
                    title=command.title,
                    input=command.input,
                    priority=command.priority,
                    parent_task_id=command.parent_task_id,
                    conversation_id=command.conversation_id,
                    timeout_ms=command.timeout_ms,
                ),
            )
        return [
            "Task enqueued: "
            f"task_id={task.id} status={task.status.value} priority={task.priority}",
        ]

    def task_list(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = AgentTaskStatus(command.status) if command.status else None
        with _database(settings) as database:
            tasks = _task_service(database, settings).list_tasks(
                status=status,
                conversation_id=command.conversation_id,
                limit=command.limit,
                offset=command.offset,
            )
        if not tasks:
            return ["No tasks found."]
        return [f"Tasks: {len(tasks)}"] + [_task_line(task) for task in tasks]

    def task_show(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            service = _task_service(database, settings)
            task = service.get(command.task_id)
            children = service.children(command.task_id)
        lines = [
            _task_line(task),
            f"created_at={_format_dt(task.created_at)} started_at={_format_dt(task.started_at)} "
            f"finished_at={_format_dt(task.finished_at)}",
            f"parent_task_id={task.parent_task_id or '-'} "
            f"conversation_id={task.conversation_id or '-'} "
            f"sub_agent={task.assigned_sub_agent_id or '-'}",
            f"input={_preview(task.input)}",
        ]
        if task.result_summary:
            lines.append(f"result={_preview(task.result_summary)}")
        if task.error:
            lines.append(f"error[{task.error_code or '-'}]={task.error}")
        if children:
            lines.append(f"Children: {len(children)}")
            lines.extend(f"  {_task_line(child)}" for child in children)
        return lines

    def task_cancel(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            task = _task_service(database, settings).cancel(command.task_id)
        return [f"Task canceled: task_id={task.id} status={task.status.value}"]

    def task_delete(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            _task_service(database, settings).delete(command.task_id)
        return [f"Task deleted: task_id={command.task_id}"]

    # Sub-agents

    def subagent_list(self, command: SubAgentListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            service = SubAgentService(database=database, tenant=_tenant(settings))
            if command.parent_session_id:
                agents = service.list_by_parent_session(command.parent_session_id)
            else:
                agents = service.list_sub_agents(
                    status=SubAgentStatus(command.status) if command.status else None,
                    agent_type=command.agent_type,
                    limit=command.limit,
                )
        if not agents:
            return ["No sub-agents found."]
        return [f"Sub-agents: {len(agents)}"] + [_sub_agent_line(agent) for agent in agents]

    def subagent_stats(self, command: EngineCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            stats = SubAgentService(database=database, tenant=_tenant(settings)).stats()
        by_type = ", ".join(f"{name}={count}" for name, count in sorted(stats.by_type.items()))
        return [
            f"Sub-agents: total={stats.total} working={stats.working} "
            f"completed={stats.completed} error={stats.error}",
            f"By type: {by_type or '-'}",
        ]

    # Engine

    def engine_status(self, command: EngineCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            engine = build_engine(
                database=database,
                settings=settings.scheduler,
                executor=build_executor(settings.agent),
            )
            status = engine.status()
            running_executions = engine.jobs.count_running_executions()
            queued_tasks = engine.tasks.count(status=AgentTaskStatus.QUEUED)
            running_tasks = engine.tasks.count(status=AgentTaskStatus.RUNNING)
        return [
            f"Jobs: total={status.total_jobs} enabled={status.enabled_jobs}",
            f"Executions running: {running_executions}",
            f"Tasks: queued={queued_tasks} running={running_tasks}",
            f"Poll interval: {status.poll_interval_ms}ms "
            f"max_concurrent={status.max_concurrent_executions}",
        ]

    def engine_sweep(self, command: EngineCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            engine = build_engine(
                database=database,
                settings=settings.scheduler,
                executor=build_executor(settings.agent),
            )
            swept = engine.sweep()
        return [
            "Sweep summary: "
            f"executions={swept.executions} jobs={swept.jobs} "
            f"tasks={swept.tasks} sub_agents={swept.sub_agents}",
        ]

    def engine_run(self, command: EngineCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _database(settings) as database:
            engine = build_engine(
                database=database,
                settings=settings.scheduler,
                executor=build_executor(settings.agent),
            )
            if not command.once:
                asyncio.run(engine.run_forever())
                return ["Scheduler stopped."]
            summary = asyncio.run(engine.run_once())
        return [
            "Tick summary: "
            f"jobs={summary.dispatched_jobs} tasks={summary.dispatched_tasks} "
            f"deferred={summary.deferred_jobs} conflicts={summary.conflicts}",
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _tenant(settings: Settings) -> TenantContext:
    return TenantContext(
        owner_user_id=settings.tenant.user_id,
        can_view_all=settings.tenant.can_view_all,
    )


def _cron_service(
    database: Database,
    settings: Settings,
    *,
    engine: SchedulerEngine | None = None,
) -> CronJobService:
    return CronJobService(
        database=database,
        tenant=_tenant(settings),
        settings=settings.scheduler,
        engine=engine,
    )


def _task_service(database: Database, settings: Settings) -> TaskService:
    return TaskService(database=database, tenant=_tenant(settings))


def _job_summary(job: CronJobView) -> str:
    return (
        f"job_id={job.id} enabled={_yes_no(job.enabled)} "
        f"next_run_at={_format_dt(job.next_run_at)}"
    )


def _job_line(listing: CronJobListing) -> str:
    job = listing.job
    return (
        f"{job.id:>4} {_yes_no(job.enabled):<3} {job.name} "
        f"[{job.cron_expression}] {listing.schedule_description} "
        f"next={_format_dt(job.next_run_at)} runs={job.run_count} "
        f"last={_enum_value(job.last_status)}"
    )


def _execution_line(execution: CronExecutionView) -> str:
    duration = f"{execution.duration_ms}ms" if execution.duration_ms is not None else "-"
    line = (
        f"execution_id={execution.id} job_id={execution.cron_job_id} "
        f"status={execution.status.value} started={_format_dt(execution.started_at)} "
        f"duration={duration} attempts={execution.attempts} "
        f"tokens={execution.input_tokens}/{execution.output_tokens}"
    )
    if execution.job_name:
        line += f" job={execution.job_name}"
    if execution.error_code:
        line += f" error_code={execution.error_code}"
    return line


def _task_line(task: AgentTaskView) -> str:
    return (
        f"task_id={task.id} status={task.status.value} priority={task.priority} "
        f"title={_preview(task.title)}"
    )


def _sub_agent_line(agent: SubAgentView) -> str:
    return (
        f"{agent.sub_agent_id} type={agent.agent_type} status={agent.status.value} "
        f"steps={agent.step_count} tokens={agent.tokens_used} "
        f"session={agent.parent_session_id or '-'}"
    )


def _format_dt(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def _enum_value(value: object) -> str:
    if value is None:
        return "-"
    return str(getattr(value, "value", value))


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def _preview(text: str) -> str:
    flat = " ".join(text.split())
    if len(flat) <= _PREVIEW_CHARS:
        return flat
    return flat[: _PREVIEW_CHARS - 3] + "..."


@contextmanager
def _database(settings: Settings) -> Iterator[Database]:
    database = Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    database.init_schema()
    try:
        yield database
    finally:
        database.close()
