"""CLI entrypoint for overseer."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from overseer import __version__
from overseer.config import LOG_LEVELS
from overseer.scheduling.controllers import (
    CronAddCommand,
    CronExecutionsCommand,
    CronJobCommand,
    CronListCommand,
    CronUpdateCommand,
    EngineCommand,
    SchedulerCliController,
    SubAgentListCommand,
    TaskEnqueueCommand,
    TaskListCommand,
    TaskRefCommand,
)
from overseer.scheduling.errors import OrchestrationError
from overseer.scheduling.models import AgentTaskStatus, CronExecutionStatus, SubAgentStatus
from overseer.scheduling.sub_agents import SubAgentType

click.rich_click.USE_MARKDOWN = True
SCHEDULER_CONTROLLER = SchedulerCliController()

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to OVERSEER_DB_PATH or .overseer.db.",
)


@click.group()
@click.version_option(version=__version__, prog_name="overseer")
def overseer() -> None:
    """Overseer: cron jobs, agent task queue and sub-agent registry."""

    level = os.getenv("OVERSEER_LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(level=level if level in LOG_LEVELS else "INFO", format=_LOG_FORMAT)


@overseer.group()
def cron() -> None:
    """Scheduled agent prompts and their execution ledger."""


@cron.command("add")
@db_path_option
@click.option("--name", required=True, help="Human readable job name.")
@click.option(
    "--schedule",
    "cron_expression",
    required=True,
    help="Five-field cron expression, for example `0 9 * * 1-5`.",
)
@click.option("--prompt", required=True, help="Prompt sent to the agent on every run.")
@click.option("--timezone", default="UTC", show_default=True, help="IANA timezone name.")
@click.option("--description", default=None, help="Optional description.")
@click.option("--disabled", is_flag=True, default=False, help="Create the job disabled.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retries after a transient failure. Defaults to OVERSEER_DEFAULT_MAX_RETRIES.",
)
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Per-attempt timeout. Defaults to OVERSEER_DEFAULT_TIMEOUT_MS.",
)
def cron_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    cron_expression: str,
    prompt: str,
    timezone: str,
    description: str | None,
    disabled: bool,
    max_retries: int | None,
    timeout_ms: int | None,
) -> None:
    """Create a cron job."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.cron_add(
            CronAddCommand(
                db_path=db_path,
                name=name,
                cron_expression=cron_expression,
                prompt=prompt,
                timezone=timezone,
                description=description,
                enabled=not disabled,
                max_retries=max_retries,
                timeout_ms=timeout_ms,
            ),
        ),
    )


@cron.command("list")
@db_path_option
@click.option(
    "--enabled/--disabled",
    "enabled",
    default=None,
    help="Only enabled or only disabled jobs.",
)
@click.option(
    "--history",
    type=click.IntRange(min=0, max=50),
    default=0,
    show_default=True,
    help="Recent executions to show per job.",
)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def cron_list(
    db_path: Path | None,
    enabled: bool | None,
    history: int,
    limit: int,
    offset: int,
) -> None:
    """List cron jobs, newest first."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.cron_list(
            CronListCommand(
                db_path=db_path,
                enabled=enabled,
                history=history,
                limit=limit,
                offset=offset,
            ),
        ),
    )


@cron.command("show")
@db_path_option
@click.argument("job_id", type=int)
@click.option(
    "--history",
    type=click.IntRange(min=0, max=50),
    default=5,
    show_default=True,
    help="Recent executions to show.",
)
def cron_show(db_path: Path | None, job_id: int, history: int) -> None:
    """Show one cron job with its recent executions."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.cron_show(
            CronJobCommand(db_path=db_path, job_id=job_id, history=history),
        ),
    )


@cron.command("update")
@db_path_option
@click.argument("job_id", type=int)
@click.option("--name", default=None)
@click.option("--schedule", "cron_expression", default=None, help="New cron expression.")
@click.option("--timezone", default=None, help="New IANA timezone name.")
@click.option("--prompt", default=None)
@click.option("--description", default=None)
@click.option("--max-retries", type=click.IntRange(min=0), default=None)
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None)
def cron_update(  # noqa: PLR0913
    db_path: Path | None,
    job_id: int,
    name: str | None,
    cron_expression: str | None,
    timezone: str | None,
    prompt: str | None,
    description: str | None,
    max_retries: int | None,
    timeout_ms: int | None,
) -> None:
    """Update fields of a cron job; schedule changes recompute the next run."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.cron_update(
            CronUpdateCommand(
                db_path=db_path,
                job_id=job_id,
                name=name,
                cron_expression=cron_expression,
                timezone=timezone,
                prompt=prompt,
                description=description,
                max_retries=max_retries,
                timeout_ms=timeout_ms,
            ),
        ),
    )


@cron.command("enable")
@db_path_option
@click.argument("job_id", type=int)
def cron_enable(db_path: Path | None, job_id: int) -> None:
    """Enable a job and schedule its next run."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.cron_set_enabled(
            CronJobCommand(db_path=db_path, job_id=job_id),
            enabled=True,
        ),
    )


@cron.command("disable")
@db_path_option
@click.argument("job_id", type=int)
def cron_disable(db_path: Path | None, job_id: int) -> None:
    """Disable a job. A run already in flight is allowed to finish."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.cron_set_enabled(
            CronJobCommand(db_path=db_path, job_id=job_id),
            enabled=False,
        ),
    )


@cron.command("delete")
@db_path_option
@click.argument("job_id", type=int)
def cron_delete(db_path: Path | None, job_id: int) -> None:
    """Delete a job and its execution history."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.cron_delete(
            CronJobCommand(db_path=db_path, job_id=job_id),
        ),
    )


@cron.command("run")
@db_path_option
@click.argument("job_id", type=int)
def cron_run(db_path: Path | None, job_id: int) -> None:
    """Run a job now, in this process, and wait for the outcome."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.cron_run(
            CronJobCommand(db_path=db_path, job_id=job_id),
        ),
    )


@cron.command("executions")
@db_path_option
@click.option("--job-id", type=int, default=None, help="Only executions of this job.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in CronExecutionStatus]),
    default=None,
)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=20, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def cron_executions(
    db_path: Path | None,
    job_id: int | None,
    status: str | None,
    limit: int,
    offset: int,
) -> None:
    """List the execution ledger, newest first."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.cron_executions(
            CronExecutionsCommand(
                db_path=db_path,
                job_id=job_id,
                status=status,
                limit=limit,
                offset=offset,
            ),
        ),
    )


@overseer.group()
def tasks() -> None:
    """Priority queue of agent tasks."""


@tasks.command("enqueue")
@db_path_option
@click.option("--title", required=True, help="Short task title.")
@click.option("--input", "task_input", required=True, help="Task input passed to the agent.")
@click.option(
    "--priority",
    type=click.IntRange(min=0, max=100),
    default=5,
    show_default=True,
    help="Lower values run first.",
)
@click.option("--parent", "parent_task_id", type=int, default=None, help="Parent task id.")
@click.option("--conversation-id", type=int, default=None)
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None)
def tasks_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    task_input: str,
    priority: int,
    parent_task_id: int | None,
    conversation_id: int | None,
    timeout_ms: int | None,
) -> None:
    """Add a task to the queue."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.task_enqueue(
            TaskEnqueueCommand(
                db_path=db_path,
                title=title,
                input=task_input,
                priority=priority,
                parent_task_id=parent_task_id,
                conversation_id=conversation_id,
                timeout_ms=timeout_ms,
            ),
        ),
    )


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in AgentTaskStatus]),
    default=None,
)
@click.option("--conversation-id", type=int, default=None)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    conversation_id: int | None,
    limit: int,
    offset: int,
) -> None:
    """List tasks, newest first."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.task_list(
            TaskListCommand(
                db_path=db_path,
                status=status,
                conversation_id=conversation_id,
                limit=limit,
                offset=offset,
            ),
        ),
    )


@tasks.command("show")
@db_path_option
@click.argument("task_id", type=int)
def tasks_show(db_path: Path | None, task_id: int) -> None:
    """Show a task and its children."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.task_show(TaskRefCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("cancel")
@db_path_option
@click.argument("task_id", type=int)
def tasks_cancel(db_path: Path | None, task_id: int) -> None:
    """Cancel a queued or running task."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.task_cancel(TaskRefCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("delete")
@db_path_option
@click.argument("task_id", type=int)
def tasks_delete(db_path: Path | None, task_id: int) -> None:
    """Delete a task that has no active children."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.task_delete(TaskRefCommand(db_path=db_path, task_id=task_id)),
    )


@overseer.group()
def subagents() -> None:
    """Sub-agents spawned for cron runs and tasks."""


@subagents.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in SubAgentStatus]),
    default=None,
)
@click.option(
    "--type",
    "agent_type",
    type=click.Choice([agent_type.value for agent_type in SubAgentType]),
    default=None,
)
@click.option(
    "--session",
    "parent_session_id",
    default=None,
    help="Parent session id, for example `cron-job-3` or `task-12`.",
)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def subagents_list(
    db_path: Path | None,
    status: str | None,
    agent_type: str | None,
    parent_session_id: str | None,
    limit: int,
) -> None:
    """List sub-agents."""

    _invoke(
        lambda: SCHEDULER_CONTROLLER.subagent_list(
            SubAgentListCommand(
                db_path=db_path,
                status=status,
                agent_type=agent_type,
                parent_session_id=parent_session_id,
                limit=limit,
            ),
        ),
    )


@subagents.command("stats")
@db_path_option
def subagents_stats(db_path: Path | None) -> None:
    """Aggregate sub-agent counters."""

    _invoke(lambda: SCHEDULER_CONTROLLER.subagent_stats(EngineCommand(db_path=db_path)))


@overseer.group()
def engine() -> None:
    """Scheduler engine lifecycle."""


@engine.command("status")
@db_path_option
def engine_status(db_path: Path | None) -> None:
    """Show job, execution and queue counters."""

    _invoke(lambda: SCHEDULER_CONTROLLER.engine_status(EngineCommand(db_path=db_path)))


@engine.command("sweep")
@db_path_option
def engine_sweep(db_path: Path | None) -> None:
    """Finalize runs left behind by a crashed process.

    Every running execution, task and sub-agent in the database is marked as
    interrupted. Do not use it while an `engine run` daemon serves the same
    database: its in-flight runs would be failed under it.
    """

    _invoke(lambda: SCHEDULER_CONTROLLER.engine_sweep(EngineCommand(db_path=db_path)))


@engine.command("run")
@db_path_option
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help=(
        "Sweep interrupted runs, run a single tick, wait for dispatched work, then exit. "
        "Not for use while an `engine run` daemon serves the same database."
    ),
)
def engine_run(db_path: Path | None, once: bool) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""

    _invoke(lambda: SCHEDULER_CONTROLLER.engine_run(EngineCommand(db_path=db_path, once=once)))


def _invoke(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (OrchestrationError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    overseer()
