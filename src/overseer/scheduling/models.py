"""Domain models for cron jobs, executions, agent tasks and sub-agents."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobRunStatus(str, Enum):
    """Values of `cron_jobs.last_status`."""

    SUCCESS = "success"
    FAILED = "failed"
    RUNNING = "running"


class CronExecutionStatus(str, Enum):
    """Execution ledger lifecycle states."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class AgentTaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class SubAgentStatus(str, Enum):
    """Sub-agent lifecycle states."""

    IDLE = "idle"
    WORKING = "working"
    COMPLETED = "completed"
    ERROR = "error"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy and stored as error codes."""

    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"


TERMINAL_TASK_STATUSES = frozenset(
    {AgentTaskStatus.COMPLETED, AgentTaskStatus.FAILED, AgentTaskStatus.CANCELED},
)
ACTIVE_TASK_STATUSES = frozenset({AgentTaskStatus.QUEUED, AgentTaskStatus.RUNNING})


@dataclass(slots=True)
class CronJobCreate:
    """Input payload for creating a cron job."""

    name: str
    cron_expression: str
    prompt: str
    timezone: str = "UTC"
    description: str | None = None
    enabled: bool = True
    owner_user_id: int | None = None
    created_by: str = "system"
    max_retries: int | None = None
    timeout_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CronJobUpdate:
    """Partial update; `None` leaves the field untouched."""

    name: str | None = None
    description: str | None = None
    cron_expression: str | None = None
    timezone: str | None = None
    prompt: str | None = None
    enabled: bool | None = None
    max_retries: int | None = None
    timeout_ms: int | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class CronJobView:
    """Readable cron job view for services, engine and CLI."""

    id: int
    owner_user_id: int
    name: str
    description: str | None
    cron_expression: str
    timezone: str
    prompt: str
    enabled: bool
    created_by: str
    max_retries: int
    timeout_ms: int
    last_run_at: datetime | None
    next_run_at: datetime | None
    run_count: int
    last_status: JobRunStatus | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class CronExecutionView:
    """One row of the execution ledger."""

    id: int
    cron_job_id: int
    owner_user_id: int
    status: CronExecutionStatus
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    prompt: str
    output_summary: str | None
    error: str | None
    error_code: str | None
    attempts: int
    input_tokens: int
    output_tokens: int
    tool_calls_count: int
    job_name: str | None = None


@dataclass(slots=True)
class CronExecutionFinish:
    """Terminal outcome written exactly once to a running execution."""

    status: CronExecutionStatus
    completed_at: datetime
    output_summary: str | None = None
    error: str | None = None
    error_code: str | None = None
    attempts: int = 1
    input_tokens: int = 0
    output_tokens: int = 0
    tool_calls_count: int = 0


@dataclass(slots=True)
class CronJobListing:
    """Job view enriched for dashboard listings."""

    job: CronJobView
    schedule_description: str
    recent_executions: list[CronExecutionView] | None = None


@dataclass(slots=True)
class DueJobClaim:
    """A due job together with the running execution that now owns it."""

    job: CronJobView
    execution: CronExecutionView


@dataclass(slots=True)
class AgentTaskCreate:
    """Input payload for enqueuing an agent task."""

    title: str
    input: str
    priority: int = 5
    owner_user_id: int | None = None
    conversation_id: int | None = None
    parent_task_id: int | None = None
    timeout_ms: int | None = None
    artifacts: dict[str, Any] | None = None


@dataclass(slots=True)
class AgentTaskView:
    """Readable task view for services, runner and CLI."""

    id: int
    owner_user_id: int
    conversation_id: int | None
    parent_task_id: int | None
    title: str
    input: str
    status: AgentTaskStatus
    priority: int
    timeout_ms: int | None
    assigned_sub_agent_id: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    result_summary: str | None
    result_full: str | None
    error: str | None
    error_code: str | None
    artifacts: dict[str, Any] | None


@dataclass(slots=True)
class TaskResult:
    """Successful task outcome."""

    summary: str
    full: str | None = None
    artifacts: dict[str, Any] | None = None


@dataclass(slots=True)
class SubAgentCreate:
    owner_user_id: int
    agent_type: str
    parent_session_id: str | None = None
    name: str | None = None
    description: str | None = None
    assigned_task: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SubAgentView:
    """Stored sub-agent record."""

    id: int
    sub_agent_id: str
    parent_session_id: str | None
    owner_user_id: int
    name: str
    description: str | None
    agent_type: str
    status: SubAgentStatus
    assigned_task: str | None
    task_result: str | None
    step_count: int
    tokens_used: int
    metadata: dict[str, Any]
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class SubAgentStats:
    """Aggregate sub-agent counters."""

    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    completed: int = 0
    error: int = 0
    working: int = 0


@dataclass(slots=True)
class SweepResult:
    """Rows finalized by the startup orphan sweep."""

    executions: int = 0
    jobs: int = 0
    tasks: int = 0
    sub_agents: int = 0

    @property
    def total(self) -> int:
        return self.executions + self.jobs + self.tasks + self.sub_agents


@dataclass(slots=True)
class EngineStatus:
    """Live snapshot of the scheduler engine."""

    running: bool
    active_jobs: int
    total_jobs: int
    enabled_jobs: int
    poll_interval_ms: int
    active_tasks: int = 0
    max_concurrent_executions: int = 0
