"""Error taxonomy for the orchestration core."""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for errors raised by the orchestration core."""

    code = "orchestration_error"


class InvalidScheduleExpression(OrchestrationError, ValueError):
    """Cron expression or timezone rejected at job create/update time."""

    code = "invalid_schedule_expression"


class ClaimConflict(OrchestrationError):
    """Another tick or process already claimed the job or task."""

    code = "claim_conflict"


class ExecutionTimeout(OrchestrationError):
    """External agent loop did not resolve within the run budget."""

    code = "timeout"

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Agent run timed out after {timeout_ms}ms.")
        self.timeout_ms = timeout_ms


class ExternalLoopError(OrchestrationError):
    """The agent-loop collaborator raised or reported a failure."""

    code = "external_loop_error"


class TenantViolation(OrchestrationError, PermissionError):
    """Cross-tenant access attempted without the view-all capability."""

    code = "tenant_violation"


class NotFoundError(OrchestrationError, LookupError):
    code = "not_found"


class JobNotFound(NotFoundError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"Cron job not found: {job_id}")
        self.job_id = job_id


class TaskNotFound(NotFoundError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class SubAgentNotFound(NotFoundError):
    def __init__(self, sub_agent_id: str) -> None:
        super().__init__(f"Sub-agent not found: {sub_agent_id}")
        self.sub_agent_id = sub_agent_id


class InvalidTransition(OrchestrationError):
    """Status change not allowed from the row's current state."""

    code = "invalid_transition"


class JobBusy(OrchestrationError):
    """Job deletion rejected while an execution is running."""

    code = "job_busy"


class TaskHasActiveChildren(OrchestrationError):
    """Task deletion rejected while child tasks are queued or running."""

    code = "task_has_active_children"


class InvalidTaskInput(OrchestrationError, ValueError):
    code = "invalid_task_input"


class InvalidJobDefinition(OrchestrationError, ValueError):
    """Job fields other than the schedule failed validation."""

    code = "invalid_job_definition"
