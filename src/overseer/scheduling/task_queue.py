"""Persistent priority queue of ad-hoc agent tasks."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from overseer.scheduling.errors import (
    InvalidTaskInput,
    InvalidTransition,
    TaskHasActiveChildren,
    TaskNotFound,
)
from overseer.scheduling.models import (
    ACTIVE_TASK_STATUSES,
    AgentTaskCreate,
    AgentTaskStatus,
    AgentTaskView,
    FailureClass,
    TaskResult,
)
from overseer.scheduling.tenant import TenantContext, TenantGuard
from overseer.storage.common import (
    clamp_limit,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from overseer.storage.database import Database
from overseer.storage.sqlmodel_models import AgentTaskRow

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
MIN_PRIORITY = 0
MAX_PRIORITY = 100


class TaskQueue:
    """Queue persistence facade for agent tasks, scoped to one tenant.

    Lower `priority` values are claimed first; ties go to the oldest task.
    """

    def __init__(
        self,
        database: Database,
        tenant: TenantContext,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.guard = TenantGuard(tenant)
        self.clock = clock

    def enqueue(self, payload: AgentTaskCreate) -> int:
        """Create a queued task and return its id."""

        owner_user_id = self.guard.authorize_owner(payload.owner_user_id)
        _validate_payload(payload)
        now = to_db_datetime(self.clock())
        with self.database.session() as session:
            if payload.parent_task_id is not None:
                parent = session.exec(
                    select(AgentTaskRow).where(col(AgentTaskRow.id) == payload.parent_task_id),
                ).one_or_none()
                if parent is not None:
                    self.guard.check_row(
                        parent,
                        kind="task",
                        ident=payload.parent_task_id,
                    )
                if parent is None or parent.owner_user_id != owner_user_id:
                    raise InvalidTaskInput(
                        f"Parent task {payload.parent_task_id} does not exist for this owner.",
                    )
            row = AgentTaskRow(
                owner_user_id=owner_user_id,
                conversation_id=payload.conversation_id,
                parent_task_id=payload.parent_task_id,
                title=payload.title.strip(),
                input=payload.input,
                status=AgentTaskStatus.QUEUED.value,
                priority=payload.priority,
                timeout_ms=payload.timeout_ms,
                created_at=now,
                artifacts_json=dump_json(payload.artifacts),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            task_id = row.id or 0
        logger.info(
            "Enqueued task %s (priority=%s, parent=%s)",
            task_id,
            payload.priority,
            payload.parent_task_id,
        )
        return task_id

    def claim_next(self, worker_capacity: int) -> AgentTaskView | None:
        """Atomically move the best queued task to `running`.

        Returns `None` when no worker slot is free or nothing is queued.
        """

        if worker_capacity <= 0:
            return None
        while True:
            now = to_db_datetime(self.clock())
            with self.database.session() as session:
                candidate = session.exec(
                    self.guard.scope(
                        select(AgentTaskRow).where(
                            col(AgentTaskRow.status) == AgentTaskStatus.QUEUED.value,
                        ),
                        AgentTaskRow,
                    )
                    .order_by(
                        col(AgentTaskRow.priority).asc(),
                        col(AgentTaskRow.created_at).asc(),
                        col(AgentTaskRow.id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(  # type: ignore[call-overload]
                    sa_update(AgentTaskRow)
                    .where(
                        col(AgentTaskRow.id) == candidate.id,
                        col(AgentTaskRow.status) == AgentTaskStatus.QUEUED.value,
                    )
                    .values(
                        status=AgentTaskStatus.RUNNING.value,
                        started_at=now,
                        finished_at=None,
                        error=None,
                        error_code=None,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                session.refresh(candidate)
                return _to_task_view(candidate)

    def assign_sub_agent(self, task_id: int, sub_agent_id: str) -> None:
        with self.database.session() as session:
            result = session.exec(  # type: ignore[call-overload]
                self.guard.scope(
                    sa_update(AgentTaskRow).where(col(AgentTaskRow.id) == task_id),
                    AgentTaskRow,
                ).values(assigned_sub_agent_id=sub_agent_id),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFound(task_id)
            session.commit()

    def complete(self, task_id: int, result: TaskResult) -> bool:
        """Mark a running task as completed. Children are not touched."""

        values: dict[str, object] = {
            "status": AgentTaskStatus.COMPLETED.value,
            "finished_at": to_db_datetime(self.clock()),
            "result_summary": result.summary,
            "result_full": result.full,
        }
        if result.artifacts is not None:
            values["artifacts_json"] = dump_json(result.artifacts)
        return self._finish_running(task_id, values)

    def fail(
        self,
        task_id: int,
        error: str,
        *,
        error_code: FailureClass | str | None = None,
    ) -> bool:
        """Mark a running task as failed. Children are not touched."""

        code = error_code.value if isinstance(error_code, FailureClass) else error_code
        return self._finish_running(
            task_id,
            {
                "status": AgentTaskStatus.FAILED.value,
                "finished_at": to_db_datetime(self.clock()),
                "error": error,
                "error_code": code,
            },
        )

    def cancel(self, task_id: int) -> AgentTaskView:
        """Cancel a queued or running task."""

        now = to_db_datetime(self.clock())
        with self.database.session() as session:
            row = self._get_row(session, task_id)
            previous = AgentTaskStatus(row.status)
            if previous not in ACTIVE_TASK_STATUSES:
                raise InvalidTransition(f"Task cannot be canceled from status={row.status}")

            result = session.exec(  # type: ignore[call-overload]
                sa_update(AgentTaskRow)
                .where(
                    col(AgentTaskRow.id) == task_id,
                    col(AgentTaskRow.status) == previous.value,
                )
                .values(status=AgentTaskStatus.CANCELED.value, finished_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransition(
                    "Task state changed concurrently while canceling; "
                    f"please retry command (task_id={task_id}).",
                )
            session.commit()
            session.refresh(row)
            logger.info("Canceled task %s (was %s)", task_id, previous.value)
            return _to_task_view(row)

    def get(self, task_id: int) -> AgentTaskView:
        with self.database.session() as session:
            return _to_task_view(self._get_row(session, task_id))

    def list_tasks(
        self,
        *,
        status: AgentTaskStatus | None = None,
        conversation_id: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AgentTaskView]:
        """List recent tasks, optionally filtered by status."""

        statement = self.guard.scope(select(AgentTaskRow), AgentTaskRow)
        if status is not None:
            statement = statement.where(col(AgentTaskRow.status) == status.value)
        if conversation_id is not None:
            statement = statement.where(col(AgentTaskRow.conversation_id) == conversation_id)
        statement = (
            statement.order_by(col(AgentTaskRow.created_at).desc(), col(AgentTaskRow.id).desc())
            .offset(max(0, offset))
            .limit(clamp_limit(limit))
        )
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def children(self, task_id: int) -> list[AgentTaskView]:
        statement = self.guard.scope(
            select(AgentTaskRow).where(col(AgentTaskRow.parent_task_id) == task_id),
            AgentTaskRow,
        ).order_by(col(AgentTaskRow.created_at).asc(), col(AgentTaskRow.id).asc())
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def count(self, *, status: AgentTaskStatus | None = None) -> int:
        statement = self.guard.scope(
            select(func.count()).select_from(AgentTaskRow),
            AgentTaskRow,
        )
        if status is not None:
            statement = statement.where(col(AgentTaskRow.status) == status.value)
        with self.database.session() as session:
            return int(session.exec(statement).one())

    def delete(self, task_id: int) -> None:
        """Delete a task; rejected while any child is queued or running."""

        with self.database.session() as session:
            row = self._get_row(session, task_id)
            active_child = session.exec(
                select(AgentTaskRow.id)
                .where(
                    col(AgentTaskRow.parent_task_id) == task_id,
                    col(AgentTaskRow.status).in_(
                        [status.value for status in ACTIVE_TASK_STATUSES],
                    ),
                )
                .limit(1),
            ).first()
            if active_child is not None:
                raise TaskHasActiveChildren(
                    f"Task {task_id} has queued or running children and cannot be deleted.",
                )
            session.exec(  # type: ignore[call-overload]
                sa_delete(AgentTaskRow).where(col(AgentTaskRow.id) == row.id),
            )
            session.commit()

    def sweep_interrupted(self, now: datetime | None = None) -> int:
        """Fail tasks left running by a previous process. Idempotent."""

        with self.database.session() as session:
            result = session.exec(  # type: ignore[call-overload]
                self.guard.scope(
                    sa_update(AgentTaskRow).where(
                        col(AgentTaskRow.status) == AgentTaskStatus.RUNNING.value,
                    ),
                    AgentTaskRow,
                ).values(
                    status=AgentTaskStatus.FAILED.value,
                    finished_at=to_db_datetime(now or self.clock()),
                    error="Interrupted: scheduler stopped before the task finished.",
                    error_code=FailureClass.INTERRUPTED.value,
                ),
            )
            session.commit()
        return int(result.rowcount)

    def _finish_running(self, task_id: int, values: dict[str, object]) -> bool:
        with self.database.session() as session:
            result = session.exec(  # type: ignore[call-overload]
                self.guard.scope(
                    sa_update(AgentTaskRow).where(
                        col(AgentTaskRow.id) == task_id,
                        col(AgentTaskRow.status) == AgentTaskStatus.RUNNING.value,
                    ),
                    AgentTaskRow,
                ).values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _get_row(self, session: Session, task_id: int) -> AgentTaskRow:
        row = session.exec(
            select(AgentTaskRow).where(col(AgentTaskRow.id) == task_id),
        ).one_or_none()
        if row is None:
            raise TaskNotFound(task_id)
        return self.guard.check_row(row, kind="task", ident=task_id)


def _validate_payload(payload: AgentTaskCreate) -> None:
    if not payload.title.strip():
        raise InvalidTaskInput("Task title must not be empty.")
    if not payload.input.strip():
        raise InvalidTaskInput("Task input must not be empty.")
    if not MIN_PRIORITY <= payload.priority <= MAX_PRIORITY:
        raise InvalidTaskInput(
            f"Task priority must be within [{MIN_PRIORITY}, {MAX_PRIORITY}], "
            f"got {payload.priority}.",
        )
    if payload.timeout_ms is not None and payload.timeout_ms <= 0:
        raise InvalidTaskInput("Task timeout_ms must be positive.")


def _to_task_view(row: AgentTaskRow) -> AgentTaskView:
    return AgentTaskView(
        id=row.id or 0,
        owner_user_id=row.owner_user_id,
        conversation_id=row.conversation_id,
        parent_task_id=row.parent_task_id,
        title=row.title,
        input=row.input,
        status=AgentTaskStatus(row.status),
        priority=row.priority,
        timeout_ms=row.timeout_ms,
        assigned_sub_agent_id=row.assigned_sub_agent_id,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        result_summary=row.result_summary,
        result_full=row.result_full,
        error=row.error,
        error_code=row.error_code,
        artifacts=load_json_object(row.artifacts_json) if row.artifacts_json else None,
    )
