"""Job store and execution ledger backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import exists, func
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from overseer.scheduling.cron import next_fire_time, validate_expression
from overseer.scheduling.errors import ClaimConflict, JobBusy, JobNotFound
from overseer.scheduling.models import (
    CronExecutionFinish,
    CronExecutionStatus,
    CronExecutionView,
    CronJobCreate,
    CronJobUpdate,
    CronJobView,
    DueJobClaim,
    JobRunStatus,
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
from overseer.storage.sqlmodel_models import CronExecutionRow, CronJobRow

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Interrupted: scheduler stopped before the run finished."


class CronJobStore:
    """Cron job definitions plus their execution ledger, scoped to one tenant."""

    def __init__(  # noqa: PLR0913
        self,
        database: Database,
        tenant: TenantContext,
        *,
        clock: Callable[[], datetime] = utc_now,
        default_max_retries: int = 3,
        default_timeout_ms: int = 300_000,
    ) -> None:
        self.database = database
        self.guard = TenantGuard(tenant)
        self.clock = clock
        self.default_max_retries = default_max_retries
        self.default_timeout_ms = default_timeout_ms

    # Job definitions

    def create(self, payload: CronJobCreate) -> CronJobView:
        """Validate the schedule and insert a job with its first `next_run_at`."""

        owner_user_id = self.guard.authorize_owner(payload.owner_user_id)
        validate_expression(payload.cron_expression, payload.timezone)
        now = self.clock()
        next_run_at = (
            next_fire_time(payload.cron_expression, payload.timezone, now)
            if payload.enabled
            else None
        )
        with self.database.session() as session:
            row = CronJobRow(
                owner_user_id=owner_user_id,
                name=payload.name,
                description=payload.description,
                cron_expression=payload.cron_expression.strip(),
                timezone=payload.timezone,
                prompt=payload.prompt,
                enabled=payload.enabled,
                created_by=payload.created_by,
                max_retries=(
                    payload.max_retries
                    if payload.max_retries is not None
                    else self.default_max_retries
                ),
                timeout_ms=(
                    payload.timeout_ms
                    if payload.timeout_ms is not None
                    else self.default_timeout_ms
                ),
                next_run_at=to_db_datetime(next_run_at) if next_run_at is not None else None,
                run_count=0,
                metadata_json=dump_json(payload.metadata),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Created cron job %s (%s) for user %s", row.id, row.name, owner_user_id)
            return _to_job_view(row)

    def get(self, job_id: int) -> CronJobView:
        with self.database.session() as session:
            return _to_job_view(self._get_row(session, job_id))

    def list_jobs(
        self,
        *,
        enabled: bool | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[CronJobView]:
        """List jobs newest first."""

        statement = self.guard.scope(select(CronJobRow), CronJobRow)
        if enabled is not None:
            statement = statement.where(col(CronJobRow.enabled).is_(enabled))
        statement = (
            statement.order_by(col(CronJobRow.created_at).desc(), col(CronJobRow.id).desc())
            .offset(max(0, offset))
            .limit(clamp_limit(limit))
        )
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def count(self, *, enabled: bool | None = None) -> int:
        statement = self.guard.scope(select(func.count()).select_from(CronJobRow), CronJobRow)
        if enabled is not None:
            statement = statement.where(col(CronJobRow.enabled).is_(enabled))
        with self.database.session() as session:
            return int(session.exec(statement).one())

    def update(self, job_id: int, changes: CronJobUpdate) -> CronJobView:
        """Apply a partial update; schedule changes recompute `next_run_at`."""

        now = self.clock()
        with self.database.session() as session:
            row = self._get_row(session, job_id)
            expression = changes.cron_expression or row.cron_expression
            timezone = changes.timezone or row.timezone
            schedule_changed = (
                changes.cron_expression is not None or changes.timezone is not None
            )
            if schedule_changed:
                validate_expression(expression, timezone)

            for field_name in ("name", "description", "prompt", "max_retries", "timeout_ms"):
                value = getattr(changes, field_name)
                if value is not None:
                    setattr(row, field_name, value)
            if changes.metadata is not None:
                row.metadata_json = dump_json(changes.metadata)
            row.cron_expression = expression.strip()
            row.timezone = timezone

            enabled = row.enabled if changes.enabled is None else changes.enabled
            if not enabled:
                row.next_run_at = None
            elif schedule_changed or not row.enabled or row.next_run_at is None:
                row.next_run_at = to_db_datetime(next_fire_time(expression, timezone, now))
            row.enabled = enabled
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def enable(self, job_id: int) -> CronJobView:
        return self.update(job_id, CronJobUpdate(enabled=True))

    def disable(self, job_id: int) -> CronJobView:
        """Disable a job; an in-flight run is left to finish."""

        return self.update(job_id, CronJobUpdate(enabled=False))

    def delete(self, job_id: int) -> None:
        """Delete a job and its ledger; rejected while an execution is running."""

        with self.database.session() as session:
            row = self._get_row(session, job_id)
            if _has_running_execution(session, job_id):
                raise JobBusy(f"Cron job {job_id} has a running execution and cannot be deleted.")
            session.exec(  # type: ignore[call-overload]
                sa_delete(CronJobRow).where(col(CronJobRow.id) == row.id),
            )
            session.commit()
        logger.info("Deleted cron job %s", job_id)

    # Dispatch

    def find_due(self, now: datetime | None = None) -> list[CronJobView]:
        """Enabled jobs whose `next_run_at` has passed and that are not running."""

        db_now = to_db_datetime(now or self.clock())
        running = exists().where(
            col(CronExecutionRow.cron_job_id) == col(CronJobRow.id),
            col(CronExecutionRow.status) == CronExecutionStatus.RUNNING.value,
        )
        statement = self.guard.scope(
            select(CronJobRow).where(
                col(CronJobRow.enabled).is_(True),
                col(CronJobRow.next_run_at).is_not(None),
                col(CronJobRow.next_run_at) <= db_now,
                ~running,
            ),
            CronJobRow,
        ).order_by(col(CronJobRow.next_run_at).asc(), col(CronJobRow.id).asc())
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def claim_due_job(
        self,
        job_id: int,
        *,
        now: datetime | None = None,
        force: bool = False,
    ) -> DueJobClaim:
        """Atomically advance the job schedule and open its running execution.

        The job row update is a compare-and-set on `enabled`/`next_run_at`
        (skipped with `force=True` for manual runs), and the execution insert
        is guarded by the partial unique index on running executions. Losing
        either race raises `ClaimConflict`.
        """

        now = now or self.clock()
        db_now = to_db_datetime(now)
        with self.database.session() as session:
            row = self._get_row(session, job_id)
            if _has_running_execution(session, job_id):
                raise ClaimConflict(f"Cron job {job_id} already has a running execution.")

            next_run_at = (
                to_db_datetime(next_fire_time(row.cron_expression, row.timezone, now))
                if row.enabled
                else None
            )
            statement = sa_update(CronJobRow).where(col(CronJobRow.id) == job_id)
            if not force:
                statement = statement.where(
                    col(CronJobRow.enabled).is_(True),
                    col(CronJobRow.next_run_at).is_not(None),
                    col(CronJobRow.next_run_at) <= db_now,
                )
            result = session.exec(  # type: ignore[call-overload]
                self.guard.scope(statement, CronJobRow).values(
                    last_run_at=db_now,
                    next_run_at=next_run_at,
                    last_status=JobRunStatus.RUNNING.value,
                    updated_at=db_now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimConflict(f"Cron job {job_id} is no longer due.")

            execution = CronExecutionRow(
                cron_job_id=job_id,
                owner_user_id=row.owner_user_id,
                status=CronExecutionStatus.RUNNING.value,
                started_at=db_now,
                prompt=row.prompt,
                attempts=0,
            )
            session.add(execution)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ClaimConflict(
                    f"Cron job {job_id} was claimed concurrently.",
                ) from exc
            session.refresh(row)
            session.refresh(execution)
            return DueJobClaim(
                job=_to_job_view(row),
                execution=_to_execution_view(execution, job_name=row.name),
            )

    def finish_execution(
        self,
        execution_id: int,
        outcome: CronExecutionFinish,
    ) -> CronExecutionView | None:
        """Write the terminal outcome of a running execution exactly once.

        Returns `None` when the execution is no longer running (for example it
        was swept as interrupted), leaving the audit row untouched.
        """

        if outcome.status == CronExecutionStatus.RUNNING:
            raise ValueError("Execution outcome must be terminal.")
        completed_at = to_db_datetime(outcome.completed_at)
        with self.database.session() as session:
            execution = session.exec(
                select(CronExecutionRow).where(col(CronExecutionRow.id) == execution_id),
            ).one_or_none()
            if execution is None:
                return None
            self.guard.check_row(execution, kind="cron execution", ident=execution_id)
            duration_ms = max(
                0,
                int((completed_at - execution.started_at).total_seconds() * 1000),
            )
            result = session.exec(  # type: ignore[call-overload]
                sa_update(CronExecutionRow)
                .where(
                    col(CronExecutionRow.id) == execution_id,
                    col(CronExecutionRow.status) == CronExecutionStatus.RUNNING.value,
                )
                .values(
                    status=outcome.status.value,
                    completed_at=completed_at,
                    duration_ms=duration_ms,
                    output_summary=outcome.output_summary,
                    error=outcome.error,
                    error_code=outcome.error_code,
                    attempts=outcome.attempts,
                    input_tokens=outcome.input_tokens,
                    output_tokens=outcome.output_tokens,
                    tool_calls_count=outcome.tool_calls_count,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            job_status = (
                JobRunStatus.SUCCESS
                if outcome.status == CronExecutionStatus.SUCCESS
                else JobRunStatus.FAILED
            )
            session.exec(  # type: ignore[call-overload]
                sa_update(CronJobRow)
                .where(col(CronJobRow.id) == execution.cron_job_id)
                .values(
                    run_count=col(CronJobRow.run_count) + 1,
                    last_status=job_status.value,
                    updated_at=completed_at,
                ),
            )
            session.commit()
            session.refresh(execution)
            return _to_execution_view(execution)

    # Ledger reads

    def get_execution(self, execution_id: int) -> CronExecutionView | None:
        statement = (
            select(CronExecutionRow, CronJobRow.name)
            .join(CronJobRow, col(CronJobRow.id) == col(CronExecutionRow.cron_job_id))
            .where(col(CronExecutionRow.id) == execution_id)
        )
        with self.database.session() as session:
            found = session.exec(statement).one_or_none()
        if found is None:
            return None
        execution, job_name = found
        self.guard.check_row(execution, kind="cron execution", ident=execution_id)
        return _to_execution_view(execution, job_name=job_name)

    def list_executions(
        self,
        *,
        job_id: int | None = None,
        status: CronExecutionStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[CronExecutionView]:
        """Paginated ledger, newest first, with the owning job's name."""

        statement = self.guard.scope(
            select(CronExecutionRow, CronJobRow.name).join(
                CronJobRow,
                col(CronJobRow.id) == col(CronExecutionRow.cron_job_id),
                isouter=True,
            ),
            CronExecutionRow,
        )
        if job_id is not None:
            statement = statement.where(col(CronExecutionRow.cron_job_id) == job_id)
        if status is not None:
            statement = statement.where(col(CronExecutionRow.status) == status.value)
        statement = (
            statement.order_by(
                col(CronExecutionRow.started_at).desc(),
                col(CronExecutionRow.id).desc(),
            )
            .offset(max(0, offset))
            .limit(clamp_limit(limit))
        )
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return [_to_execution_view(row, job_name=name) for row, name in rows]

    def count_running_executions(self) -> int:
        statement = self.guard.scope(
            select(func.count())
            .select_from(CronExecutionRow)
            .where(col(CronExecutionRow.status) == CronExecutionStatus.RUNNING.value),
            CronExecutionRow,
        )
        with self.database.session() as session:
            return int(session.exec(statement).one())

    # Recovery

    def sweep_interrupted(self, now: datetime | None = None) -> tuple[int, int]:
        """Fail executions left running by a previous process.

        Returns `(executions, jobs)` touched. Running it again is a no-op.
        """

        db_now = to_db_datetime(now or self.clock())
        swept_executions = 0
        with self.database.session() as session:
            orphans = session.exec(
                self.guard.scope(
                    select(CronExecutionRow).where(
                        col(CronExecutionRow.status) == CronExecutionStatus.RUNNING.value,
                    ),
                    CronExecutionRow,
                ),
            ).all()
            for orphan in orphans:
                duration_ms = max(0, int((db_now - orphan.started_at).total_seconds() * 1000))
                result = session.exec(  # type: ignore[call-overload]
                    sa_update(CronExecutionRow)
                    .where(
                        col(CronExecutionRow.id) == orphan.id,
                        col(CronExecutionRow.status) == CronExecutionStatus.RUNNING.value,
                    )
                    .values(
                        status=CronExecutionStatus.FAILED.value,
                        completed_at=db_now,
                        duration_ms=duration_ms,
                        error=INTERRUPTED_ERROR,
                        error_code="interrupted",
                    ),
                )
                swept_executions += result.rowcount

            job_result = session.exec(  # type: ignore[call-overload]
                self.guard.scope(
                    sa_update(CronJobRow).where(
                        col(CronJobRow.last_status) == JobRunStatus.RUNNING.value,
                    ),
                    CronJobRow,
                ).values(last_status=JobRunStatus.FAILED.value, updated_at=db_now),
            )
            session.commit()
        if swept_executions or job_result.rowcount:
            logger.warning(
                "Swept %d interrupted executions and %d stale job statuses",
                swept_executions,
                job_result.rowcount,
            )
        return swept_executions, job_result.rowcount

    def _get_row(self, session: Session, job_id: int) -> CronJobRow:
        row = session.exec(select(CronJobRow).where(col(CronJobRow.id) == job_id)).one_or_none()
        if row is None:
            raise JobNotFound(job_id)
        return self.guard.check_row(row, kind="cron job", ident=job_id)


def _has_running_execution(session: Session, job_id: int) -> bool:
    found = session.exec(
        select(CronExecutionRow.id)
        .where(
            col(CronExecutionRow.cron_job_id) == job_id,
            col(CronExecutionRow.status) == CronExecutionStatus.RUNNING.value,
        )
        .limit(1),
    ).first()
    return found is not None


def _to_job_view(row: CronJobRow) -> CronJobView:
    return CronJobView(
        id=row.id or 0,
        owner_user_id=row.owner_user_id,
        name=row.name,
        description=row.description,
        cron_expression=row.cron_expression,
        timezone=row.timezone,
        prompt=row.prompt,
        enabled=bool(row.enabled),
        created_by=row.created_by,
        max_retries=row.max_retries,
        timeout_ms=row.timeout_ms,
        last_run_at=optional_utc(row.last_run_at),
        next_run_at=optional_utc(row.next_run_at),
        run_count=row.run_count,
        last_status=JobRunStatus(row.last_status) if row.last_status is not None else None,
        metadata=load_json_object(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_execution_view(
    row: CronExecutionRow,
    *,
    job_name: str | None = None,
) -> CronExecutionView:
    return CronExecutionView(
        id=row.id or 0,
        cron_job_id=row.cron_job_id,
        owner_user_id=row.owner_user_id,
        status=CronExecutionStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=optional_utc(row.completed_at),
        duration_ms=row.duration_ms,
        prompt=row.prompt,
        output_summary=row.output_summary,
        error=row.error,
        error_code=row.error_code,
        attempts=row.attempts,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        tool_calls_count=row.tool_calls_count,
        job_name=job_name,
    )
