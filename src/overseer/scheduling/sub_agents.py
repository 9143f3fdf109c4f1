"""Registry of sub-agents spawned to execute tasks and cron prompts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import ColumnElement, case, func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from overseer.scheduling.errors import InvalidTransition, SubAgentNotFound
from overseer.scheduling.models import (
    SubAgentCreate,
    SubAgentStats,
    SubAgentStatus,
    SubAgentView,
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
from overseer.storage.sqlmodel_models import SubAgentRow

logger = logging.getLogger(__name__)


class SubAgentType(str, Enum):
    """Specializations a sub-agent can be spawned with."""

    GENERIC = "generic"
    PLANNER = "planner"
    CODE = "code"
    SYSTEM = "system"
    SECURITY = "security"
    EVALUATOR = "evaluator"


@dataclass(frozen=True, slots=True)
class SubAgentProfile:
    name: str
    description: str


SUB_AGENT_PROFILES: dict[SubAgentType, SubAgentProfile] = {
    SubAgentType.GENERIC: SubAgentProfile("Worker", "Generic worker with full tool access"),
    SubAgentType.PLANNER: SubAgentProfile(
        "Planner",
        "Planning-only agent: decomposes tasks into actionable steps",
    ),
    SubAgentType.CODE: SubAgentProfile("Coder", "Code changes and tests within the tenant sandbox"),
    SubAgentType.SYSTEM: SubAgentProfile("Operator", "System operations (permission-gated)"),
    SubAgentType.SECURITY: SubAgentProfile(
        "Security",
        "Security review and hardening checks (read-mostly)",
    ),
    SubAgentType.EVALUATOR: SubAgentProfile(
        "Evaluator",
        "Verification agent: runs checks and reports pass/fail",
    ),
}

_TYPE_KEYWORDS: tuple[tuple[SubAgentType, tuple[str, ...]], ...] = (
    (SubAgentType.PLANNER, ("plan", "decompose", "break down")),
    (SubAgentType.SECURITY, ("security", "vulnerability", "hardening")),
    (SubAgentType.EVALUATOR, ("test", "verify", "lint", "build")),
    (SubAgentType.SYSTEM, ("deploy", "server", "nginx", "systemd")),
    (SubAgentType.CODE, ("refactor", "typescript", "python", "code")),
)

# Allowed source states for each target state.
_TRANSITIONS: dict[SubAgentStatus, frozenset[SubAgentStatus]] = {
    SubAgentStatus.WORKING: frozenset({SubAgentStatus.IDLE}),
    SubAgentStatus.COMPLETED: frozenset({SubAgentStatus.WORKING}),
    SubAgentStatus.ERROR: frozenset({SubAgentStatus.IDLE, SubAgentStatus.WORKING}),
}


def select_agent_type(task_description: str) -> SubAgentType:
    """Pick a specialization from keywords in the task text."""

    text = task_description.lower()
    for agent_type, keywords in _TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return agent_type
    return SubAgentType.GENERIC


class SubAgentRegistry:
    """Durable sub-agent lifecycle records, scoped to one tenant."""

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

    def create(self, payload: SubAgentCreate) -> SubAgentView:
        """Register an `idle` sub-agent with a fresh external handle."""

        owner_user_id = self.guard.authorize_owner(payload.owner_user_id)
        agent_type = SubAgentType(payload.agent_type)
        profile = SUB_AGENT_PROFILES[agent_type]
        now = to_db_datetime(self.clock())
        with self.database.session() as session:
            row = SubAgentRow(
                sub_agent_id=f"{agent_type.value}-{uuid4().hex[:12]}",
                parent_session_id=payload.parent_session_id,
                owner_user_id=owner_user_id,
                name=payload.name or profile.name,
                description=payload.description or profile.description,
                agent_type=agent_type.value,
                status=SubAgentStatus.IDLE.value,
                assigned_task=payload.assigned_task,
                step_count=0,
                tokens_used=0,
                metadata_json=dump_json(payload.metadata),
                created_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.debug("Registered sub-agent %s (%s)", row.sub_agent_id, agent_type.value)
            return _to_sub_agent_view(row)

    def transition(  # noqa: PLR0913
        self,
        sub_agent_id: str,
        status: SubAgentStatus,
        *,
        task_result: str | None = None,
        step_count: int | None = None,
        tokens_used: int | None = None,
    ) -> SubAgentView:
        """Move a sub-agent forward; raises `InvalidTransition` from a terminal state."""

        allowed_from = _TRANSITIONS.get(status)
        if allowed_from is None:
            raise InvalidTransition(f"Sub-agent cannot transition to {status.value}")

        now = to_db_datetime(self.clock())
        values: dict[str, object] = {"status": status.value}
        if status == SubAgentStatus.WORKING:
            values["started_at"] = now
        else:
            values["completed_at"] = now
        if task_result is not None:
            values["task_result"] = task_result
        if step_count is not None:
            values["step_count"] = step_count
        if tokens_used is not None:
            values["tokens_used"] = tokens_used

        with self.database.session() as session:
            row = self._get_row(session, sub_agent_id)
            result = session.exec(  # type: ignore[call-overload]
                sa_update(SubAgentRow)
                .where(
                    col(SubAgentRow.id) == row.id,
                    col(SubAgentRow.status).in_([state.value for state in allowed_from]),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransition(
                    f"Sub-agent {sub_agent_id} cannot move from {row.status} to {status.value}",
                )
            session.commit()
            session.refresh(row)
            return _to_sub_agent_view(row)

    def get(self, sub_agent_id: str) -> SubAgentView:
        with self.database.session() as session:
            return _to_sub_agent_view(self._get_row(session, sub_agent_id))

    def list_sub_agents(
        self,
        *,
        status: SubAgentStatus | None = None,
        agent_type: SubAgentType | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[SubAgentView]:
        """List sub-agents newest first, filtered by status and/or type."""

        statement = self.guard.scope(select(SubAgentRow), SubAgentRow)
        if status is not None:
            statement = statement.where(col(SubAgentRow.status) == status.value)
        if agent_type is not None:
            statement = statement.where(
                col(SubAgentRow.agent_type) == SubAgentType(agent_type).value,
            )
        statement = (
            statement.order_by(col(SubAgentRow.created_at).desc(), col(SubAgentRow.id).desc())
            .offset(max(0, offset))
            .limit(clamp_limit(limit))
        )
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return [_to_sub_agent_view(row) for row in rows]

    def list_by_parent_session(self, parent_session_id: str) -> list[SubAgentView]:
        statement = self.guard.scope(
            select(SubAgentRow).where(col(SubAgentRow.parent_session_id) == parent_session_id),
            SubAgentRow,
        ).order_by(col(SubAgentRow.created_at).asc(), col(SubAgentRow.id).asc())
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return [_to_sub_agent_view(row) for row in rows]

    def stats(self) -> SubAgentStats:
        """Totals per type plus completed/error/working counters."""

        statement = self.guard.scope(
            select(
                SubAgentRow.agent_type,
                func.count(),
                _count_status(SubAgentStatus.COMPLETED),
                _count_status(SubAgentStatus.ERROR),
                _count_status(SubAgentStatus.WORKING),
            ).group_by(col(SubAgentRow.agent_type)),
            SubAgentRow,
        )
        with self.database.session() as session:
            rows = session.exec(statement).all()

        stats = SubAgentStats()
        for agent_type, total, completed, error, working in rows:
            stats.by_type[agent_type] = int(total)
            stats.total += int(total)
            stats.completed += int(completed or 0)
            stats.error += int(error or 0)
            stats.working += int(working or 0)
        return stats

    def sweep_interrupted(self, now: datetime | None = None) -> int:
        """Move sub-agents left idle/working by a previous process to `error`."""

        db_now = to_db_datetime(now or self.clock())
        with self.database.session() as session:
            result = session.exec(  # type: ignore[call-overload]
                self.guard.scope(
                    sa_update(SubAgentRow).where(
                        col(SubAgentRow.status).in_(
                            [SubAgentStatus.IDLE.value, SubAgentStatus.WORKING.value],
                        ),
                    ),
                    SubAgentRow,
                ).values(
                    status=SubAgentStatus.ERROR.value,
                    completed_at=db_now,
                    task_result="Interrupted: scheduler stopped before the sub-agent finished.",
                ),
            )
            session.commit()
        return int(result.rowcount)

    def _get_row(self, session: Session, sub_agent_id: str) -> SubAgentRow:
        row = session.exec(
            select(SubAgentRow).where(col(SubAgentRow.sub_agent_id) == sub_agent_id),
        ).one_or_none()
        if row is None:
            raise SubAgentNotFound(sub_agent_id)
        return self.guard.check_row(row, kind="sub-agent", ident=sub_agent_id)


def _to_sub_agent_view(row: SubAgentRow) -> SubAgentView:
    return SubAgentView(
        id=row.id or 0,
        sub_agent_id=row.sub_agent_id,
        parent_session_id=row.parent_session_id,
        owner_user_id=row.owner_user_id,
        name=row.name,
        description=row.description,
        agent_type=row.agent_type,
        status=SubAgentStatus(row.status),
        assigned_task=row.assigned_task,
        task_result=row.task_result,
        step_count=row.step_count,
        tokens_used=row.tokens_used,
        metadata=load_json_object(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )


def _count_status(status: SubAgentStatus) -> ColumnElement[Any]:
    return func.sum(case((col(SubAgentRow.status) == status.value, 1), else_=0))
