from __future__ import annotations

import logging
from datetime import UTC, datetime

import allure
import pytest
from sqlmodel import select

from overseer.scheduling.errors import (
    InvalidTaskInput,
    JobNotFound,
    SubAgentNotFound,
    TaskNotFound,
    TenantViolation,
)
from overseer.scheduling.jobs import CronJobStore
from overseer.scheduling.models import (
    AgentTaskCreate,
    CronExecutionFinish,
    CronExecutionStatus,
    CronJobCreate,
    SubAgentCreate,
    SubAgentStatus,
)
from overseer.scheduling.sub_agents import SubAgentRegistry
from overseer.scheduling.task_queue import TaskQueue
from overseer.scheduling.tenant import TenantContext, TenantGuard
from overseer.storage.sqlmodel_models import CronJobRow

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Tenant Guard"),
]

ALICE = TenantContext(owner_user_id=1)
BOB = TenantContext(owner_user_id=2)
ADMIN = TenantContext(owner_user_id=99, can_view_all=True)


def test_scope_adds_owner_filter_only_without_view_all() -> None:
    statement = select(CronJobRow)

    scoped = str(TenantGuard(ALICE).scope(statement, CronJobRow))
    unscoped = str(TenantGuard(ADMIN).scope(statement, CronJobRow))

    assert "owner_user_id" in scoped
    assert "WHERE" not in unscoped


def test_authorize_owner_defaults_and_rejects_foreign_owner(caplog) -> None:
    guard = TenantGuard(ALICE)

    assert guard.authorize_owner(None) == 1
    assert guard.authorize_owner(1) == 1
    with pytest.raises(TenantViolation):
        guard.authorize_owner(2)
    assert "Tenant violation" in caplog.text
    assert TenantGuard(ADMIN).authorize_owner(2) == 2


def test_check_row_rejects_foreign_rows_and_logs(caplog) -> None:
    row = CronJobRow(id=5, owner_user_id=1, name="a", cron_expression="* * * * *", prompt="a")

    assert TenantGuard(ALICE).check_row(row, kind="cron job", ident=5) is row
    assert TenantGuard(ADMIN).check_row(row, kind="cron job", ident=5) is row
    with caplog.at_level(logging.WARNING, logger="overseer.scheduling.tenant"):
        with pytest.raises(TenantViolation, match="cannot access cron job 5"):
            TenantGuard(BOB).check_row(row, kind="cron job", ident=5)
    assert "Tenant violation: user 2 attempted to access cron job 5 owned by user 1" in caplog.text


def test_cron_jobs_and_executions_are_isolated(database, clock, caplog) -> None:
    alice_jobs = CronJobStore(database, ALICE, clock=clock)
    bob_jobs = CronJobStore(database, BOB, clock=clock)
    alice_job = alice_jobs.create(CronJobCreate(name="a", cron_expression="0 9 * * *", prompt="a"))
    bob_job = bob_jobs.create(CronJobCreate(name="b", cron_expression="0 9 * * *", prompt="b"))
    claim = alice_jobs.claim_due_job(alice_job.id, force=True)

    assert [job.id for job in alice_jobs.list_jobs()] == [alice_job.id]
    assert [job.id for job in bob_jobs.list_jobs()] == [bob_job.id]
    assert alice_jobs.count() == 1
    with caplog.at_level(logging.WARNING, logger="overseer.scheduling.tenant"):
        with pytest.raises(TenantViolation):
            bob_jobs.get(alice_job.id)
    assert f"attempted to access cron job {alice_job.id} owned by user 1" in caplog.text
    with pytest.raises(TenantViolation):
        bob_jobs.disable(alice_job.id)
    with pytest.raises(TenantViolation):
        bob_jobs.delete(alice_job.id)
    with pytest.raises(TenantViolation):
        bob_jobs.claim_due_job(alice_job.id, force=True)
    with pytest.raises(JobNotFound):
        bob_jobs.get(9999)

    assert bob_jobs.list_executions() == []
    with pytest.raises(TenantViolation):
        bob_jobs.get_execution(claim.execution.id)
    assert bob_jobs.get_execution(9999) is None
    assert bob_jobs.count_running_executions() == 0
    with pytest.raises(TenantViolation):
        bob_jobs.finish_execution(
            claim.execution.id,
            CronExecutionFinish(status=CronExecutionStatus.SUCCESS, completed_at=clock()),
        )
    assert alice_jobs.get(alice_job.id).enabled is True
    assert bob_jobs.find_due(datetime(2030, 1, 1, tzinfo=UTC)) == [bob_jobs.get(bob_job.id)]
    assert bob_jobs.sweep_interrupted() == (0, 0)
    assert alice_jobs.count_running_executions() == 1

    with pytest.raises(TenantViolation):
        alice_jobs.create(
            CronJobCreate(name="x", cron_expression="0 9 * * *", prompt="x", owner_user_id=2),
        )

    admin_jobs = CronJobStore(database, ADMIN, clock=clock)
    assert {job.id for job in admin_jobs.list_jobs()} == {alice_job.id, bob_job.id}


def test_agent_tasks_are_isolated(database, clock) -> None:
    alice_queue = TaskQueue(database, ALICE, clock=clock)
    bob_queue = TaskQueue(database, BOB, clock=clock)
    alice_task = alice_queue.enqueue(AgentTaskCreate(title="a", input="a", priority=0))
    bob_task = bob_queue.enqueue(AgentTaskCreate(title="b", input="b", priority=9))

    assert [task.id for task in bob_queue.list_tasks()] == [bob_task]
    with pytest.raises(TenantViolation):
        bob_queue.get(alice_task)
    with pytest.raises(TenantViolation):
        bob_queue.cancel(alice_task)
    with pytest.raises(TenantViolation):
        bob_queue.delete(alice_task)
    with pytest.raises(TaskNotFound):
        bob_queue.get(9999)
    assert alice_queue.get(alice_task).status.value == "queued"

    claimed = bob_queue.claim_next(1)
    assert claimed is not None
    assert claimed.id == bob_task

    with pytest.raises(TenantViolation):
        alice_queue.enqueue(AgentTaskCreate(title="x", input="x", owner_user_id=2))
    with pytest.raises(TenantViolation):
        alice_queue.enqueue(AgentTaskCreate(title="x", input="x", parent_task_id=bob_task))
    with pytest.raises(InvalidTaskInput, match="does not exist for this owner"):
        alice_queue.enqueue(AgentTaskCreate(title="x", input="x", parent_task_id=9999))

    admin_queue = TaskQueue(database, ADMIN, clock=clock)
    with pytest.raises(InvalidTaskInput, match="does not exist for this owner"):
        admin_queue.enqueue(
            AgentTaskCreate(title="x", input="x", owner_user_id=1, parent_task_id=bob_task),
        )


def test_sub_agents_are_isolated(database, clock, caplog) -> None:
    alice_agents = SubAgentRegistry(database, ALICE, clock=clock)
    bob_agents = SubAgentRegistry(database, BOB, clock=clock)
    agent = alice_agents.create(SubAgentCreate(owner_user_id=1, agent_type="generic"))
    bob_agents.create(SubAgentCreate(owner_user_id=2, agent_type="code"))

    with caplog.at_level(logging.WARNING, logger="overseer.scheduling.tenant"):
        with pytest.raises(TenantViolation):
            bob_agents.get(agent.sub_agent_id)
        with pytest.raises(TenantViolation):
            bob_agents.transition(agent.sub_agent_id, SubAgentStatus.WORKING)
    assert f"attempted to access sub-agent {agent.sub_agent_id}" in caplog.text
    with pytest.raises(SubAgentNotFound):
        bob_agents.get("generic-missing")
    assert {item.agent_type for item in bob_agents.list_sub_agents()} == {"code"}
    assert bob_agents.stats().by_type == {"code": 1}
    assert bob_agents.sweep_interrupted() == 1
    assert alice_agents.get(agent.sub_agent_id).status.value == "idle"

    with pytest.raises(TenantViolation):
        bob_agents.create(SubAgentCreate(owner_user_id=1, agent_type="generic"))
