from __future__ import annotations

import asyncio

import allure
import pytest

from overseer.config import AgentSettings, SchedulerSettings
from overseer.scheduling.backend import CommandAgentExecutor, EchoAgentExecutor
from overseer.scheduling.errors import (
    InvalidJobDefinition,
    InvalidScheduleExpression,
    InvalidTaskInput,
    JobNotFound,
    TaskNotFound,
    TenantViolation,
)
from overseer.scheduling.models import (
    AgentTaskCreate,
    AgentTaskStatus,
    CronExecutionStatus,
    CronJobCreate,
    CronJobUpdate,
)
from overseer.scheduling.services import (
    CronJobService,
    SubAgentService,
    TaskService,
    build_engine,
    build_executor,
)
from overseer.scheduling.tenant import TenantContext

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Services"),
]


def _job(**overrides) -> CronJobCreate:
    values = {"name": "Digest", "cron_expression": "0 9 * * *", "prompt": "summarize inbox"}
    values.update(overrides)
    return CronJobCreate(**values)


@pytest.mark.parametrize(
    ("payload", "error"),
    [
        (_job(cron_expression="61 * * * *"), InvalidScheduleExpression),
        (_job(cron_expression="0 9 * *"), InvalidScheduleExpression),
        (_job(timezone="Mars/Olympus"), InvalidScheduleExpression),
        (_job(name="   "), InvalidJobDefinition),
        (_job(prompt=""), InvalidJobDefinition),
        (_job(max_retries=-1), InvalidJobDefinition),
        (_job(timeout_ms=0), InvalidJobDefinition),
    ],
)
def test_invalid_job_definitions_are_rejected_before_storage(
    database,
    tenant,
    clock,
    payload,
    error,
) -> None:
    service = CronJobService(database=database, tenant=tenant, clock=clock)

    with pytest.raises(error):
        service.create(payload)

    assert service.list_jobs() == []


def test_invalid_definitions_are_value_errors(database, tenant, clock) -> None:
    service = CronJobService(database=database, tenant=tenant, clock=clock)

    with pytest.raises(ValueError, match="Invalid cron expression"):
        service.create(_job(cron_expression="61 * * * *"))


def test_update_validates_new_schedule(database, tenant, clock) -> None:
    service = CronJobService(database=database, tenant=tenant, clock=clock)
    job = service.create(_job())

    with pytest.raises(InvalidScheduleExpression):
        service.update(job.id, CronJobUpdate(cron_expression="not a cron at all"))

    assert service.get(job.id).job.cron_expression == "0 9 * * *"


def test_job_defaults_come_from_settings(database, tenant, clock) -> None:
    settings = SchedulerSettings(default_max_retries=1, default_timeout_ms=42_000)
    service = CronJobService(database=database, tenant=tenant, settings=settings, clock=clock)

    job = service.create(_job())

    assert (job.max_retries, job.timeout_ms) == (1, 42_000)
    assert job.owner_user_id == tenant.owner_user_id


def test_get_includes_description_and_history(database, tenant, clock) -> None:
    service = CronJobService(database=database, tenant=tenant, clock=clock)
    job = service.create(_job())
    claim = service.store.claim_due_job(job.id, force=True)

    listing = service.get(job.id, history=3)
    plain = service.get(job.id)

    assert listing.schedule_description == "Daily at 09:00 UTC"
    assert listing.recent_executions is not None
    assert [item.id for item in listing.recent_executions] == [claim.execution.id]
    assert plain.recent_executions is None


def test_other_tenant_cannot_see_or_trigger_job(database, tenant, clock) -> None:
    owner = CronJobService(database=database, tenant=tenant, clock=clock)
    job = owner.create(_job())
    engine = build_engine(
        database=database,
        settings=SchedulerSettings(),
        executor=EchoAgentExecutor(),
        clock=clock,
    )
    stranger = CronJobService(
        database=database,
        tenant=TenantContext(owner_user_id=2),
        engine=engine,
        clock=clock,
    )

    with pytest.raises(TenantViolation):
        stranger.get(job.id)
    with pytest.raises(TenantViolation):
        stranger.list_executions(job_id=job.id)
    with pytest.raises(TenantViolation):
        asyncio.run(stranger.trigger(job.id))
    with pytest.raises(JobNotFound):
        stranger.get(job.id + 100)
    assert owner.list_executions() == []


def test_trigger_requires_engine(database, tenant, clock) -> None:
    service = CronJobService(database=database, tenant=tenant, clock=clock)
    job = service.create(_job())

    with pytest.raises(RuntimeError, match="scheduler engine"):
        asyncio.run(service.trigger(job.id))


def test_trigger_runs_through_engine(database, tenant, clock) -> None:
    engine = build_engine(
        database=database,
        settings=SchedulerSettings(),
        executor=EchoAgentExecutor(),
        clock=clock,
    )
    service = CronJobService(database=database, tenant=tenant, engine=engine, clock=clock)
    job = service.create(_job())

    async def _run():
        started = await service.trigger(job.id)
        await engine.wait_idle()
        return started

    started = asyncio.run(_run())

    executions = service.list_executions(job_id=job.id)
    assert [item.id for item in executions] == [started.id]
    assert executions[0].status == CronExecutionStatus.SUCCESS


def test_task_service_validates_and_cancels(database, tenant, clock) -> None:
    service = TaskService(database=database, tenant=tenant, clock=clock)

    with pytest.raises(InvalidTaskInput, match="priority"):
        service.enqueue(AgentTaskCreate(title="t", input="x", priority=200))

    parent = service.enqueue(AgentTaskCreate(title="parent", input="x"))
    child = service.enqueue(AgentTaskCreate(title="child", input="y", parent_task_id=parent.id))

    assert parent.status == AgentTaskStatus.QUEUED
    assert [item.id for item in service.children(parent.id)] == [child.id]
    assert service.cancel(child.id).status == AgentTaskStatus.CANCELED

    stranger = TaskService(database=database, tenant=TenantContext(owner_user_id=2))
    with pytest.raises(TenantViolation):
        stranger.get(parent.id)
    with pytest.raises(TaskNotFound):
        stranger.get(parent.id + 100)
    assert stranger.list_tasks() == []


def test_task_service_cancel_goes_through_engine(database, tenant, clock) -> None:
    engine = build_engine(
        database=database,
        settings=SchedulerSettings(),
        executor=EchoAgentExecutor(),
        clock=clock,
    )
    service = TaskService(database=database, tenant=tenant, engine=engine, clock=clock)
    task = service.enqueue(AgentTaskCreate(title="t", input="x"))

    assert service.cancel(task.id).status == AgentTaskStatus.CANCELED
    assert engine.tasks.count(status=AgentTaskStatus.QUEUED) == 0


def test_sub_agent_service_reports_stats_after_runs(database, tenant, clock) -> None:
    engine = build_engine(
        database=database,
        settings=SchedulerSettings(),
        executor=EchoAgentExecutor(),
        clock=clock,
    )
    tasks = TaskService(database=database, tenant=tenant, engine=engine, clock=clock)
    tasks.enqueue(AgentTaskCreate(title="Research", input="research the market"))
    tasks.enqueue(AgentTaskCreate(title="Fix", input="debug the failing build"))

    asyncio.run(engine.run_once())

    stats = SubAgentService(database=database, tenant=tenant).stats()
    assert stats.total == 2
    assert stats.completed == 2
    assert sum(stats.by_type.values()) == 2


def test_build_executor_selects_backend() -> None:
    assert isinstance(build_executor(AgentSettings()), EchoAgentExecutor)
    command = build_executor(AgentSettings(backend="command", command_template="echo {prompt}"))
    assert isinstance(command, CommandAgentExecutor)
