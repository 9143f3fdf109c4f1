"""SQLModel ORM tables for the scheduler, task queue and sub-agent registry."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text, text
from sqlmodel import Field, SQLModel


class CronJobRow(SQLModel, table=True):
    __tablename__ = "cron_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_cron_jobs_owner_time", "owner_user_id", "created_at"),
        Index("idx_cron_jobs_due", "enabled", "next_run_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    owner_user_id: int = Field(index=True)
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    cron_expression: str
    timezone: str = Field(default="UTC")
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    enabled: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, server_default=text("1")),
    )
    created_by: str = Field(default="system")
    max_retries: int = Field(default=3)
    timeout_ms: int = Field(default=300_000)
    last_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    next_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    run_count: int = Field(default=0)
    last_status: str | None = Field(default=None)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CronExecutionRow(SQLModel, table=True):
    __tablename__ = "cron_executions"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_cron_executions_job_running",
            "cron_job_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
        Index("idx_cron_executions_owner_time", "owner_user_id", "started_at"),
        Index("idx_cron_executions_status_time", "status", "started_at"),
        Index("idx_cron_executions_job_time", "cron_job_id", "started_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    cron_job_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("cron_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    owner_user_id: int
    status: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    duration_ms: int | None = None
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    output_summary: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    error_code: str | None = None
    attempts: int = Field(default=0)
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    tool_calls_count: int = Field(default=0)


class AgentTaskRow(SQLModel, table=True):
    __tablename__ = "agent_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_tasks_owner_time", "owner_user_id", "created_at"),
        Index("idx_agent_tasks_status_time", "status", "created_at"),
        Index("idx_agent_tasks_queue", "status", "priority", "created_at"),
        Index("idx_agent_tasks_conversation", "conversation_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    owner_user_id: int
    conversation_id: int | None = None
    parent_task_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("agent_tasks.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    title: str
    input: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    priority: int = Field(default=5)
    timeout_ms: int | None = None
    assigned_sub_agent_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result_summary: str | None = Field(default=None, sa_column=Column(Text))
    result_full: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    error_code: str | None = None
    artifacts_json: str | None = Field(default=None, sa_column=Column(Text))


class SubAgentRow(SQLModel, table=True):
    __tablename__ = "sub_agents"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_sub_agents_owner_time", "owner_user_id", "created_at"),
        Index("idx_sub_agents_status_time", "status", "created_at"),
        Index("idx_sub_agents_parent", "parent_session_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    sub_agent_id: str = Field(unique=True)
    parent_session_id: str | None = None
    owner_user_id: int
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    agent_type: str = Field(index=True)
    status: str
    assigned_task: str | None = Field(default=None, sa_column=Column(Text))
    task_result: str | None = Field(default=None, sa_column=Column(Text))
    step_count: int = Field(default=0)
    tokens_used: int = Field(default=0)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
