"""Add agent task queue and sub-agent registry tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261015_0002"
down_revision = "20261012_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("conversation_id", sa.Integer(), nullable=True),
        sa.Column("parent_task_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("input", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("timeout_ms", sa.Integer(), nullable=True),
        sa.Column("assigned_sub_agent_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_summary", sa.Text(), nullable=True),
        sa.Column("result_full", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("artifacts_json", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["parent_task_id"], ["agent_tasks.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_agent_tasks_parent_task_id", "agent_tasks", ["parent_task_id"])
    op.create_index("idx_agent_tasks_owner_time", "agent_tasks", ["owner_user_id", "created_at"])
    op.create_index("idx_agent_tasks_status_time", "agent_tasks", ["status", "created_at"])
    op.create_index(
        "idx_agent_tasks_queue",
        "agent_tasks",
        ["status", "priority", "created_at"],
    )
    op.create_index(
        "idx_agent_tasks_conversation",
        "agent_tasks",
        ["conversation_id", "created_at"],
    )

    op.create_table(
        "sub_agents",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sub_agent_id", sa.String(), nullable=False),
        sa.Column("parent_session_id", sa.String(), nullable=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("agent_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="idle"),
        sa.Column("assigned_task", sa.Text(), nullable=True),
        sa.Column("task_result", sa.Text(), nullable=True),
        sa.Column("step_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sub_agent_id", name="uq_sub_agents_sub_agent_id"),
    )
    op.create_index("ix_sub_agents_agent_type", "sub_agents", ["agent_type"])
    op.create_index("idx_sub_agents_owner_time", "sub_agents", ["owner_user_id", "created_at"])
    op.create_index("idx_sub_agents_status_time", "sub_agents", ["status", "created_at"])
    op.create_index("idx_sub_agents_parent", "sub_agents", ["parent_session_id"])


def downgrade() -> None:
    op.drop_index("idx_sub_agents_parent", table_name="sub_agents")
    op.drop_index("idx_sub_agents_status_time", table_name="sub_agents")
    op.drop_index("idx_sub_agents_owner_time", table_name="sub_agents")
    op.drop_index("ix_sub_agents_agent_type", table_name="sub_agents")
    op.drop_table("sub_agents")
    op.drop_index("idx_agent_tasks_conversation", table_name="agent_tasks")
    op.drop_index("idx_agent_tasks_queue", table_name="agent_tasks")
    op.drop_index("idx_agent_tasks_status_time", table_name="agent_tasks")
    op.drop_index("idx_agent_tasks_owner_time", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_parent_task_id", table_name="agent_tasks")
    op.drop_table("agent_tasks")
