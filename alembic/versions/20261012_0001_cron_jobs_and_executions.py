"""Create cron job definitions and execution ledger tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "cron_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("cron_expression", sa.String(), nullable=False),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_by", sa.String(), nullable=False, server_default="system"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("timeout_ms", sa.Integer(), nullable=False, server_default=sa.text("300000")),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_status", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_cron_jobs_owner_user_id", "cron_jobs", ["owner_user_id"])
    op.create_index("idx_cron_jobs_owner_time", "cron_jobs", ["owner_user_id", "created_at"])
    op.create_index("idx_cron_jobs_due", "cron_jobs", ["enabled", "next_run_at"])

    op.create_table(
        "cron_executions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("cron_job_id", sa.Integer(), nullable=False),
        sa.Column("owner_user_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="running"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("output_summary", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("input_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("output_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tool_calls_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["cron_job_id"], ["cron_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_cron_executions_owner_time",
        "cron_executions",
        ["owner_user_id", "started_at"],
    )
    op.create_index(
        "idx_cron_executions_status_time",
        "cron_executions",
        ["status", "started_at"],
    )
    op.create_index(
        "idx_cron_executions_job_time",
        "cron_executions",
        ["cron_job_id", "started_at"],
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_cron_executions_job_running
            ON cron_executions (cron_job_id)
            WHERE status = 'running'
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_cron_executions_job_running"))
    op.drop_index("idx_cron_executions_job_time", table_name="cron_executions")
    op.drop_index("idx_cron_executions_status_time", table_name="cron_executions")
    op.drop_index("idx_cron_executions_owner_time", table_name="cron_executions")
    op.drop_table("cron_executions")
    op.drop_index("idx_cron_jobs_due", table_name="cron_jobs")
    op.drop_index("idx_cron_jobs_owner_time", table_name="cron_jobs")
    op.drop_index("ix_cron_jobs_owner_user_id", table_name="cron_jobs")
    op.drop_table("cron_jobs")
