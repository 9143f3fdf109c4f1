from pathlib import Path

import allure

from overseer.storage.alembic_runner import downgrade_base
from overseer.storage.database import Database

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]

SCHEDULER_TABLES = ["agent_tasks", "cron_executions", "cron_jobs", "sub_agents"]


def _table_names(database: Database) -> list[str]:
    rows = database._connection.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table'
          AND name IN ('agent_tasks', 'cron_executions', 'cron_jobs', 'sub_agents')
        ORDER BY name
        """
    ).fetchall()
    return [str(row["name"]) for row in rows]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    database = Database(tmp_path / "migrations.db")
    database.init_schema()

    row = database._connection.execute(
        "SELECT version_num FROM alembic_version LIMIT 1"
    ).fetchone()
    assert row is not None
    assert str(row["version_num"]) == "20261015_0002"
    assert _table_names(database) == SCHEDULER_TABLES

    running_index = database._connection.execute(
        "SELECT sql FROM sqlite_master WHERE name = 'uq_cron_executions_job_running'"
    ).fetchone()
    assert running_index is not None
    assert "status = 'running'" in str(running_index["sql"])
    database.close()


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    database = Database(tmp_path / "migrations.db")
    database.init_schema()
    database.init_schema()

    assert _table_names(database) == SCHEDULER_TABLES
    database.close()


def test_downgrade_removes_scheduler_tables(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    database = Database(db_path)
    database.init_schema()

    downgrade_base(db_path)

    assert _table_names(database) == []
    database.close()
