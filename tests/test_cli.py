from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from overseer.main import overseer

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("CLI Operations"),
]


def _invoke(runner: CliRunner, db_path: Path, *args: str):
    group, command, *rest = args
    return runner.invoke(overseer, [group, command, "--db-path", str(db_path), *rest])


def test_cron_cli_create_run_and_inspect(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    created = _invoke(
        runner,
        db_path,
        "cron",
        "add",
        "--name",
        "Morning digest",
        "--schedule",
        "0 9 * * *",
        "--prompt",
        "summarize the inbox",
        "--timezone",
        "Europe/Berlin",
    )
    assert created.exit_code == 0, created.output
    assert "Cron job created: job_id=1 name=Morning digest" in created.output
    assert "Next run:" in created.output

    listed = _invoke(runner, db_path, "cron", "list")
    assert listed.exit_code == 0, listed.output
    assert "Cron jobs: 1" in listed.output
    assert "Daily at 09:00 Europe/Berlin" in listed.output

    ran = _invoke(runner, db_path, "cron", "run", "1")
    assert ran.exit_code == 0, ran.output
    assert "status=success" in ran.output
    assert "Output: summarize the inbox" in ran.output

    shown = _invoke(runner, db_path, "cron", "show", "1")
    assert shown.exit_code == 0, shown.output
    assert "run_count=1 last_status=success" in shown.output
    assert "Recent executions:" in shown.output

    executions = _invoke(runner, db_path, "cron", "executions", "--job-id", "1")
    assert executions.exit_code == 0, executions.output
    assert "Executions: 1" in executions.output
    assert "job=Morning digest" in executions.output

    disabled = _invoke(runner, db_path, "cron", "disable", "1")
    assert disabled.exit_code == 0, disabled.output
    assert "enabled=no next_run_at=-" in disabled.output

    deleted = _invoke(runner, db_path, "cron", "delete", "1")
    assert deleted.exit_code == 0, deleted.output
    assert "No cron jobs found." in _invoke(runner, db_path, "cron", "list").output


def test_cron_cli_rejects_invalid_expression(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    result = _invoke(
        runner,
        db_path,
        "cron",
        "add",
        "--name",
        "broken",
        "--schedule",
        "61 * * * *",
        "--prompt",
        "x",
    )

    assert result.exit_code != 0
    assert "Invalid cron expression" in result.output
    assert "No cron jobs found." in _invoke(runner, db_path, "cron", "list").output


def test_cron_cli_reports_missing_job(tmp_path: Path) -> None:
    result = _invoke(CliRunner(), tmp_path / "cli.db", "cron", "show", "404")

    assert result.exit_code != 0
    assert "404" in result.output


def test_task_cli_enqueue_run_and_inspect(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    first = _invoke(
        runner,
        db_path,
        "tasks",
        "enqueue",
        "--title",
        "Research",
        "--input",
        "research competitor pricing",
        "--priority",
        "1",
    )
    assert first.exit_code == 0, first.output
    assert "Task enqueued: task_id=1 status=queued priority=1" in first.output

    second = _invoke(runner, db_path, "tasks", "enqueue", "--title", "Later", "--input", "x")
    assert second.exit_code == 0, second.output
    canceled = _invoke(runner, db_path, "tasks", "cancel", "2")
    assert "Task canceled: task_id=2 status=canceled" in canceled.output

    queued = _invoke(runner, db_path, "tasks", "list", "--status", "queued")
    assert "Tasks: 1" in queued.output

    tick = _invoke(runner, db_path, "engine", "run", "--once")
    assert tick.exit_code == 0, tick.output
    assert "tasks=1" in tick.output

    shown = _invoke(runner, db_path, "tasks", "show", "1")
    assert shown.exit_code == 0, shown.output
    assert "status=completed" in shown.output
    assert "result=research competitor pricing" in shown.output

    stats = _invoke(runner, db_path, "subagents", "stats")
    assert stats.exit_code == 0, stats.output
    assert "Sub-agents: total=1 working=0 completed=1 error=0" in stats.output
    assert "By type: generic=1" in stats.output

    agents = _invoke(runner, db_path, "subagents", "list", "--session", "task-1")
    assert "Sub-agents: 1" in agents.output


def test_task_cli_rejects_out_of_range_priority(tmp_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        tmp_path / "cli.db",
        "tasks",
        "enqueue",
        "--title",
        "t",
        "--input",
        "x",
        "--priority",
        "200",
    )

    assert result.exit_code != 0


def test_engine_cli_status_and_sweep(tmp_path: Path, monkeypatch) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("OVERSEER_POLL_INTERVAL_SECONDS", "5")

    _invoke(runner, db_path, "cron", "add", "--name", "a", "--schedule", "*/5 * * * *",
            "--prompt", "x")
    _invoke(runner, db_path, "tasks", "enqueue", "--title", "t", "--input", "x")

    status = _invoke(runner, db_path, "engine", "status")
    assert status.exit_code == 0, status.output
    assert "Jobs: total=1 enabled=1" in status.output
    assert "Tasks: queued=1 running=0" in status.output
    assert "Poll interval: 5000ms max_concurrent=3" in status.output

    sweep = _invoke(runner, db_path, "engine", "sweep")
    assert sweep.exit_code == 0, sweep.output
    assert "executions=0 jobs=0 tasks=0 sub_agents=0" in sweep.output


def test_db_path_can_come_from_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("OVERSEER_DB_PATH", str(tmp_path / "env.db"))
    runner = CliRunner()

    result = runner.invoke(overseer, ["tasks", "enqueue", "--title", "t", "--input", "x"])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "env.db").exists()


def test_sweeping_commands_warn_against_live_daemon() -> None:
    engine_group = overseer.commands["engine"]
    sweep = engine_group.commands["sweep"]
    once = next(param for param in engine_group.commands["run"].params if param.name == "once")

    assert "Do not use it while an `engine run` daemon" in sweep.help
    assert once.help.startswith("Sweep interrupted runs")
    assert "`engine run` daemon serves the same database" in once.help

    result = CliRunner().invoke(overseer, ["engine", "sweep", "--help"])
    assert result.exit_code == 0, result.output
    assert "daemon" in result.output
