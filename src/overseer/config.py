"""Runtime configuration for the scheduler, task runner and storage."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

AGENT_BACKENDS = ("echo", "command")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class SchedulerSettings:
    """Poll loop, concurrency and run policy settings."""

    poll_interval_seconds: float = 30.0
    max_concurrent_executions: int = 3
    default_timeout_ms: int = 300_000
    default_max_retries: int = 3
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 60.0
    output_summary_max_chars: int = 2_000
    shutdown_grace_seconds: float = 30.0


@dataclass(slots=True)
class TenantSettings:
    """Identity used by the CLI when it talks to the stores."""

    user_id: int = 1
    can_view_all: bool = False


@dataclass(slots=True)
class AgentSettings:
    """Which executor runs prompts."""

    backend: str = "echo"
    command_template: str = ""


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".overseer.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    tenant: TenantSettings = field(default_factory=TenantSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("OVERSEER_DB_PATH", ".overseer.db")),
            sqlite_busy_timeout_ms=int(os.getenv("OVERSEER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("OVERSEER_LOG_LEVEL", "INFO").strip().upper(),
            scheduler=SchedulerSettings(
                poll_interval_seconds=float(os.getenv("OVERSEER_POLL_INTERVAL_SECONDS", "30")),
                max_concurrent_executions=int(
                    os.getenv("OVERSEER_MAX_CONCURRENT_EXECUTIONS", "3"),
                ),
                default_timeout_ms=int(os.getenv("OVERSEER_DEFAULT_TIMEOUT_MS", "300000")),
                default_max_retries=int(os.getenv("OVERSEER_DEFAULT_MAX_RETRIES", "3")),
                retry_base_seconds=float(os.getenv("OVERSEER_RETRY_BASE_SECONDS", "5")),
                retry_max_seconds=float(os.getenv("OVERSEER_RETRY_MAX_SECONDS", "60")),
                output_summary_max_chars=int(
                    os.getenv("OVERSEER_OUTPUT_SUMMARY_MAX_CHARS", "2000"),
                ),
                shutdown_grace_seconds=float(
                    os.getenv("OVERSEER_SHUTDOWN_GRACE_SECONDS", "30"),
                ),
            ),
            tenant=TenantSettings(
                user_id=int(os.getenv("OVERSEER_USER_ID", "1")),
                can_view_all=_env_bool("OVERSEER_CAN_VIEW_ALL", default=False),
            ),
            agent=AgentSettings(
                backend=os.getenv("OVERSEER_AGENT_BACKEND", "echo").strip().lower(),
                command_template=os.getenv("OVERSEER_AGENT_COMMAND_TEMPLATE", ""),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        scheduler = self.scheduler
        if scheduler.poll_interval_seconds <= 0:
            raise ValueError("OVERSEER_POLL_INTERVAL_SECONDS must be > 0.")
        if scheduler.max_concurrent_executions <= 0:
            raise ValueError("OVERSEER_MAX_CONCURRENT_EXECUTIONS must be > 0.")
        if scheduler.default_timeout_ms <= 0:
            raise ValueError("OVERSEER_DEFAULT_TIMEOUT_MS must be > 0.")
        if scheduler.default_max_retries < 0:
            raise ValueError("OVERSEER_DEFAULT_MAX_RETRIES must be >= 0.")
        if scheduler.retry_base_seconds < 0:
            raise ValueError("OVERSEER_RETRY_BASE_SECONDS must be >= 0.")
        if scheduler.retry_max_seconds < scheduler.retry_base_seconds:
            raise ValueError(
                "OVERSEER_RETRY_MAX_SECONDS must be >= OVERSEER_RETRY_BASE_SECONDS.",
            )
        if scheduler.output_summary_max_chars <= 0:
            raise ValueError("OVERSEER_OUTPUT_SUMMARY_MAX_CHARS must be > 0.")
        if scheduler.shutdown_grace_seconds < 0:
            raise ValueError("OVERSEER_SHUTDOWN_GRACE_SECONDS must be >= 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("OVERSEER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"OVERSEER_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.agent.backend not in AGENT_BACKENDS:
            raise ValueError(
                f"OVERSEER_AGENT_BACKEND must be one of {', '.join(AGENT_BACKENDS)}, "
                f"got {self.agent.backend!r}.",
            )
        if self.agent.backend == "command" and "{prompt}" not in self.agent.command_template:
            raise ValueError(
                "OVERSEER_AGENT_COMMAND_TEMPLATE must include {prompt} "
                "when OVERSEER_AGENT_BACKEND=command.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
