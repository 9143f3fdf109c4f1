"""Agent-loop executor implementations."""

from overseer.scheduling.backend.base import (
    AgentBackendError,
    AgentExecutionContext,
    AgentExecutor,
    AgentRunResult,
)
from overseer.scheduling.backend.cli_backend import CommandAgentExecutor
from overseer.scheduling.backend.echo_agent import EchoAgentExecutor

__all__ = [
    "AgentBackendError",
    "AgentExecutionContext",
    "AgentExecutor",
    "AgentRunResult",
    "CommandAgentExecutor",
    "EchoAgentExecutor",
]
