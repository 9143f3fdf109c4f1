"""Interface between the task runner and the external agent loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Literal, Protocol

PromptSource = Literal["cron", "task"]


@dataclass(slots=True)
class AgentExecutionContext:
    """Per-run information handed to the agent loop.

    `cancel_event` is set when the run is timed out or interrupted; long-running
    executors should watch it and stop cooperatively.
    """

    owner_user_id: int
    source: PromptSource
    source_id: int
    sub_agent_id: str
    agent_type: str
    timeout_ms: int
    attempt: int = 1
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass(slots=True)
class AgentRunResult:
    """Outcome reported by the agent loop for one attempt."""

    success: bool
    output_text: str = ""
    tokens_in: int = 0
    tokens_out: int = 0
    tool_calls_count: int = 0
    step_count: int = 0
    error: str | None = None


class AgentBackendError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class AgentExecutor(Protocol):
    """Protocol implemented by agent-loop backends."""

    async def execute(self, prompt: str, context: AgentExecutionContext) -> AgentRunResult:
        """Run the prompt to completion and report usage."""
