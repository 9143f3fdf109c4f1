"""Deterministic local executor used for demos and tests."""

from __future__ import annotations

import asyncio

from overseer.scheduling.backend.base import AgentExecutionContext, AgentRunResult


class EchoAgentExecutor:
    """Echo the prompt back as the agent output.

    Token counts are derived from whitespace-separated words so that usage
    accounting can be exercised without a real model.
    """

    def __init__(self, *, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds

    async def execute(self, prompt: str, context: AgentExecutionContext) -> AgentRunResult:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        text = prompt.strip() or f"{context.source} {context.source_id} output"
        words = len(prompt.split())
        return AgentRunResult(
            success=True,
            output_text=text,
            tokens_in=words,
            tokens_out=len(text.split()),
            tool_calls_count=0,
            step_count=1,
        )
