"""Subprocess-based executor for CLI agents."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex

from overseer.scheduling.backend.base import (
    AgentBackendError,
    AgentExecutionContext,
    AgentRunResult,
)
from overseer.scheduling.backend.usage import extract_usage

logger = logging.getLogger(__name__)

_ERROR_TAIL_CHARS = 2_000
_TERMINATE_GRACE_SECONDS = 2.0


class CommandAgentExecutor:
    """Run a CLI agent per prompt from a shell-like command template.

    The template must contain `{prompt}`; `{sub_agent_id}` and `{agent_type}`
    are also available. Each value is shell-quoted before splitting.
    """

    def __init__(self, command_template: str, *, env: dict[str, str] | None = None) -> None:
        self.command_template = command_template
        self.env = env

    async def execute(self, prompt: str, context: AgentExecutionContext) -> AgentRunResult:
        argv = build_run_args(
            command_template=self.command_template,
            prompt=prompt,
            context=context,
        )
        env = os.environ.copy()
        env.update(self.env or {})
        env["OVERSEER_SUB_AGENT_ID"] = context.sub_agent_id
        env["OVERSEER_AGENT_TYPE"] = context.agent_type
        env["OVERSEER_OWNER_USER_ID"] = str(context.owner_user_id)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise AgentBackendError(
                f"Agent command not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentBackendError(
                f"Agent command failed to start: {error}",
                transient=True,
            ) from error

        communicate = asyncio.ensure_future(process.communicate())
        canceled = asyncio.ensure_future(context.cancel_event.wait())
        try:
            await asyncio.wait({communicate, canceled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _stop_communicate(process, communicate)
            raise
        finally:
            canceled.cancel()

        if not communicate.done():
            await _stop_communicate(process, communicate)
            raise AgentBackendError("Agent command was canceled.", transient=False)

        stdout_raw, stderr_raw = communicate.result()
        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")
        usage = extract_usage(stdout=stdout, stderr=stderr)
        if process.returncode != 0:
            logger.info(
                "Agent command for %s exited with code %s",
                context.sub_agent_id,
                process.returncode,
            )
            tail = (stderr.strip() or stdout.strip())[-_ERROR_TAIL_CHARS:]
            return AgentRunResult(
                success=False,
                output_text=stdout,
                tokens_in=usage.input_tokens,
                tokens_out=usage.output_tokens,
                tool_calls_count=usage.tool_calls_count,
                step_count=1,
                error=f"exit code {process.returncode}: {tail}",
            )
        return AgentRunResult(
            success=True,
            output_text=stdout.strip(),
            tokens_in=usage.input_tokens,
            tokens_out=usage.output_tokens,
            tool_calls_count=usage.tool_calls_count,
            step_count=1,
        )


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    context: AgentExecutionContext,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentBackendError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise AgentBackendError(
            "Agent command template must include {prompt}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            sub_agent_id=shlex.quote(context.sub_agent_id),
            agent_type=shlex.quote(context.agent_type),
        )
    except KeyError as error:
        raise AgentBackendError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentBackendError("Agent command template rendered empty command.", transient=False)
    return argv


async def _stop_communicate(
    process: asyncio.subprocess.Process,
    communicate: asyncio.Future[tuple[bytes, bytes]],
) -> None:
    """Cancel the pending pipe reader and reap the process it was reading."""

    communicate.cancel()
    await _terminate_process(process)
    await asyncio.wait({communicate})


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
