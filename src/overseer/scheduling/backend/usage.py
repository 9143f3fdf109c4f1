"""Usage extraction helpers for CLI agent output streams."""

from __future__ import annotations

import re
from dataclasses import dataclass

_JSON_PROMPT_TOKENS = re.compile(r'"(?:prompt|input)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_COMPLETION_TOKENS = re.compile(
    r'"(?:completion|output)_tokens"\s*:\s*(\d+)',
    re.IGNORECASE,
)
_JSON_TOOL_CALLS = re.compile(r'"tool_calls(?:_count)?"\s*:\s*(\d+)', re.IGNORECASE)

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOOL_CALLS = re.compile(r"tool[_ ]calls?\s*[:=]\s*([\d,]+)", re.IGNORECASE)


@dataclass(slots=True)
class UsageExtraction:
    """Best-effort token usage extraction result."""

    input_tokens: int = 0
    output_tokens: int = 0
    tool_calls_count: int = 0
    usage_source: str = "none"


def extract_usage(*, stdout: str, stderr: str) -> UsageExtraction:
    """Extract token usage from structured (JSON) or textual backend output."""

    for source_name, text in (("agent_stdout", stdout), ("agent_stderr", stderr)):
        found = _extract_from(
            text,
            (_JSON_PROMPT_TOKENS, _JSON_COMPLETION_TOKENS, _JSON_TOOL_CALLS),
            source_name,
        )
        if found is not None:
            return found

    for source_name, text in (("agent_stderr", stderr), ("agent_stdout", stdout)):
        found = _extract_from(text, (_INPUT_TOKENS, _OUTPUT_TOKENS, _TOOL_CALLS), source_name)
        if found is not None:
            return found

    return UsageExtraction()


def _extract_from(
    text: str,
    patterns: tuple[re.Pattern[str], re.Pattern[str], re.Pattern[str]],
    source_name: str,
) -> UsageExtraction | None:
    prompt_pattern, completion_pattern, tools_pattern = patterns
    prompt = _extract_int(prompt_pattern, text)
    completion = _extract_int(completion_pattern, text)
    if prompt is None and completion is None:
        return None
    return UsageExtraction(
        input_tokens=prompt or 0,
        output_tokens=completion or 0,
        tool_calls_count=_extract_int(tools_pattern, text) or 0,
        usage_source=source_name,
    )


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
