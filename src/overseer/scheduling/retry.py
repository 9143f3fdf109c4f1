"""Attempt outcomes and the retry policy for cron runs."""

from __future__ import annotations

import random
from dataclasses import dataclass

from overseer.scheduling.backend.base import AgentRunResult
from overseer.scheduling.failure_classifier import NON_RETRYABLE_CLASSES
from overseer.scheduling.models import FailureClass


@dataclass(slots=True)
class AttemptSucceeded:
    result: AgentRunResult


@dataclass(slots=True)
class RetryableFailure:
    error: str
    failure_class: FailureClass
    result: AgentRunResult | None = None


@dataclass(slots=True)
class TerminalFailure:
    error: str
    failure_class: FailureClass
    result: AgentRunResult | None = None


AttemptOutcome = AttemptSucceeded | RetryableFailure | TerminalFailure


def should_retry(attempt_number: int, max_retries: int, failure_class: FailureClass) -> bool:
    """Decide whether another attempt follows attempt `attempt_number` (1-based).

    A job with `max_retries = N` gets at most `N + 1` attempts in total.
    """

    if failure_class in NON_RETRYABLE_CLASSES:
        return False
    return attempt_number <= max(0, max_retries)


def retry_delay_seconds(
    retry_number: int,
    *,
    base_seconds: float,
    max_seconds: float,
    rng: random.Random | None = None,
) -> float:
    """Bounded exponential backoff before retry `retry_number` (1-based).

    The ceiling doubles per retry up to `max_seconds`. With `rng` the delay is
    drawn uniformly below the ceiling (full jitter). `base_seconds <= 0`
    disables waiting.
    """

    if base_seconds <= 0:
        return 0.0
    ceiling = min(max_seconds, base_seconds * (2 ** max(retry_number - 1, 0)))
    if rng is None:
        return ceiling
    return rng.uniform(0, ceiling)
