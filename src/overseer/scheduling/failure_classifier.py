"""Deterministic classification of agent-loop failures for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from overseer.scheduling.models import FailureClass

_RULES: tuple[tuple[str, FailureClass, tuple[str, ...]], ...] = (
    (
        "billing_or_quota",
        FailureClass.BILLING_OR_QUOTA,
        (
            "quota",
            "resource_exhausted",
            "insufficient",
            "billing",
            "payment",
            "credits",
            "usage limit",
            "limit exceeded",
        ),
    ),
    (
        "access_or_auth",
        FailureClass.ACCESS_OR_AUTH,
        (
            "unauthorized",
            "forbidden",
            "permission denied",
            "invalid api key",
            "authentication",
            "restricted token",
        ),
    ),
    (
        "model_not_available",
        FailureClass.MODEL_NOT_AVAILABLE,
        (
            "model not found",
            "unknown model",
            "unsupported model",
            "invalid model",
            "model is not available",
            "not available in your region",
        ),
    ),
    (
        "rate_limit_transient",
        FailureClass.BACKEND_TRANSIENT,
        ("too many requests", "rate limit", "429", "please retry", "try again later"),
    ),
    (
        "generic_transient",
        FailureClass.BACKEND_TRANSIENT,
        (
            "temporarily unavailable",
            "temporary failure",
            "connection reset",
            "connection refused",
            "network error",
            "could not resolve host",
            "overloaded",
            "503",
        ),
    ),
)

NON_RETRYABLE_CLASSES = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.INTERRUPTED,
        FailureClass.BACKEND_NON_RETRYABLE,
        FailureClass.BILLING_OR_QUOTA,
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.MODEL_NOT_AVAILABLE,
    },
)


@dataclass(slots=True)
class AgentFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class not in NON_RETRYABLE_CLASSES


def classify_agent_failure(
    error_text: str | None,
    *,
    transient_default: bool = True,
) -> AgentFailureClassification:
    """Map agent error text to a failure class.

    Text that matches no rule is treated as transient unless the caller says
    otherwise (for example a backend that already knows the failure is final).
    """

    haystack = (error_text or "").lower()
    for rule_name, failure_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return AgentFailureClassification(
                failure_class=failure_class,
                matched_rule=rule_name,
                matched_pattern=pattern,
            )

    if transient_default:
        return AgentFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            matched_rule="fallback_transient",
            matched_pattern=None,
        )
    return AgentFailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
