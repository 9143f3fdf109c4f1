from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from overseer.scheduling.cron import (
    describe,
    is_valid_expression,
    next_fire_time,
    validate_expression,
)
from overseer.scheduling.errors import InvalidScheduleExpression

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Cron Evaluator"),
]


def test_next_fire_time_is_strictly_after_reference() -> None:
    morning = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)
    assert next_fire_time("0 9 * * *", "UTC", morning) == datetime(2024, 1, 1, 9, 0, tzinfo=UTC)

    exactly_nine = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    assert next_fire_time("0 9 * * *", "UTC", exactly_nine) == datetime(
        2024,
        1,
        2,
        9,
        0,
        tzinfo=UTC,
    )


def test_next_fire_time_is_deterministic() -> None:
    reference = datetime(2024, 3, 5, 12, 34, 56, tzinfo=UTC)
    first = next_fire_time("*/15 * * * *", "UTC", reference)
    second = next_fire_time("*/15 * * * *", "UTC", reference)
    assert first == second == datetime(2024, 3, 5, 12, 45, tzinfo=UTC)


def test_next_fire_time_evaluates_in_job_timezone() -> None:
    winter = next_fire_time("0 9 * * *", "Europe/Berlin", datetime(2024, 1, 1, 0, 0, tzinfo=UTC))
    summer = next_fire_time("0 9 * * *", "Europe/Berlin", datetime(2024, 7, 1, 0, 0, tzinfo=UTC))

    assert winter == datetime(2024, 1, 1, 8, 0, tzinfo=UTC)
    assert summer == datetime(2024, 7, 1, 7, 0, tzinfo=UTC)
    assert winter.tzinfo is not None


def test_next_fire_time_treats_naive_reference_as_utc() -> None:
    naive = datetime(2024, 1, 1, 8, 0)
    assert next_fire_time("30 8 * * *", "UTC", naive) == datetime(2024, 1, 1, 8, 30, tzinfo=UTC)


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "* * * *",
        "0 0 * * * *",
        "61 * * * *",
        "* 25 * * *",
        "not a cron",
    ],
)
def test_validate_expression_rejects_bad_grammar(expression: str) -> None:
    with pytest.raises(InvalidScheduleExpression):
        validate_expression(expression)
    assert not is_valid_expression(expression)


def test_validate_expression_rejects_unknown_timezone() -> None:
    with pytest.raises(InvalidScheduleExpression, match="Unknown timezone"):
        validate_expression("0 9 * * *", "Mars/Olympus_Mons")


def test_invalid_schedule_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        next_fire_time("bogus", "UTC", datetime(2024, 1, 1, tzinfo=UTC))


@pytest.mark.parametrize(
    ("expression", "timezone", "expected"),
    [
        ("* * * * *", "UTC", "Every minute"),
        ("15 * * * *", "UTC", "Every hour at minute 15"),
        ("0 9 * * *", "UTC", "Daily at 09:00 UTC"),
        ("30 8 * * 1,5", "Europe/Berlin", "Mon, Fri at 08:30 Europe/Berlin"),
        ("*/5 * * * *", "UTC", "*/5 * * * *"),
        ("0 0 1 * *", "UTC", "0 0 1 * *"),
    ],
)
def test_describe_renders_common_shapes(expression: str, timezone: str, expected: str) -> None:
    assert describe(expression, timezone) == expected
