"""Rule condition evaluation."""

from __future__ import annotations

import inspect
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union
from zoneinfo import ZoneInfo

import structlog

from modules.rules.metrics import evaluate_metric
from shared.errors import MetricInputInvalid
from shared.schemas.rules import (
    ConditionResult,
    CustomCondition,
    EvaluationContext,
    MetricCondition,
    PropertyCondition,
    RuleCondition,
    TimeCondition,
)

logger = structlog.get_logger()

CustomHandler = Callable[[CustomCondition, EvaluationContext], Union[bool, Awaitable[bool]]]


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compare(actual: Any, operator: str, value: Any, second_value: Any = None) -> bool:
    """Compare ``actual`` against the bound(s). A missing value never matches."""
    if actual is None:
        return False
    try:
        if operator in ("equals", "not_equals"):
            a, b = _as_number(actual), _as_number(value)
            equal = a == b if a is not None and b is not None else str(actual) == str(value)
            return equal if operator == "equals" else not equal
        if operator == "contains":
            if isinstance(actual, (list, tuple, set)):
                return value in actual or str(value) in {str(x) for x in actual}
            return str(value) in str(actual)
        if operator == "greater_than":
            return float(actual) > float(value)
        if operator == "less_than":
            return float(actual) < float(value)
        if operator == "between":
            return float(value) <= float(actual) <= float(second_value)
    except (TypeError, ValueError):
        pass
    return False


def _minutes(hhmm: Any) -> int:
    hours, minutes = str(hhmm).split(":", 1)
    return int(hours) * 60 + int(minutes)


def _timestamp(value: Any) -> float:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def evaluate_time_condition(
    condition: TimeCondition,
    now: datetime,
    default_timezone: str = "UTC",
) -> tuple[bool, Any]:
    """Return (passed, observed value) for the current time."""
    local = now.astimezone(ZoneInfo(condition.timezone or default_timezone))
    if condition.property == "time_of_day":
        observed: Any = local.strftime("%H:%M")
        convert: Callable[[Any], float] = _minutes
    elif condition.property == "day_of_week":
        observed = local.weekday()
        convert = int
    else:
        observed = local.isoformat()
        convert = _timestamp

    try:
        actual = convert(observed)
        lower = convert(condition.value)
        upper = convert(condition.second_value) if condition.second_value is not None else None
    except (TypeError, ValueError):
        return False, observed
    return compare(actual, condition.operator, lower, upper), observed


async def evaluate_condition(
    condition: RuleCondition,
    context: EvaluationContext,
    now: datetime,
    custom_handlers: dict[str, CustomHandler] | None = None,
    default_timezone: str = "UTC",
) -> tuple[ConditionResult, float | None]:
    """Evaluate one condition. Returns the result and, for metrics, the value."""
    if isinstance(condition, PropertyCondition):
        actual = context.properties.get(condition.property)
        passed = compare(actual, condition.operator, condition.value, condition.second_value)
        return ConditionResult(type=condition.type, passed=passed, value=actual), None

    if isinstance(condition, MetricCondition):
        try:
            metric = evaluate_metric(condition.calculation, context.properties)
        except MetricInputInvalid as e:
            logger.warning(
                "metric_input_invalid",
                label=condition.calculation.label,
                error=e.message,
            )
            return ConditionResult(type=condition.type, passed=False, error=e.message), None
        passed = compare(metric, condition.operator, condition.value, condition.second_value)
        return ConditionResult(type=condition.type, passed=passed, value=metric), metric

    if isinstance(condition, TimeCondition):
        passed, observed = evaluate_time_condition(condition, now, default_timezone)
        return ConditionResult(type=condition.type, passed=passed, value=observed), None

    if isinstance(condition, CustomCondition):
        handler = (custom_handlers or {}).get(condition.property)
        if handler is None:
            logger.debug("custom_condition_unhandled", name=condition.property)
            return ConditionResult(type=condition.type, passed=False, error="no handler"), None
        try:
            outcome = handler(condition, context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            logger.warning("custom_condition_failed", name=condition.property, error=str(e))
            return ConditionResult(type=condition.type, passed=False, error=str(e)), None
        return ConditionResult(type=condition.type, passed=bool(outcome)), None

    raise TypeError(f"Unsupported condition: {type(condition).__name__}")
