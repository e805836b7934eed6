"""Metric evaluation over CRM property values."""

from __future__ import annotations

import math
from typing import Any

from shared.errors import MetricInputInvalid
from shared.schemas.rules import MetricCalculation


def _coerce(prop: str, value: Any) -> float:
    if value is None or isinstance(value, bool):
        raise MetricInputInvalid(f"Property {prop!r} has no numeric value ({value!r})")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            raise MetricInputInvalid(f"Property {prop!r} is not numeric: {value!r}") from None
    else:
        raise MetricInputInvalid(f"Property {prop!r} is not numeric: {value!r}")
    if not math.isfinite(number):
        raise MetricInputInvalid(f"Property {prop!r} is not finite: {value!r}")
    return number


def collect_values(calculation: MetricCalculation, properties: dict[str, Any]) -> list[float]:
    """Fetch and coerce the source values in declaration order.

    A list-valued property (e.g. amounts across associated deals) contributes
    each of its items.
    """
    values: list[float] = []
    for prop in calculation.properties:
        if prop not in properties:
            raise MetricInputInvalid(f"Property {prop!r} is missing")
        raw = properties[prop]
        if isinstance(raw, (list, tuple)):
            values.extend(_coerce(prop, item) for item in raw)
        else:
            values.append(_coerce(prop, raw))
    return values


def compute(kind: str, values: list[float]) -> float:
    if kind == "sum":
        return math.fsum(values)
    if kind == "count":
        return float(len(values))
    if kind == "average":
        if not values:
            raise MetricInputInvalid("Cannot average zero values")
        return math.fsum(values) / len(values)
    if kind == "multiply":
        if not values:
            raise MetricInputInvalid("Cannot multiply zero values")
        return math.prod(values)
    if kind in ("divide", "subtract"):
        if len(values) != 2:
            raise MetricInputInvalid(f"{kind} needs exactly two values, got {len(values)}")
        first, second = values
        if kind == "subtract":
            return first - second
        if second == 0:
            raise MetricInputInvalid("Division by zero")
        return first / second
    raise MetricInputInvalid(f"Unknown calculation type: {kind}")


def evaluate_metric(calculation: MetricCalculation, properties: dict[str, Any]) -> float:
    """Compute a metric. Any unusable input raises MetricInputInvalid."""
    return compute(calculation.type, collect_values(calculation, properties))


def _trim(value: float, places: int = 2) -> str:
    text = f"{round(value, places):.{places}f}".rstrip("0").rstrip(".")
    return "0" if text == "-0" else text


def format_metric(value: float, fmt: str | None = None) -> str:
    if fmt == "currency":
        return f"${value:,.0f}"
    if fmt == "percentage":
        return f"{_trim(value)}%"
    if fmt == "number":
        if float(value).is_integer():
            return f"{int(value):,}"
        return f"{value:,.2f}"
    return _trim(value)
