"""Rule evaluation: AND of conditions, then actions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from modules.rules.actions import ActionRunner, ComputedMetric
from modules.rules.conditions import CustomHandler, evaluate_condition
from shared.schemas.rules import (
    EvaluationContext,
    MetricCondition,
    RuleDefinition,
    RuleEvaluation,
)

logger = structlog.get_logger()


class RuleEngine:
    """Stateless evaluator. ``custom_handlers`` maps custom condition names to callables."""

    def __init__(
        self,
        runner: ActionRunner | None = None,
        custom_handlers: dict[str, CustomHandler] | None = None,
        default_timezone: str = "UTC",
    ) -> None:
        self.runner = runner
        self.custom_handlers = dict(custom_handlers or {})
        self.default_timezone = default_timezone

    async def evaluate(
        self,
        rule: Any,
        context: EvaluationContext,
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> RuleEvaluation:
        """Evaluate every condition and run the actions if all of them hold.

        A rule without conditions, or an inactive rule, never fires. All
        conditions are evaluated so the result reports each one.
        """
        definition = (
            rule if isinstance(rule, RuleDefinition) else RuleDefinition.model_validate(rule)
        )
        now = now or datetime.now(timezone.utc)

        results = []
        metrics: list[ComputedMetric] = []
        for condition in definition.conditions:
            result, metric = await evaluate_condition(
                condition, context, now, self.custom_handlers, self.default_timezone
            )
            results.append(result)
            if metric is not None and isinstance(condition, MetricCondition):
                metrics.append((condition.calculation, metric))

        fired = bool(results) and all(r.passed for r in results) and definition.is_active
        evaluation = RuleEvaluation(
            rule_id=definition.id,
            fired=fired,
            conditions=results,
            metrics={calculation.key: value for calculation, value in metrics},
        )

        if not fired:
            logger.info(
                "rule_not_fired",
                rule_id=str(definition.id),
                conditions=len(results),
                passed=sum(1 for r in results if r.passed),
                active=definition.is_active,
            )
            return evaluation

        logger.info("rule_fired", rule_id=str(definition.id), dry_run=dry_run)
        if dry_run or self.runner is None:
            return evaluation

        evaluation.actions = await self.runner.run_all(definition, context, metrics)
        return evaluation
