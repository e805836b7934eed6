"""Rule action execution: send_message, update_hubspot, webhook."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from modules.dispatcher.pipeline import DeliveryPipeline
from modules.rules.metrics import format_metric
from shared.errors import DispatchFailed, InvalidArgument, NoCredentialAvailable, NotFound
from shared.hubspot import HubSpotClient
from shared.schemas.rules import (
    ActionOutcome,
    EvaluationContext,
    MetricCalculation,
    RuleAction,
    RuleDefinition,
    SendMessageAction,
    UpdateHubspotAction,
    WebhookAction,
)
from shared.store import DispatchStore
from shared.templates import extract_variables, object_variables, render_template

logger = structlog.get_logger()

ComputedMetric = tuple[MetricCalculation, float]


def render_action_message(
    content: str,
    context: EvaluationContext,
    metrics: list[ComputedMetric],
    include_metrics: bool,
) -> str:
    """Render ``content`` against the CRM snapshot and, optionally, metrics.

    Metrics are exposed as ``{{metrics.<key>}}``; any metric the text does not
    reference is appended as a ``Label: value`` line.
    """
    variables = object_variables(context.object_type, context.properties)
    if not include_metrics or not metrics:
        return render_template(content, variables)

    referenced = set(extract_variables(content))
    trailer: list[str] = []
    for calculation, value in metrics:
        formatted = format_metric(value, calculation.format)
        name = f"metrics.{calculation.key}"
        variables[name] = formatted
        if name not in referenced:
            trailer.append(f"{calculation.label}: {formatted}")

    text = render_template(content, variables)
    if trailer:
        text = text.rstrip("\n") + "\n\n" + "\n".join(trailer)
    return text


class ActionRunner:
    """Runs a fired rule's actions; one failing action never blocks the rest."""

    def __init__(
        self,
        store: DispatchStore,
        pipeline: DeliveryPipeline,
        hubspot: HubSpotClient | None = None,
        webhook_timeout: float = 15.0,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.hubspot = hubspot
        self.webhook_timeout = webhook_timeout

    async def run_all(
        self,
        rule: RuleDefinition,
        context: EvaluationContext,
        metrics: list[ComputedMetric],
    ) -> list[ActionOutcome]:
        outcomes: list[ActionOutcome] = []
        for index, action in enumerate(rule.actions):
            try:
                detail = await self._run(action, rule, context, metrics)
            except Exception as e:
                logger.warning(
                    "rule_action_failed",
                    rule_id=str(rule.id),
                    action_index=index,
                    action_type=action.type,
                    error=str(e),
                )
                outcomes.append(ActionOutcome(type=action.type, success=False, error=str(e)))
                continue
            success = detail.pop("success", True)
            outcomes.append(
                ActionOutcome(
                    type=action.type,
                    success=success,
                    error=None if success else detail.get("error"),
                    detail=detail,
                )
            )
        return outcomes

    async def _run(
        self,
        action: RuleAction,
        rule: RuleDefinition,
        context: EvaluationContext,
        metrics: list[ComputedMetric],
    ) -> dict[str, Any]:
        if isinstance(action, SendMessageAction):
            return await self._send_message(action, rule, context, metrics)
        if isinstance(action, UpdateHubspotAction):
            return await self._update_hubspot(action, context)
        if isinstance(action, WebhookAction):
            return await self._webhook(action, rule, context, metrics)
        raise TypeError(f"Unsupported action: {type(action).__name__}")

    async def _send_message(
        self,
        action: SendMessageAction,
        rule: RuleDefinition,
        context: EvaluationContext,
        metrics: list[ComputedMetric],
    ) -> dict[str, Any]:
        if not action.recipients:
            raise InvalidArgument("send_message action has no recipients")

        blocks = None
        if action.custom_message:
            content = action.custom_message
        elif action.template_id:
            template = await self.store.get_template(action.template_id)
            if template is None:
                raise NotFound(f"Template {action.template_id} not found")
            content = template.content
            blocks = template.blocks
        else:
            raise InvalidArgument("send_message action needs a template_id or custom_message")

        text = render_action_message(content, context, metrics, action.include_metrics)
        credential = await self.pipeline.prepare(rule.workspace_id, action.sender)
        results = await self.pipeline.deliver(
            credential,
            workspace_id=rule.workspace_id,
            content=text,
            recipients=action.recipients,
            sender=action.sender,
            actor=f"rule:{rule.id}",
            blocks=blocks,
            template_id=action.template_id,
            rule_id=rule.id,
        )
        failed = [r for r in results if not r.success]
        detail: dict[str, Any] = {
            "success": not failed,
            "recipients": len(results),
            "failed": len(failed),
        }
        if failed:
            detail["error"] = "; ".join(r.error_message or "unknown error" for r in failed)
        return detail

    async def _update_hubspot(
        self,
        action: UpdateHubspotAction,
        context: EvaluationContext,
    ) -> dict[str, Any]:
        if self.hubspot is None:
            raise NoCredentialAvailable("No HubSpot connection for update_hubspot action")
        object_type = action.object_type or context.object_type
        object_id = action.object_id or context.object_id
        if not object_id:
            raise InvalidArgument("update_hubspot action has no object id")
        if not action.properties:
            raise InvalidArgument("update_hubspot action has no properties")

        variables = object_variables(context.object_type, context.properties)
        properties = {
            k: render_template(v, variables) if isinstance(v, str) else v
            for k, v in action.properties.items()
        }
        await self.hubspot.update_object(object_type, object_id, properties)
        return {"object_type": object_type, "object_id": object_id, "properties": list(properties)}

    async def _webhook(
        self,
        action: WebhookAction,
        rule: RuleDefinition,
        context: EvaluationContext,
        metrics: list[ComputedMetric],
    ) -> dict[str, Any]:
        payload = {
            "rule_id": str(rule.id),
            "workspace_id": str(rule.workspace_id),
            "object": {
                "type": context.object_type,
                "id": context.object_id,
                "properties": context.properties,
            },
            "metrics": {calculation.key: value for calculation, value in metrics},
        }
        async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
            resp = await client.post(action.webhook_url, json=payload)
        if not resp.is_success:
            raise DispatchFailed(f"Webhook returned HTTP {resp.status_code}")
        return {"status_code": resp.status_code}
