"""Rule conditions, actions and evaluation results."""

from __future__ import annotations

import re
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from shared.schemas.messaging import BotSender, Recipient, Sender, check_timezone

Operator = Literal["equals", "not_equals", "contains", "greater_than", "less_than", "between"]


class MetricCalculation(BaseModel):
    type: Literal["sum", "average", "divide", "multiply", "subtract", "count"]
    properties: list[str] = Field(min_length=1)  # CRM property names, in order
    label: str
    format: Literal["number", "percentage", "currency"] | None = None

    @property
    def key(self) -> str:
        """Variable name under ``metrics.`` derived from the label."""
        return re.sub(r"[^a-z0-9]+", "_", self.label.lower()).strip("_")


class _Comparison(BaseModel):
    operator: Operator
    value: Any = None
    second_value: Any = None

    @model_validator(mode="after")
    def _between_needs_upper_bound(self):
        if self.operator == "between" and self.second_value is None:
            raise ValueError("'between' requires second_value")
        return self


class PropertyCondition(_Comparison):
    type: Literal["hubspot_property"] = "hubspot_property"
    property: str


class TimeCondition(_Comparison):
    """Compares the evaluation time, read as ``property``, against the bounds.

    ``property`` is ``time_of_day`` ("HH:MM"), ``day_of_week`` (Monday=0) or
    ``datetime`` (ISO 8601).
    """

    type: Literal["time_based"] = "time_based"
    property: Literal["time_of_day", "day_of_week", "datetime"] = "time_of_day"
    timezone: str | None = None

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str | None) -> str | None:
        return check_timezone(value)


class MetricCondition(_Comparison):
    type: Literal["metric_calculation"] = "metric_calculation"
    calculation: MetricCalculation


class CustomCondition(BaseModel):
    type: Literal["custom"] = "custom"
    property: str  # handler name
    operator: Operator = "equals"
    value: Any = None
    second_value: Any = None


RuleCondition = Annotated[
    Union[PropertyCondition, TimeCondition, MetricCondition, CustomCondition],
    Field(discriminator="type"),
]


class SendMessageAction(BaseModel):
    type: Literal["send_message"] = "send_message"
    template_id: uuid.UUID | None = None
    custom_message: str | None = None
    recipients: list[Recipient] = []
    sender: Sender = Field(default_factory=BotSender)
    include_metrics: bool = False


class UpdateHubspotAction(BaseModel):
    type: Literal["update_hubspot"] = "update_hubspot"
    object_type: str | None = None  # defaults to the evaluated object
    object_id: str | None = None
    properties: dict[str, Any] = {}


class WebhookAction(BaseModel):
    type: Literal["webhook"] = "webhook"
    webhook_url: str


RuleAction = Annotated[
    Union[SendMessageAction, UpdateHubspotAction, WebhookAction],
    Field(discriminator="type"),
]


class RuleDefinition(BaseModel):
    """Validated view of a MessageRule row."""

    id: uuid.UUID
    workspace_id: uuid.UUID
    name: str
    conditions: list[RuleCondition] = []
    actions: list[RuleAction] = []
    is_active: bool = True

    model_config = {"from_attributes": True}

    @model_validator(mode="after")
    def _unique_metric_keys(self) -> "RuleDefinition":
        keys = [c.calculation.key for c in self.conditions if isinstance(c, MetricCondition)]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"metric labels must be unique, duplicated: {duplicates}")
        return self


class EvaluationContext(BaseModel):
    """The CRM snapshot a rule is evaluated against."""

    object_type: str = "contacts"
    object_id: str | None = None
    properties: dict[str, Any] = {}


class ConditionResult(BaseModel):
    type: str
    passed: bool
    value: Any = None
    error: str | None = None


class ActionOutcome(BaseModel):
    type: str
    success: bool
    error: str | None = None
    detail: dict[str, Any] | None = None


class RuleEvaluation(BaseModel):
    rule_id: uuid.UUID
    fired: bool
    conditions: list[ConditionResult] = []
    metrics: dict[str, float] = {}
    actions: list[ActionOutcome] = []
    error: str | None = None  # set when the rule could not be evaluated at all


class EvaluateRuleRequest(BaseModel):
    object_type: str = "contacts"
    object_id: str | None = None
    email: str | None = None
    connection_id: uuid.UUID | None = None
    dry_run: bool = False


class SetRuleActiveRequest(BaseModel):
    is_active: bool


class HubSpotFilter(BaseModel):
    """One CRM search filter; serialized with HubSpot's camelCase names."""

    property_name: str = Field(alias="propertyName")
    operator: Literal[
        "EQ", "NEQ", "LT", "LTE", "GT", "GTE", "BETWEEN", "IN", "NOT_IN",
        "HAS_PROPERTY", "NOT_HAS_PROPERTY", "CONTAINS_TOKEN", "NOT_CONTAINS_TOKEN",
    ]
    value: str | None = None
    high_value: str | None = Field(default=None, alias="highValue")
    values: list[str] | None = None

    model_config = {"populate_by_name": True}


class HubSpotSearchRequest(BaseModel):
    connection_id: uuid.UUID
    object_type: str = "deals"
    filters: list[HubSpotFilter] = []
    properties: list[str] = []
