"""Pydantic schemas for the dispatch engine."""

from shared.schemas.blocks import SlackBlock
from shared.schemas.common import ErrorResponse, HealthResponse
from shared.schemas.messaging import (
    BotSender,
    ChannelRecipient,
    CycleReport,
    EmailRecipient,
    Recipient,
    RecipientResult,
    Recurrence,
    ScheduleMessageRequest,
    SendRequest,
    SendResponse,
    Sender,
    UserRecipient,
    UserSender,
)
from shared.schemas.rules import (
    ActionOutcome,
    MetricCalculation,
    RuleAction,
    RuleCondition,
    RuleDefinition,
    RuleEvaluation,
)

__all__ = [
    "ActionOutcome",
    "BotSender",
    "ChannelRecipient",
    "CycleReport",
    "EmailRecipient",
    "ErrorResponse",
    "HealthResponse",
    "MetricCalculation",
    "Recipient",
    "RecipientResult",
    "Recurrence",
    "RuleAction",
    "RuleCondition",
    "RuleDefinition",
    "RuleEvaluation",
    "ScheduleMessageRequest",
    "SendRequest",
    "SendResponse",
    "Sender",
    "SlackBlock",
    "UserRecipient",
    "UserSender",
]
