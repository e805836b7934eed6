"""Recipients, senders, recurrence and send/schedule request schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from shared.schemas.blocks import SlackBlock


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------


class ChannelRecipient(BaseModel):
    type: Literal["channel"] = "channel"
    id: str | None = None
    name: str = ""


class UserRecipient(BaseModel):
    type: Literal["user"] = "user"
    id: str | None = None
    name: str = ""


class EmailRecipient(BaseModel):
    """Resolved to a user id by directory lookup at send time."""

    type: Literal["email"] = "email"
    id: str | None = None
    name: str = ""
    email: str | None = None


Recipient = Annotated[
    Union[ChannelRecipient, UserRecipient, EmailRecipient],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Senders
# ---------------------------------------------------------------------------


class BotSender(BaseModel):
    type: Literal["bot"] = "bot"


class UserSender(BaseModel):
    type: Literal["user"] = "user"
    user_id: str | None = None  # WorkspaceUserToken id
    user_name: str | None = None


Sender = Annotated[Union[BotSender, UserSender], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


def check_timezone(value: str | None) -> str | None:
    """Reject timezone names the IANA database does not know."""
    if value is None:
        return value
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"unknown timezone: {value!r}") from None
    return value


class Recurrence(BaseModel):
    type: Literal["once", "daily", "weekly", "monthly", "cron"]
    time: str | None = None  # "HH:MM"
    days_of_week: list[int] = []  # Monday=0
    day_of_month: int | None = None
    cron_expression: str | None = None
    timezone: str | None = None
    end_date: datetime | None = None

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str | None) -> str | None:
        return check_timezone(value)

    @model_validator(mode="after")
    def _check_shape(self) -> "Recurrence":
        if self.type == "cron" and not self.cron_expression:
            raise ValueError("cron recurrence requires cron_expression")
        if any(d < 0 or d > 6 for d in self.days_of_week):
            raise ValueError("days_of_week entries must be 0-6 (Monday=0)")
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            raise ValueError("day_of_month must be 1-31")
        return self


# ---------------------------------------------------------------------------
# Ad-hoc send
# ---------------------------------------------------------------------------


class SendRequest(BaseModel):
    """A synchronous send to one or more recipients."""

    workspace_id: uuid.UUID
    content: str
    recipients: list[Recipient] = Field(min_length=1)
    sender: Sender = Field(default_factory=BotSender)
    blocks: list[SlackBlock] | None = None
    template_id: uuid.UUID | None = None
    scheduled_message_id: uuid.UUID | None = None
    rule_id: uuid.UUID | None = None


class RecipientResult(BaseModel):
    recipient: Recipient
    channel: str  # resolved platform identifier
    success: bool
    provider_response: dict[str, Any] | None = None
    error_message: str | None = None
    # False when the delivery happened but its history row could not be written
    history_recorded: bool = True
    history_error: str | None = None


class SendResponse(BaseModel):
    """``success`` is true only when every recipient succeeded."""

    success: bool
    results: list[RecipientResult]


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class ScheduleMessageRequest(BaseModel):
    workspace_id: uuid.UUID
    name: str
    content: str
    recipients: list[Recipient] = Field(min_length=1)
    sender: Sender = Field(default_factory=BotSender)
    scheduled_at: datetime
    blocks: list[SlackBlock] | None = None
    recurrence: Recurrence | None = None
    template_id: uuid.UUID | None = None
    created_by: str = "api"


class ScheduledMessageOut(BaseModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    name: str
    content: str
    status: str
    scheduled_at: datetime
    recurrence: dict | None = None
    last_run: datetime | None = None
    next_run: datetime | None = None
    error_message: str | None = None

    model_config = {"from_attributes": True}


class MessageCycleOutcome(BaseModel):
    message_id: uuid.UUID
    status: Literal["sent", "failed", "skipped"]
    recipients_attempted: int = 0
    recipients_failed: int = 0
    error: str | None = None


class CycleReport(BaseModel):
    """Outcome of one poll cycle."""

    started_at: datetime
    due: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: list[MessageCycleOutcome] = []


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class CreateTemplateRequest(BaseModel):
    workspace_id: uuid.UUID
    name: str
    content: str
    description: str | None = None
    blocks: list[SlackBlock] | None = None
    category: str | None = None
    tags: list[str] = []
    created_by: str = "api"


class TemplateOut(BaseModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    name: str
    content: str
    variables: list[str] = []
    hubspot_variables: list[dict[str, Any]] = []
    category: str | None = None
    tags: list[str] = []
    is_active: bool = True

    model_config = {"from_attributes": True}


class PreviewTemplateRequest(BaseModel):
    """Values for a preview. ``properties`` is a CRM property bag of ``object_type``."""

    variables: dict[str, Any] = {}
    object_type: str = "contacts"
    properties: dict[str, Any] = {}
    use_examples: bool = False  # fill known CRM variables with catalogue examples


class TemplatePreview(BaseModel):
    template_id: uuid.UUID
    content: str
    missing: list[str] = []


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------


class SlackChannel(BaseModel):
    id: str
    name: str
    is_private: bool = False
    num_members: int | None = None


class SlackUser(BaseModel):
    id: str
    name: str
    real_name: str | None = None
    email: str | None = None
