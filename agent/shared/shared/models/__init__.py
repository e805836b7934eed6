"""SQLAlchemy models."""

from shared.models.base import Base
from shared.models.error_log import ErrorLog
from shared.models.hubspot_connection import HubSpotConnection
from shared.models.message_history import MessageHistory
from shared.models.message_rule import MessageRule
from shared.models.message_template import MessageTemplate
from shared.models.scheduled_message import ScheduledMessage
from shared.models.workspace import Workspace, WorkspaceUserToken

__all__ = [
    "Base",
    "ErrorLog",
    "HubSpotConnection",
    "MessageHistory",
    "MessageRule",
    "MessageTemplate",
    "ScheduledMessage",
    "Workspace",
    "WorkspaceUserToken",
]
