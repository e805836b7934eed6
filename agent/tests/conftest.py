"""Shared test fixtures for the dispatch engine test suite.

Provides an in-memory ``DispatchStore``, a fake chat client, mock database
sessions and model factories so tests run without Postgres or Slack.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet

from comms.slack_bot.client import ChatDeliveryClient
from modules.dispatcher.pipeline import DeliveryPipeline
from shared.credential_store import WorkspaceCredentialStore
from shared.errors import DispatchFailed
from shared.models.hubspot_connection import HubSpotConnection
from shared.models.message_history import MessageHistory
from shared.models.message_rule import MessageRule
from shared.models.message_template import MessageTemplate
from shared.models.scheduled_message import ScheduledMessage
from shared.models.workspace import Workspace, WorkspaceUserToken
from shared.store import DispatchStore

# Fixed past instant; due for every cycle time used in the suite
DEFAULT_DUE_AT = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# In-memory persistence
# ---------------------------------------------------------------------------


class InMemoryStore(DispatchStore):
    """Dict-backed DispatchStore. Rows are the real ORM classes, never flushed."""

    def __init__(self) -> None:
        self.workspaces: dict[uuid.UUID, Workspace] = {}
        self.user_tokens: list[WorkspaceUserToken] = []
        self.connections: dict[uuid.UUID, HubSpotConnection] = {}
        self.templates: dict[uuid.UUID, MessageTemplate] = {}
        self.messages: dict[uuid.UUID, ScheduledMessage] = {}
        self.history: list[MessageHistory] = []
        self.rules: dict[uuid.UUID, MessageRule] = {}

    async def fetch_due_messages(self, now: datetime, limit: int) -> Sequence[ScheduledMessage]:
        due = [
            m for m in self.messages.values()
            if m.status == "scheduled" and m.scheduled_at <= now
        ]
        due.sort(key=lambda m: m.scheduled_at)
        return due[:limit]

    async def transition_message(
        self, message_id: uuid.UUID, expected_status: str, **fields: Any
    ) -> bool:
        message = self.messages.get(message_id)
        if message is None or message.status != expected_status:
            return False
        for key, value in fields.items():
            setattr(message, key, value)
        return True

    async def update_message(self, message_id: uuid.UUID, **fields: Any) -> None:
        message = self.messages[message_id]
        for key, value in fields.items():
            setattr(message, key, value)

    async def get_message(self, message_id: uuid.UUID) -> ScheduledMessage | None:
        return self.messages.get(message_id)

    async def add_message(self, message: ScheduledMessage) -> ScheduledMessage:
        self.messages[message.id] = message
        return message

    async def list_messages(self, workspace_id=None, status=None, limit=100):
        rows = [
            m for m in self.messages.values()
            if (workspace_id is None or m.workspace_id == workspace_id)
            and (status is None or m.status == status)
        ]
        return rows[:limit]

    async def append_history(self, entry: MessageHistory) -> MessageHistory:
        self.history.append(entry)
        return entry

    async def get_workspace(self, workspace_id: uuid.UUID) -> Workspace | None:
        return self.workspaces.get(workspace_id)

    async def list_user_tokens(self, workspace_id: uuid.UUID) -> Sequence[WorkspaceUserToken]:
        tokens = [t for t in self.user_tokens if t.workspace_id == workspace_id]
        return sorted(tokens, key=lambda t: t.added_at)

    async def get_hubspot_connection(self, connection_id: uuid.UUID) -> HubSpotConnection | None:
        return self.connections.get(connection_id)

    async def get_template(self, template_id: uuid.UUID) -> MessageTemplate | None:
        return self.templates.get(template_id)

    async def add_template(self, template: MessageTemplate) -> MessageTemplate:
        self.templates[template.id] = template
        return template

    async def get_rule(self, rule_id: uuid.UUID) -> MessageRule | None:
        return self.rules.get(rule_id)

    async def list_active_rules(self, workspace_id: uuid.UUID) -> Sequence[MessageRule]:
        return [r for r in self.rules.values() if r.workspace_id == workspace_id and r.is_active]

    async def update_rule(self, rule_id: uuid.UUID, **fields: Any) -> None:
        rule = self.rules[rule_id]
        for key, value in fields.items():
            setattr(rule, key, value)


# ---------------------------------------------------------------------------
# Chat client fake
# ---------------------------------------------------------------------------


class FakeChatClient(ChatDeliveryClient):
    """Records every post; channels in ``fail_channels`` are rejected."""

    def __init__(
        self,
        fail_channels: set[str] | None = None,
        directory: dict[str, str] | None = None,
        lookup_error: Exception | None = None,
    ) -> None:
        self.fail_channels = fail_channels or set()
        self.directory = directory or {}
        self.lookup_error = lookup_error
        self.posts: list[dict[str, Any]] = []
        self.lookups: list[str] = []

    async def post_message(self, credential, channel, text, blocks=None):
        self.posts.append(
            {"credential": credential, "channel": channel, "text": text, "blocks": blocks}
        )
        if channel in self.fail_channels:
            raise DispatchFailed(f"channel_not_found: {channel}")
        return {"ok": True, "channel": channel, "ts": f"{len(self.posts)}.000100"}

    async def lookup_user_by_email(self, credential, email):
        self.lookups.append(email)
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.directory.get(email)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fernet_key() -> str:
    return Fernet.generate_key().decode()


@pytest.fixture
def credential_store(fernet_key) -> WorkspaceCredentialStore:
    return WorkspaceCredentialStore(fernet_key)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def chat_client() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def pipeline(store, credential_store, chat_client) -> DeliveryPipeline:
    return DeliveryPipeline(store, credential_store, chat_client)


# ---------------------------------------------------------------------------
# Database mocks
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db_session():
    """Mock async SQLAlchemy session.

    Supports the common patterns used in store code:
        session.execute(stmt) -> result
        session.get(Model, id)
        session.add(obj)
        session.commit()
    """
    session = AsyncMock()
    default_result = MagicMock()
    default_result.scalar_one_or_none.return_value = None
    default_result.scalars.return_value.all.return_value = []
    session.execute = AsyncMock(return_value=default_result)
    session.get = AsyncMock(return_value=None)
    session.add = MagicMock()
    return session


@pytest.fixture
def mock_session_factory(mock_db_session):
    """Mock async session factory compatible with ``async with factory() as session:``."""

    @asynccontextmanager
    async def _session_ctx():
        yield mock_db_session

    factory = MagicMock(side_effect=lambda: _session_ctx())
    return factory


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_workspace(store, credential_store):
    """Factory that registers a workspace (and its tokens) in the store."""

    def _make(
        bot_token: str | None = "xoxb-bot-token",
        user_tokens: list[dict] | None = None,
    ) -> Workspace:
        now = datetime.now(timezone.utc)
        ws = Workspace(
            id=uuid.uuid4(),
            name="Acme",
            team_id="T0001",
            team_name="Acme",
            encrypted_bot_token=credential_store.encrypt_secret(bot_token) if bot_token else None,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        store.workspaces[ws.id] = ws
        for i, entry in enumerate(user_tokens or []):
            store.user_tokens.append(
                WorkspaceUserToken(
                    id=entry.get("id", uuid.uuid4()),
                    workspace_id=ws.id,
                    user_name=entry.get("user_name", f"user{i}"),
                    user_email=entry.get("user_email", f"user{i}@acme.test"),
                    encrypted_token=credential_store.encrypt_secret(entry.get("token", "")),
                    scopes=["chat:write"],
                    is_default=entry.get("is_default", False),
                    added_at=entry.get("added_at", now + timedelta(seconds=i)),
                )
            )
        return ws

    return _make


@pytest.fixture
def make_message(store):
    """Factory that adds a ScheduledMessage to the store."""

    def _make(
        workspace_id: uuid.UUID,
        recipients: list[dict] | None = None,
        sender: dict | None = None,
        scheduled_at: datetime | None = None,
        status: str = "scheduled",
        recurrence: dict | None = None,
        content: str = "Weekly pipeline review",
        blocks: list[dict] | None = None,
    ) -> ScheduledMessage:
        now = datetime.now(timezone.utc)
        message = ScheduledMessage(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            template_id=None,
            name="Pipeline review",
            content=content,
            blocks=blocks,
            recipients=recipients or [{"type": "channel", "id": "C001", "name": "#sales"}],
            sender=sender or {"type": "bot"},
            recurrence=recurrence,
            status=status,
            scheduled_at=scheduled_at or DEFAULT_DUE_AT,
            last_run=None,
            next_run=None,
            error_message=None,
            created_by="tester",
            created_at=now,
            updated_at=now,
        )
        store.messages[message.id] = message
        return message

    return _make


@pytest.fixture
def make_rule(store):
    """Factory that adds a MessageRule to the store."""

    def _make(
        workspace_id: uuid.UUID,
        conditions: list[dict] | None = None,
        actions: list[dict] | None = None,
        is_active: bool = True,
    ) -> MessageRule:
        now = datetime.now(timezone.utc)
        rule = MessageRule(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            name="Big deal alert",
            description=None,
            conditions=conditions or [],
            actions=actions or [],
            is_active=is_active,
            created_by="tester",
            created_at=now,
            updated_at=now,
        )
        store.rules[rule.id] = rule
        return rule

    return _make


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_execute_side_effect(*results):
    """Create an execute side_effect that returns different results per call.

    Usage::

        session.execute = AsyncMock(side_effect=make_execute_side_effect(
            _scalar_result(job),
            _scalars_result([job1, job2]),
        ))
    """
    call_count = 0

    async def _side_effect(*args, **kwargs):
        nonlocal call_count
        idx = min(call_count, len(results) - 1)
        call_count += 1
        return results[idx]

    return _side_effect
