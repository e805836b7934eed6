"""Persistence contract used by the dispatch engine, and its SQL implementation.

The engine only needs a handful of primitives: a bounded due-message query,
a conditional status transition, single-row updates, append-only history and
point reads. Keeping them behind ``DispatchStore`` lets the poll cycle and
the rule engine run against an in-memory store in tests.
"""

from __future__ import annotations

import abc
import uuid
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.models.hubspot_connection import HubSpotConnection
from shared.models.message_history import MessageHistory
from shared.models.message_rule import MessageRule
from shared.models.message_template import MessageTemplate
from shared.models.scheduled_message import (
    STATUS_SCHEDULED,
    STATUS_SENDING,
    ScheduledMessage,
)
from shared.models.workspace import Workspace, WorkspaceUserToken


class DispatchStore(abc.ABC):
    """Everything the scheduler, dispatcher and rule engine read or write."""

    # Scheduled messages

    @abc.abstractmethod
    async def fetch_due_messages(
        self, now: datetime, limit: int
    ) -> Sequence[ScheduledMessage]:
        """Up to ``limit`` messages with status scheduled and scheduled_at <= now."""

    async def claim_message(self, message_id: uuid.UUID) -> bool:
        """Move a message from scheduled to sending.

        Returns False when the message is no longer scheduled (claimed by
        another cycle, or cancelled).
        """
        return await self.transition_message(
            message_id, STATUS_SCHEDULED, status=STATUS_SENDING
        )

    @abc.abstractmethod
    async def transition_message(
        self, message_id: uuid.UUID, expected_status: str, **fields: Any
    ) -> bool:
        """Apply ``fields`` only if the message still has ``expected_status``."""

    @abc.abstractmethod
    async def update_message(self, message_id: uuid.UUID, **fields: Any) -> None: ...

    @abc.abstractmethod
    async def get_message(self, message_id: uuid.UUID) -> ScheduledMessage | None: ...

    @abc.abstractmethod
    async def add_message(self, message: ScheduledMessage) -> ScheduledMessage: ...

    @abc.abstractmethod
    async def list_messages(
        self,
        workspace_id: uuid.UUID | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> Sequence[ScheduledMessage]: ...

    # History

    @abc.abstractmethod
    async def append_history(self, entry: MessageHistory) -> MessageHistory: ...

    # Workspaces and credentials

    @abc.abstractmethod
    async def get_workspace(self, workspace_id: uuid.UUID) -> Workspace | None: ...

    @abc.abstractmethod
    async def list_user_tokens(
        self, workspace_id: uuid.UUID
    ) -> Sequence[WorkspaceUserToken]:
        """User tokens of a workspace, oldest first."""

    @abc.abstractmethod
    async def get_hubspot_connection(
        self, connection_id: uuid.UUID
    ) -> HubSpotConnection | None: ...

    # Templates and rules

    @abc.abstractmethod
    async def get_template(self, template_id: uuid.UUID) -> MessageTemplate | None: ...

    @abc.abstractmethod
    async def add_template(self, template: MessageTemplate) -> MessageTemplate: ...

    @abc.abstractmethod
    async def get_rule(self, rule_id: uuid.UUID) -> MessageRule | None: ...

    @abc.abstractmethod
    async def list_active_rules(
        self, workspace_id: uuid.UUID
    ) -> Sequence[MessageRule]: ...

    @abc.abstractmethod
    async def update_rule(self, rule_id: uuid.UUID, **fields: Any) -> None: ...


class SqlDispatchStore(DispatchStore):
    """``DispatchStore`` over the async SQLAlchemy session factory.

    Each call opens and commits its own session; no transaction spans
    more than one operation.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def fetch_due_messages(
        self, now: datetime, limit: int
    ) -> Sequence[ScheduledMessage]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledMessage)
                .where(
                    ScheduledMessage.status == STATUS_SCHEDULED,
                    ScheduledMessage.scheduled_at <= now,
                )
                .order_by(ScheduledMessage.scheduled_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def transition_message(
        self, message_id: uuid.UUID, expected_status: str, **fields: Any
    ) -> bool:
        fields.setdefault("updated_at", datetime.now(timezone.utc))
        async with self.session_factory() as session:
            result = await session.execute(
                update(ScheduledMessage)
                .where(
                    ScheduledMessage.id == message_id,
                    ScheduledMessage.status == expected_status,
                )
                .values(**fields)
            )
            await session.commit()
            return result.rowcount == 1

    async def update_message(self, message_id: uuid.UUID, **fields: Any) -> None:
        fields.setdefault("updated_at", datetime.now(timezone.utc))
        async with self.session_factory() as session:
            await session.execute(
                update(ScheduledMessage)
                .where(ScheduledMessage.id == message_id)
                .values(**fields)
            )
            await session.commit()

    async def get_message(self, message_id: uuid.UUID) -> ScheduledMessage | None:
        async with self.session_factory() as session:
            return await session.get(ScheduledMessage, message_id)

    async def add_message(self, message: ScheduledMessage) -> ScheduledMessage:
        async with self.session_factory() as session:
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message

    async def list_messages(
        self,
        workspace_id: uuid.UUID | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> Sequence[ScheduledMessage]:
        stmt = select(ScheduledMessage)
        if workspace_id is not None:
            stmt = stmt.where(ScheduledMessage.workspace_id == workspace_id)
        if status is not None:
            stmt = stmt.where(ScheduledMessage.status == status)
        stmt = stmt.order_by(ScheduledMessage.scheduled_at.desc()).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def append_history(self, entry: MessageHistory) -> MessageHistory:
        async with self.session_factory() as session:
            session.add(entry)
            await session.commit()
        return entry

    async def get_workspace(self, workspace_id: uuid.UUID) -> Workspace | None:
        async with self.session_factory() as session:
            return await session.get(Workspace, workspace_id)

    async def list_user_tokens(
        self, workspace_id: uuid.UUID
    ) -> Sequence[WorkspaceUserToken]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WorkspaceUserToken)
                .where(WorkspaceUserToken.workspace_id == workspace_id)
                .order_by(WorkspaceUserToken.added_at)
            )
            return list(result.scalars().all())

    async def get_hubspot_connection(
        self, connection_id: uuid.UUID
    ) -> HubSpotConnection | None:
        async with self.session_factory() as session:
            return await session.get(HubSpotConnection, connection_id)

    async def get_template(self, template_id: uuid.UUID) -> MessageTemplate | None:
        async with self.session_factory() as session:
            return await session.get(MessageTemplate, template_id)

    async def add_template(self, template: MessageTemplate) -> MessageTemplate:
        async with self.session_factory() as session:
            session.add(template)
            await session.commit()
            await session.refresh(template)
            return template

    async def get_rule(self, rule_id: uuid.UUID) -> MessageRule | None:
        async with self.session_factory() as session:
            return await session.get(MessageRule, rule_id)

    async def list_active_rules(
        self, workspace_id: uuid.UUID
    ) -> Sequence[MessageRule]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(MessageRule).where(
                    MessageRule.workspace_id == workspace_id,
                    MessageRule.is_active.is_(True),
                )
            )
            return list(result.scalars().all())

    async def update_rule(self, rule_id: uuid.UUID, **fields: Any) -> None:
        fields.setdefault("updated_at", datetime.now(timezone.utc))
        async with self.session_factory() as session:
            await session.execute(
                update(MessageRule).where(MessageRule.id == rule_id).values(**fields)
            )
            await session.commit()
