"""Credential resolution, per-recipient dispatch and history, end to end."""

from __future__ import annotations

import traceback
import uuid
from typing import Any, Sequence

import structlog
from pydantic import TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comms.slack_bot.block_builder import BlockBuilder
from comms.slack_bot.client import ChatDeliveryClient
from modules.dispatcher.credentials import resolve_credential
from modules.dispatcher.dispatcher import Dispatcher
from modules.dispatcher.history import HistoryRecorder
from modules.dispatcher.recipients import resolve_recipient
from shared.credential_store import WorkspaceCredentialStore
from shared.error_capture import capture_error
from shared.schemas.blocks import SlackBlock
from shared.schemas.messaging import (
    Recipient,
    RecipientResult,
    SendRequest,
    SendResponse,
    Sender,
)
from shared.store import DispatchStore

logger = structlog.get_logger()

_blocks_adapter = TypeAdapter(list[SlackBlock])


def normalize_blocks(blocks: Sequence[Any] | None) -> list[SlackBlock] | None:
    """Validate stored (dict) or typed blocks into the tagged union."""
    if not blocks:
        return None
    return _blocks_adapter.validate_python(list(blocks))


class DeliveryPipeline:
    """Shared by ad-hoc sends, the scheduler and rule actions."""

    def __init__(
        self,
        store: DispatchStore,
        credential_store: WorkspaceCredentialStore,
        client: ChatDeliveryClient,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.store = store
        self.credential_store = credential_store
        self.client = client
        self.session_factory = session_factory
        self.dispatcher = Dispatcher(client)
        self.history = HistoryRecorder(store)

    async def prepare(self, workspace_id: uuid.UUID, sender: Sender) -> str:
        """Load the workspace and resolve the credential for ``sender``.

        Raises NotFound, CredentialNotFound or NoCredentialAvailable before
        any recipient is attempted.
        """
        credentials = await self.credential_store.load_credentials(self.store, workspace_id)
        return resolve_credential(credentials, sender)

    async def deliver(
        self,
        credential: str,
        *,
        workspace_id: uuid.UUID,
        content: str,
        recipients: Sequence[Recipient],
        sender: Sender,
        actor: str,
        blocks: Sequence[Any] | None = None,
        scheduled_message_id: uuid.UUID | None = None,
        template_id: uuid.UUID | None = None,
        rule_id: uuid.UUID | None = None,
    ) -> list[RecipientResult]:
        """Attempt every recipient in order, recording history after each one."""
        typed_blocks = normalize_blocks(blocks)
        payload = BlockBuilder.to_payload(typed_blocks) if typed_blocks else None
        stored_blocks = [b.model_dump() for b in typed_blocks] if typed_blocks else None

        results: list[RecipientResult] = []
        for recipient in recipients:
            channel = await resolve_recipient(recipient, self.client, credential)
            result = await self.dispatcher.dispatch(credential, channel, content, payload)
            history_error = None
            try:
                await self.history.record(
                    workspace_id=workspace_id,
                    result=result,
                    recipient=recipient,
                    sender=sender,
                    content=content,
                    blocks=stored_blocks,
                    actor=actor,
                    scheduled_message_id=scheduled_message_id,
                    template_id=template_id,
                    rule_id=rule_id,
                )
            except Exception as e:
                history_error = str(e)
                await self._history_write_failed(
                    e, workspace_id, channel, scheduled_message_id, rule_id
                )
            results.append(
                RecipientResult(
                    recipient=recipient,
                    channel=channel,
                    success=result.success,
                    provider_response=result.provider_response,
                    error_message=result.error_message,
                    history_recorded=history_error is None,
                    history_error=history_error,
                )
            )

        logger.info(
            "delivery_complete",
            workspace_id=str(workspace_id),
            recipients=len(results),
            failed=sum(1 for r in results if not r.success),
            history_failed=sum(1 for r in results if not r.history_recorded),
        )
        return results

    async def _history_write_failed(
        self,
        error: Exception,
        workspace_id: uuid.UUID,
        channel: str,
        scheduled_message_id: uuid.UUID | None,
        rule_id: uuid.UUID | None,
    ) -> None:
        logger.error(
            "history_write_failed",
            workspace_id=str(workspace_id),
            channel=channel,
            error=str(error),
        )
        if self.session_factory is not None:
            await capture_error(
                self.session_factory,
                service="dispatcher",
                error_type="history_write_failed",
                error_message=str(error),
                operation="deliver",
                context={"channel": channel},
                stack_trace=traceback.format_exc(),
                workspace_id=workspace_id,
                scheduled_message_id=scheduled_message_id,
                rule_id=rule_id,
            )

    async def send(self, request: SendRequest, actor: str) -> SendResponse:
        """Ad-hoc send: resolve once, then deliver to every recipient."""
        credential = await self.prepare(request.workspace_id, request.sender)
        results = await self.deliver(
            credential,
            workspace_id=request.workspace_id,
            content=request.content,
            recipients=request.recipients,
            sender=request.sender,
            actor=actor,
            blocks=request.blocks,
            scheduled_message_id=request.scheduled_message_id,
            template_id=request.template_id,
            rule_id=request.rule_id,
        )
        return SendResponse(success=all(r.success for r in results), results=results)
