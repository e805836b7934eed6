"""Encrypted Slack token storage for workspaces."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from cryptography.fernet import Fernet
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import NotFound
from shared.models.workspace import Workspace, WorkspaceUserToken
from shared.store import DispatchStore

logger = structlog.get_logger()


@dataclass
class UserToken:
    id: str
    user_name: str
    user_email: str
    token: str
    scopes: list[str] = field(default_factory=list)
    is_default: bool = False
    added_at: datetime | None = None


@dataclass
class WorkspaceCredentials:
    """Decrypted credentials for one workspace. Never log instances of this."""

    workspace_id: str
    bot_token: str | None = None
    user_tokens: list[UserToken] = field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"WorkspaceCredentials(workspace_id={self.workspace_id!r}, "
            f"has_bot_token={bool(self.bot_token)}, user_tokens={len(self.user_tokens)})"
        )


def pick_default_token(tokens: list[UserToken]) -> UserToken | None:
    """Return the default token, preferring the most recently added one.

    Concurrent writers can leave more than one token flagged default.
    """
    defaults = [t for t in tokens if t.is_default]
    if not defaults:
        return None
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return max(defaults, key=lambda t: t.added_at or epoch)


class WorkspaceCredentialStore:
    """Encrypt/decrypt workspace bot and user tokens with Fernet."""

    def __init__(self, encryption_key: str) -> None:
        if not encryption_key:
            raise ValueError(
                "CREDENTIAL_ENCRYPTION_KEY must be set. "
                "Generate one with: dispatch-admin generate-key"
            )
        self.fernet = Fernet(encryption_key.encode())

    def _encrypt(self, value: str) -> str:
        return self.fernet.encrypt(value.encode()).decode()

    def _decrypt(self, token: str) -> str:
        return self.fernet.decrypt(token.encode()).decode()

    async def set_bot_token(
        self,
        session: AsyncSession,
        workspace_id: uuid.UUID,
        token: str,
    ) -> None:
        """Encrypt and store the workspace bot token, replacing any previous one."""
        workspace = await session.get(Workspace, workspace_id)
        if workspace is None:
            raise NotFound(f"Workspace {workspace_id} not found")
        workspace.encrypted_bot_token = self._encrypt(token)
        workspace.updated_at = datetime.now(timezone.utc)
        await session.commit()
        logger.info("bot_token_set", workspace_id=str(workspace_id))

    async def add_user_token(
        self,
        session: AsyncSession,
        workspace_id: uuid.UUID,
        *,
        user_name: str,
        user_email: str,
        token: str,
        scopes: list[str] | None = None,
        is_default: bool = False,
    ) -> WorkspaceUserToken:
        """Store a user token. A new default unsets any existing default first."""
        workspace = await session.get(Workspace, workspace_id)
        if workspace is None:
            raise NotFound(f"Workspace {workspace_id} not found")

        if is_default:
            await session.execute(
                update(WorkspaceUserToken)
                .where(
                    WorkspaceUserToken.workspace_id == workspace_id,
                    WorkspaceUserToken.is_default.is_(True),
                )
                .values(is_default=False)
            )

        record = WorkspaceUserToken(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            user_name=user_name,
            user_email=user_email,
            encrypted_token=self._encrypt(token),
            scopes=scopes or [],
            is_default=is_default,
            added_at=datetime.now(timezone.utc),
        )
        session.add(record)
        await session.commit()
        logger.info(
            "user_token_added",
            workspace_id=str(workspace_id),
            token_id=str(record.id),
            is_default=is_default,
        )
        return record

    async def remove_user_token(
        self,
        session: AsyncSession,
        workspace_id: uuid.UUID,
        token_id: uuid.UUID,
    ) -> bool:
        """Delete one user token. Returns False when it did not exist."""
        result = await session.execute(
            select(WorkspaceUserToken).where(
                WorkspaceUserToken.id == token_id,
                WorkspaceUserToken.workspace_id == workspace_id,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            return False
        await session.delete(record)
        await session.commit()
        logger.info("user_token_removed", workspace_id=str(workspace_id), token_id=str(token_id))
        return True

    def decrypt_workspace(
        self,
        workspace: Workspace,
        tokens: list[WorkspaceUserToken],
    ) -> WorkspaceCredentials:
        """Build decrypted credentials from already-loaded rows."""
        return WorkspaceCredentials(
            workspace_id=str(workspace.id),
            bot_token=(
                self._decrypt(workspace.encrypted_bot_token)
                if workspace.encrypted_bot_token
                else None
            ),
            user_tokens=[
                UserToken(
                    id=str(t.id),
                    user_name=t.user_name,
                    user_email=t.user_email,
                    token=self._decrypt(t.encrypted_token) if t.encrypted_token else "",
                    scopes=list(t.scopes or []),
                    is_default=bool(t.is_default),
                    added_at=t.added_at,
                )
                for t in tokens
            ],
        )

    async def load_credentials(
        self,
        store: DispatchStore,
        workspace_id: uuid.UUID,
    ) -> WorkspaceCredentials:
        """Load and decrypt every credential of a workspace."""
        workspace = await store.get_workspace(workspace_id)
        if workspace is None:
            raise NotFound(f"Workspace {workspace_id} not found")
        tokens = await store.list_user_tokens(workspace_id)
        return self.decrypt_workspace(workspace, list(tokens))

    def decrypt_secret(self, encrypted: str) -> str:
        """Decrypt a single stored secret, e.g. a HubSpot access token."""
        return self._decrypt(encrypted)

    def encrypt_secret(self, value: str) -> str:
        return self._encrypt(value)
