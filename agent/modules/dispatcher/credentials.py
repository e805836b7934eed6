"""Pick the secret a dispatch is sent with."""

from __future__ import annotations

from shared.credential_store import WorkspaceCredentials
from shared.errors import CredentialNotFound, NoCredentialAvailable
from shared.schemas.messaging import Sender, UserSender


def resolve_credential(credentials: WorkspaceCredentials, sender: Sender) -> str:
    """Return the token for ``sender``.

    A user sender with a ``user_id`` must match one of the workspace's user
    tokens; an unknown id is ``CredentialNotFound``. Every other sender uses
    the bot token. The default flag is not consulted here.
    """
    secret: str | None = None

    if isinstance(sender, UserSender) and sender.user_id:
        match = next((t for t in credentials.user_tokens if t.id == sender.user_id), None)
        if match is None:
            raise CredentialNotFound(
                f"User token {sender.user_id} not found in workspace {credentials.workspace_id}"
            )
        secret = match.token

    if not secret:
        secret = credentials.bot_token

    if not secret:
        raise NoCredentialAvailable(
            f"No Slack token available for workspace {credentials.workspace_id}"
        )
    return secret
