"""Map recipient descriptors onto Slack-addressable identifiers."""

from __future__ import annotations

import structlog

from comms.slack_bot.client import ChatDeliveryClient
from shared.errors import RecipientLookupDegraded
from shared.schemas.messaging import EmailRecipient, Recipient

logger = structlog.get_logger()


def passthrough_identifier(recipient: Recipient) -> str:
    """``id`` when known, otherwise the human-entered handle verbatim."""
    return recipient.id or recipient.name


async def resolve_recipient(
    recipient: Recipient,
    client: ChatDeliveryClient,
    credential: str,
) -> str:
    """Resolve one recipient. Never raises for email lookups.

    Email recipients are looked up in the directory; any lookup failure
    (no such user, API error) falls back to the passthrough identifier.
    """
    if not isinstance(recipient, EmailRecipient):
        return passthrough_identifier(recipient)

    address = recipient.email or recipient.name
    fallback = passthrough_identifier(recipient)
    try:
        user_id = await client.lookup_user_by_email(credential, address)
        if not user_id:
            raise RecipientLookupDegraded(f"No Slack user for {address}")
    except Exception as e:
        logger.warning(
            "recipient_lookup_degraded",
            email=address,
            fallback=fallback,
            error=str(e),
        )
        return fallback
    return user_id
