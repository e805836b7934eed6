"""Single-recipient delivery."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from comms.slack_bot.client import ChatDeliveryClient

logger = structlog.get_logger()


@dataclass
class DispatchResult:
    channel: str
    success: bool
    provider_response: dict[str, Any] | None = None
    error_message: str | None = None


class Dispatcher:
    """Exactly one provider call per recipient, no retries.

    Provider errors are returned as a failed ``DispatchResult`` so the
    caller can carry on with the next recipient.
    """

    def __init__(self, client: ChatDeliveryClient) -> None:
        self.client = client

    async def dispatch(
        self,
        credential: str,
        channel: str,
        text: str,
        blocks: list[dict] | None = None,
    ) -> DispatchResult:
        try:
            response = await self.client.post_message(credential, channel, text, blocks)
        except Exception as e:
            logger.warning("dispatch_failed", channel=channel, error=str(e))
            return DispatchResult(channel=channel, success=False, error_message=str(e))
        logger.info("dispatch_succeeded", channel=channel)
        return DispatchResult(channel=channel, success=True, provider_response=response)
