"""Slack delivery collaborator over slack_sdk's AsyncWebClient."""

from __future__ import annotations

import abc
from typing import Any

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from comms.slack_bot.block_builder import BlockBuilder
from shared.errors import DispatchFailed
from shared.schemas.messaging import SlackChannel, SlackUser

logger = structlog.get_logger()

# conversations.list and users.list page size
_PAGE_LIMIT = 200


class ChatDeliveryClient(abc.ABC):
    """What the dispatcher needs from a chat platform."""

    @abc.abstractmethod
    async def post_message(
        self,
        credential: str,
        channel: str,
        text: str,
        blocks: list[dict] | None = None,
    ) -> dict[str, Any]:
        """Deliver one message. Raises DispatchFailed on provider errors."""

    @abc.abstractmethod
    async def lookup_user_by_email(self, credential: str, email: str) -> str | None:
        """Return the platform user id, or None when no user has that email."""


class SlackDeliveryClient(ChatDeliveryClient):
    def __init__(self, timeout: int = 30) -> None:
        self.timeout = timeout

    def _client(self, credential: str) -> AsyncWebClient:
        return AsyncWebClient(token=credential, timeout=self.timeout)

    async def post_message(
        self,
        credential: str,
        channel: str,
        text: str,
        blocks: list[dict] | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            kwargs["blocks"] = blocks
            kwargs["text"] = BlockBuilder.plain_text_fallback(text)
        try:
            response = await self._client(credential).chat_postMessage(**kwargs)
        except SlackApiError as e:
            error = e.response.get("error", str(e)) if e.response is not None else str(e)
            raise DispatchFailed(f"Slack rejected message to {channel}: {error}") from e
        return {
            "ok": response.get("ok", True),
            "channel": response.get("channel"),
            "ts": response.get("ts"),
        }

    async def lookup_user_by_email(self, credential: str, email: str) -> str | None:
        try:
            response = await self._client(credential).users_lookupByEmail(email=email)
        except SlackApiError as e:
            if e.response is not None and e.response.get("error") == "users_not_found":
                return None
            raise
        user = response.get("user") or {}
        return user.get("id")

    async def list_channels(self, credential: str) -> list[SlackChannel]:
        """Public and private channels visible to the token."""
        client = self._client(credential)
        channels: list[SlackChannel] = []
        cursor: str | None = None
        while True:
            response = await client.conversations_list(
                types="public_channel,private_channel",
                limit=_PAGE_LIMIT,
                cursor=cursor,
            )
            for c in response.get("channels") or []:
                channels.append(
                    SlackChannel(
                        id=c["id"],
                        name=c.get("name", ""),
                        is_private=bool(c.get("is_private")),
                        num_members=c.get("num_members"),
                    )
                )
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        return channels

    async def list_users(self, credential: str) -> list[SlackUser]:
        """Active human users; bots and deactivated accounts are skipped."""
        client = self._client(credential)
        users: list[SlackUser] = []
        cursor: str | None = None
        while True:
            response = await client.users_list(limit=_PAGE_LIMIT, cursor=cursor)
            for m in response.get("members") or []:
                if m.get("is_bot") or m.get("deleted") or m.get("id") == "USLACKBOT":
                    continue
                profile = m.get("profile") or {}
                users.append(
                    SlackUser(
                        id=m["id"],
                        name=m.get("name", ""),
                        real_name=m.get("real_name") or profile.get("real_name"),
                        email=profile.get("email"),
                    )
                )
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        return users
