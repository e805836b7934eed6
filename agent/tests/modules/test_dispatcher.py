"""Tests for the delivery pipeline and the dispatcher service API."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from modules.dispatcher.dispatcher import Dispatcher
from modules.dispatcher.pipeline import DeliveryPipeline, normalize_blocks
from shared.errors import CredentialNotFound, NoCredentialAvailable, NotFound
from shared.schemas.blocks import DividerBlock, SectionBlock
from shared.schemas.messaging import (
    BotSender,
    ChannelRecipient,
    EmailRecipient,
    SendRequest,
    UserRecipient,
    UserSender,
)
from tests.conftest import FakeChatClient


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_success(self):
        result = await Dispatcher(FakeChatClient()).dispatch("xoxb", "C1", "hello")
        assert result.success
        assert result.provider_response["channel"] == "C1"
        assert result.error_message is None

    @pytest.mark.asyncio
    async def test_provider_error_is_returned(self):
        result = await Dispatcher(FakeChatClient(fail_channels={"C1"})).dispatch("xoxb", "C1", "hello")
        assert not result.success
        assert result.error_message == "channel_not_found: C1"

    @pytest.mark.asyncio
    async def test_exactly_one_call_per_dispatch(self):
        client = FakeChatClient(fail_channels={"C1"})
        await Dispatcher(client).dispatch("xoxb", "C1", "hello")
        assert len(client.posts) == 1


# ---------------------------------------------------------------------------
# DeliveryPipeline.send
# ---------------------------------------------------------------------------


class TestPipelineSend:
    @pytest.mark.asyncio
    async def test_one_history_row_per_recipient(self, store, credential_store, make_workspace):
        client = FakeChatClient(fail_channels={"C-bad"})
        pipeline = DeliveryPipeline(store, credential_store, client)
        ws = make_workspace()

        response = await pipeline.send(
            SendRequest(
                workspace_id=ws.id,
                content="Quarter closed",
                recipients=[
                    ChannelRecipient(id="C-good"),
                    ChannelRecipient(id="C-bad"),
                    UserRecipient(id="U1"),
                ],
            ),
            actor="api",
        )

        assert response.success is False
        assert [r.success for r in response.results] == [True, False, True]
        assert [h.status for h in store.history] == ["sent", "failed", "sent"]
        assert [h.channel for h in store.history] == ["C-good", "C-bad", "U1"]
        assert store.history[1].error_message == "channel_not_found: C-bad"
        assert all(h.sent_by == "api" for h in store.history)

    @pytest.mark.asyncio
    async def test_all_succeed(self, store, pipeline, make_workspace):
        ws = make_workspace()
        response = await pipeline.send(
            SendRequest(workspace_id=ws.id, content="hi", recipients=[ChannelRecipient(id="C1")]),
            actor="api",
        )
        assert response.success is True
        assert store.history[0].recipient == {"type": "channel", "id": "C1", "name": ""}
        assert store.history[0].sender == {"type": "bot"}

    @pytest.mark.asyncio
    async def test_unknown_workspace(self, pipeline):
        with pytest.raises(NotFound):
            await pipeline.send(
                SendRequest(workspace_id=uuid.uuid4(), content="hi", recipients=[ChannelRecipient(id="C1")]),
                actor="api",
            )

    @pytest.mark.asyncio
    async def test_credential_errors_before_any_attempt(self, store, pipeline, chat_client, make_workspace):
        ws = make_workspace(bot_token=None)

        with pytest.raises(NoCredentialAvailable):
            await pipeline.send(
                SendRequest(workspace_id=ws.id, content="hi", recipients=[ChannelRecipient(id="C1")]),
                actor="api",
            )
        with pytest.raises(CredentialNotFound):
            await pipeline.send(
                SendRequest(
                    workspace_id=ws.id,
                    content="hi",
                    recipients=[ChannelRecipient(id="C1")],
                    sender=UserSender(user_id="ghost"),
                ),
                actor="api",
            )

        assert chat_client.posts == []
        assert store.history == []

    @pytest.mark.asyncio
    async def test_history_write_error_does_not_stop_remaining_recipients(
        self, store, credential_store, chat_client, make_workspace, mock_session_factory
    ):
        pipeline = DeliveryPipeline(
            store, credential_store, chat_client, session_factory=mock_session_factory
        )
        ws = make_workspace()
        original = store.append_history
        calls = {"n": 0}

        async def flaky(entry):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("db down")
            return await original(entry)

        store.append_history = flaky

        with patch("modules.dispatcher.pipeline.capture_error", new_callable=AsyncMock) as capture:
            response = await pipeline.send(
                SendRequest(
                    workspace_id=ws.id,
                    content="hi",
                    recipients=[ChannelRecipient(id=f"C{i}") for i in range(3)],
                ),
                actor="api",
            )

        assert [p["channel"] for p in chat_client.posts] == ["C0", "C1", "C2"]
        assert response.success
        assert [r.history_recorded for r in response.results] == [False, True, True]
        assert response.results[0].history_error == "db down"
        assert len(store.history) == 2
        capture.assert_awaited_once()
        assert capture.call_args.kwargs["error_type"] == "history_write_failed"

    @pytest.mark.asyncio
    async def test_email_recipient_resolved(self, store, credential_store, make_workspace):
        client = FakeChatClient(directory={"ana@acme.test": "U42"})
        pipeline = DeliveryPipeline(store, credential_store, client)
        ws = make_workspace()

        response = await pipeline.send(
            SendRequest(
                workspace_id=ws.id,
                content="hi",
                recipients=[EmailRecipient(name="Ana", email="ana@acme.test")],
            ),
            actor="api",
        )

        assert response.results[0].channel == "U42"
        assert client.posts[0]["channel"] == "U42"

    @pytest.mark.asyncio
    async def test_blocks_rendered_for_provider(self, store, pipeline, chat_client, make_workspace):
        ws = make_workspace()
        await pipeline.send(
            SendRequest(
                workspace_id=ws.id,
                content="fallback",
                recipients=[ChannelRecipient(id="C1")],
                blocks=[SectionBlock(text="*Hello*"), DividerBlock()],
            ),
            actor="api",
        )

        payload = chat_client.posts[0]["blocks"]
        assert payload[0] == {"type": "section", "text": {"type": "mrkdwn", "text": "*Hello*"}}
        assert payload[1] == {"type": "divider"}
        assert store.history[0].blocks[0]["type"] == "section"

    def test_normalize_blocks_from_stored_dicts(self):
        blocks = normalize_blocks([{"type": "divider"}, {"type": "header", "text": "Hi"}])
        assert [b.type for b in blocks] == ["divider", "header"]
        assert normalize_blocks(None) is None


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------


@pytest.fixture
async def client():
    from modules.dispatcher.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestDispatcherApi:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_not_ready(self, client):
        with patch("modules.dispatcher.main.pipeline", None):
            resp = await client.post(
                "/send",
                json={"workspace_id": str(uuid.uuid4()), "content": "x", "recipients": [{"type": "channel", "id": "C1"}]},
            )
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_send_uses_actor_header(self, client, store, pipeline, make_workspace):
        ws = make_workspace()
        body = {"workspace_id": str(ws.id), "content": "hi", "recipients": [{"type": "channel", "id": "C1"}]}
        with patch("modules.dispatcher.main.pipeline", pipeline):
            resp = await client.post("/send", json=body, headers={"X-Actor": "ops@acme.test"})

        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert store.history[0].sent_by == "ops@acme.test"

    @pytest.mark.asyncio
    async def test_unknown_workspace_is_404(self, client, pipeline):
        body = {"workspace_id": str(uuid.uuid4()), "content": "hi", "recipients": [{"type": "channel", "id": "C1"}]}
        with patch("modules.dispatcher.main.pipeline", pipeline):
            resp = await client.post("/send", json=body)
        assert resp.status_code == 404
        assert resp.json()["error"] == "not-found"

    @pytest.mark.asyncio
    async def test_missing_credential_is_412(self, client, pipeline, make_workspace):
        ws = make_workspace(bot_token=None)
        body = {"workspace_id": str(ws.id), "content": "hi", "recipients": [{"type": "channel", "id": "C1"}]}
        with patch("modules.dispatcher.main.pipeline", pipeline):
            resp = await client.post("/send", json=body)
        assert resp.status_code == 412
        assert resp.json()["error"] == "failed-precondition"

    @pytest.mark.asyncio
    async def test_empty_recipients_rejected(self, client, pipeline):
        body = {"workspace_id": str(uuid.uuid4()), "content": "hi", "recipients": []}
        with patch("modules.dispatcher.main.pipeline", pipeline):
            resp = await client.post("/send", json=body)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_auth_required_when_token_configured(self, client, pipeline):
        from shared.config import Settings

        with patch("shared.auth.get_settings", return_value=Settings(service_auth_token="s3cret")), \
                patch("modules.dispatcher.main.pipeline", pipeline):
            resp = await client.post(
                "/send",
                json={"workspace_id": str(uuid.uuid4()), "content": "x", "recipients": [{"type": "channel", "id": "C1"}]},
            )
        assert resp.status_code == 401
        assert resp.json()["error"] == "unauthenticated"

    @pytest.mark.asyncio
    async def test_list_channels(self, client, pipeline, make_workspace):
        from shared.schemas.messaging import SlackChannel

        ws = make_workspace()
        slack = AsyncMock()
        slack.list_channels.return_value = [SlackChannel(id="C1", name="general")]
        with patch("modules.dispatcher.main.pipeline", pipeline), patch("modules.dispatcher.main.slack", slack):
            resp = await client.get(f"/workspaces/{ws.id}/channels")

        assert resp.status_code == 200
        assert resp.json()[0]["name"] == "general"
        slack.list_channels.assert_awaited_once_with("xoxb-bot-token")
