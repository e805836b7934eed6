"""Tests for the scheduler poll cycle."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from modules.scheduler.worker import run_poll_cycle
from tests.conftest import InMemoryStore


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RacingStore(InMemoryStore):
    """Simulates a concurrent cycle claiming ``stolen`` between fetch and claim."""

    def __init__(self) -> None:
        super().__init__()
        self.stolen: set[uuid.UUID] = set()

    async def fetch_due_messages(self, now, limit):
        due = await super().fetch_due_messages(now, limit)
        for message_id in self.stolen:
            await self.claim_message(message_id)
        return due


# ---------------------------------------------------------------------------
# Basic cycle behaviour
# ---------------------------------------------------------------------------


class TestPollCycle:
    @pytest.mark.asyncio
    async def test_nothing_due(self, store, pipeline, chat_client, make_workspace, make_message):
        ws = make_workspace()
        make_message(ws.id, scheduled_at=NOW + timedelta(hours=1))

        report = await run_poll_cycle(NOW, store, pipeline)

        assert report.due == 0
        assert report.outcomes == []
        assert chat_client.posts == []

    @pytest.mark.asyncio
    async def test_due_message_sent(self, store, pipeline, chat_client, make_workspace, make_message):
        ws = make_workspace()
        message = make_message(ws.id, scheduled_at=NOW - timedelta(minutes=5))

        report = await run_poll_cycle(NOW, store, pipeline)

        assert report.sent == 1
        assert message.status == "sent"
        assert message.error_message is None
        assert chat_client.posts[0]["channel"] == "C001"
        assert chat_client.posts[0]["credential"] == "xoxb-bot-token"
        assert len(store.history) == 1
        assert store.history[0].scheduled_message_id == message.id
        assert store.history[0].sent_by == "scheduler"

    @pytest.mark.asyncio
    async def test_no_due_message_left_scheduled(self, store, pipeline, make_workspace, make_message):
        ws = make_workspace()
        for _ in range(5):
            make_message(ws.id, scheduled_at=NOW - timedelta(minutes=1))
        make_message(ws.id, sender={"type": "user", "user_id": "nobody"})

        await run_poll_cycle(NOW, store, pipeline)

        due = [m for m in store.messages.values() if m.scheduled_at <= NOW]
        assert all(m.status in ("sent", "failed") for m in due)

    @pytest.mark.asyncio
    async def test_batch_size_bounds_cycle(self, store, pipeline, make_workspace, make_message):
        ws = make_workspace()
        for i in range(60):
            make_message(ws.id, scheduled_at=NOW - timedelta(minutes=60 - i))

        report = await run_poll_cycle(NOW, store, pipeline, batch_size=50)

        assert report.due == 50
        assert report.sent == 50
        remaining = [m for m in store.messages.values() if m.status == "scheduled"]
        assert len(remaining) == 10

        second = await run_poll_cycle(NOW, store, pipeline, batch_size=50)
        assert second.sent == 10

    @pytest.mark.asyncio
    async def test_oldest_due_first(self, store, pipeline, make_workspace, make_message):
        ws = make_workspace()
        newer = make_message(ws.id, scheduled_at=NOW - timedelta(minutes=1))
        older = make_message(ws.id, scheduled_at=NOW - timedelta(minutes=30))

        await run_poll_cycle(NOW, store, pipeline, batch_size=1)

        assert older.status == "sent"
        assert newer.status == "scheduled"


# ---------------------------------------------------------------------------
# Claims and cancellation
# ---------------------------------------------------------------------------


class TestClaims:
    @pytest.mark.asyncio
    async def test_cancelled_before_cycle_not_dispatched(
        self, store, pipeline, chat_client, make_workspace, make_message
    ):
        ws = make_workspace()
        message = make_message(ws.id, status="cancelled")

        report = await run_poll_cycle(NOW, store, pipeline)

        assert report.due == 0
        assert message.status == "cancelled"
        assert chat_client.posts == []

    @pytest.mark.asyncio
    async def test_message_claimed_elsewhere_is_skipped(
        self, credential_store, chat_client
    ):
        from modules.dispatcher.pipeline import DeliveryPipeline
        from shared.models.scheduled_message import ScheduledMessage
        from shared.models.workspace import Workspace

        store = RacingStore()
        ws = Workspace(
            id=uuid.uuid4(),
            name="Acme",
            encrypted_bot_token=credential_store.encrypt_secret("xoxb-bot"),
            is_active=True,
        )
        store.workspaces[ws.id] = ws
        stolen = ScheduledMessage(
            id=uuid.uuid4(),
            workspace_id=ws.id,
            name="race",
            content="hi",
            recipients=[{"type": "channel", "id": "C1"}],
            sender={"type": "bot"},
            status="scheduled",
            scheduled_at=NOW - timedelta(minutes=1),
        )
        store.messages[stolen.id] = stolen
        store.stolen.add(stolen.id)
        pipeline = DeliveryPipeline(store, credential_store, chat_client)

        report = await run_poll_cycle(NOW, store, pipeline)

        assert report.due == 1
        assert report.skipped == 1
        assert report.claimed == 0
        assert chat_client.posts == []
        assert stolen.status == "sending"

    @pytest.mark.asyncio
    async def test_claim_moves_to_sending_before_dispatch(
        self, store, pipeline, chat_client, make_workspace, make_message
    ):
        ws = make_workspace()
        message = make_message(ws.id)
        seen: list[str] = []
        original = chat_client.post_message

        async def _record_status(*args, **kwargs):
            seen.append(message.status)
            return await original(*args, **kwargs)

        chat_client.post_message = _record_status

        await run_poll_cycle(NOW, store, pipeline)

        assert seen == ["sending"]
        assert message.status == "sent"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_sender_marks_failed_without_dispatch(
        self, store, pipeline, chat_client, make_workspace, make_message
    ):
        ws = make_workspace()
        message = make_message(ws.id, sender={"type": "user", "user_id": "missing"})

        report = await run_poll_cycle(NOW, store, pipeline)

        assert report.failed == 1
        assert message.status == "failed"
        assert "missing" in message.error_message
        assert chat_client.posts == []
        assert store.history == []

    @pytest.mark.asyncio
    async def test_missing_workspace_marks_failed(self, store, pipeline, make_message):
        message = make_message(uuid.uuid4())

        report = await run_poll_cycle(NOW, store, pipeline)

        assert report.failed == 1
        assert message.status == "failed"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(
        self, store, pipeline, chat_client, make_workspace, make_message
    ):
        ws = make_workspace()
        good = make_message(ws.id)
        bad = make_message(ws.id, sender={"type": "user", "user_id": "missing"})

        report = await run_poll_cycle(NOW, store, pipeline)

        assert good.status == "sent"
        assert bad.status == "failed"
        assert report.sent == 1
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_partial_recipient_failure_still_sent(
        self, store, credential_store, make_workspace, make_message
    ):
        from modules.dispatcher.pipeline import DeliveryPipeline
        from tests.conftest import FakeChatClient

        client = FakeChatClient(fail_channels={"C-bad"})
        pipeline = DeliveryPipeline(store, credential_store, client)
        ws = make_workspace()
        message = make_message(
            ws.id,
            recipients=[
                {"type": "channel", "id": "C-good"},
                {"type": "channel", "id": "C-bad"},
            ],
        )

        report = await run_poll_cycle(NOW, store, pipeline)

        assert message.status == "sent"
        assert report.outcomes[0].recipients_attempted == 2
        assert report.outcomes[0].recipients_failed == 1
        assert [h.status for h in store.history] == ["sent", "failed"]

    @pytest.mark.asyncio
    async def test_history_write_failure_keeps_message_sent(
        self, store, pipeline, chat_client, make_workspace, make_message
    ):
        ws = make_workspace()
        message = make_message(
            ws.id,
            recipients=[{"type": "channel", "id": f"C{i}"} for i in range(3)],
        )
        original = store.append_history
        calls = {"n": 0}

        async def flaky(entry):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("db down")
            return await original(entry)

        store.append_history = flaky

        report = await run_poll_cycle(NOW, store, pipeline)

        assert [p["channel"] for p in chat_client.posts] == ["C0", "C1", "C2"]
        assert message.status == "sent"
        assert report.outcomes[0].recipients_attempted == 3
        assert len(store.history) == 2

    @pytest.mark.asyncio
    async def test_failure_captured_when_session_factory_given(
        self, store, pipeline, make_workspace, make_message, mock_session_factory
    ):
        ws = make_workspace()
        message = make_message(ws.id, sender={"type": "user", "user_id": "missing"})

        with patch("modules.scheduler.worker.capture_error", new_callable=AsyncMock) as capture:
            await run_poll_cycle(NOW, store, pipeline, session_factory=mock_session_factory)

        capture.assert_awaited_once()
        kwargs = capture.call_args.kwargs
        assert kwargs["service"] == "scheduler"
        assert kwargs["scheduled_message_id"] == message.id


# ---------------------------------------------------------------------------
# Recurrence and email recipients
# ---------------------------------------------------------------------------


class TestRecurringAndEmail:
    @pytest.mark.asyncio
    async def test_recurring_message_stamps_last_run(
        self, store, pipeline, make_workspace, make_message
    ):
        ws = make_workspace()
        message = make_message(ws.id, recurrence={"type": "daily", "time": "09:00"})

        await run_poll_cycle(NOW, store, pipeline)

        assert message.status == "sent"
        assert message.last_run == NOW

    @pytest.mark.asyncio
    async def test_one_off_message_has_no_last_run(
        self, store, pipeline, make_workspace, make_message
    ):
        ws = make_workspace()
        message = make_message(ws.id)

        await run_poll_cycle(NOW, store, pipeline)

        assert message.last_run is None

    @pytest.mark.asyncio
    async def test_email_lookup_failure_still_dispatches(
        self, store, credential_store, make_workspace, make_message
    ):
        from modules.dispatcher.pipeline import DeliveryPipeline
        from tests.conftest import FakeChatClient

        client = FakeChatClient(lookup_error=RuntimeError("users_not_found"))
        pipeline = DeliveryPipeline(store, credential_store, client)
        ws = make_workspace()
        message = make_message(
            ws.id,
            recipients=[{"type": "email", "name": "ana.raw", "email": "ana@acme.test"}],
        )

        await run_poll_cycle(NOW, store, pipeline)

        assert message.status == "sent"
        assert client.posts[0]["channel"] == "ana.raw"

    @pytest.mark.asyncio
    async def test_user_sender_posts_with_user_token(
        self, store, pipeline, chat_client, make_workspace, make_message
    ):
        token_id = uuid.uuid4()
        ws = make_workspace(user_tokens=[{"id": token_id, "token": "xoxp-ana"}])
        make_message(ws.id, sender={"type": "user", "user_id": str(token_id)})

        await run_poll_cycle(NOW, store, pipeline)

        assert chat_client.posts[0]["credential"] == "xoxp-ana"
