"""Tests for MessageService: store, read state, aggregate and relay events."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import aiosqlite
import pytest

from ume_messaging.core.exceptions import (
    ConversationNotFoundError,
    ForbiddenError,
    MessageNotFoundError,
    TransportError,
    UnauthenticatedError,
    ValidationError,
)
from ume_messaging.realtime.relay import ChangeEventType
from tests.support import ALICE, BOB, CAROL, LISTING


def _record(relay, table):
    events = []
    relay.subscribe(table, events.append)
    return events


async def _unread_for(stack, user_id, other_id):
    conversation = await stack.conversations.get_by_pair(LISTING, user_id, other_id)
    return conversation.unread_count_for(user_id)


# ---------------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------------


class TestSend:
    @pytest.mark.asyncio
    async def test_send_persists_unread_message(self, stack):
        message = await stack.service.send(LISTING, ALICE, BOB, "  Hello there  ")
        assert message.body == "Hello there"
        assert message.sender_id == ALICE
        assert message.receiver_id == BOB
        assert message.read is False
        assert message.deleted is False

    @pytest.mark.asyncio
    async def test_send_without_identity_is_unauthenticated(self, stack):
        with pytest.raises(UnauthenticatedError):
            await stack.service.send(LISTING, None, BOB, "hi")

    @pytest.mark.parametrize("body", ["", "   ", "\n\t"])
    @pytest.mark.asyncio
    async def test_send_blank_body_rejected(self, stack, body):
        with pytest.raises(ValidationError):
            await stack.service.send(LISTING, ALICE, BOB, body)

    @pytest.mark.asyncio
    async def test_send_too_long_rejected(self, stack):
        body = "x" * (stack.settings.MESSAGE_MAX_LENGTH + 1)
        with pytest.raises(ValidationError):
            await stack.service.send(LISTING, ALICE, BOB, body)

    @pytest.mark.asyncio
    async def test_send_to_self_rejected(self, stack):
        with pytest.raises(ValidationError):
            await stack.service.send(LISTING, ALICE, ALICE, "hi")

    @pytest.mark.asyncio
    async def test_send_missing_ids_rejected(self, stack):
        with pytest.raises(ValidationError):
            await stack.service.send("", ALICE, BOB, "hi")
        with pytest.raises(ValidationError):
            await stack.service.send(LISTING, ALICE, " ", "hi")

    @pytest.mark.asyncio
    async def test_send_publishes_insert_with_client_id(self, stack):
        events = _record(stack.relay, "messages")
        message = await stack.service.send(LISTING, ALICE, BOB, "hi", "client-42")

        assert len(events) == 1
        assert events[0].event_type == ChangeEventType.INSERT
        assert events[0].new["id"] == message.id
        assert events[0].new["client_id"] == "client-42"

    @pytest.mark.asyncio
    async def test_send_publishes_conversation_insert_then_update(self, stack):
        events = _record(stack.relay, "conversations")
        await stack.service.send(LISTING, ALICE, BOB, "one")
        await stack.service.send(LISTING, BOB, ALICE, "two")

        assert [e.event_type for e in events] == [
            ChangeEventType.INSERT,
            ChangeEventType.UPDATE,
        ]
        assert events[-1].new["last_message_body"] == "two"

    @pytest.mark.asyncio
    async def test_storage_failure_surfaces_as_transport_error(self, stack):
        stack.service.messages = AsyncMock()
        stack.service.messages.create.side_effect = aiosqlite.OperationalError(
            "disk I/O error"
        )
        with pytest.raises(TransportError):
            await stack.service.send(LISTING, ALICE, BOB, "hi")

    @pytest.mark.asyncio
    async def test_aggregate_failure_does_not_fail_send(self, stack):
        stack.service.conversations = AsyncMock()
        stack.service.conversations.recompute.side_effect = RuntimeError("boom")

        message = await stack.service.send(LISTING, ALICE, BOB, "still delivered")

        assert (await stack.messages.get_by_id(message.id)).body == "still delivered"

    @pytest.mark.asyncio
    async def test_failed_aggregate_is_repaired_by_next_listing(self, stack):
        real = stack.service.conversations
        stack.service.conversations = AsyncMock()
        stack.service.conversations.recompute.side_effect = RuntimeError("boom")
        await stack.service.send(LISTING, ALICE, BOB, "first")
        stack.service.conversations = real

        summaries = await stack.service.list_conversations(BOB)

        assert len(summaries) == 1
        assert summaries[0].unread_count == 1
        assert summaries[0].last_message == "first"

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_send(self, stack):
        stack.service.dispatcher = AsyncMock()
        stack.service.dispatcher.handle.side_effect = RuntimeError("smtp down")

        message = await stack.service.send(LISTING, ALICE, BOB, "hi")
        await stack.service.wait_for_background_tasks()

        assert message.id
        stack.service.dispatcher.handle.assert_awaited_once()


# ---------------------------------------------------------------------------
# List
# ---------------------------------------------------------------------------


class TestListForConversation:
    @pytest.mark.asyncio
    async def test_lists_in_creation_order(self, stack):
        first = await stack.service.send(LISTING, ALICE, BOB, "first")
        second = await stack.service.send(LISTING, BOB, ALICE, "second")

        result = await stack.service.list_for_conversation(LISTING, ALICE, BOB, BOB)

        assert [m.id for m in result] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_non_participant_is_forbidden(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "private")
        with pytest.raises(ForbiddenError):
            await stack.service.list_for_conversation(LISTING, ALICE, BOB, CAROL)

    @pytest.mark.asyncio
    async def test_requires_identity(self, stack):
        with pytest.raises(UnauthenticatedError):
            await stack.service.list_for_conversation(LISTING, ALICE, BOB, None)


# ---------------------------------------------------------------------------
# Edit / delete
# ---------------------------------------------------------------------------


class TestOwnership:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("intruder", [BOB, CAROL])
    async def test_only_sender_can_edit(self, stack, intruder):
        message = await stack.service.send(LISTING, ALICE, BOB, "original")

        with pytest.raises(ForbiddenError):
            await stack.service.edit(message.id, "hijacked", intruder)

        unchanged = await stack.messages.get_by_id(message.id)
        assert unchanged == message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("intruder", [BOB, CAROL])
    async def test_only_sender_can_delete(self, stack, intruder):
        message = await stack.service.send(LISTING, ALICE, BOB, "original")

        with pytest.raises(ForbiddenError):
            await stack.service.soft_delete(message.id, intruder)

        unchanged = await stack.messages.get_by_id(message.id)
        assert unchanged == message

    @pytest.mark.asyncio
    async def test_edit_missing_message_not_found(self, stack):
        with pytest.raises(MessageNotFoundError):
            await stack.service.edit("missing", "x", ALICE)
        with pytest.raises(MessageNotFoundError):
            await stack.service.soft_delete("missing", ALICE)


class TestEdit:
    @pytest.mark.asyncio
    async def test_edit_sets_flag_and_publishes_update(self, stack):
        message = await stack.service.send(LISTING, ALICE, BOB, "teh price")
        events = _record(stack.relay, "messages")

        updated = await stack.service.edit(message.id, " the price ", ALICE)

        assert updated.body == "the price"
        assert updated.edited is True
        assert events[0].event_type == ChangeEventType.UPDATE
        assert events[0].old["body"] == "teh price"
        assert events[0].new["body"] == "the price"

    @pytest.mark.asyncio
    async def test_edit_refreshes_last_message_snapshot(self, stack):
        message = await stack.service.send(LISTING, ALICE, BOB, "teh price")
        await stack.service.edit(message.id, "the price", ALICE)
        conversation = await stack.conversations.get_by_pair(LISTING, ALICE, BOB)
        assert conversation.last_message_body == "the price"

    @pytest.mark.asyncio
    async def test_edit_empty_body_rejected(self, stack):
        message = await stack.service.send(LISTING, ALICE, BOB, "hi")
        with pytest.raises(ValidationError):
            await stack.service.edit(message.id, "   ", ALICE)

    @pytest.mark.asyncio
    async def test_edit_deleted_message_rejected(self, stack):
        message = await stack.service.send(LISTING, ALICE, BOB, "hi")
        await stack.service.soft_delete(message.id, ALICE)
        with pytest.raises(ValidationError):
            await stack.service.edit(message.id, "resurrected", ALICE)

    @pytest.mark.asyncio
    async def test_edit_after_window_rejected(self, stack, monkeypatch):
        message = await stack.service.send(LISTING, ALICE, BOB, "hi")
        old = message.model_copy(
            update={"created_at": datetime.now(timezone.utc) - timedelta(minutes=10)}
        )
        monkeypatch.setattr(stack.messages, "get_by_id", AsyncMock(return_value=old))

        with pytest.raises(ValidationError):
            await stack.service.edit(message.id, "too late", ALICE)

    @pytest.mark.asyncio
    async def test_zero_window_disables_limit(self, stack, monkeypatch):
        stack.settings.MESSAGE_EDIT_WINDOW_SECONDS = 0
        message = await stack.service.send(LISTING, ALICE, BOB, "hi")
        old = message.model_copy(
            update={"created_at": datetime.now(timezone.utc) - timedelta(days=3)}
        )
        monkeypatch.setattr(stack.messages, "get_by_id", AsyncMock(return_value=old))

        updated = await stack.service.edit(message.id, "late but fine", ALICE)
        assert updated.body == "late but fine"


class TestSoftDelete:
    @pytest.mark.asyncio
    async def test_deleted_message_hidden_from_list_but_found_by_id(self, stack):
        kept = await stack.service.send(LISTING, ALICE, BOB, "kept")
        gone = await stack.service.send(LISTING, ALICE, BOB, "gone")

        await stack.service.soft_delete(gone.id, ALICE)

        listed = await stack.service.list_for_conversation(LISTING, ALICE, BOB, ALICE)
        assert [m.id for m in listed] == [kept.id]
        found = await stack.service.get_message(gone.id, BOB)
        assert found.deleted is True
        assert found.body == "gone"

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, stack):
        message = await stack.service.send(LISTING, ALICE, BOB, "gone")
        first = await stack.service.soft_delete(message.id, ALICE)
        events = _record(stack.relay, "messages")

        second = await stack.service.soft_delete(message.id, ALICE)

        assert first.deleted and second.deleted
        assert events == []

    @pytest.mark.asyncio
    async def test_delete_removes_unread_from_aggregate(self, stack):
        message = await stack.service.send(LISTING, ALICE, BOB, "gone")
        assert await _unread_for(stack, BOB, ALICE) == 1

        await stack.service.soft_delete(message.id, ALICE)

        assert await _unread_for(stack, BOB, ALICE) == 0

    @pytest.mark.asyncio
    async def test_get_message_forbidden_for_outsider(self, stack):
        message = await stack.service.send(LISTING, ALICE, BOB, "private")
        with pytest.raises(ForbiddenError):
            await stack.service.get_message(message.id, CAROL)


# ---------------------------------------------------------------------------
# Read state and unread accounting
# ---------------------------------------------------------------------------


class TestMarkRead:
    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "one")
        await stack.service.send(LISTING, ALICE, BOB, "two")

        first = await stack.service.mark_read(LISTING, ALICE, BOB)
        after_first = await _unread_for(stack, BOB, ALICE)
        events = _record(stack.relay, "messages")
        second = await stack.service.mark_read(LISTING, ALICE, BOB)
        after_second = await _unread_for(stack, BOB, ALICE)

        assert first == 2
        assert second == 0
        assert after_first == after_second == 0
        assert events == []

    @pytest.mark.asyncio
    async def test_mark_read_only_affects_caller_as_receiver(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "to bob")
        await stack.service.send(LISTING, BOB, ALICE, "to alice")

        await stack.service.mark_read(LISTING, ALICE, BOB)

        assert await _unread_for(stack, BOB, ALICE) == 0
        assert await _unread_for(stack, ALICE, BOB) == 1

    @pytest.mark.asyncio
    async def test_mark_read_publishes_update_per_row(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "one")
        await stack.service.send(LISTING, ALICE, BOB, "two")
        events = _record(stack.relay, "messages")

        await stack.service.mark_read(LISTING, ALICE, BOB)

        assert len(events) == 2
        assert all(e.event_type == ChangeEventType.UPDATE for e in events)
        assert all(e.new["read"] and not e.old["read"] for e in events)

    @pytest.mark.asyncio
    async def test_mark_read_repairs_aggregate_left_stale(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "hello")
        # Rows committed as read but the aggregate was never recomputed
        await stack.messages.mark_read(LISTING, sender_id=ALICE, receiver_id=BOB)
        assert await _unread_for(stack, BOB, ALICE) == 1
        conversation_events = _record(stack.relay, "conversations")

        changed = await stack.service.mark_read(LISTING, ALICE, BOB)

        assert changed == 0
        assert await _unread_for(stack, BOB, ALICE) == 0
        assert [e.event_type for e in conversation_events] == [ChangeEventType.UPDATE]

    @pytest.mark.asyncio
    async def test_repeated_mark_read_publishes_no_conversation_event(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "hello")
        await stack.service.mark_read(LISTING, ALICE, BOB)
        conversation_events = _record(stack.relay, "conversations")

        await stack.service.mark_read(LISTING, ALICE, BOB)

        assert conversation_events == []

    @pytest.mark.asyncio
    async def test_mark_read_requires_identity(self, stack):
        with pytest.raises(UnauthenticatedError):
            await stack.service.mark_read(LISTING, ALICE, None)


class TestUnreadAccounting:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("n", [1, 4])
    async def test_n_sends_increase_unread_by_n(self, stack, n):
        await stack.service.send(LISTING, ALICE, BOB, "warmup")
        before = await _unread_for(stack, BOB, ALICE)

        for i in range(n):
            await stack.service.send(LISTING, ALICE, BOB, f"msg {i}")

        assert await _unread_for(stack, BOB, ALICE) == before + n
        assert await stack.service.total_unread_count(BOB) == before + n

    @pytest.mark.asyncio
    async def test_aggregate_matches_message_rows(self, stack):
        for i in range(3):
            await stack.service.send(LISTING, ALICE, BOB, f"msg {i}")
        await stack.service.send(LISTING, BOB, ALICE, "reply")
        await stack.service.mark_read(LISTING, BOB, ALICE)
        doomed = await stack.service.send(LISTING, ALICE, BOB, "doomed")
        await stack.service.soft_delete(doomed.id, ALICE)

        expected = await stack.messages.count_unread(LISTING, BOB, ALICE)
        assert await _unread_for(stack, BOB, ALICE) == expected == 3
        assert await _unread_for(stack, ALICE, BOB) == 0


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class TestConversations:
    @pytest.mark.asyncio
    async def test_list_conversations_from_caller_perspective(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "Is this still available?")

        summaries = await stack.service.list_conversations(BOB)

        assert len(summaries) == 1
        summary = summaries[0]
        assert summary.other_user_id == ALICE
        assert summary.other_user_name == "Alice"
        assert summary.listing_title == "Calculus Textbook"
        assert summary.unread_count == 1
        assert (await stack.service.list_conversations(ALICE))[0].unread_count == 0

    @pytest.mark.asyncio
    async def test_delete_conversation_hard_deletes(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "a")
        await stack.service.send(LISTING, BOB, ALICE, "b")
        message_events = _record(stack.relay, "messages")
        conversation_events = _record(stack.relay, "conversations")

        removed = await stack.service.delete_conversation(LISTING, ALICE, BOB)

        assert removed == 2
        assert await stack.conversations.get_by_pair(LISTING, ALICE, BOB) is None
        assert await stack.service.list_for_conversation(LISTING, ALICE, BOB, BOB) == []
        assert [e.event_type for e in message_events] == [ChangeEventType.DELETE] * 2
        assert conversation_events[0].event_type == ChangeEventType.DELETE

    @pytest.mark.asyncio
    async def test_delete_unknown_conversation_not_found(self, stack):
        with pytest.raises(ConversationNotFoundError):
            await stack.service.delete_conversation(LISTING, ALICE, BOB)

    @pytest.mark.asyncio
    async def test_outsider_cannot_delete_conversation(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "a")
        with pytest.raises(ConversationNotFoundError):
            await stack.service.delete_conversation(LISTING, ALICE, CAROL)
        assert await stack.conversations.get_by_pair(LISTING, ALICE, BOB) is not None


# ---------------------------------------------------------------------------
# Notification hand-off
# ---------------------------------------------------------------------------


class TestNotificationHandoff:
    @pytest.mark.asyncio
    async def test_email_subject_names_sender_and_listing(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "Is this still available?")
        await stack.service.wait_for_background_tasks()

        [email] = stack.email_transport.sent
        assert email["to"] == "bob@uni.edu"
        assert "Alice" in email["subject"]
        assert "Calculus Textbook" in email["subject"]
        assert "Is this still available?" in email["html"]

    @pytest.mark.asyncio
    async def test_unknown_listing_uses_fallback_title(self, stack):
        await stack.service.send("listing-unknown", ALICE, BOB, "hello")
        await stack.service.wait_for_background_tasks()

        assert "your listing" in stack.email_transport.sent[0]["subject"]

    @pytest.mark.asyncio
    async def test_second_message_while_away_sends_no_email(self, stack):
        await stack.service.send(LISTING, ALICE, BOB, "first")
        await stack.service.wait_for_background_tasks()
        await stack.service.send(LISTING, ALICE, BOB, "second")
        await stack.service.wait_for_background_tasks()

        assert len(stack.email_transport.sent) == 1
        assert await stack.notification_service.get_unread_count(BOB) == 2

    @pytest.mark.asyncio
    async def test_service_without_dispatcher_skips_notifications(self, stack):
        stack.service.dispatcher = None
        await stack.service.send(LISTING, ALICE, BOB, "quiet")
        await stack.service.wait_for_background_tasks()
        assert stack.email_transport.sent == []
