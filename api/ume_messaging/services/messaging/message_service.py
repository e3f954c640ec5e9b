"""Message store, read-state tracking and conversation maintenance.

Every mutation follows the same path: write the message row, publish the
row change on the relay, then refresh the conversation aggregate. The
aggregate refresh and the notification dispatch run after the write and
can never fail it.
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional, Set

import aiosqlite
from pydantic import BaseModel

from ume_messaging.core.exceptions import (
    ConversationNotFoundError,
    ForbiddenError,
    MessageNotFoundError,
    TransportError,
    UnauthenticatedError,
    ValidationError,
)
from ume_messaging.metrics.messaging_metrics import (
    conversation_recompute_failures_total,
    messages_marked_read_total,
    messages_total,
)
from ume_messaging.models.conversation import ConversationSummary
from ume_messaging.models.message import Message
from ume_messaging.models.notification import MessageNotificationData
from ume_messaging.realtime.relay import ChangeEvent, ChangeEventType

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"
CONVERSATIONS_TABLE = "conversations"


@contextmanager
def _storage(operation: str) -> Iterator[None]:
    """Translate storage failures into TransportError."""
    try:
        yield
    except aiosqlite.Error as e:
        messages_total.labels(operation=operation, result="error").inc()
        logger.error(f"Storage failure during {operation}: {e}")
        raise TransportError(str(e), operation) from e


def _require_caller(caller_id: Optional[str]) -> str:
    if not caller_id:
        raise UnauthenticatedError()
    return caller_id


def _require_id(value: Optional[str], field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required", field=field)
    return value


def _dump(model: Optional[BaseModel]) -> dict:
    return model.model_dump(mode="json") if model is not None else {}


class MessageService:
    """Orchestrates message operations.

    Dependencies injected via constructor:
    - message_repository: MessageRepository
    - conversation_repository: ConversationRepository
    - user_repository: UserRepository (sender names)
    - listing_repository: ListingRepository (listing titles)
    - relay: ChangeRelay
    - settings: Settings
    - dispatcher: MessageNotificationDispatcher, optional
    """

    def __init__(
        self,
        message_repository,
        conversation_repository,
        user_repository,
        listing_repository,
        relay,
        settings,
        dispatcher=None,
    ):
        self.messages = message_repository
        self.conversations = conversation_repository
        self.users = user_repository
        self.listings = listing_repository
        self.relay = relay
        self.settings = settings
        self.dispatcher = dispatcher
        self._background_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(
        self,
        listing_id: str,
        sender_id: Optional[str],
        receiver_id: str,
        body: str,
        client_id: Optional[str] = None,
    ) -> Message:
        sender_id = _require_caller(sender_id)
        listing_id = _require_id(listing_id, "listing_id")
        receiver_id = _require_id(receiver_id, "receiver_id")
        if sender_id == receiver_id:
            raise ValidationError("You cannot message yourself", field="receiver_id")
        text = self._validate_body(body)

        with _storage("send"):
            message = await self.messages.create(
                listing_id, sender_id, receiver_id, text, client_id
            )
        messages_total.labels(operation="send", result="success").inc()
        logger.info(
            "Message %s sent on listing %s from %s to %s",
            message.id,
            listing_id,
            sender_id,
            receiver_id,
        )

        await self._publish(ChangeEventType.INSERT, MESSAGES_TABLE, new=message)
        await self._refresh_conversation(listing_id, sender_id, receiver_id)
        self._schedule_notification(message)
        return message

    def _validate_body(self, body: Optional[str]) -> str:
        text = (body or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty", field="body")
        if len(text) > self.settings.MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"Message cannot exceed {self.settings.MESSAGE_MAX_LENGTH} characters",
                field="body",
            )
        return text

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def list_for_conversation(
        self, listing_id: str, user_a: str, user_b: str, caller_id: Optional[str]
    ) -> List[Message]:
        """Non-deleted messages of one conversation, oldest first."""
        caller_id = _require_caller(caller_id)
        listing_id = _require_id(listing_id, "listing_id")
        user_a = _require_id(user_a, "user_a")
        user_b = _require_id(user_b, "user_b")
        if caller_id not in (user_a, user_b):
            raise ForbiddenError("You are not a participant in this conversation")
        with _storage("list"):
            return await self.messages.list_between(listing_id, user_a, user_b)

    async def get_message(self, message_id: str, caller_id: Optional[str]) -> Message:
        """Direct lookup by id. Soft-deleted rows are returned with ``deleted=True``."""
        caller_id = _require_caller(caller_id)
        with _storage("get"):
            message = await self.messages.get_by_id(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        if not message.involves(caller_id):
            raise ForbiddenError("You are not a participant in this conversation")
        return message

    # ------------------------------------------------------------------
    # Edit / delete
    # ------------------------------------------------------------------

    async def _get_owned(self, message_id: str, caller_id: str, operation: str) -> Message:
        with _storage(operation):
            message = await self.messages.get_by_id(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        if message.sender_id != caller_id:
            messages_total.labels(operation=operation, result="forbidden").inc()
            raise ForbiddenError(f"Only the sender can {operation} this message")
        return message

    async def edit(
        self, message_id: str, new_body: str, caller_id: Optional[str]
    ) -> Message:
        caller_id = _require_caller(caller_id)
        message = await self._get_owned(message_id, caller_id, "edit")
        if message.deleted:
            raise ValidationError("Cannot edit a deleted message")
        text = self._validate_body(new_body)

        window = self.settings.MESSAGE_EDIT_WINDOW_SECONDS
        if window and datetime.now(timezone.utc) - message.created_at > timedelta(
            seconds=window
        ):
            raise ValidationError(
                f"Messages can only be edited within {window} seconds of sending"
            )

        with _storage("edit"):
            updated = await self.messages.update_body(message_id, text)
        if updated is None:
            raise MessageNotFoundError(message_id)
        messages_total.labels(operation="edit", result="success").inc()

        await self._publish(
            ChangeEventType.UPDATE, MESSAGES_TABLE, new=updated, old=message
        )
        await self._refresh_conversation(
            updated.listing_id, updated.sender_id, updated.receiver_id
        )
        return updated

    async def soft_delete(self, message_id: str, caller_id: Optional[str]) -> Message:
        """Flag a message deleted. Deleting twice is a no-op."""
        caller_id = _require_caller(caller_id)
        message = await self._get_owned(message_id, caller_id, "delete")
        if message.deleted:
            return message

        with _storage("delete"):
            updated = await self.messages.mark_deleted(message_id)
        if updated is None:
            raise MessageNotFoundError(message_id)
        messages_total.labels(operation="delete", result="success").inc()

        await self._publish(
            ChangeEventType.UPDATE, MESSAGES_TABLE, new=updated, old=message
        )
        await self._refresh_conversation(
            updated.listing_id, updated.sender_id, updated.receiver_id
        )
        return updated

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    async def mark_read(
        self, listing_id: str, other_user_id: str, caller_id: Optional[str]
    ) -> int:
        """Mark everything ``other_user_id`` sent the caller on a listing as read.

        Returns the number of rows changed; repeated calls return 0.
        """
        caller_id = _require_caller(caller_id)
        listing_id = _require_id(listing_id, "listing_id")
        other_user_id = _require_id(other_user_id, "other_user_id")

        with _storage("mark_read"):
            changed = await self.messages.mark_read(
                listing_id, sender_id=other_user_id, receiver_id=caller_id
            )
        if not changed:
            await self._repair_stale_unread(listing_id, caller_id, other_user_id)
            return 0

        messages_marked_read_total.inc(len(changed))
        for message in changed:
            previous = message.model_copy(update={"read": False, "seen_at": None})
            await self._publish(
                ChangeEventType.UPDATE, MESSAGES_TABLE, new=message, old=previous
            )
        await self._refresh_conversation(listing_id, caller_id, other_user_id)
        return len(changed)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def list_conversations(
        self, caller_id: Optional[str]
    ) -> List[ConversationSummary]:
        """The caller's conversations, most recent activity first.

        Reconciles the aggregate first, so rows missed by a failed refresh
        are repaired here.
        """
        caller_id = _require_caller(caller_id)
        await self.reconcile_for_user(caller_id)
        with _storage("list_conversations"):
            conversations = await self.conversations.list_for_user(caller_id)
            summaries = []
            for conversation in conversations:
                other_id = conversation.other_participant(caller_id)
                other = await self.users.get_by_id(other_id)
                listing = await self.listings.get_by_id(conversation.listing_id)
                summaries.append(
                    ConversationSummary(
                        id=conversation.id,
                        listing_id=conversation.listing_id,
                        listing_title=listing.title if listing else None,
                        other_user_id=other_id,
                        other_user_name=other.name if other else None,
                        last_message=conversation.last_message_body,
                        last_message_at=conversation.last_message_at,
                        unread_count=conversation.unread_count_for(caller_id),
                    )
                )
        return summaries

    async def reconcile_for_user(self, user_id: str) -> None:
        with _storage("reconcile"):
            threads = await self.messages.list_threads_for_user(user_id)
        for listing_id, other_id in threads:
            await self._refresh_conversation(
                listing_id, user_id, other_id, publish=False
            )

    async def total_unread_count(self, caller_id: Optional[str]) -> int:
        caller_id = _require_caller(caller_id)
        with _storage("unread_count"):
            return await self.messages.count_unread_total(caller_id)

    async def delete_conversation(
        self, listing_id: str, other_user_id: str, caller_id: Optional[str]
    ) -> int:
        """Hard-delete a conversation and all of its messages.

        Returns the number of messages removed.
        """
        caller_id = _require_caller(caller_id)
        listing_id = _require_id(listing_id, "listing_id")
        other_user_id = _require_id(other_user_id, "other_user_id")

        with _storage("delete_conversation"):
            conversation = await self.conversations.get_by_pair(
                listing_id, caller_id, other_user_id
            )
            if conversation is None:
                raise ConversationNotFoundError(f"{listing_id}:{other_user_id}")
            removed = await self.messages.delete_between(
                listing_id, caller_id, other_user_id
            )
            deleted_conversation = await self.conversations.delete_by_pair(
                listing_id, caller_id, other_user_id
            )

        for message in removed:
            await self._publish(ChangeEventType.DELETE, MESSAGES_TABLE, old=message)
        if deleted_conversation is not None:
            await self._publish(
                ChangeEventType.DELETE, CONVERSATIONS_TABLE, old=deleted_conversation
            )
        logger.info(
            "Conversation %s deleted by %s (%d messages)",
            conversation.id,
            caller_id,
            len(removed),
        )
        return len(removed)

    async def _refresh_conversation(
        self, listing_id: str, user_a: str, user_b: str, publish: bool = True
    ) -> None:
        try:
            conversation, created = await self.conversations.recompute(
                listing_id, user_a, user_b
            )
        except Exception:
            conversation_recompute_failures_total.inc()
            logger.exception(
                "Failed to recompute conversation for listing %s", listing_id
            )
            return
        if publish:
            await self._publish(
                ChangeEventType.INSERT if created else ChangeEventType.UPDATE,
                CONVERSATIONS_TABLE,
                new=conversation,
            )

    async def _repair_stale_unread(
        self, listing_id: str, caller_id: str, other_user_id: str
    ) -> None:
        """Recompute a conversation still counting unread messages for the caller.

        A mark-read interrupted after its UPDATE committed leaves the rows read
        but the aggregate untouched, so the next call finds nothing to change.
        """
        with _storage("mark_read"):
            conversation = await self.conversations.get_by_pair(
                listing_id, caller_id, other_user_id
            )
        if conversation is None or conversation.unread_count_for(caller_id) == 0:
            return
        logger.info(
            "Repairing stale unread count on conversation %s", conversation.id
        )
        await self._refresh_conversation(listing_id, caller_id, other_user_id)

    # ------------------------------------------------------------------
    # Relay and notifications
    # ------------------------------------------------------------------

    async def _publish(
        self,
        event_type: ChangeEventType,
        table: str,
        new: Optional[BaseModel] = None,
        old: Optional[BaseModel] = None,
    ) -> None:
        await self.relay.publish(
            ChangeEvent(event_type=event_type, table=table, new=_dump(new), old=_dump(old))
        )

    def _schedule_notification(self, message: Message) -> None:
        if self.dispatcher is None:
            return
        task = asyncio.create_task(self._notify(message))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _notify(self, message: Message) -> None:
        try:
            sender = await self.users.get_by_id(message.sender_id)
            listing = await self.listings.get_by_id(message.listing_id)
            await self.dispatcher.handle(
                MessageNotificationData(
                    recipient_id=message.receiver_id,
                    sender_id=message.sender_id,
                    sender_name=sender.name if sender else "Someone",
                    listing_id=message.listing_id,
                    listing_title=listing.title if listing else "your listing",
                    message_preview=message.body,
                )
            )
        except Exception:
            logger.exception("Notification dispatch failed for message %s", message.id)

    async def wait_for_background_tasks(self) -> None:
        """Wait for pending notification dispatches to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
