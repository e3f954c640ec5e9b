"""Per-conversation message cache with optimistic updates.

Locally sent messages appear immediately under a generated client id and
are reconciled with the server row by that id, whether the confirmation
arrives through the send response or through a relay INSERT first.
"""

import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from ume_messaging.models.message import Message
from ume_messaging.models.results import ActionError, ActionResult
from ume_messaging.realtime.relay import ChangeEvent, ChangeEventType, Subscription

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"


def generate_client_id() -> str:
    return f"client-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class ClientMessage(Message):
    """A message as held by the client; ``optimistic`` until confirmed."""

    optimistic: bool = False


class ConversationView:
    """Cache for one (listing, other user) conversation.

    Args:
        actions: ChatActions bound to the viewing user
        relay: ChangeRelay to subscribe to
        on_scroll: called whenever a message is appended
        mark_read_delay: seconds to wait before marking an incoming message read
        initial_mark_read_delay: seconds to wait after the first load
    """

    def __init__(
        self,
        actions,
        relay,
        listing_id: str,
        other_user_id: str,
        current_user_id: str,
        on_scroll: Optional[Callable[[], Any]] = None,
        mark_read_delay: float = 0.5,
        initial_mark_read_delay: float = 1.0,
        visible: bool = True,
    ):
        self.actions = actions
        self.relay = relay
        self.listing_id = listing_id
        self.other_user_id = other_user_id
        self.current_user_id = current_user_id
        self.on_scroll = on_scroll
        self.mark_read_delay = mark_read_delay
        self.initial_mark_read_delay = initial_mark_read_delay
        self.visible = visible
        self.error: Optional[ActionError] = None
        self.loading = False
        self._entries: List[ClientMessage] = []
        self._subscription: Optional[Subscription] = None
        self._mark_read_task: Optional[asyncio.Task] = None
        self._mark_read_waiting = False
        self._mark_read_again = False
        self._marking = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.refresh()
        self._subscription = self.relay.subscribe(
            MESSAGES_TABLE, self._on_change, filter={"listing_id": self.listing_id}
        )
        if self.visible:
            self._schedule_mark_read(self.initial_mark_read_delay)

    async def close(self) -> None:
        """Unsubscribe and cancel any pending mark-read timer."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._mark_read_task is not None:
            self._mark_read_task.cancel()
            try:
                await self._mark_read_task
            except asyncio.CancelledError:
                pass
            self._mark_read_task = None

    async def refresh(self) -> None:
        self.loading = True
        try:
            result = await self.actions.list_messages(
                self.listing_id, self.other_user_id
            )
        finally:
            self.loading = False
        if result.error:
            self.error = result.error
            return
        pending = [e for e in self._entries if e.optimistic]
        self._entries = [ClientMessage(**m.model_dump()) for m in result.data]
        for entry in pending:
            self._reconcile(entry)

    @property
    def messages(self) -> List[ClientMessage]:
        """Entries to render; soft-deleted rows are never included."""
        return [e for e in self._entries if not e.deleted]

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    async def send(self, body: str) -> ActionResult:
        text = (body or "").strip()
        if not text:
            self.error = ActionError(
                code="VALIDATION_ERROR",
                message="Message cannot be empty",
                status_code=422,
            )
            return ActionResult(error=self.error)

        client_id = generate_client_id()
        now = datetime.now(timezone.utc)
        self._entries.append(
            ClientMessage(
                id=client_id,
                client_id=client_id,
                listing_id=self.listing_id,
                sender_id=self.current_user_id,
                receiver_id=self.other_user_id,
                body=text,
                created_at=now,
                updated_at=now,
                optimistic=True,
            )
        )
        self._scroll()

        result = await self.actions.send_message(
            self.listing_id, self.other_user_id, text, client_id
        )
        if result.error:
            self._entries = [
                e for e in self._entries if not (e.optimistic and e.client_id == client_id)
            ]
            self.error = result.error
            return result

        self.error = None
        self._reconcile(ClientMessage(**result.data.model_dump()))
        return result

    async def edit(self, message_id: str, body: str) -> ActionResult:
        snapshot = list(self._entries)
        self._replace_local(message_id, body=(body or "").strip(), edited=True)
        result = await self.actions.edit_message(message_id, body)
        if result.error:
            self._entries = snapshot
            self.error = result.error
            return result
        self.error = None
        self._reconcile(ClientMessage(**result.data.model_dump()))
        return result

    async def delete(self, message_id: str) -> ActionResult:
        snapshot = list(self._entries)
        self._replace_local(message_id, deleted=True)
        result = await self.actions.delete_message(message_id)
        if result.error:
            self._entries = snapshot
            self.error = result.error
            return result
        self.error = None
        self._reconcile(ClientMessage(**result.data.model_dump()))
        return result

    def _replace_local(self, message_id: str, **changes: Any) -> None:
        for i, entry in enumerate(self._entries):
            if entry.id == message_id:
                self._entries[i] = entry.model_copy(update=changes)
                return

    def _reconcile(self, incoming: ClientMessage) -> bool:
        """Put ``incoming`` in place of any entry with the same id or client id.

        Returns True when the message was not present before.
        """
        matches = [
            i
            for i, e in enumerate(self._entries)
            if e.id == incoming.id
            or (incoming.client_id is not None and e.client_id == incoming.client_id)
        ]
        if not matches:
            self._entries.append(incoming)
            self._entries.sort(key=lambda e: e.created_at)
            return True
        self._entries[matches[0]] = incoming
        for i in reversed(matches[1:]):
            del self._entries[i]
        return False

    # ------------------------------------------------------------------
    # Relay events
    # ------------------------------------------------------------------

    def _belongs(self, row: dict) -> bool:
        return row.get("listing_id") == self.listing_id and {
            row.get("sender_id"),
            row.get("receiver_id"),
        } == {self.current_user_id, self.other_user_id}

    async def _on_change(self, event: ChangeEvent) -> None:
        if event.event_type == ChangeEventType.DELETE:
            message_id = event.old.get("id")
            self._entries = [e for e in self._entries if e.id != message_id]
            return

        row = event.new
        if not self._belongs(row):
            return
        incoming = ClientMessage.model_validate(row)

        if event.event_type == ChangeEventType.INSERT:
            if self._reconcile(incoming):
                self._scroll()
            if (
                incoming.receiver_id == self.current_user_id
                and not incoming.read
                and self.visible
            ):
                self._schedule_mark_read(self.mark_read_delay)
        elif event.event_type == ChangeEventType.UPDATE:
            for i, entry in enumerate(self._entries):
                if entry.id == incoming.id:
                    self._entries[i] = incoming
                    break

    def _scroll(self) -> None:
        if self.on_scroll is None:
            return
        try:
            self.on_scroll()
        except Exception:
            logger.exception("Error in scroll callback")

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    def set_visible(self, visible: bool) -> None:
        """Track page visibility; becoming visible marks pending messages read."""
        self.visible = visible
        if visible:
            self._schedule_mark_read(0)

    def _schedule_mark_read(self, delay: float) -> None:
        task = self._mark_read_task
        if task is not None and not task.done():
            if not self._mark_read_waiting:
                # Already talking to the server; run once more when it returns
                self._mark_read_again = True
                return
            task.cancel()
        self._mark_read_waiting = True
        self._mark_read_task = asyncio.create_task(self._delayed_mark_read(delay))

    async def _delayed_mark_read(self, delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        self._mark_read_waiting = False
        await self.mark_as_read()
        while self._mark_read_again:
            self._mark_read_again = False
            await self.mark_as_read()

    async def mark_as_read(self) -> int:
        """Mark the other user's messages read. No-op while hidden."""
        if not self.visible or self._marking:
            return 0
        self._marking = True
        try:
            # Shielded so closing the view cannot cut the server call short
            result = await asyncio.shield(
                self.actions.mark_as_read(self.listing_id, self.other_user_id)
            )
        finally:
            self._marking = False
        if result.error:
            self.error = result.error
            return 0
        seen_at = datetime.now(timezone.utc)
        for i, entry in enumerate(self._entries):
            if entry.receiver_id == self.current_user_id and not entry.read:
                self._entries[i] = entry.model_copy(
                    update={"read": True, "seen_at": seen_at}
                )
        return result.data
