"""Inbox cache: the user's conversations and the unread badge.

Any relevant change on ``conversations`` or ``messages`` triggers a full
refetch rather than a field-level merge.
"""

import logging
from typing import List, Optional

from ume_messaging.models.conversation import ConversationSummary
from ume_messaging.models.results import ActionError
from ume_messaging.realtime.relay import ChangeEvent, Subscription

logger = logging.getLogger(__name__)


class ConversationList:
    def __init__(self, actions, relay):
        self.actions = actions
        self.relay = relay
        self.conversations: List[ConversationSummary] = []
        self.error: Optional[ActionError] = None
        self._subscriptions: List[Subscription] = []

    @property
    def user_id(self) -> Optional[str]:
        return self.actions.caller_id

    @property
    def total_unread_count(self) -> int:
        return sum(c.unread_count for c in self.conversations)

    async def start(self) -> None:
        await self.refresh()
        self._subscriptions = [
            self.relay.subscribe("conversations", self._on_change),
            self.relay.subscribe("messages", self._on_change),
        ]

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    async def refresh(self) -> None:
        result = await self.actions.list_conversations()
        if result.error:
            self.error = result.error
            return
        self.error = None
        self.conversations = result.data

    def _involves_user(self, row: dict) -> bool:
        return self.user_id in (
            row.get("participant_1_id"),
            row.get("participant_2_id"),
            row.get("sender_id"),
            row.get("receiver_id"),
        )

    async def _on_change(self, event: ChangeEvent) -> None:
        if self._involves_user(event.row):
            await self.refresh()
