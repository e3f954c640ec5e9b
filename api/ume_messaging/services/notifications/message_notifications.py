"""Notification dispatch for new chat messages.

Every message produces an in-app notification for the receiver. An email
is sent only when all of these hold, checked in order:

1. the receiver has not been active within ``ACTIVITY_THRESHOLD_MINUTES``
2. the receiver has an email address
3. the conversation has not been emailed about since the receiver was last active
4. today's global email count is below ``DAILY_EMAIL_LIMIT``

The daily counter is incremented before sending and the returned value is
re-checked, so concurrent dispatchers can overshoot the counter by at most
the number of racers but never send past the limit.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Dict, Optional

from ume_messaging.metrics.messaging_metrics import notification_dispatch_total
from ume_messaging.models.conversation import canonical_pair
from ume_messaging.models.notification import MessageNotificationData
from ume_messaging.services.email.templates import (
    conversation_url,
    new_message_html,
    new_message_subject,
)
from ume_messaging.services.notifications.email_counter import today_key
from ume_messaging.utils.logging import preview_text

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    SKIPPED_ACTIVE = "skipped_active"
    SKIPPED_NO_EMAIL = "skipped_no_email"
    SKIPPED_ALREADY_NOTIFIED = "skipped_already_notified"
    SKIPPED_DAILY_LIMIT = "skipped_daily_limit"
    SKIPPED_LIMIT_RACE = "skipped_limit_race"
    ERROR = "error"


class MessageNotificationDispatcher:
    """Evaluates one new-message event.

    Dependencies injected via constructor:
    - notification_service: NotificationService (in-app notifications)
    - user_repository: UserRepository (email address, last_active)
    - conversation_repository: ConversationRepository (email_notified_at)
    - email_counter: DailyEmailCounter (global daily cap)
    - email_transport: EmailTransport
    - settings: Settings
    """

    def __init__(
        self,
        notification_service,
        user_repository,
        conversation_repository,
        email_counter,
        email_transport,
        settings,
    ):
        self.notification_service = notification_service
        self.user_repository = user_repository
        self.conversation_repository = conversation_repository
        self.email_counter = email_counter
        self.email_transport = email_transport
        self.settings = settings
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _conversation_lock(self, key: str) -> AsyncIterator[None]:
        """Serialize dispatches for one conversation within this process."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                self._locks.pop(key, None)

    async def handle(
        self, data: MessageNotificationData, now: Optional[datetime] = None
    ) -> DispatchOutcome:
        """Create the in-app notification and maybe send an email.

        Never raises; the outcome is returned for logging and tests.
        """
        preview = preview_text(data.message_preview)
        try:
            await self.notification_service.notify_new_message(
                recipient_id=data.recipient_id,
                sender_name=data.sender_name,
                listing_id=data.listing_id,
                preview=preview,
            )
        except Exception:
            logger.exception(
                "Failed to create in-app notification for user %s", data.recipient_id
            )

        p1, p2 = canonical_pair(data.sender_id, data.recipient_id)
        try:
            async with self._conversation_lock(f"{data.listing_id}:{p1}:{p2}"):
                outcome = await self._maybe_send_email(
                    data, now or datetime.now(timezone.utc)
                )
        except Exception:
            logger.exception(
                "Email escalation failed for listing %s recipient %s",
                data.listing_id,
                data.recipient_id,
            )
            outcome = DispatchOutcome.ERROR

        notification_dispatch_total.labels(outcome=outcome.value).inc()
        logger.info(
            "Message notification for %s on listing %s: %s",
            data.recipient_id,
            data.listing_id,
            outcome.value,
        )
        return outcome

    async def _maybe_send_email(
        self, data: MessageNotificationData, now: datetime
    ) -> DispatchOutcome:
        recipient = await self.user_repository.get_by_id(data.recipient_id)
        last_active = recipient.last_active if recipient else None

        threshold = timedelta(minutes=self.settings.ACTIVITY_THRESHOLD_MINUTES)
        if last_active is not None and now - last_active < threshold:
            return DispatchOutcome.SKIPPED_ACTIVE

        if recipient is None or not recipient.email:
            return DispatchOutcome.SKIPPED_NO_EMAIL

        conversation = await self.conversation_repository.get_by_pair(
            data.listing_id, data.sender_id, data.recipient_id
        )
        notified_at = conversation.email_notified_at if conversation else None
        # A recipient who was never active counts as inactive since forever
        if notified_at is not None and (
            last_active is None or notified_at > last_active
        ):
            return DispatchOutcome.SKIPPED_ALREADY_NOTIFIED

        limit = self.settings.DAILY_EMAIL_LIMIT
        day = today_key(now)
        if await self.email_counter.get_count(day) >= limit:
            logger.warning("Daily email limit of %d reached, skipping email", limit)
            return DispatchOutcome.SKIPPED_DAILY_LIMIT

        new_count = await self.email_counter.increment(day)
        if new_count > limit:
            logger.warning(
                "Daily email limit exceeded after increment (%d > %d)", new_count, limit
            )
            return DispatchOutcome.SKIPPED_LIMIT_RACE

        html = new_message_html(
            recipient_name=recipient.display_name or recipient.username,
            sender_name=data.sender_name,
            listing_title=data.listing_title,
            message_preview=data.message_preview,
            conversation_link=conversation_url(
                self.settings.APP_BASE_URL, data.listing_id
            ),
        )
        result = await self.email_transport.send_email(
            to=recipient.email,
            subject=new_message_subject(data.sender_name, data.listing_title),
            html=html,
        )
        if not result.success:
            logger.error(
                "Failed to send message email for listing %s: %s",
                data.listing_id,
                result.error,
            )
            return DispatchOutcome.EMAIL_FAILED

        if conversation is not None:
            await self.conversation_repository.mark_email_notified(
                conversation.id, now
            )
        else:
            logger.warning(
                "Email sent but no conversation row for listing %s; "
                "email_notified_at not recorded",
                data.listing_id,
            )
        return DispatchOutcome.EMAIL_SENT
