"""In-app notification creation and read-state management."""

import logging
from typing import List, Optional

from ume_messaging.core.exceptions import NotificationNotFoundError
from ume_messaging.metrics.messaging_metrics import notifications_created_total
from ume_messaging.models.notification import (
    Notification,
    NotificationCreate,
    NotificationType,
)

logger = logging.getLogger(__name__)


def _format_price(cents: int) -> str:
    return f"${cents / 100:,.2f}"


class NotificationService:
    """Creates notifications and flips their read flag.

    Dependencies injected via constructor:
    - repository: NotificationRepository
    """

    def __init__(self, repository):
        self.repository = repository

    async def create_notification(self, data: NotificationCreate) -> Notification:
        notification = await self.repository.create(data)
        notifications_created_total.labels(type=data.type.value).inc()
        logger.info(
            "Created %s notification %s for user %s",
            data.type.value,
            notification.id,
            data.user_id,
        )
        return notification

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def notify_new_message(
        self, recipient_id: str, sender_name: str, listing_id: str, preview: str
    ) -> Notification:
        return await self.create_notification(
            NotificationCreate(
                user_id=recipient_id,
                type=NotificationType.NEW_MESSAGE,
                title=f"New message from {sender_name}",
                message=preview,
                link=f"/messages?listing={listing_id}",
                listing_id=listing_id,
            )
        )

    async def notify_item_sold(
        self,
        seller_id: str,
        buyer_name: str,
        listing_title: str,
        order_id: str,
        price_cents: int,
    ) -> Notification:
        return await self.create_notification(
            NotificationCreate(
                user_id=seller_id,
                type=NotificationType.ITEM_SOLD,
                title="You Made a Sale!",
                message=(
                    f'{buyer_name} purchased "{listing_title}" for '
                    f"{_format_price(price_cents)}. Please ship the item."
                ),
                link=f"/orders/{order_id}",
                order_id=order_id,
            )
        )

    async def notify_order_shipped(
        self,
        buyer_id: str,
        listing_title: str,
        order_id: str,
        tracking_number: Optional[str] = None,
    ) -> Notification:
        message = f'"{listing_title}" is on its way!'
        if tracking_number:
            message += f" Tracking: {tracking_number}"
        return await self.create_notification(
            NotificationCreate(
                user_id=buyer_id,
                type=NotificationType.ORDER_SHIPPED,
                title="Your Order Has Shipped",
                message=message,
                link=f"/orders/{order_id}",
                order_id=order_id,
            )
        )

    async def notify_order_delivered(
        self, buyer_id: str, listing_title: str, order_id: str
    ) -> Notification:
        return await self.create_notification(
            NotificationCreate(
                user_id=buyer_id,
                type=NotificationType.ORDER_DELIVERED,
                title="Order Delivered",
                message=f'"{listing_title}" has been delivered. Enjoy your purchase!',
                link=f"/orders/{order_id}",
                order_id=order_id,
            )
        )

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    async def list_notifications(
        self, user_id: str, limit: int = 50, unread_only: bool = False
    ) -> List[Notification]:
        return await self.repository.list_for_user(
            user_id, limit=limit, unread_only=unread_only
        )

    async def mark_as_read(self, notification_id: str, user_id: str) -> None:
        """Mark one of the user's notifications read.

        Raises:
            NotificationNotFoundError: If it does not exist or belongs to
                another user
        """
        if not await self.repository.mark_read(notification_id, user_id):
            raise NotificationNotFoundError(notification_id)

    async def mark_all_as_read(self, user_id: str) -> int:
        return await self.repository.mark_all_read(user_id)

    async def get_unread_count(self, user_id: str) -> int:
        return await self.repository.count_unread(user_id)
