"""Pydantic models for in-app notifications."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    NEW_MESSAGE = "new_message"
    ITEM_SOLD = "item_sold"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"


class NotificationCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    type: NotificationType
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., max_length=2000)
    link: Optional[str] = None
    order_id: Optional[str] = None
    listing_id: Optional[str] = None


class Notification(BaseModel):
    """Full notification record (database row)."""

    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    link: Optional[str] = None
    order_id: Optional[str] = None
    listing_id: Optional[str] = None
    read: bool = False
    created_at: datetime


class MessageNotificationData(BaseModel):
    """Everything the dispatcher needs about one freshly sent message."""

    recipient_id: str
    sender_id: str
    sender_name: str
    listing_id: str
    listing_title: str
    message_preview: str


class NotificationListResponse(BaseModel):
    notifications: list[Notification]
    unread_count: int
