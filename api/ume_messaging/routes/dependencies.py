"""Shared FastAPI dependencies for service lookup.

Services are built once in the application lifespan and stored on
``app.state``; tests replace them through ``app.dependency_overrides``.
"""

from fastapi import Request

from ume_messaging.services.messaging.message_service import MessageService
from ume_messaging.services.notifications.notification_service import (
    NotificationService,
)


def get_message_service(request: Request) -> MessageService:
    return request.app.state.message_service


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.notification_service
