from ume_messaging.services.notifications.email_counter import DailyEmailCounter
from ume_messaging.services.notifications.message_notifications import (
    DispatchOutcome,
    MessageNotificationDispatcher,
)
from ume_messaging.services.notifications.notification_repository import (
    NotificationRepository,
)
from ume_messaging.services.notifications.notification_service import (
    NotificationService,
)

__all__ = [
    "DailyEmailCounter",
    "DispatchOutcome",
    "MessageNotificationDispatcher",
    "NotificationRepository",
    "NotificationService",
]
