from ume_messaging.services.messaging.actions import ChatActions
from ume_messaging.services.messaging.conversation_repository import (
    ConversationRepository,
)
from ume_messaging.services.messaging.message_repository import MessageRepository
from ume_messaging.services.messaging.message_service import MessageService

__all__ = [
    "ChatActions",
    "ConversationRepository",
    "MessageRepository",
    "MessageService",
]
