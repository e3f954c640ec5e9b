"""Client-side caches driven by the change relay.

These mirror what a connected UI keeps in memory: one
:class:`ConversationView` per open conversation and one
:class:`ConversationList` for the inbox badge.
"""

from ume_messaging.client.conversation_list import ConversationList
from ume_messaging.client.conversation_view import (
    ClientMessage,
    ConversationView,
    generate_client_id,
)

__all__ = ["ClientMessage", "ConversationList", "ConversationView", "generate_client_id"]
