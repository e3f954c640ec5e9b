"""Result-returning facade over :class:`MessageService`.

UI-side callers (the client caches in ``ume_messaging.client``) never see
an exception: every call returns an :class:`ActionResult` carrying either
data or the error code and message.
"""

import logging
from typing import Any, Awaitable, List, Optional

from ume_messaging.core.exceptions import BaseAppException
from ume_messaging.models.conversation import ConversationSummary
from ume_messaging.models.message import Message
from ume_messaging.models.results import ActionError, ActionResult

logger = logging.getLogger(__name__)


async def _run(operation: str, call: Awaitable[Any]) -> ActionResult:
    try:
        return ActionResult(data=await call)
    except BaseAppException as e:
        return ActionResult(
            error=ActionError(
                code=e.error_code, message=str(e.detail), status_code=e.status_code
            )
        )
    except Exception:
        logger.exception("Unexpected error in %s", operation)
        return ActionResult(
            error=ActionError(
                code="INTERNAL_ERROR", message="An unexpected error occurred"
            )
        )


class ChatActions:
    """Chat operations bound to one caller identity.

    ``caller_id`` may be None for a signed-out session; every operation then
    returns an ``UNAUTHENTICATED`` error.
    """

    def __init__(self, service, caller_id: Optional[str]):
        self.service = service
        self.caller_id = caller_id

    async def send_message(
        self,
        listing_id: str,
        receiver_id: str,
        body: str,
        client_id: Optional[str] = None,
    ) -> ActionResult[Message]:
        return await _run(
            "send_message",
            self.service.send(listing_id, self.caller_id, receiver_id, body, client_id),
        )

    async def edit_message(self, message_id: str, body: str) -> ActionResult[Message]:
        return await _run(
            "edit_message", self.service.edit(message_id, body, self.caller_id)
        )

    async def delete_message(self, message_id: str) -> ActionResult[Message]:
        return await _run(
            "delete_message", self.service.soft_delete(message_id, self.caller_id)
        )

    async def mark_as_read(
        self, listing_id: str, other_user_id: str
    ) -> ActionResult[int]:
        return await _run(
            "mark_as_read",
            self.service.mark_read(listing_id, other_user_id, self.caller_id),
        )

    async def list_messages(
        self, listing_id: str, other_user_id: str
    ) -> ActionResult[List[Message]]:
        return await _run(
            "list_messages",
            self.service.list_for_conversation(
                listing_id, self.caller_id or "", other_user_id, self.caller_id
            ),
        )

    async def list_conversations(self) -> ActionResult[List[ConversationSummary]]:
        return await _run(
            "list_conversations", self.service.list_conversations(self.caller_id)
        )

    async def total_unread_count(self) -> ActionResult[int]:
        return await _run(
            "total_unread_count", self.service.total_unread_count(self.caller_id)
        )

    async def delete_conversation(
        self, listing_id: str, other_user_id: str
    ) -> ActionResult[int]:
        return await _run(
            "delete_conversation",
            self.service.delete_conversation(
                listing_id, other_user_id, self.caller_id
            ),
        )
