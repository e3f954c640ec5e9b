"""Conversation aggregate endpoints."""

from typing import Dict, List

from fastapi import APIRouter, Depends, Query

from ume_messaging.core.security import get_current_user_id
from ume_messaging.models.conversation import ConversationSummary, UnreadCountResponse
from ume_messaging.routes.dependencies import get_message_service
from ume_messaging.services.messaging.message_service import MessageService

router = APIRouter(prefix="/conversations", tags=["Conversations"])


@router.get("", response_model=List[ConversationSummary])
async def list_conversations(
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
):
    return await service.list_conversations(user_id)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def total_unread_count(
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
):
    return UnreadCountResponse(unread_count=await service.total_unread_count(user_id))


@router.delete("")
async def delete_conversation(
    listing_id: str = Query(..., min_length=1),
    other_user_id: str = Query(..., min_length=1),
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
) -> Dict[str, int]:
    """Hard-delete the conversation and every message in it."""
    removed = await service.delete_conversation(listing_id, other_user_id, user_id)
    return {"deleted_messages": removed}
