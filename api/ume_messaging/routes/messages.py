"""Message store endpoints."""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query, status

from ume_messaging.core.security import get_current_user_id
from ume_messaging.models.message import (
    EditMessageRequest,
    MarkReadRequest,
    MarkReadResponse,
    Message,
    SendMessageRequest,
)
from ume_messaging.routes.dependencies import get_message_service
from ume_messaging.services.messaging.message_service import MessageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["Messages"])


@router.post("", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    payload: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
):
    return await service.send(
        payload.listing_id,
        user_id,
        payload.receiver_id,
        payload.body,
        payload.client_id,
    )


@router.get("", response_model=List[Message])
async def list_messages(
    listing_id: str = Query(..., min_length=1),
    other_user_id: str = Query(..., min_length=1),
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
):
    """Messages between the caller and ``other_user_id`` about a listing."""
    return await service.list_for_conversation(
        listing_id, user_id, other_user_id, user_id
    )


@router.post("/read", response_model=MarkReadResponse)
async def mark_messages_read(
    payload: MarkReadRequest,
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
):
    updated = await service.mark_read(payload.listing_id, payload.other_user_id, user_id)
    return MarkReadResponse(updated=updated)


@router.get("/{message_id}", response_model=Message)
async def get_message(
    message_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
):
    return await service.get_message(message_id, user_id)


@router.patch("/{message_id}", response_model=Message)
async def edit_message(
    message_id: str,
    payload: EditMessageRequest,
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
):
    return await service.edit(message_id, payload.body, user_id)


@router.delete("/{message_id}", response_model=Message)
async def delete_message(
    message_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
):
    """Soft-delete a message. The row is kept with ``deleted=true``."""
    return await service.soft_delete(message_id, user_id)
