"""In-app notification endpoints."""

from typing import Dict

from fastapi import APIRouter, Depends, Query, Response, status

from ume_messaging.core.security import get_current_user_id
from ume_messaging.models.conversation import UnreadCountResponse
from ume_messaging.models.notification import NotificationListResponse
from ume_messaging.routes.dependencies import get_notification_service
from ume_messaging.services.notifications.notification_service import (
    NotificationService,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    limit: int = Query(default=50, ge=1, le=200),
    unread_only: bool = False,
    user_id: str = Depends(get_current_user_id),
    service: NotificationService = Depends(get_notification_service),
):
    notifications = await service.list_notifications(
        user_id, limit=limit, unread_only=unread_only
    )
    return NotificationListResponse(
        notifications=notifications,
        unread_count=await service.get_unread_count(user_id),
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_notification_count(
    user_id: str = Depends(get_current_user_id),
    service: NotificationService = Depends(get_notification_service),
):
    return UnreadCountResponse(unread_count=await service.get_unread_count(user_id))


@router.post("/read-all")
async def mark_all_notifications_read(
    user_id: str = Depends(get_current_user_id),
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, int]:
    return {"updated": await service.mark_all_as_read(user_id)}


@router.post("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_notification_read(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    service: NotificationService = Depends(get_notification_service),
):
    await service.mark_as_read(notification_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
