"""Notification API: the caller's own notification inbox."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from errors.exceptions import AccessDeniedError, NotFoundError
from models.notification import DoubtNotification
from models.principal import Principal
from models.request import MarkReadRequest, NotificationPage, NotificationTestRequest
from services.auth import get_principal
from services.container import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=NotificationPage)
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    notifications = await services.dispatcher.list_for_user(principal.id, limit, offset)
    return NotificationPage(
        notifications=notifications,
        total=len(notifications),
        limit=limit,
        offset=offset,
    )


@router.get("/unread-count")
async def unread_count(
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return {"unread_count": await services.dispatcher.unread_count(principal.id)}


@router.put("/mark-read")
async def mark_read(
    req: MarkReadRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    updated = await services.dispatcher.mark_read(req.notification_ids, principal.id)
    return {"message": "Notifications marked as read", "updated": updated}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    if not await services.dispatcher.delete_for_user(notification_id, principal.id):
        raise NotFoundError("Notification", notification_id)
    return {"message": "Notification deleted successfully"}


@router.post("/test", response_model=DoubtNotification)
async def send_test_notification(
    req: NotificationTestRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """Staff-only: push a system notification to a user (default: self)."""
    if not principal.is_staff:
        raise AccessDeniedError("Only staff can send test notifications")
    return await services.dispatcher.send(
        req.user_id or principal.id,
        req.type,
        req.title,
        req.message,
    )
