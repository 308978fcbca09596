from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from parkwatch.core.database import aget_db
from parkwatch.core.security import get_current_user
from parkwatch.schemas.notification import (
    MarkAsReadRequest,
    MarkAsReadResponse,
    NotificationOut,
    NotificationsListResponse,
)
from parkwatch.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationsListResponse)
async def get_user_notifications(
    request: Request,
    db: AsyncSession = Depends(aget_db),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False),
):
    """Get notifications for the current user with pagination"""
    user = await get_current_user(request, db)
    notifications, total_count, unread_count = await NotificationService.list_for_user(
        db, user.id, page=page, limit=limit, unread_only=unread_only
    )
    return NotificationsListResponse(
        notifications=[NotificationOut.model_validate(n) for n in notifications],
        total_count=total_count,
        unread_count=unread_count,
        page=page,
        limit=limit,
    )


@router.put("/read", response_model=MarkAsReadResponse)
async def mark_notifications_as_read(
    data: MarkAsReadRequest,
    request: Request,
    db: AsyncSession = Depends(aget_db),
):
    """Mark several (or all) of the caller's notifications as read"""
    user = await get_current_user(request, db)
    if data.all:
        updated = await NotificationService.mark_all_read(db, user.id)
    else:
        updated = await NotificationService.mark_many_read(db, user.id, data.notification_ids)
    _, _, unread_count = await NotificationService.list_for_user(db, user.id, limit=1)
    return MarkAsReadResponse(updated=updated, unread_count=unread_count)


@router.put("/{notification_id}/read", response_model=NotificationOut)
async def mark_notification_as_read(
    notification_id: int,
    request: Request,
    db: AsyncSession = Depends(aget_db),
):
    user = await get_current_user(request, db)
    notification = await NotificationService.mark_read(db, user.id, notification_id)
    return NotificationOut.model_validate(notification)
