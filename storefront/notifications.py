# storefront/notifications.py
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_current_user
from .database import get_session
from .errors import NotFound
from .models import Notification, User
from .schemas import NotificationOut

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


# 🔔 Уведомления текущего пользователя
@router.get("", response_model=List[NotificationOut])
async def list_notifications(
    unread: bool = False,
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    query = select(Notification).where(Notification.user_id == current_user.id)
    if unread:
        query = query.where(Notification.is_read.is_(False))
    result = await session.execute(query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit))
    return result.scalars().all()


@router.post("/{notification_id}/read", response_model=NotificationOut)
async def mark_read(
    notification_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    result = await session.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == current_user.id)
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotFound("Notification not found")
    notification.is_read = True
    await session.commit()
    return notification
