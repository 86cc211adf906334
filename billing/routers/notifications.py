"""Notification routes for the current user."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.models.user import User
from billing.schemas.notification import NotificationOut
from billing.services.auth_service import get_current_user
from billing.services.notification_service import list_notifications, mark_all_as_read, mark_as_read

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationOut])
async def notifications_list(
    is_read: bool | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_notifications(db, user.id, is_read=is_read)


@router.put("/read-all")
async def notifications_read_all(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await mark_all_as_read(db, user.id)
    return {"status": "ok"}


@router.put("/{notification_id}/read", response_model=NotificationOut)
async def notification_read(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await mark_as_read(db, user, notification_id)
