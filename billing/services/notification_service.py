"""Notification sink: best-effort user notifications for lifecycle events.

A notification never aborts the operation that triggered it: the row is
written inside a SAVEPOINT and failures are logged. Emails are queued on the
session and only sent once the surrounding transaction has committed.
"""

import asyncio
import logging

import resend
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import get_settings
from billing.constants import LIST_LIMIT
from billing.errors import Forbidden, NotFound
from billing.models.notification import Notification
from billing.models.user import User

logger = logging.getLogger(__name__)

_OUTBOX_KEY = "notification_outbox"


async def notify(
    db: AsyncSession,
    user_id: int,
    type: str,
    title: str,
    message: str,
) -> Notification | None:
    """Record a notification for a user; returns None if it could not be stored."""
    try:
        async with db.begin_nested():
            notification = Notification(user_id=user_id, type=type, title=title, message=message)
            db.add(notification)
    except Exception:
        logger.exception(f"Failed to record {type} notification for user {user_id}")
        return None

    db.info.setdefault(_OUTBOX_KEY, []).append((user_id, title, message))
    return notification


def discard_outbox(db: AsyncSession) -> None:
    """Drop queued emails after a rollback."""
    db.info.pop(_OUTBOX_KEY, None)


async def _send_email(to_email: str, title: str, message: str) -> None:
    settings = get_settings()
    billing_url = settings.app_url.rstrip("/") + "/billing"
    params = {
        "from": settings.email_from,
        "to": [to_email],
        "subject": f"{settings.app_name}: {title}",
        "text": f"{message}\n\nView your billing: {billing_url}\n",
    }
    try:
        await asyncio.to_thread(resend.Emails.send, params)
    except Exception:
        logger.exception(f"Failed to email notification {title!r} to {to_email}")


async def flush_outbox(db: AsyncSession) -> None:
    """Mirror queued notifications to email through Resend. Call after commit."""
    outbox = db.info.pop(_OUTBOX_KEY, None)
    if not outbox:
        return
    if not get_settings().resend_api_key:
        logger.debug(f"Resend not configured, {len(outbox)} notification email(s) skipped")
        return

    for user_id, title, message in outbox:
        user = await db.get(User, user_id)
        if user and user.email:
            await _send_email(user.email, title, message)


async def commit_and_dispatch(db: AsyncSession) -> None:
    await db.commit()
    await flush_outbox(db)


# --- User-facing reads ---


async def list_notifications(
    db: AsyncSession, user_id: int, is_read: bool | None = None
) -> list[Notification]:
    query = select(Notification).where(Notification.user_id == user_id)
    if is_read is not None:
        query = query.where(Notification.is_read == is_read)
    result = await db.execute(
        query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(LIST_LIMIT)
    )
    return list(result.scalars().all())


async def mark_as_read(db: AsyncSession, user: User, notification_id: int) -> Notification:
    notification = await db.get(Notification, notification_id)
    if not notification:
        raise NotFound("Notification not found")
    if notification.user_id != user.id:
        raise Forbidden("Not authorized")
    notification.is_read = True
    await db.commit()
    return notification


async def mark_all_as_read(db: AsyncSession, user_id: int) -> None:
    await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read == False)
        .values(is_read=True)
    )
    await db.commit()
