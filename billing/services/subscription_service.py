"""Subscription ledger: per-user subscription records and their transitions."""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import ADMIN_ROLES, NOTIFY_PLAN_CHANGED, NOTIFY_SUBSCRIPTION_CANCELLED
from billing.errors import Forbidden, InvalidState, NotFound, PlanNotFound
from billing.models.subscription import Subscription
from billing.models.user import User
from billing.services.lifecycle import (
    LIVE_STATUSES,
    SUPERSEDED_STATUSES,
    EventKind,
    LifecycleEvent,
    apply_event,
    is_terminal,
)
from billing.services.notification_service import commit_and_dispatch, notify
from billing.services.plan_service import find_plan, stripe_price_for_cycle
from billing.services.processor import PaymentProcessor
from billing.utils import ensure_utc, now_utc

logger = logging.getLogger(__name__)


def is_admin(user: User) -> bool:
    return user.role in ADMIN_ROLES


async def lock_user(db: AsyncSession, user_id: int) -> User:
    """Take a row lock on the user; serializes replace-active for that user."""
    result = await db.execute(select(User).where(User.id == user_id).with_for_update())
    user = result.scalar_one_or_none()
    if not user:
        raise NotFound("User not found")
    return user


async def replace_active_subscription(db: AsyncSession, user_id: int, **fields) -> Subscription:
    """Cancel the user's current subscription(s) and insert a new one.

    Runs inside the caller's transaction and does not commit. The user row
    lock plus the partial unique index on live subscriptions keep two
    concurrent checkouts from both ending up active.
    """
    await lock_user(db, user_id)
    now = now_utc()

    result = await db.execute(
        select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_([s.value for s in SUPERSEDED_STATUSES]),
        )
    )
    for existing in result.scalars().all():
        existing.status = apply_event(existing.status, LifecycleEvent(EventKind.SUPERSEDED))
        existing.canceled_at = now
        logger.info(f"Subscription {existing.id} of user {user_id} superseded")
    # Cancellations must reach the database before the insert
    await db.flush()

    subscription = Subscription(user_id=user_id, **fields)
    db.add(subscription)
    await db.flush()
    logger.info(
        f"Subscription {subscription.id} created for user {user_id} "
        f"(plan {subscription.plan_id}, {subscription.status})"
    )
    return subscription


async def get_subscription(db: AsyncSession, subscription_id: int) -> Subscription:
    subscription = await db.get(Subscription, subscription_id)
    if not subscription:
        raise NotFound("Subscription not found")
    return subscription


async def get_by_processor_id(db: AsyncSession, stripe_subscription_id: str | None) -> Subscription | None:
    if not stripe_subscription_id:
        return None
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


def _authorize(user: User, subscription: Subscription) -> None:
    if not is_admin(user) and subscription.user_id != user.id:
        raise Forbidden("Not authorized to access this subscription")


async def get_subscription_for_user(db: AsyncSession, user: User, subscription_id: int) -> Subscription:
    subscription = await get_subscription(db, subscription_id)
    _authorize(user, subscription)
    return subscription


async def list_subscriptions(db: AsyncSession, user: User) -> list[Subscription]:
    """Admins see every subscription, users only their own."""
    query = select(Subscription)
    if not is_admin(user):
        query = query.where(Subscription.user_id == user.id)
    result = await db.execute(query.order_by(Subscription.created_at.desc(), Subscription.id.desc()))
    return list(result.scalars().all())


async def get_active_subscription(db: AsyncSession, user_id: int) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_([s.value for s in LIVE_STATUSES]),
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def is_subscription_active(db: AsyncSession, user_id: int, now: datetime | None = None) -> bool:
    """Check if a user currently has access (live, and not past a scheduled cancellation)."""
    sub = await get_active_subscription(db, user_id)
    if not sub:
        return False

    end_date = ensure_utc(sub.end_date)
    if sub.cancel_at_period_end and end_date:
        return end_date > (now or now_utc())
    return True


async def cancel_subscription(
    db: AsyncSession,
    user: User,
    subscription_id: int,
    processor: PaymentProcessor,
) -> Subscription:
    """Schedule cancellation at the end of the current period.

    The status stays as is; the processor's deletion event finalizes it.
    """
    subscription = await get_subscription_for_user(db, user, subscription_id)
    if is_terminal(subscription.status):
        raise InvalidState("Subscription is already canceled")
    if subscription.cancel_at_period_end:
        raise InvalidState("Subscription is already set to cancel at period end")

    if subscription.stripe_subscription_id:
        await processor.cancel_at_period_end(subscription.stripe_subscription_id)

    subscription.cancel_at_period_end = True
    subscription.canceled_at = now_utc()

    await notify(
        db,
        subscription.user_id,
        NOTIFY_SUBSCRIPTION_CANCELLED,
        "Subscription Cancelled",
        "Your subscription will cancel at the end of the current billing period.",
    )
    await commit_and_dispatch(db)
    logger.info(f"Subscription {subscription.id} set to cancel at period end")
    return subscription


async def upgrade_subscription(
    db: AsyncSession,
    user: User,
    subscription_id: int,
    new_plan_id: int,
    processor: PaymentProcessor,
) -> Subscription:
    """Move a subscription to another plan; the processor handles proration."""
    subscription = await get_subscription_for_user(db, user, subscription_id)

    new_plan = await find_plan(db, new_plan_id)
    if not new_plan or not new_plan.is_active:
        raise PlanNotFound("New plan not found")
    if is_terminal(subscription.status):
        raise InvalidState("Cannot change the plan of a canceled subscription")
    if subscription.plan_id == new_plan.id:
        raise InvalidState("Subscription is already on this plan")

    if subscription.stripe_subscription_id:
        stripe_price_id = stripe_price_for_cycle(new_plan, subscription.billing_cycle)
        if not stripe_price_id:
            raise InvalidState("Stripe price not configured for this plan")
        await processor.change_price(subscription.stripe_subscription_id, stripe_price_id)
        subscription.stripe_price_id = stripe_price_id

    subscription.plan_id = new_plan.id

    await notify(
        db,
        subscription.user_id,
        NOTIFY_PLAN_CHANGED,
        "Plan Upgraded",
        f"Your subscription has been upgraded to {new_plan.name}.",
    )
    await commit_and_dispatch(db)
    logger.info(f"Subscription {subscription.id} moved to plan {new_plan.id}")
    return subscription
