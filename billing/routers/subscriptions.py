"""Subscription routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.models.user import User
from billing.schemas.subscription import SubscriptionOut, UpgradeRequest
from billing.services.auth_service import get_current_user
from billing.services.processor import PaymentProcessor, get_payment_processor
from billing.services.subscription_service import (
    cancel_subscription,
    get_subscription_for_user,
    list_subscriptions,
    upgrade_subscription,
)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.get("", response_model=list[SubscriptionOut])
async def subscriptions_list(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_subscriptions(db, user)


@router.get("/{subscription_id}", response_model=SubscriptionOut)
async def subscription_detail(
    subscription_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_subscription_for_user(db, user, subscription_id)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionOut)
async def subscription_cancel(
    subscription_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    return await cancel_subscription(db, user, subscription_id, processor)


@router.post("/{subscription_id}/upgrade", response_model=SubscriptionOut)
async def subscription_upgrade(
    subscription_id: int,
    body: UpgradeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    return await upgrade_subscription(db, user, subscription_id, body.new_plan_id, processor)
