"""Admin analytics routes."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.models.user import User
from billing.schemas.analytics import RevenueAnalytics, SubscriptionAnalytics
from billing.services.analytics_service import revenue_analytics, subscription_analytics
from billing.services.auth_service import require_admin

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.get("/revenue", response_model=RevenueAnalytics)
async def analytics_revenue(
    period: int = Query(30, ge=1, le=3650, description="Window in days"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await revenue_analytics(db, period_days=period)


@router.get("/subscriptions", response_model=SubscriptionAnalytics)
async def analytics_subscriptions(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await subscription_analytics(db)
