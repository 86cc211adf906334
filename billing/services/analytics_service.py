"""Admin analytics: revenue and subscription statistics."""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import ANALYTICS_MONTHS, MONTH_NAMES
from billing.models.payment import Payment
from billing.models.plan import Plan
from billing.models.subscription import Subscription
from billing.services.lifecycle import LIVE_STATUSES, PaymentStatus, SubscriptionStatus
from billing.utils import ensure_utc, now_utc, to_money

logger = logging.getLogger(__name__)


def _month_start(year: int, month: int, now: datetime) -> datetime:
    return now.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _recent_months(now: datetime) -> list[tuple[int, int]]:
    """(year, month) pairs for the last ANALYTICS_MONTHS months, oldest first."""
    return [_shift_month(now.year, now.month, -offset) for offset in range(ANALYTICS_MONTHS - 1, -1, -1)]


def _label(year: int, month: int) -> str:
    return f"{MONTH_NAMES[month - 1]} {year}"


async def _succeeded_totals(db: AsyncSession, since: datetime) -> tuple[Decimal, int]:
    result = await db.execute(
        select(func.coalesce(func.sum(Payment.amount), 0), func.count(Payment.id)).where(
            Payment.status == PaymentStatus.SUCCEEDED.value,
            Payment.created_at >= since,
        )
    )
    total, count = result.one()
    return to_money(total), count


async def revenue_analytics(db: AsyncSession, period_days: int = 30, now: datetime | None = None) -> dict:
    """Succeeded revenue for the period, today, and per month (zero-filled)."""
    now = now or now_utc()
    total_revenue, total_transactions = await _succeeded_totals(db, now - timedelta(days=period_days))
    revenue_today, _ = await _succeeded_totals(db, now.replace(hour=0, minute=0, second=0, microsecond=0))

    months = _recent_months(now)
    window_start = _month_start(*months[0], now)
    result = await db.execute(
        select(Payment.created_at, Payment.amount).where(
            Payment.status == PaymentStatus.SUCCEEDED.value,
            Payment.created_at >= window_start,
        )
    )

    revenue = defaultdict(Decimal)
    transactions = Counter()
    for created_at, amount in result.all():
        created_at = ensure_utc(created_at)
        key = (created_at.year, created_at.month)
        revenue[key] += Decimal(amount or 0)
        transactions[key] += 1

    return {
        "total_revenue": total_revenue,
        "total_transactions": total_transactions,
        "revenue_today": revenue_today,
        "revenue_by_month": [
            {
                "month": _label(year, month),
                "revenue": to_money(revenue[(year, month)]),
                "transactions": transactions[(year, month)],
            }
            for year, month in months
        ],
    }


async def _count_created(db: AsyncSession, start: datetime, end: datetime | None = None) -> int:
    query = select(func.count(Subscription.id)).where(Subscription.created_at >= start)
    if end is not None:
        query = query.where(Subscription.created_at < end)
    return (await db.execute(query)).scalar_one()


async def subscription_analytics(db: AsyncSession, now: datetime | None = None) -> dict:
    """Status counts, live subscriptions per plan, six-month growth, growth and churn rates."""
    now = now or now_utc()

    result = await db.execute(
        select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
    )
    by_status = {status: count for status, count in result.all()}
    active = by_status.get(SubscriptionStatus.ACTIVE.value, 0)
    trialing = by_status.get(SubscriptionStatus.TRIALING.value, 0)
    canceled = by_status.get(SubscriptionStatus.CANCELED.value, 0)

    result = await db.execute(
        select(Plan.id, Plan.name, func.count(Subscription.id))
        .join(Subscription, Subscription.plan_id == Plan.id)
        .where(Subscription.status.in_([s.value for s in LIVE_STATUSES]))
        .group_by(Plan.id, Plan.name)
        .order_by(Plan.id)
    )
    by_plan = [{"plan_id": plan_id, "plan_name": name, "count": count} for plan_id, name, count in result.all()]

    months = _recent_months(now)
    result = await db.execute(
        select(Subscription.created_at).where(Subscription.created_at >= _month_start(*months[0], now))
    )
    created = Counter()
    for (created_at,) in result.all():
        created_at = ensure_utc(created_at)
        created[(created_at.year, created_at.month)] += 1
    growth = [{"month": _label(year, month), "count": created[(year, month)]} for year, month in months]

    this_month = _month_start(now.year, now.month, now)
    last_month = _month_start(*_shift_month(now.year, now.month, -1), now)
    this_month_count = await _count_created(db, this_month)
    last_month_count = await _count_created(db, last_month, this_month)

    growth_rate = (this_month_count - last_month_count) / last_month_count * 100 if last_month_count else 0.0
    live = active + trialing
    churn_rate = canceled / live * 100 if live else 0.0

    return {
        "active_subscriptions": active,
        "trialing_subscriptions": trialing,
        "canceled_subscriptions": canceled,
        "total_subscriptions": active + trialing + canceled,
        "subscriptions_by_plan": by_plan,
        "subscription_growth": growth,
        "growth_rate": round(growth_rate, 2),
        "churn_rate": round(churn_rate, 2),
    }
