"""Admin analytics schemas."""

from decimal import Decimal

from pydantic import BaseModel


class MonthlyRevenue(BaseModel):
    month: str
    revenue: Decimal
    transactions: int


class RevenueAnalytics(BaseModel):
    total_revenue: Decimal
    total_transactions: int
    revenue_today: Decimal
    revenue_by_month: list[MonthlyRevenue]


class PlanCount(BaseModel):
    plan_id: int
    plan_name: str
    count: int


class MonthlyCount(BaseModel):
    month: str
    count: int


class SubscriptionAnalytics(BaseModel):
    active_subscriptions: int
    trialing_subscriptions: int
    canceled_subscriptions: int
    total_subscriptions: int
    subscriptions_by_plan: list[PlanCount]
    subscription_growth: list[MonthlyCount]
    growth_rate: float
    churn_rate: float
