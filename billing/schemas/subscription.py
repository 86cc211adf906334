"""Subscription-related Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    plan_id: int
    billing_cycle: str
    status: str
    start_date: datetime
    end_date: datetime | None = None
    trial_end_date: datetime | None = None
    next_billing_date: datetime | None = None
    stripe_subscription_id: str | None = None
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    created_at: datetime


class UpgradeRequest(BaseModel):
    new_plan_id: int
