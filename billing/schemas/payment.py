"""Payment and checkout schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from billing.schemas.subscription import SubscriptionOut


class CheckoutRequest(BaseModel):
    plan_id: int
    billing_cycle: Literal["monthly", "yearly"]
    # "card" simulates a card payment in local mode
    manual_method: Literal["jazzcash", "easypaisa", "bank_transfer", "card", "none"] | None = None
    transaction_id: str | None = Field(None, max_length=128)
    coupon_code: str | None = Field(None, max_length=64)


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    subscription_id: int | None = None
    amount: Decimal
    currency: str
    status: str
    payment_method: str
    manual_payment_method: str
    transaction_id: str | None = None
    stripe_invoice_id: str | None = None
    billing_period_start: datetime | None = None
    billing_period_end: datetime | None = None
    invoice_url: str | None = None
    discount: Decimal
    applied_coupon: str | None = None
    created_at: datetime


class CheckoutResponse(BaseModel):
    mode: Literal["local", "processor"]
    message: str | None = None
    subscription: SubscriptionOut | None = None
    payment: PaymentOut | None = None
    session_id: str | None = None
    checkout_url: str | None = None
    discount: Decimal = Decimal("0")
    applied_coupon: str | None = None


class RejectRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)
