"""Coupon discount computation. Pure: never touches the database or mutates the coupon.

Callers own redemption: `used_count` is incremented by the checkout flow,
inside the same transaction that records the payment.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from billing.constants import DISCOUNT_PERCENTAGE
from billing.models.coupon import Coupon
from billing.utils import ensure_utc, to_money

# Reasons, in the order the rules are checked
REASON_INACTIVE = "inactive"
REASON_NOT_STARTED = "not_started"
REASON_EXPIRED = "expired"
REASON_USAGE_LIMIT = "usage_limit_reached"
REASON_PLAN_MISMATCH = "plan_not_eligible"
REASON_BELOW_MINIMUM = "below_minimum"

REASON_MESSAGES = {
    REASON_INACTIVE: "Coupon is not active",
    REASON_NOT_STARTED: "Coupon is not yet valid",
    REASON_EXPIRED: "Coupon has expired",
    REASON_USAGE_LIMIT: "Coupon usage limit reached",
    REASON_PLAN_MISMATCH: "Coupon not applicable to this plan",
    REASON_BELOW_MINIMUM: "Minimum purchase amount not reached",
}


@dataclass(frozen=True)
class DiscountResult:
    applicable: bool
    discount_amount: Decimal
    final_amount: Decimal
    reason: str | None = None

    @property
    def message(self) -> str | None:
        return REASON_MESSAGES.get(self.reason) if self.reason else None


def _rejected(billing_amount: Decimal, reason: str) -> DiscountResult:
    return DiscountResult(
        applicable=False,
        discount_amount=Decimal("0.00"),
        final_amount=to_money(billing_amount),
        reason=reason,
    )


def compute_discount(
    coupon: Coupon,
    billing_amount: Decimal,
    now: datetime,
    plan_id: int | None = None,
) -> DiscountResult:
    """Check a coupon against a purchase and compute the discount.

    Rules short-circuit in this order: active flag, validity window
    (inclusive at both ends), usage limit, plan allow-list, minimum amount.
    The discount never exceeds the billing amount.
    """
    billing_amount = to_money(billing_amount)

    if not coupon.is_active:
        return _rejected(billing_amount, REASON_INACTIVE)

    if now < ensure_utc(coupon.valid_from):
        return _rejected(billing_amount, REASON_NOT_STARTED)
    if now > ensure_utc(coupon.valid_until):
        return _rejected(billing_amount, REASON_EXPIRED)

    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        return _rejected(billing_amount, REASON_USAGE_LIMIT)

    allowed_plans = coupon.applicable_plan_ids or []
    if allowed_plans and plan_id not in allowed_plans:
        return _rejected(billing_amount, REASON_PLAN_MISMATCH)

    if billing_amount < to_money(coupon.min_amount or 0):
        return _rejected(billing_amount, REASON_BELOW_MINIMUM)

    value = Decimal(str(coupon.discount_value))
    if coupon.discount_type == DISCOUNT_PERCENTAGE:
        discount = billing_amount * value / 100
        if coupon.max_discount is not None:
            discount = min(discount, Decimal(str(coupon.max_discount)))
    else:
        discount = value

    discount = to_money(min(discount, billing_amount))
    return DiscountResult(
        applicable=True,
        discount_amount=discount,
        final_amount=to_money(max(Decimal("0"), billing_amount - discount)),
    )
