"""Checkout orchestration: processor-hosted checkout or local/manual activation."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import BILLING_CYCLES, NOTIFY_PAYMENT_PENDING, SIMULATED_CARD_METHOD
from billing.errors import CheckoutConflict, PlanNotFound, ValidationError
from billing.models.coupon import Coupon
from billing.models.payment import Payment
from billing.models.plan import Plan
from billing.models.subscription import Subscription
from billing.models.user import User
from billing.services.coupon_service import get_coupon_by_code, redeem_coupon
from billing.services.discount import DiscountResult, compute_discount
from billing.services.lifecycle import SubscriptionStatus
from billing.services.notification_service import discard_outbox, flush_outbox, notify
from billing.services.payment_service import create_manual_payment
from billing.services.plan_service import find_plan, price_for_cycle, stripe_price_for_cycle
from billing.services.processor import PaymentProcessor
from billing.services.subscription_service import replace_active_subscription
from billing.utils import add_months, now_utc, to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
LOCAL_CHECKOUT_ATTEMPTS = 2


@dataclass
class CheckoutResult:
    mode: str  # "local" | "processor"
    message: str | None = None
    subscription: Subscription | None = None
    payment: Payment | None = None
    session_id: str | None = None
    checkout_url: str | None = None
    discount: Decimal = ZERO
    applied_coupon: str | None = None


async def _resolve_coupon(
    db: AsyncSession, code: str, plan: Plan, amount: Decimal, now: datetime
) -> tuple[Coupon | None, DiscountResult | None]:
    """Look up and evaluate a coupon; inapplicable coupons are ignored, not errors."""
    coupon = await get_coupon_by_code(db, code)
    if not coupon:
        logger.info(f"Checkout coupon {code!r} not found, ignoring")
        return None, None

    result = compute_discount(coupon, amount, now, plan.id)
    if not result.applicable:
        logger.info(f"Checkout coupon {coupon.code} not applicable ({result.reason}), ignoring")
        return None, None
    return coupon, result


async def initiate_checkout(
    db: AsyncSession,
    user: User,
    plan_id: int,
    billing_cycle: str,
    processor: PaymentProcessor,
    manual_method: str | None = None,
    transaction_id: str | None = None,
    coupon_code: str | None = None,
) -> CheckoutResult:
    """Start a subscription purchase.

    With a configured processor and a price mapped for the cycle, returns a
    hosted checkout session and writes nothing locally: the subscription and
    payment rows appear when the processor's events are reconciled. Otherwise
    the subscription is activated locally with a pending manual payment.
    """
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Unknown billing cycle: {billing_cycle}")

    plan = await find_plan(db, plan_id)
    if not plan or not plan.is_active:
        raise PlanNotFound("Plan not found")

    amount = to_money(price_for_cycle(plan, billing_cycle))
    now = now_utc()

    coupon, discount = None, None
    if coupon_code:
        coupon, discount = await _resolve_coupon(db, coupon_code, plan, amount, now)

    stripe_price_id = stripe_price_for_cycle(plan, billing_cycle)
    if processor.enabled and stripe_price_id:
        return await _processor_checkout(db, user, plan, billing_cycle, stripe_price_id, processor, coupon, discount)

    return await _local_checkout(
        db, user, plan, billing_cycle, amount, now, manual_method, transaction_id, coupon, discount
    )


async def _processor_checkout(
    db: AsyncSession,
    user: User,
    plan: Plan,
    billing_cycle: str,
    stripe_price_id: str,
    processor: PaymentProcessor,
    coupon: Coupon | None,
    discount: DiscountResult | None,
) -> CheckoutResult:
    # Ensure user has a Stripe customer
    if not user.stripe_customer_id:
        customer_id = await processor.create_customer(user.email, user.name, user.id)
        user.stripe_customer_id = customer_id
        await db.commit()
        logger.info(f"Created Stripe customer {customer_id} for user {user.id}")

    if coupon and not coupon.stripe_coupon_id:
        # Stripe cannot apply it, so the hosted page charges full price
        logger.info(f"Coupon {coupon.code} has no Stripe coupon, not applied to hosted checkout")
        coupon, discount = None, None

    metadata = {
        "user_id": str(user.id),
        "plan_id": str(plan.id),
        "billing_cycle": billing_cycle,
    }
    if coupon:
        # Redeemed when checkout.session.completed is reconciled
        metadata["coupon_code"] = coupon.code

    session = await processor.create_checkout_session(
        customer_id=user.stripe_customer_id,
        price_id=stripe_price_id,
        trial_days=plan.trial_days or 0,
        metadata=metadata,
        stripe_coupon_id=coupon.stripe_coupon_id if coupon else None,
    )
    logger.info(f"Checkout session {session.id} created for user {user.id} (plan {plan.id}, {billing_cycle})")

    return CheckoutResult(
        mode="processor",
        message="Redirect to the checkout page to complete payment.",
        session_id=session.id,
        checkout_url=session.url,
        discount=discount.discount_amount if discount else ZERO,
        applied_coupon=coupon.code if coupon else None,
    )


async def _activate_locally(
    db: AsyncSession,
    user_id: int,
    plan_id: int,
    trial_days: int,
    billing_cycle: str,
    amount: Decimal,
    now: datetime,
    manual_method: str | None,
    transaction_id: str | None,
    coupon: Coupon | None,
    discount: DiscountResult | None,
) -> tuple[Subscription, Payment, Decimal, str | None]:
    """Coupon redemption, subscription swap, pending payment and notification, committed together."""
    discount_amount, applied_coupon = ZERO, None
    if coupon and await redeem_coupon(db, coupon):
        discount_amount, applied_coupon = discount.discount_amount, coupon.code
    final_amount = to_money(max(ZERO, amount - discount_amount))

    end_date = add_months(now, 1 if billing_cycle == "monthly" else 12)
    subscription = await replace_active_subscription(
        db,
        user_id,
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        status=SubscriptionStatus.TRIALING if trial_days > 0 else SubscriptionStatus.ACTIVE,
        start_date=now,
        end_date=end_date,
        trial_end_date=now + timedelta(days=trial_days) if trial_days > 0 else None,
        next_billing_date=end_date,
    )

    method = manual_method or "none"
    if method == SIMULATED_CARD_METHOD:
        transaction_id = transaction_id or f"CARD-{int(now.timestamp() * 1000)}"
        method = "none"
    payment = await create_manual_payment(
        db,
        user_id=user_id,
        subscription_id=subscription.id,
        amount=final_amount,
        manual_method=method,
        transaction_id=transaction_id or "",
        discount=discount_amount,
        applied_coupon=applied_coupon,
    )

    await notify(
        db,
        user_id,
        NOTIFY_PAYMENT_PENDING,
        "Payment Pending Verification",
        f"Your manual payment via {manual_method or 'Manual'} is being verified. "
        "Your subscription will activate soon.",
    )
    await db.commit()
    return subscription, payment, discount_amount, applied_coupon


async def _local_checkout(
    db: AsyncSession,
    user: User,
    plan: Plan,
    billing_cycle: str,
    amount: Decimal,
    now: datetime,
    manual_method: str | None,
    transaction_id: str | None,
    coupon: Coupon | None,
    discount: DiscountResult | None,
) -> CheckoutResult:
    """Activate locally, retrying once if a concurrent checkout wins the live-subscription index.

    The retry runs in a fresh transaction, so it sees the other
    subscription and supersedes it.
    """
    # Rollback expires ORM state; keep plain values for the retry
    user_id, plan_id, trial_days = user.id, plan.id, plan.trial_days or 0

    for attempt in range(1, LOCAL_CHECKOUT_ATTEMPTS + 1):
        try:
            subscription, payment, discount_amount, applied_coupon = await _activate_locally(
                db, user_id, plan_id, trial_days, billing_cycle, amount, now,
                manual_method, transaction_id, coupon, discount,
            )
            break
        except IntegrityError:
            await db.rollback()
            discard_outbox(db)
            if attempt == LOCAL_CHECKOUT_ATTEMPTS:
                logger.error(f"Local checkout for user {user_id} kept conflicting, giving up")
                raise CheckoutConflict("Another checkout for this account is in progress, please retry")
            logger.warning(f"Concurrent checkout for user {user_id}, retrying")
            if coupon:
                await db.refresh(coupon)
        except Exception:
            await db.rollback()
            discard_outbox(db)
            raise

    await flush_outbox(db)
    logger.info(f"Local checkout for user {user_id}: subscription {subscription.id}, payment {payment.id}")

    if trial_days > 0:
        message = f"Subscription started with {trial_days} days free trial!"
    else:
        message = "Subscription activated successfully!"
    return CheckoutResult(
        mode="local",
        message=message,
        subscription=subscription,
        payment=payment,
        discount=discount_amount,
        applied_coupon=applied_coupon,
    )
