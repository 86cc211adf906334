"""Stripe event reconciliation: keeps the local ledgers in line with the processor.

Every handler is safe to run more than once for the same event and tolerates
events arriving out of order. Events that cannot be correlated (missing
metadata, unknown subscription) are logged and dropped; the processor's own
redelivery is the retry mechanism.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import (
    BILLING_CYCLES,
    NOTIFY_PAYMENT_FAILED,
    NOTIFY_PAYMENT_SUCCESS,
    NOTIFY_SUBSCRIPTION_CANCELLED,
)
from billing.errors import BillingError
from billing.models.subscription import Subscription
from billing.models.user import User
from billing.services.coupon_service import get_coupon_by_code, redeem_coupon
from billing.services.lifecycle import (
    EventKind,
    LifecycleEvent,
    PaymentStatus,
    SubscriptionStatus,
    apply_event,
    is_terminal,
    map_processor_status,
)
from billing.services.notification_service import commit_and_dispatch, discard_outbox, notify
from billing.services.payment_service import (
    get_payment_by_invoice,
    invoice_period,
    record_failed_payment,
    upsert_invoice_payment,
)
from billing.services.plan_service import find_plan
from billing.services.processor import PaymentProcessor, ProcessorSubscription, dig, subscription_from_payload
from billing.services.subscription_service import get_by_processor_id, lock_user, replace_active_subscription
from billing.utils import from_minor_units, from_timestamp, now_utc

logger = logging.getLogger(__name__)


def _invoice_subscription_id(invoice: dict) -> str | None:
    """Subscription id of an invoice; newer API versions nest it under parent."""
    return invoice.get("subscription") or dig(invoice, "parent", "subscription_details", "subscription")


def _format_amount(amount, currency: str | None) -> str:
    return f"{amount:.2f} {(currency or 'usd').upper()}"


def _set_status(subscription: Subscription, event: LifecycleEvent) -> None:
    new_status = apply_event(subscription.status, event)
    if new_status != subscription.status:
        logger.info(f"Subscription {subscription.id}: {subscription.status} -> {new_status} ({event.kind})")
    subscription.status = new_status


def _apply_period(subscription: Subscription, stripe_sub: ProcessorSubscription) -> None:
    if stripe_sub.current_period_end:
        subscription.end_date = stripe_sub.current_period_end
        subscription.next_billing_date = stripe_sub.current_period_end


async def handle_checkout_completed(db: AsyncSession, session: dict, processor: PaymentProcessor) -> None:
    """Create the local subscription for a completed hosted checkout."""
    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id")
    plan_id = metadata.get("plan_id")
    subscription_id = session.get("subscription")

    if not user_id or not plan_id or not subscription_id:
        logger.error(f"Missing metadata or subscription in checkout session {session.get('id')}")
        return

    user = await db.get(User, int(user_id))
    plan = await find_plan(db, int(plan_id))
    if not user or not plan:
        logger.error(f"User {user_id} or plan {plan_id} not found for checkout session {session.get('id')}")
        return

    stripe_sub = await processor.retrieve_subscription(subscription_id)

    await lock_user(db, user.id)
    existing = await get_by_processor_id(db, subscription_id)
    if existing:
        # Redelivery: refresh from the processor, never insert twice
        _set_status(existing, LifecycleEvent(EventKind.CHECKOUT_COMPLETED, processor_status=stripe_sub.status))
        if not is_terminal(existing.status):
            _apply_period(existing, stripe_sub)
        await commit_and_dispatch(db)
        logger.info(f"Checkout session {session.get('id')} already reconciled as subscription {existing.id}")
        return

    billing_cycle = metadata.get("billing_cycle")
    if billing_cycle not in BILLING_CYCLES:
        billing_cycle = "monthly"

    start_date = stripe_sub.current_period_start or now_utc()
    subscription = await replace_active_subscription(
        db,
        user.id,
        plan_id=plan.id,
        billing_cycle=billing_cycle,
        status=map_processor_status(stripe_sub.status),
        start_date=start_date,
        end_date=stripe_sub.current_period_end,
        trial_end_date=stripe_sub.trial_end,
        next_billing_date=stripe_sub.current_period_end,
        stripe_subscription_id=stripe_sub.id or subscription_id,
        stripe_price_id=stripe_sub.price_id,
        cancel_at_period_end=stripe_sub.cancel_at_period_end,
    )

    coupon_code = metadata.get("coupon_code")
    if coupon_code:
        coupon = await get_coupon_by_code(db, coupon_code)
        # Only coupons Stripe could discount with count as used
        if coupon is None or not coupon.stripe_coupon_id or not await redeem_coupon(db, coupon):
            logger.warning(f"Coupon {coupon_code} could not be redeemed for subscription {subscription.id}")

    await notify(
        db,
        user.id,
        NOTIFY_PAYMENT_SUCCESS,
        "Subscription Activated",
        f"Your subscription to {plan.name} has been activated.",
    )
    await commit_and_dispatch(db)


async def handle_subscription_updated(db: AsyncSession, data: dict, processor: PaymentProcessor) -> None:
    """Mirror processor status, cancellation flag and period end onto the local row."""
    stripe_sub = subscription_from_payload(data)
    subscription = await get_by_processor_id(db, stripe_sub.id)
    if not subscription:
        logger.warning(f"Subscription not found: {stripe_sub.id}")
        return

    if is_terminal(subscription.status):
        # Deletion already applied; a late update must not resurrect it
        logger.info(f"Ignoring update for {subscription.status} subscription {subscription.id}")
        return

    canceled = stripe_sub.canceled_at is not None or stripe_sub.status == SubscriptionStatus.CANCELED
    _set_status(
        subscription,
        LifecycleEvent(EventKind.PROCESSOR_UPDATED, processor_status=stripe_sub.status, canceled=canceled),
    )
    subscription.cancel_at_period_end = stripe_sub.cancel_at_period_end
    _apply_period(subscription, stripe_sub)
    if stripe_sub.canceled_at:
        subscription.canceled_at = stripe_sub.canceled_at
    elif canceled:
        subscription.canceled_at = subscription.canceled_at or now_utc()
    if stripe_sub.price_id:
        subscription.stripe_price_id = stripe_sub.price_id

    await commit_and_dispatch(db)


async def handle_subscription_deleted(db: AsyncSession, data: dict, processor: PaymentProcessor) -> None:
    subscription = await get_by_processor_id(db, data.get("id"))
    if not subscription:
        logger.warning(f"Subscription not found for deletion: {data.get('id')}")
        return

    if subscription.status == SubscriptionStatus.CANCELED:
        logger.info(f"Subscription {subscription.id} already canceled")
        return

    _set_status(subscription, LifecycleEvent(EventKind.PROCESSOR_DELETED))
    subscription.canceled_at = now_utc()

    await notify(
        db,
        subscription.user_id,
        NOTIFY_SUBSCRIPTION_CANCELLED,
        "Subscription Cancelled",
        "Your subscription has been cancelled.",
    )
    await commit_and_dispatch(db)


async def handle_invoice_payment_succeeded(db: AsyncSession, invoice: dict, processor: PaymentProcessor) -> None:
    """Upsert the succeeded payment by invoice id and advance the billing dates."""
    subscription = await get_by_processor_id(db, _invoice_subscription_id(invoice))
    if not subscription:
        logger.warning(f"Subscription not found for invoice: {invoice.get('id')}")
        return
    if not invoice.get("id"):
        logger.error("Invoice event without an invoice id")
        return

    existing = await get_payment_by_invoice(db, invoice["id"])
    already_recorded = existing is not None and existing.status == PaymentStatus.SUCCEEDED

    payment = await upsert_invoice_payment(db, subscription, invoice)

    _, period_end = invoice_period(invoice)
    if period_end and not is_terminal(subscription.status):
        subscription.next_billing_date = from_timestamp(period_end)
        subscription.end_date = from_timestamp(period_end)
    _set_status(subscription, LifecycleEvent(EventKind.INVOICE_PAID))

    if not already_recorded:
        await notify(
            db,
            subscription.user_id,
            NOTIFY_PAYMENT_SUCCESS,
            "Payment Successful",
            f"Your payment of {_format_amount(payment.amount, payment.currency)} has been processed successfully.",
        )
    await commit_and_dispatch(db)


async def handle_invoice_payment_failed(db: AsyncSession, invoice: dict, processor: PaymentProcessor) -> None:
    subscription = await get_by_processor_id(db, _invoice_subscription_id(invoice))
    if not subscription:
        logger.warning(f"Subscription not found for failed invoice: {invoice.get('id')}")
        return

    _set_status(subscription, LifecycleEvent(EventKind.INVOICE_FAILED))
    await record_failed_payment(db, subscription, invoice)

    amount_due = from_minor_units(invoice.get("amount_due"))
    await notify(
        db,
        subscription.user_id,
        NOTIFY_PAYMENT_FAILED,
        "Payment Failed",
        f"Your payment of {_format_amount(amount_due, invoice.get('currency'))} failed. "
        "Please update your payment method.",
    )
    await commit_and_dispatch(db)


_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.paid": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


async def handle_processor_event(db: AsyncSession, event: dict, processor: PaymentProcessor) -> None:
    """Dispatch a verified Stripe event. Unknown event types are ignored."""
    event_type = event.get("type", "")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug(f"Unhandled Stripe event type: {event_type}")
        return

    data = dig(event, "data", "object") or {}
    logger.info(f"Stripe webhook: {event_type} ({event.get('id')})")
    try:
        await handler(db, data, processor)
    except BillingError as e:
        await db.rollback()
        discard_outbox(db)
        logger.warning(f"Stripe event {event_type} ({event.get('id')}) not applied: {e.message}")
    except Exception:
        await db.rollback()
        discard_outbox(db)
        logger.exception(f"Stripe event {event_type} ({event.get('id')}) failed")
        raise
