"""Payment ledger and manual (offline) payment approval."""

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import get_settings
from billing.constants import (
    LIST_LIMIT,
    NOTIFY_PAYMENT_FAILED,
    NOTIFY_PAYMENT_SUCCESS,
    PAYMENT_APPROVER_ROLES,
    PAYMENT_METHOD_CARD,
    PAYMENT_METHOD_MANUAL,
)
from billing.errors import AlreadyProcessed, Forbidden, NotFound
from billing.models.payment import Payment
from billing.models.subscription import Subscription
from billing.models.user import User
from billing.services.lifecycle import (
    EventKind,
    LifecycleEvent,
    PaymentStatus,
    apply_event,
    ensure_payment_transition,
)
from billing.services.notification_service import commit_and_dispatch, notify
from billing.services.processor import dig
from billing.services.subscription_service import is_admin
from billing.utils import from_minor_units, from_timestamp

logger = logging.getLogger(__name__)


def invoice_period(invoice: dict) -> tuple[int | None, int | None]:
    """Billing period of an invoice, preferring the subscription line item's period."""
    line_period = dig(invoice, "lines", "data", 0, "period")
    if line_period and line_period.get("end"):
        return line_period.get("start"), line_period.get("end")
    return invoice.get("period_start"), invoice.get("period_end")


async def create_manual_payment(
    db: AsyncSession,
    user_id: int,
    subscription_id: int | None,
    amount: Decimal,
    manual_method: str,
    transaction_id: str | None,
    discount: Decimal = Decimal("0"),
    applied_coupon: str | None = None,
) -> Payment:
    """Record a pending offline payment awaiting admin verification. Does not commit."""
    payment = Payment(
        user_id=user_id,
        subscription_id=subscription_id,
        amount=amount,
        currency=get_settings().default_currency,
        status=PaymentStatus.PENDING,
        payment_method=PAYMENT_METHOD_MANUAL,
        manual_payment_method=manual_method,
        transaction_id=transaction_id,
        discount=discount,
        applied_coupon=applied_coupon,
    )
    db.add(payment)
    await db.flush()
    return payment


async def get_payment_by_invoice(db: AsyncSession, invoice_id: str) -> Payment | None:
    result = await db.execute(
        select(Payment)
        .where(Payment.stripe_invoice_id == invoice_id, Payment.status != PaymentStatus.FAILED)
        .order_by(Payment.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def upsert_invoice_payment(db: AsyncSession, subscription: Subscription, invoice: dict) -> Payment:
    """Create or update the succeeded payment for a processor invoice. Does not commit.

    Keyed by invoice id, so redelivered events land on the same row.
    """
    period_start, period_end = invoice_period(invoice)
    payment = await get_payment_by_invoice(db, invoice["id"])
    if payment is None:
        payment = Payment(
            user_id=subscription.user_id,
            stripe_invoice_id=invoice["id"],
            payment_method=PAYMENT_METHOD_CARD,
            status=PaymentStatus.PENDING,
        )
        db.add(payment)
        logger.info(f"Recording payment for invoice {invoice['id']}")

    if payment.status == PaymentStatus.PENDING:
        ensure_payment_transition(payment.status, PaymentStatus.SUCCEEDED)
        payment.status = PaymentStatus.SUCCEEDED

    payment.subscription_id = subscription.id
    payment.amount = from_minor_units(invoice.get("amount_paid"))
    payment.currency = invoice.get("currency") or get_settings().default_currency
    payment.stripe_payment_intent_id = invoice.get("payment_intent")
    payment.billing_period_start = from_timestamp(period_start)
    payment.billing_period_end = from_timestamp(period_end)
    payment.invoice_url = invoice.get("hosted_invoice_url")
    await db.flush()
    return payment


async def record_failed_payment(db: AsyncSession, subscription: Subscription, invoice: dict) -> Payment:
    """Every failure event gets its own failed row. Does not commit."""
    payment = Payment(
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        amount=from_minor_units(invoice.get("amount_due")),
        currency=invoice.get("currency") or get_settings().default_currency,
        status=PaymentStatus.FAILED,
        payment_method=PAYMENT_METHOD_CARD,
        stripe_invoice_id=invoice.get("id"),
        invoice_url=invoice.get("hosted_invoice_url"),
    )
    db.add(payment)
    await db.flush()
    return payment


async def _pending_manual_payment(db: AsyncSession, actor_role: str, payment_id: int) -> Payment:
    if actor_role not in PAYMENT_APPROVER_ROLES:
        raise Forbidden("Only super admins can approve payments")

    payment = await db.get(Payment, payment_id)
    if not payment:
        raise NotFound("Payment not found")
    if payment.status != PaymentStatus.PENDING:
        raise AlreadyProcessed("Payment is already processed")
    return payment


async def approve_manual_payment(db: AsyncSession, actor_role: str, payment_id: int) -> Payment:
    """Mark a pending manual payment succeeded and activate its subscription.

    Not idempotent: approving a payment that is no longer pending raises
    AlreadyProcessed and leaves the subscription untouched.
    """
    payment = await _pending_manual_payment(db, actor_role, payment_id)

    ensure_payment_transition(payment.status, PaymentStatus.SUCCEEDED)
    payment.status = PaymentStatus.SUCCEEDED

    if payment.subscription_id:
        subscription = await db.get(Subscription, payment.subscription_id)
        if subscription:
            new_status = apply_event(subscription.status, LifecycleEvent(EventKind.MANUAL_APPROVED))
            if new_status != subscription.status:
                logger.info(f"Subscription {subscription.id}: {subscription.status} -> {new_status}")
            subscription.status = new_status

    await notify(
        db,
        payment.user_id,
        NOTIFY_PAYMENT_SUCCESS,
        "Payment Approved",
        "Your manual payment has been verified. Your subscription is now active.",
    )
    await commit_and_dispatch(db)
    logger.info(f"Manual payment {payment.id} approved")
    return payment


async def reject_manual_payment(
    db: AsyncSession, actor_role: str, payment_id: int, reason: str | None = None
) -> Payment:
    """Mark a pending manual payment failed. The subscription is left as is."""
    payment = await _pending_manual_payment(db, actor_role, payment_id)

    ensure_payment_transition(payment.status, PaymentStatus.FAILED)
    payment.status = PaymentStatus.FAILED

    message = "Your manual payment could not be verified."
    if reason:
        message = f"{message} Reason: {reason}"
    await notify(db, payment.user_id, NOTIFY_PAYMENT_FAILED, "Payment Rejected", message)
    await commit_and_dispatch(db)
    logger.info(f"Manual payment {payment.id} rejected")
    return payment


async def list_payments(db: AsyncSession, user: User) -> list[Payment]:
    """Latest payments; admins see everyone's."""
    query = select(Payment)
    if not is_admin(user):
        query = query.where(Payment.user_id == user.id)
    result = await db.execute(query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(LIST_LIMIT))
    return list(result.scalars().all())


async def get_payment(db: AsyncSession, user: User, payment_id: int) -> Payment:
    payment = await db.get(Payment, payment_id)
    if not payment:
        raise NotFound("Payment not found")
    if not is_admin(user) and payment.user_id != user.id:
        raise Forbidden("Not authorized to access this payment")
    return payment
