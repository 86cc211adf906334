"""Payment routes: checkout, payment history, manual payment approval."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.models.user import User
from billing.schemas.payment import CheckoutRequest, CheckoutResponse, PaymentOut, RejectRequest
from billing.schemas.subscription import SubscriptionOut
from billing.services.auth_service import get_current_user, require_admin
from billing.services.checkout_service import initiate_checkout
from billing.services.payment_service import (
    approve_manual_payment,
    get_payment,
    list_payments,
    reject_manual_payment,
)
from billing.services.processor import PaymentProcessor, get_payment_processor

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    body: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    result = await initiate_checkout(
        db,
        user,
        plan_id=body.plan_id,
        billing_cycle=body.billing_cycle,
        processor=processor,
        manual_method=body.manual_method,
        transaction_id=body.transaction_id,
        coupon_code=body.coupon_code,
    )
    return CheckoutResponse(
        mode=result.mode,
        message=result.message,
        subscription=SubscriptionOut.model_validate(result.subscription) if result.subscription else None,
        payment=PaymentOut.model_validate(result.payment) if result.payment else None,
        session_id=result.session_id,
        checkout_url=result.checkout_url,
        discount=result.discount,
        applied_coupon=result.applied_coupon,
    )


@router.get("", response_model=list[PaymentOut])
async def payments_list(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_payments(db, user)


@router.get("/{payment_id}", response_model=PaymentOut)
async def payment_detail(
    payment_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_payment(db, user, payment_id)


@router.post("/{payment_id}/approve", response_model=PaymentOut)
async def approve_payment(
    payment_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await approve_manual_payment(db, admin.role, payment_id)


@router.post("/{payment_id}/reject", response_model=PaymentOut)
async def reject_payment(
    payment_id: int,
    body: RejectRequest | None = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await reject_manual_payment(db, admin.role, payment_id, reason=body.reason if body else None)
