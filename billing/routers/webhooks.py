"""Webhook routes: Stripe."""

import logging

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.services.processor import PaymentProcessor, get_payment_processor
from billing.services.webhook_service import handle_processor_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    if not processor.enabled:
        raise HTTPException(status_code=503, detail="Payment processor not configured")

    payload = await request.body()
    try:
        event = processor.parse_event(payload, stripe_signature)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook with invalid signature rejected")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    await handle_processor_event(db, event, processor)
    return {"received": True}
