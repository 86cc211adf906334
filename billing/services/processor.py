"""Payment processor capability: Stripe, or a disabled stand-in when unconfigured."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

import stripe

from billing.config import get_settings
from billing.errors import UpstreamPaymentError
from billing.utils import from_timestamp

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    id: str
    url: str


@dataclass
class ProcessorSubscription:
    """Normalized view of a processor subscription object."""

    id: str
    status: str
    price_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None


def dig(obj: Any, *path: str | int) -> Any:
    """Walk nested keys/indexes of a dict or Stripe object, returning None on any miss."""
    for key in path:
        try:
            obj = obj[key]
        except (KeyError, TypeError, IndexError):
            return None
        if obj is None:
            return None
    return obj


def _get_period_timestamps(stripe_sub) -> tuple[int | None, int | None]:
    """Extract current_period_start/end, handling Stripe API version differences.

    Newer API versions (2024-06-20+) moved these fields to items.data[0].
    """
    start, end = dig(stripe_sub, "current_period_start"), dig(stripe_sub, "current_period_end")
    if start or end:
        return start, end
    item = dig(stripe_sub, "items", "data", 0)
    return dig(item, "current_period_start"), dig(item, "current_period_end")


def subscription_from_payload(data) -> ProcessorSubscription:
    """Build a ProcessorSubscription from a Stripe subscription object or webhook payload."""
    period_start, period_end = _get_period_timestamps(data)
    return ProcessorSubscription(
        id=dig(data, "id"),
        status=dig(data, "status") or "",
        price_id=dig(data, "items", "data", 0, "price", "id"),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        trial_end=from_timestamp(dig(data, "trial_end")),
        cancel_at_period_end=bool(dig(data, "cancel_at_period_end")),
        canceled_at=from_timestamp(dig(data, "canceled_at")),
    )


class PaymentProcessor(Protocol):
    """Operations the billing core needs from an external payment processor."""

    enabled: bool

    async def create_customer(self, email: str, name: str, user_id: int) -> str:
        ...

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        trial_days: int,
        metadata: dict[str, str],
        stripe_coupon_id: str | None = None,
    ) -> CheckoutSession:
        ...

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        ...

    async def cancel_at_period_end(self, subscription_id: str) -> None:
        ...

    async def change_price(self, subscription_id: str, price_id: str) -> None:
        ...

    def parse_event(self, payload: bytes, signature: str) -> dict:
        """Verify the webhook signature and return the event as a plain dict."""
        ...


class DisabledProcessor:
    """Stand-in used when no processor is configured; checkout falls back to local mode."""

    enabled = False

    def _unavailable(self):
        return UpstreamPaymentError("Payment processor is not configured")

    async def create_customer(self, email: str, name: str, user_id: int) -> str:
        raise self._unavailable()

    async def create_checkout_session(self, customer_id, price_id, trial_days, metadata, stripe_coupon_id=None):
        raise self._unavailable()

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        raise self._unavailable()

    async def cancel_at_period_end(self, subscription_id: str) -> None:
        raise self._unavailable()

    async def change_price(self, subscription_id: str, price_id: str) -> None:
        raise self._unavailable()

    def parse_event(self, payload: bytes, signature: str) -> dict:
        raise self._unavailable()


class StripeProcessor:
    """Stripe-backed processor. SDK calls are blocking, so they run in a worker thread."""

    enabled = True

    def __init__(self, secret_key: str, webhook_secret: str, app_url: str):
        stripe.api_key = secret_key
        self.webhook_secret = webhook_secret
        self.app_url = app_url.rstrip("/")

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            logger.error("Stripe call %s failed: %s", getattr(fn, "__qualname__", fn), e)
            raise UpstreamPaymentError(f"Payment processor error: {e.user_message or e}") from e

    async def create_customer(self, email: str, name: str, user_id: int) -> str:
        customer = await self._call(
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"user_id": str(user_id)},
        )
        return customer["id"]

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        trial_days: int,
        metadata: dict[str, str],
        stripe_coupon_id: str | None = None,
    ) -> CheckoutSession:
        params: dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{self.app_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.app_url}/pricing?canceled=true",
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if trial_days > 0:
            params["subscription_data"]["trial_period_days"] = trial_days
        # Stripe rejects discounts combined with allow_promotion_codes
        if stripe_coupon_id:
            params["discounts"] = [{"coupon": stripe_coupon_id}]
        else:
            params["allow_promotion_codes"] = True

        session = await self._call(stripe.checkout.Session.create, **params)
        return CheckoutSession(id=session["id"], url=session["url"])

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        stripe_sub = await self._call(stripe.Subscription.retrieve, subscription_id)
        return subscription_from_payload(stripe_sub)

    async def cancel_at_period_end(self, subscription_id: str) -> None:
        await self._call(stripe.Subscription.modify, subscription_id, cancel_at_period_end=True)

    async def change_price(self, subscription_id: str, price_id: str) -> None:
        stripe_sub = await self._call(stripe.Subscription.retrieve, subscription_id)
        item_id = dig(stripe_sub, "items", "data", 0, "id")
        if not item_id:
            raise UpstreamPaymentError(f"Stripe subscription {subscription_id} has no items")
        await self._call(
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="create_prorations",
        )

    def parse_event(self, payload: bytes, signature: str) -> dict:
        if not self.webhook_secret:
            raise UpstreamPaymentError("Stripe webhook secret is not configured")
        # Raises stripe.SignatureVerificationError; the webhook route maps it to 400
        event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        return event.to_dict()


@lru_cache
def get_payment_processor() -> PaymentProcessor:
    """FastAPI dependency returning the configured processor (cached)."""
    settings = get_settings()
    if not settings.stripe_enabled:
        logger.warning("Stripe secret key not configured, checkout runs in local/manual mode")
        return DisabledProcessor()
    return StripeProcessor(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        app_url=settings.app_url,
    )
