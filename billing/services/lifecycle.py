"""Subscription and payment state machine.

Every status change on a subscription goes through `apply_event`, so the
precedence rules live in one place instead of being repeated per webhook
branch:

- `canceled` and `expired` are terminal. No later event (a delayed
  `customer.subscription.updated`, an invoice, a manual approval) moves a
  subscription out of them.
- Processor updates, and replayed checkout completions for a subscription
  that already exists, only pass `trialing` and `active` through; any other
  processor status leaves the local status untouched unless the processor
  also reports a cancellation. A new subscription takes its initial status
  from `map_processor_status` instead.
"""

from dataclasses import dataclass
from enum import StrEnum

from billing.errors import InvalidState


class SubscriptionStatus(StrEnum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


LIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED})

# Statuses a new subscription supersedes for the same user. past_due is
# included so that a later recovery event cannot bring a second subscription
# back to active.
SUPERSEDED_STATUSES = frozenset(LIVE_STATUSES | {SubscriptionStatus.PAST_DUE})


class EventKind(StrEnum):
    CHECKOUT_COMPLETED = "checkout_completed"
    PROCESSOR_UPDATED = "processor_updated"
    PROCESSOR_DELETED = "processor_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    MANUAL_APPROVED = "manual_approved"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    processor_status: str | None = None
    canceled: bool = False


def map_processor_status(processor_status: str | None) -> SubscriptionStatus:
    """Status for a subscription newly created from processor data."""
    if processor_status == SubscriptionStatus.TRIALING:
        return SubscriptionStatus.TRIALING
    return SubscriptionStatus.ACTIVE


def apply_event(current: str, event: LifecycleEvent) -> SubscriptionStatus:
    """Return the status a subscription in `current` moves to on `event`."""
    current = SubscriptionStatus(current)

    if current in TERMINAL_STATUSES:
        return current

    kind = event.kind
    if kind in (EventKind.PROCESSOR_DELETED, EventKind.SUPERSEDED):
        return SubscriptionStatus.CANCELED

    if kind in (EventKind.CHECKOUT_COMPLETED, EventKind.PROCESSOR_UPDATED):
        if event.canceled:
            return SubscriptionStatus.CANCELED
        if event.processor_status in (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE):
            return SubscriptionStatus(event.processor_status)
        return current

    if kind == EventKind.INVOICE_FAILED:
        return SubscriptionStatus.PAST_DUE

    if kind == EventKind.MANUAL_APPROVED:
        return SubscriptionStatus.ACTIVE

    # INVOICE_PAID only moves billing dates.
    return current


_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.SUCCEEDED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}


def can_transition_payment(current: str, new: str) -> bool:
    return PaymentStatus(new) in _PAYMENT_TRANSITIONS[PaymentStatus(current)]


def ensure_payment_transition(current: str, new: str) -> None:
    """Raise InvalidState unless `current -> new` is an allowed payment move."""
    if not can_transition_payment(current, new):
        raise InvalidState(f"Payment cannot move from {current} to {new}")


def is_live(status: str) -> bool:
    return SubscriptionStatus(status) in LIVE_STATUSES


def is_terminal(status: str) -> bool:
    return SubscriptionStatus(status) in TERMINAL_STATUSES
