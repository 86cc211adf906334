import pytest

from billing.errors import InvalidState
from billing.services.lifecycle import (
    EventKind,
    LifecycleEvent,
    PaymentStatus,
    SubscriptionStatus,
    apply_event,
    can_transition_payment,
    ensure_payment_transition,
    is_live,
    is_terminal,
    map_processor_status,
)


def event(kind, **kwargs):
    return LifecycleEvent(kind, **kwargs)


@pytest.mark.parametrize("terminal", ["canceled", "expired"])
@pytest.mark.parametrize(
    "incoming",
    [
        event(EventKind.PROCESSOR_UPDATED, processor_status="active"),
        event(EventKind.CHECKOUT_COMPLETED, processor_status="trialing"),
        event(EventKind.INVOICE_PAID),
        event(EventKind.INVOICE_FAILED),
        event(EventKind.MANUAL_APPROVED),
    ],
)
def test_terminal_statuses_are_never_left(terminal, incoming):
    assert apply_event(terminal, incoming) == terminal


def test_processor_update_passes_only_trialing_and_active():
    assert apply_event("active", event(EventKind.PROCESSOR_UPDATED, processor_status="trialing")) == "trialing"
    assert apply_event("past_due", event(EventKind.PROCESSOR_UPDATED, processor_status="active")) == "active"
    assert apply_event("active", event(EventKind.PROCESSOR_UPDATED, processor_status="incomplete")) == "active"
    assert apply_event("trialing", event(EventKind.PROCESSOR_UPDATED, processor_status="unpaid")) == "trialing"


def test_checkout_replay_never_remaps_past_due():
    assert apply_event("past_due", event(EventKind.CHECKOUT_COMPLETED, processor_status="past_due")) == "past_due"
    assert apply_event("past_due", event(EventKind.CHECKOUT_COMPLETED, processor_status="incomplete")) == "past_due"
    assert apply_event("trialing", event(EventKind.CHECKOUT_COMPLETED, processor_status="active")) == "active"


def test_processor_update_with_cancellation_forces_canceled():
    result = apply_event("active", event(EventKind.PROCESSOR_UPDATED, processor_status="active", canceled=True))
    assert result == SubscriptionStatus.CANCELED


def test_deletion_and_supersede_cancel():
    assert apply_event("trialing", event(EventKind.PROCESSOR_DELETED)) == "canceled"
    assert apply_event("past_due", event(EventKind.SUPERSEDED)) == "canceled"


def test_invoice_events():
    assert apply_event("active", event(EventKind.INVOICE_FAILED)) == "past_due"
    assert apply_event("past_due", event(EventKind.INVOICE_PAID)) == "past_due"
    assert apply_event("trialing", event(EventKind.INVOICE_PAID)) == "trialing"


def test_manual_approval_activates():
    assert apply_event("trialing", event(EventKind.MANUAL_APPROVED)) == "active"
    assert apply_event("past_due", event(EventKind.MANUAL_APPROVED)) == "active"


def test_map_processor_status():
    assert map_processor_status("trialing") == SubscriptionStatus.TRIALING
    assert map_processor_status("active") == SubscriptionStatus.ACTIVE
    assert map_processor_status("incomplete") == SubscriptionStatus.ACTIVE
    assert map_processor_status(None) == SubscriptionStatus.ACTIVE


def test_status_helpers_accept_plain_strings():
    assert is_live("active") and is_live("trialing")
    assert not is_live("past_due")
    assert is_terminal("canceled") and is_terminal("expired")
    assert not is_terminal("active")


def test_payment_transitions():
    assert can_transition_payment("pending", "succeeded")
    assert can_transition_payment("pending", "failed")
    assert can_transition_payment("succeeded", "refunded")
    assert not can_transition_payment("succeeded", "pending")
    assert not can_transition_payment("failed", "succeeded")
    assert not can_transition_payment(PaymentStatus.REFUNDED, PaymentStatus.SUCCEEDED)


def test_ensure_payment_transition_raises():
    with pytest.raises(InvalidState):
        ensure_payment_transition("succeeded", "pending")
