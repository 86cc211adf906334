import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.errors import CheckoutConflict, PlanNotFound, UpstreamPaymentError, ValidationError
from billing.models import Notification, Payment, Plan, Subscription, User
from billing.services import checkout_service
from billing.services.checkout_service import CheckoutResult, initiate_checkout
from billing.services.processor import DisabledProcessor
from billing.utils import add_months

LOCAL = DisabledProcessor()


async def live_subscriptions(db, user_id: int) -> list[Subscription]:
    result = await db.execute(
        select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_(["active", "trialing"]),
        )
    )
    return list(result.scalars().all())


async def test_local_checkout_with_trial(db, user, make_plan):
    plan = await make_plan(trial_days=14, price_monthly=Decimal("50.00"))

    result = await initiate_checkout(db, user, plan.id, "monthly", LOCAL, manual_method="bank_transfer",
                                     transaction_id="TXN-001")

    assert result.mode == "local"
    assert result.message == "Subscription started with 14 days free trial!"
    sub = result.subscription
    assert sub.status == "trialing"
    assert sub.trial_end_date == sub.start_date + timedelta(days=14)
    assert sub.end_date == add_months(sub.start_date, 1)
    assert sub.next_billing_date == sub.end_date

    payment = result.payment
    assert payment.status == "pending"
    assert payment.amount == Decimal("50.00")
    assert payment.payment_method == "manual"
    assert payment.manual_payment_method == "bank_transfer"
    assert payment.transaction_id == "TXN-001"
    assert payment.subscription_id == sub.id

    notifications = (await db.execute(select(Notification).where(Notification.user_id == user.id))).scalars().all()
    assert [n.type for n in notifications] == ["payment_pending"]


async def test_local_checkout_without_trial_is_active_for_a_year(db, user, make_plan):
    plan = await make_plan(trial_days=0, price_yearly=Decimal("480.00"))

    result = await initiate_checkout(db, user, plan.id, "yearly", LOCAL)

    assert result.message == "Subscription activated successfully!"
    assert result.subscription.status == "active"
    assert result.subscription.trial_end_date is None
    assert result.subscription.end_date == add_months(result.subscription.start_date, 12)
    assert result.payment.amount == Decimal("480.00")
    assert result.payment.manual_payment_method == "none"


async def test_simulated_card_gets_generated_reference(db, user, make_plan):
    plan = await make_plan()
    result = await initiate_checkout(db, user, plan.id, "monthly", LOCAL, manual_method="card")
    assert result.payment.transaction_id.startswith("CARD-")
    assert result.payment.manual_payment_method == "none"


async def test_new_checkout_supersedes_the_live_subscription(db, user, make_plan):
    first_plan = await make_plan()
    second_plan = await make_plan()

    first = await initiate_checkout(db, user, first_plan.id, "monthly", LOCAL)
    second = await initiate_checkout(db, user, second_plan.id, "monthly", LOCAL)

    live = await live_subscriptions(db, user.id)
    assert [s.id for s in live] == [second.subscription.id]
    await db.refresh(first.subscription)
    assert first.subscription.status == "canceled"
    assert first.subscription.canceled_at is not None


async def test_new_checkout_supersedes_past_due_subscription(db, user, make_plan):
    plan = await make_plan()
    overdue = Subscription(user_id=user.id, plan_id=plan.id, billing_cycle="monthly", status="past_due")
    db.add(overdue)
    await db.commit()

    result = await initiate_checkout(db, user, plan.id, "monthly", LOCAL)

    await db.refresh(overdue)
    assert overdue.status == "canceled"
    assert [s.id for s in await live_subscriptions(db, user.id)] == [result.subscription.id]


async def test_checkout_applies_and_redeems_coupon(db, user, make_plan, make_coupon):
    plan = await make_plan(price_monthly=Decimal("100.00"))
    coupon = await make_coupon(code="HALF", discount_value=Decimal("50"), max_discount=Decimal("20"), usage_limit=5)

    result = await initiate_checkout(db, user, plan.id, "monthly", LOCAL, coupon_code="half")

    assert result.discount == Decimal("20.00")
    assert result.applied_coupon == "HALF"
    assert result.payment.amount == Decimal("80.00")
    assert result.payment.discount == Decimal("20.00")
    assert result.payment.applied_coupon == "HALF"
    await db.refresh(coupon)
    assert coupon.used_count == 1


async def test_inapplicable_coupon_is_ignored(db, user, make_plan, make_coupon):
    plan = await make_plan(price_monthly=Decimal("40.00"))
    coupon = await make_coupon(code="BIGSPEND", min_amount=Decimal("100"))

    result = await initiate_checkout(db, user, plan.id, "monthly", LOCAL, coupon_code="BIGSPEND")

    assert result.discount == Decimal("0.00")
    assert result.applied_coupon is None
    assert result.payment.amount == Decimal("40.00")
    await db.refresh(coupon)
    assert coupon.used_count == 0


async def test_unknown_coupon_does_not_abort_checkout(db, user, make_plan):
    plan = await make_plan()
    result = await initiate_checkout(db, user, plan.id, "monthly", LOCAL, coupon_code="NOPE")
    assert result.subscription is not None
    assert result.applied_coupon is None


async def test_missing_or_inactive_plan(db, user, make_plan):
    inactive = await make_plan(is_active=False)
    with pytest.raises(PlanNotFound):
        await initiate_checkout(db, user, 99999, "monthly", LOCAL)
    with pytest.raises(PlanNotFound):
        await initiate_checkout(db, user, inactive.id, "monthly", LOCAL)


async def test_unknown_billing_cycle(db, user, make_plan):
    plan = await make_plan()
    with pytest.raises(ValidationError):
        await initiate_checkout(db, user, plan.id, "weekly", LOCAL)


async def test_failure_after_redemption_rolls_everything_back(db, user, make_plan, make_coupon, monkeypatch):
    plan = await make_plan()
    coupon = await make_coupon(code="ATOMIC", usage_limit=1)
    user_id = user.id

    async def broken_payment(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(checkout_service, "create_manual_payment", broken_payment)

    with pytest.raises(RuntimeError):
        await initiate_checkout(db, user, plan.id, "monthly", LOCAL, coupon_code="ATOMIC")

    await db.refresh(coupon)
    assert coupon.used_count == 0
    count = await db.scalar(select(func.count(Subscription.id)).where(Subscription.user_id == user_id))
    assert count == 0


def unique_violation() -> IntegrityError:
    return IntegrityError("INSERT INTO subscriptions", {}, Exception("UNIQUE constraint failed: subscriptions.user_id"))


async def test_lost_live_subscription_race_is_retried(db, user, make_plan, make_coupon, monkeypatch):
    plan = await make_plan(price_monthly=Decimal("100.00"))
    coupon = await make_coupon(code="ONCE", discount_value=Decimal("10"), usage_limit=1)
    replace = checkout_service.replace_active_subscription
    calls = []

    async def racing_replace(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise unique_violation()
        return await replace(*args, **kwargs)

    monkeypatch.setattr(checkout_service, "replace_active_subscription", racing_replace)

    result = await initiate_checkout(db, user, plan.id, "monthly", LOCAL, coupon_code="ONCE")

    assert len(calls) == 2
    assert result.applied_coupon == "ONCE"
    assert result.payment.amount == Decimal("90.00")
    await db.refresh(coupon)
    assert coupon.used_count == 1
    assert len(await live_subscriptions(db, result.subscription.user_id)) == 1


async def test_repeated_race_loss_raises_conflict(db, user, make_plan, monkeypatch):
    plan = await make_plan()
    user_id = user.id

    async def always_losing(*args, **kwargs):
        raise unique_violation()

    monkeypatch.setattr(checkout_service, "replace_active_subscription", always_losing)

    with pytest.raises(CheckoutConflict):
        await initiate_checkout(db, user, plan.id, "monthly", LOCAL)

    count = await db.scalar(select(func.count(Payment.id)).where(Payment.user_id == user_id))
    assert count == 0
    assert await db.scalar(select(func.count(Notification.id))) == 0


# --- Processor-hosted checkout ---


async def test_processor_checkout_creates_session_only(db, user, processor, make_plan, make_coupon):
    plan = await make_plan(trial_days=7, stripe_price_id_monthly="price_monthly_1")
    coupon = await make_coupon(code="STRIPE10", stripe_coupon_id="co_10")

    result = await initiate_checkout(db, user, plan.id, "monthly", processor, coupon_code="stripe10")

    assert result.mode == "processor"
    assert result.checkout_url == "https://checkout.test/cs_test_1"
    assert result.subscription is None and result.payment is None

    session = processor.sessions[0]
    assert session["price_id"] == "price_monthly_1"
    assert session["trial_days"] == 7
    assert session["stripe_coupon_id"] == "co_10"
    assert session["metadata"] == {
        "user_id": str(user.id),
        "plan_id": str(plan.id),
        "billing_cycle": "monthly",
        "coupon_code": "STRIPE10",
    }

    await db.refresh(user)
    assert user.stripe_customer_id == "cus_test_1"
    assert await live_subscriptions(db, user.id) == []
    assert await db.scalar(select(func.count(Payment.id))) == 0
    # Redeemed only once the processor confirms the checkout
    await db.refresh(coupon)
    assert coupon.used_count == 0


async def test_coupon_without_stripe_counterpart_is_not_carried_to_processor(db, user, processor, make_plan,
                                                                            make_coupon):
    plan = await make_plan(stripe_price_id_monthly="price_monthly_1")
    coupon = await make_coupon(code="LOCALONLY")

    result = await initiate_checkout(db, user, plan.id, "monthly", processor, coupon_code="LOCALONLY")

    assert result.applied_coupon is None
    assert result.discount == Decimal("0.00")
    session = processor.sessions[0]
    assert session["stripe_coupon_id"] is None
    assert "coupon_code" not in session["metadata"]
    await db.refresh(coupon)
    assert coupon.used_count == 0


async def test_processor_checkout_reuses_customer(db, make_user, processor, make_plan):
    user = await make_user(stripe_customer_id="cus_existing")
    plan = await make_plan(stripe_price_id_yearly="price_yearly_1")

    await initiate_checkout(db, user, plan.id, "yearly", processor)

    assert processor.customers == []
    assert processor.sessions[0]["customer_id"] == "cus_existing"


async def test_unmapped_price_falls_back_to_local(db, user, processor, make_plan):
    plan = await make_plan(stripe_price_id_monthly="price_monthly_only")
    result = await initiate_checkout(db, user, plan.id, "yearly", processor)
    assert result.mode == "local"
    assert processor.sessions == []


async def test_processor_errors_propagate(db, user, processor, make_plan):
    plan = await make_plan(stripe_price_id_monthly="price_m")
    processor.fail_checkout = True
    with pytest.raises(UpstreamPaymentError):
        await initiate_checkout(db, user, plan.id, "monthly", processor)


async def test_concurrent_checkouts_leave_one_live_subscription(file_engine):
    factory = async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        buyer = User(email="racer@example.com", name="Racer")
        plan = Plan(name="Race", price_monthly=Decimal("10"), price_yearly=Decimal("100"), features=[],
                    usage_limits={})
        session.add_all([buyer, plan])
        await session.commit()
        user_id, plan_id = buyer.id, plan.id

    async def checkout():
        async with factory() as session:
            racer = await session.get(User, user_id)
            return await initiate_checkout(session, racer, plan_id, "monthly", LOCAL)

    results = await asyncio.gather(checkout(), checkout(), return_exceptions=True)
    assert all(isinstance(r, (CheckoutResult, CheckoutConflict)) for r in results), results
    assert any(isinstance(r, CheckoutResult) for r in results)

    async with factory() as session:
        assert len(await live_subscriptions(session, user_id)) == 1
