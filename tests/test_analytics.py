from datetime import UTC, datetime
from decimal import Decimal

from billing.models import Payment, Subscription
from billing.services.analytics_service import revenue_analytics, subscription_analytics

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def at(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


async def test_revenue_analytics(db, user):
    db.add_all([
        Payment(user_id=user.id, amount=Decimal("100.00"), status="succeeded", created_at=at(2026, 3, 10)),
        Payment(user_id=user.id, amount=Decimal("20.00"), status="succeeded", created_at=at(2026, 3, 15, 8)),
        Payment(user_id=user.id, amount=Decimal("50.00"), status="succeeded", created_at=at(2026, 1, 20)),
        Payment(user_id=user.id, amount=Decimal("70.00"), status="failed", created_at=at(2026, 3, 11)),
        Payment(user_id=user.id, amount=Decimal("30.00"), status="succeeded", created_at=at(2025, 8, 1)),
    ])
    await db.commit()

    stats = await revenue_analytics(db, period_days=30, now=NOW)

    assert stats["total_revenue"] == Decimal("120.00")
    assert stats["total_transactions"] == 2
    assert stats["revenue_today"] == Decimal("20.00")

    by_month = stats["revenue_by_month"]
    assert [m["month"] for m in by_month] == ["Oct 2025", "Nov 2025", "Dec 2025", "Jan 2026", "Feb 2026", "Mar 2026"]
    assert by_month[0] == {"month": "Oct 2025", "revenue": Decimal("0.00"), "transactions": 0}
    assert by_month[3]["revenue"] == Decimal("50.00")
    assert by_month[5] == {"month": "Mar 2026", "revenue": Decimal("120.00"), "transactions": 2}


async def test_revenue_analytics_empty(db):
    stats = await revenue_analytics(db, now=NOW)
    assert stats["total_revenue"] == Decimal("0.00")
    assert stats["total_transactions"] == 0
    assert all(m["transactions"] == 0 for m in stats["revenue_by_month"])


async def test_subscription_analytics(db, make_user, make_plan):
    basic = await make_plan(name="Basic")
    pro = await make_plan(name="Pro")
    users = [await make_user() for _ in range(4)]

    db.add_all([
        Subscription(user_id=users[0].id, plan_id=basic.id, billing_cycle="monthly", status="active",
                     created_at=at(2026, 3, 2)),
        Subscription(user_id=users[1].id, plan_id=pro.id, billing_cycle="monthly", status="active",
                     created_at=at(2026, 3, 5)),
        Subscription(user_id=users[2].id, plan_id=basic.id, billing_cycle="yearly", status="trialing",
                     created_at=at(2026, 3, 9)),
        Subscription(user_id=users[3].id, plan_id=pro.id, billing_cycle="monthly", status="canceled",
                     created_at=at(2026, 2, 20)),
        Subscription(user_id=users[3].id, plan_id=pro.id, billing_cycle="monthly", status="past_due",
                     created_at=at(2025, 6, 1)),
    ])
    await db.commit()

    stats = await subscription_analytics(db, now=NOW)

    assert stats["active_subscriptions"] == 2
    assert stats["trialing_subscriptions"] == 1
    assert stats["canceled_subscriptions"] == 1
    assert stats["total_subscriptions"] == 4
    assert stats["subscriptions_by_plan"] == [
        {"plan_id": basic.id, "plan_name": "Basic", "count": 2},
        {"plan_id": pro.id, "plan_name": "Pro", "count": 1},
    ]
    assert stats["subscription_growth"][-1] == {"month": "Mar 2026", "count": 3}
    assert stats["subscription_growth"][-2] == {"month": "Feb 2026", "count": 1}
    assert stats["growth_rate"] == 200.0
    assert stats["churn_rate"] == 33.33
