"""Plan catalog: read-only access to pricing and trial terms."""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.models.plan import Plan


async def find_plan(db: AsyncSession, plan_id: int) -> Plan | None:
    return await db.get(Plan, plan_id)


async def list_active_plans(db: AsyncSession) -> list[Plan]:
    result = await db.execute(
        select(Plan).where(Plan.is_active == True).order_by(Plan.price_monthly)
    )
    return list(result.scalars().all())


def price_for_cycle(plan: Plan, billing_cycle: str) -> Decimal:
    return plan.price_monthly if billing_cycle == "monthly" else plan.price_yearly


def stripe_price_for_cycle(plan: Plan, billing_cycle: str) -> str | None:
    return plan.stripe_price_id_monthly if billing_cycle == "monthly" else plan.stripe_price_id_yearly
