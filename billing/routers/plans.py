"""Plan catalog routes (read-only)."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.errors import PlanNotFound
from billing.schemas.plan import PlanOut
from billing.services.plan_service import find_plan, list_active_plans

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("", response_model=list[PlanOut])
async def plans_list(db: AsyncSession = Depends(get_db)):
    return await list_active_plans(db)


@router.get("/{plan_id}", response_model=PlanOut)
async def plan_detail(plan_id: int, db: AsyncSession = Depends(get_db)):
    plan = await find_plan(db, plan_id)
    if not plan:
        raise PlanNotFound("Plan not found")
    return plan
