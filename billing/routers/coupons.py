"""Coupon routes: public validation and admin management."""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.models.user import User
from billing.schemas.coupon import CouponCreate, CouponOut, CouponUpdate, CouponValidation
from billing.services.auth_service import require_admin
from billing.services.coupon_service import (
    create_coupon,
    deactivate_coupon,
    list_coupons,
    update_coupon,
    validate_coupon,
)

router = APIRouter(prefix="/api/coupons", tags=["coupons"])


@router.get("/validate/{code}", response_model=CouponValidation)
async def coupon_validate(
    code: str,
    amount: Decimal = Query(ge=0),
    plan_id: int | None = None,
    db: AsyncSession = Depends(get_db),
):
    coupon, result = await validate_coupon(db, code, plan_id, amount)
    return CouponValidation(
        code=coupon.code,
        name=coupon.name,
        description=coupon.description,
        discount_type=coupon.discount_type,
        discount_value=coupon.discount_value,
        max_discount=coupon.max_discount,
        discount=result.discount_amount,
        final_amount=result.final_amount,
    )


@router.get("", response_model=list[CouponOut])
async def coupons_list(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await list_coupons(db)


@router.post("", response_model=CouponOut, status_code=201)
async def coupon_create(
    body: CouponCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await create_coupon(db, body, created_by_id=admin.id)


@router.put("/{coupon_id}", response_model=CouponOut)
async def coupon_update(
    coupon_id: int,
    body: CouponUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await update_coupon(db, coupon_id, body)


@router.delete("/{coupon_id}", response_model=CouponOut)
async def coupon_delete(
    coupon_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await deactivate_coupon(db, coupon_id)
