"""Coupon lookup, strict validation, atomic redemption and admin management."""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.errors import CouponNotApplicable, InvalidState, NotFound, ValidationError
from billing.models.coupon import Coupon
from billing.schemas.coupon import CouponCreate, CouponUpdate
from billing.services.discount import DiscountResult, compute_discount
from billing.utils import ensure_utc, now_utc

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


async def get_coupon_by_code(db: AsyncSession, code: str) -> Coupon | None:
    result = await db.execute(select(Coupon).where(Coupon.code == normalize_code(code)))
    return result.scalar_one_or_none()


async def validate_coupon(
    db: AsyncSession,
    code: str,
    plan_id: int | None,
    amount: Decimal,
    now: datetime | None = None,
) -> tuple[Coupon, DiscountResult]:
    """Validate a coupon for display before checkout.

    Unlike checkout, every failed rule is reported: NotFound for unknown or
    inactive codes, CouponNotApplicable carrying the failed rule otherwise.
    """
    coupon = await get_coupon_by_code(db, code)
    if not coupon or not coupon.is_active:
        raise NotFound("Invalid coupon code")

    result = compute_discount(coupon, amount, now or now_utc(), plan_id)
    if not result.applicable:
        raise CouponNotApplicable(result.message, reason=result.reason)
    return coupon, result


async def redeem_coupon(db: AsyncSession, coupon: Coupon) -> bool:
    """Increment used_count if the usage limit still allows it.

    Increment-and-check happens in one UPDATE so concurrent redemptions
    can never push used_count past usage_limit. Does not commit.
    """
    result = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"Coupon {coupon.code} lost redemption race (limit {coupon.usage_limit})")
        return False
    await db.refresh(coupon, attribute_names=["used_count"])
    return True


# --- Admin ---


async def list_coupons(db: AsyncSession) -> list[Coupon]:
    result = await db.execute(select(Coupon).order_by(Coupon.created_at.desc()))
    return list(result.scalars().all())


async def get_coupon(db: AsyncSession, coupon_id: int) -> Coupon:
    coupon = await db.get(Coupon, coupon_id)
    if not coupon:
        raise NotFound("Coupon not found")
    return coupon


def _check_window(valid_from: datetime, valid_until: datetime) -> None:
    if ensure_utc(valid_until) < ensure_utc(valid_from):
        raise ValidationError("valid_until must not be earlier than valid_from")


async def create_coupon(db: AsyncSession, data: CouponCreate, created_by_id: int | None = None) -> Coupon:
    code = normalize_code(data.code)
    if await get_coupon_by_code(db, code):
        raise InvalidState(f"Coupon code {code} already exists")
    _check_window(data.valid_from, data.valid_until)

    coupon = Coupon(**data.model_dump(exclude={"code"}), code=code, created_by_id=created_by_id)
    db.add(coupon)
    await db.commit()
    await db.refresh(coupon)
    logger.info(f"Coupon {code} created")
    return coupon


async def update_coupon(db: AsyncSession, coupon_id: int, updates: CouponUpdate) -> Coupon:
    coupon = await get_coupon(db, coupon_id)
    update_data = updates.model_dump(exclude_unset=True)

    if "code" in update_data and update_data["code"]:
        code = normalize_code(update_data["code"])
        existing = await get_coupon_by_code(db, code)
        if existing and existing.id != coupon.id:
            raise InvalidState(f"Coupon code {code} already exists")
        update_data["code"] = code

    _check_window(
        update_data.get("valid_from", coupon.valid_from),
        update_data.get("valid_until", coupon.valid_until),
    )

    for key, value in update_data.items():
        setattr(coupon, key, value)

    await db.commit()
    await db.refresh(coupon)
    return coupon


async def deactivate_coupon(db: AsyncSession, coupon_id: int) -> Coupon:
    """Soft delete."""
    coupon = await get_coupon(db, coupon_id)
    coupon.is_active = False
    await db.commit()
    logger.info(f"Coupon {coupon.code} deactivated")
    return coupon
