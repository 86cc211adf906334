"""Coupon-related Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class CouponCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: Decimal = Field(ge=0)
    min_amount: Decimal = Field(Decimal("0"), ge=0)
    max_discount: Decimal | None = Field(None, ge=0)
    valid_from: datetime
    valid_until: datetime
    usage_limit: int | None = Field(None, ge=0)
    is_active: bool = True
    applicable_plan_ids: list[int] = Field(default_factory=list)
    stripe_coupon_id: str | None = None


class CouponUpdate(BaseModel):
    code: str | None = Field(None, min_length=1, max_length=64)
    name: str | None = None
    description: str | None = None
    discount_type: Literal["percentage", "fixed"] | None = None
    discount_value: Decimal | None = Field(None, ge=0)
    min_amount: Decimal | None = Field(None, ge=0)
    max_discount: Decimal | None = Field(None, ge=0)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    usage_limit: int | None = Field(None, ge=0)
    is_active: bool | None = None
    applicable_plan_ids: list[int] | None = None
    stripe_coupon_id: str | None = None


class CouponOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    description: str | None = None
    discount_type: str
    discount_value: Decimal
    min_amount: Decimal
    max_discount: Decimal | None = None
    valid_from: datetime
    valid_until: datetime
    usage_limit: int | None = None
    used_count: int
    is_active: bool
    applicable_plan_ids: list[int]


class CouponValidation(BaseModel):
    code: str
    name: str
    description: str | None = None
    discount_type: str
    discount_value: Decimal
    max_discount: Decimal | None = None
    discount: Decimal
    final_amount: Decimal
