"""Plan catalog schemas."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    price_monthly: Decimal
    price_yearly: Decimal
    features: list[str]
    usage_limits: dict[str, int]
    trial_days: int
    is_active: bool
