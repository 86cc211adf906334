"""SQLAlchemy models for the billing service."""

from .base import Base
from .user import User
from .plan import Plan
from .coupon import Coupon
from .subscription import Subscription
from .payment import Payment
from .notification import Notification

__all__ = [
    "Base",
    "User",
    "Plan",
    "Coupon",
    "Subscription",
    "Payment",
    "Notification",
]
