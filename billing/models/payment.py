"""Payment model: processor invoices and manually verified transfers."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing.constants import PAYMENT_METHOD_CARD
from billing.services.lifecycle import PaymentStatus
from billing.utils import now_utc
from .base import Base


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    subscription_id: Mapped[int | None] = mapped_column(ForeignKey("subscriptions.id"), nullable=True)
    # Net of discount
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="usd")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PaymentStatus.PENDING)
    payment_method: Mapped[str] = mapped_column(String(16), default=PAYMENT_METHOD_CARD)
    manual_payment_method: Mapped[str] = mapped_column(String(32), default="none")
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    # Not unique: failed attempts on the same invoice each get a row
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    stripe_session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    billing_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    billing_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invoice_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    applied_coupon: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    user: Mapped["User"] = relationship(back_populates="payments")
    subscription: Mapped["Subscription | None"] = relationship(back_populates="payments")
