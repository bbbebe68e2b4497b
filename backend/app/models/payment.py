"""Payment model and its append-only child records"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Numeric, Text, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Optional

from app.core.config import settings
from app.models.base import Base
from app.models.enums import PaymentStatus
from app.models.subscription import as_utc

REFUND_WINDOW_DAYS = 30


class Payment(Base):
    """A single charge attempt against Stripe"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default=lambda: settings.DEFAULT_CURRENCY, nullable=False)
    status = Column(
        Enum(PaymentStatus, native_enum=False, length=20,
             values_callable=lambda e: [m.value for m in e]),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True
    )
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_charge_id = Column(String(255), nullable=True, index=True)
    stripe_invoice_id = Column(String(255), nullable=True, index=True)
    stripe_checkout_session_id = Column(String(255), unique=True, nullable=True, index=True)
    description = Column(String(255), nullable=False, default="")
    receipt_url = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    user = relationship("User", back_populates="payments")
    subscription = relationship("Subscription", back_populates="payments")
    refunds = relationship("PaymentRefund", back_populates="payment", cascade="all, delete-orphan",
                           order_by="PaymentRefund.id")
    disputes = relationship("PaymentDispute", back_populates="payment", cascade="all, delete-orphan",
                            order_by="PaymentDispute.id")
    webhook_events = relationship("PaymentWebhookEvent", back_populates="payment", cascade="all, delete-orphan",
                                  order_by="PaymentWebhookEvent.id")

    @property
    def total_refunded(self) -> Decimal:
        return sum((Decimal(r.amount) for r in self.refunds), Decimal("0"))

    @property
    def net_amount(self) -> Decimal:
        return Decimal(self.amount) - self.total_refunded

    def is_refundable(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (
            self.status == PaymentStatus.SUCCEEDED
            and self.paid_at is not None
            and now - as_utc(self.paid_at) < timedelta(days=REFUND_WINDOW_DAYS)
        )

    def has_event(self, event_id: str) -> bool:
        return any(e.event_id == event_id for e in self.webhook_events)

    def has_refund(self, stripe_refund_id: Optional[str]) -> bool:
        if not stripe_refund_id:
            return False
        return any(r.stripe_refund_id == stripe_refund_id for r in self.refunds)

    @property
    def provisional_refunds(self):
        return [r for r in self.refunds if r.provisional]


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    reason = Column(String(255), nullable=True)
    stripe_refund_id = Column(String(255), nullable=True, index=True)
    # Charge-level total recorded before the individual refund was known
    provisional = Column(Boolean, default=False, nullable=False)
    refunded_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    payment = relationship("Payment", back_populates="refunds")


class PaymentDispute(Base):
    __tablename__ = "payment_disputes"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    reason = Column(String(255), nullable=True)
    status = Column(String(50), nullable=True)
    stripe_dispute_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    payment = relationship("Payment", back_populates="disputes")


class PaymentWebhookEvent(Base):
    """Per-payment record of applied Stripe events"""
    __tablename__ = "payment_webhook_events"
    __table_args__ = (
        UniqueConstraint("payment_id", "event_id", name="uq_payment_webhook_events_payment_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    event_id = Column(String(255), nullable=False)
    processed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    payment = relationship("Payment", back_populates="webhook_events")
