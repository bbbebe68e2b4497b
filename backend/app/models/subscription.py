"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Numeric, Enum
from sqlalchemy.orm import relationship
from datetime import datetime, timezone, timedelta
from decimal import Decimal
import math
from typing import Optional

from app.core.config import settings
from app.models.base import Base
from app.models.enums import SubscriptionStatus
from app.services.plan_catalog import get_plan


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on reload)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Subscription(Base):
    """Local projection of a Stripe subscription"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan = Column(String(20), nullable=False)  # 'monthly', 'quarterly', 'annually'
    status = Column(
        Enum(SubscriptionStatus, native_enum=False, length=20,
             values_callable=lambda e: [m.value for m in e]),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
        index=True
    )
    start_date = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False, index=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_price_id = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    amount = Column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    currency = Column(String(3), default=lambda: settings.DEFAULT_CURRENCY, nullable=False)
    last_event_at = Column(DateTime(timezone=True), nullable=True)  # created timestamp of the last applied Stripe event
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    user = relationship("User", back_populates="subscriptions", foreign_keys=[user_id])
    payments = relationship("Payment", back_populates="subscription")

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.status == SubscriptionStatus.ACTIVE and as_utc(self.end_date) > now

    def is_trialing(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (
            self.status == SubscriptionStatus.TRIALING
            and self.trial_end is not None
            and as_utc(self.trial_end) > now
        )

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        """Whole days until end_date, rounded up, never negative"""
        now = now or datetime.now(timezone.utc)
        seconds = (as_utc(self.end_date) - now).total_seconds()
        return max(0, math.ceil(seconds / 86400))

    def next_billing_date(self) -> Optional[datetime]:
        if self.cancel_at_period_end:
            return None
        return as_utc(self.current_period_end or self.end_date)

    @property
    def plan_details(self) -> Optional[dict]:
        return get_plan(self.plan)

    def seed_period_from_plan(self, start: Optional[datetime] = None):
        """Set start_date/end_date from the plan duration"""
        plan = get_plan(self.plan)
        if not plan:
            raise ValueError(f"Unknown plan: {self.plan}")
        self.start_date = as_utc(start or self.start_date) or datetime.now(timezone.utc)
        self.end_date = self.start_date + timedelta(days=plan["duration"])

    def to_dict(self) -> dict:
        next_billing = self.next_billing_date()
        return {
            "id": self.id,
            "plan": self.plan,
            "plan_details": _plan_details_json(self.plan_details),
            "status": self.status.value if self.status else None,
            "start_date": as_utc(self.start_date).isoformat() if self.start_date else None,
            "end_date": as_utc(self.end_date).isoformat() if self.end_date else None,
            "current_period_start": as_utc(self.current_period_start).isoformat() if self.current_period_start else None,
            "current_period_end": as_utc(self.current_period_end).isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "cancelled_at": as_utc(self.cancelled_at).isoformat() if self.cancelled_at else None,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "days_remaining": self.days_remaining() if self.end_date else 0,
            "next_billing_date": next_billing.isoformat() if next_billing else None,
            "is_active": self.is_active() if self.end_date else False,
        }


def _plan_details_json(plan: Optional[dict]) -> Optional[dict]:
    if not plan:
        return None
    return {**plan, "price": float(plan["price"])}
