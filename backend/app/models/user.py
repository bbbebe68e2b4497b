"""User model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base
from app.models.enums import UserSubscriptionStatus


class User(Base):
    """User accounts (identity is owned by the auth service; billing owns the subscription cache)"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(25), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)  # Stripe customer ID
    subscription_status = Column(
        Enum(UserSubscriptionStatus, native_enum=False, length=20,
             values_callable=lambda e: [m.value for m in e]),
        default=UserSubscriptionStatus.NONE,
        nullable=False,
        index=True
    )
    subscription_id = Column(
        Integer,
        ForeignKey("subscriptions.id", use_alter=True, name="fk_users_subscription_id", ondelete="SET NULL"),
        nullable=True
    )
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscriptions = relationship(
        "Subscription", back_populates="user", foreign_keys="Subscription.user_id",
        cascade="all, delete-orphan"
    )
    current_subscription = relationship("Subscription", foreign_keys=[subscription_id], post_update=True)
    payments = relationship("Payment", back_populates="user", cascade="all, delete-orphan")

    def has_active_subscription(self) -> bool:
        return self.subscription_status == UserSubscriptionStatus.ACTIVE

    def subscription_details(self) -> dict:
        return {
            "status": self.subscription_status.value if self.subscription_status else UserSubscriptionStatus.NONE.value,
            "is_active": self.has_active_subscription(),
            "subscription_id": self.subscription_id,
        }

    def profile(self) -> dict:
        """Public profile (no Stripe identifiers)"""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "subscription_status": self.subscription_details()["status"],
            "has_active_subscription": self.has_active_subscription(),
            "created_at": self.created_at,
        }
