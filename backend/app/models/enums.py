"""Closed status types shared by the billing models

The only place a Stripe status string or a Subscription status is translated
into another status is here.
"""
import enum
from typing import Optional


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class UserSubscriptionStatus(str, enum.Enum):
    """Status cached on the user row"""
    NONE = "none"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


LIVE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)

# Stripe subscription.status -> local status
PROVIDER_SUBSCRIPTION_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "paused": SubscriptionStatus.EXPIRED,
}

_USER_STATUS_FOR = {
    SubscriptionStatus.ACTIVE: UserSubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING: UserSubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE: UserSubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELLED: UserSubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED: UserSubscriptionStatus.EXPIRED,
}

# Import-time exhaustiveness check
_unmapped = set(SubscriptionStatus) - set(_USER_STATUS_FOR)
if _unmapped:
    raise RuntimeError(f"Subscription statuses without a user cache mapping: {sorted(s.value for s in _unmapped)}")


def subscription_status_from_provider(value: Optional[str]) -> Optional[SubscriptionStatus]:
    """Map a Stripe subscription status to a local status (None if unknown)"""
    if value is None:
        return None
    return PROVIDER_SUBSCRIPTION_STATUSES.get(str(value).lower())


def user_status_for(status: Optional[SubscriptionStatus]) -> UserSubscriptionStatus:
    """Map a Subscription status to the user cache value (1:1, trialing kept verbatim)"""
    if status is None:
        return UserSubscriptionStatus.NONE
    return _USER_STATUS_FOR[SubscriptionStatus(status)]
