"""Pydantic schemas for subscriptions

Request bodies for the subscription routes and the provider snapshots the
reconciliation engine works from. Snapshots are built from Stripe objects or
plain webhook dicts with ``from_provider``.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.exceptions import ValidationFailure
from app.models.enums import SubscriptionStatus, subscription_status_from_provider
from app.services.plan_catalog import PLAN_KEYS


class CheckoutRequest(BaseModel):
    plan: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

    @field_validator("plan")
    @classmethod
    def plan_must_exist(cls, v):
        if v not in PLAN_KEYS:
            raise ValueError(f"plan must be one of {', '.join(PLAN_KEYS)}")
        return v


class SyncFromSessionRequest(BaseModel):
    session_id: str = Field(min_length=1)


def get_stripe_value(obj: Any, key: str, default=None):
    """Read a field from a Stripe object or a plain dict

    Item access first: on Stripe objects ``obj.items`` is the mapping method,
    not the subscription items list.
    """
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = None if isinstance(obj, dict) else getattr(obj, key, None)
    return default if value is None else value


def stripe_id(value: Any) -> Optional[str]:
    """ID of a field that may be a bare ID or an expanded object"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return get_stripe_value(value, "id")


def from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def from_minor_units(value: Any) -> Optional[Decimal]:
    """Stripe amounts are integers in the currency's minor unit"""
    if value is None:
        return None
    return Decimal(int(value)) / Decimal(100)


def _metadata(obj: Any) -> Dict[str, str]:
    metadata = get_stripe_value(obj, "metadata") or {}
    return {str(k): str(v) for k, v in dict(metadata).items()}


def metadata_user_id(metadata: Dict[str, str]) -> Optional[int]:
    """User ID stored in metadata under ``user_id`` or ``userId``"""
    raw = metadata.get("user_id") or metadata.get("userId")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class CheckoutSessionSnapshot(BaseModel):
    id: str
    payment_status: Optional[str] = None
    status: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    amount_total: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_intent_id: Optional[str] = None
    invoice_id: Optional[str] = None

    @classmethod
    def from_provider(cls, session: Any) -> "CheckoutSessionSnapshot":
        session_id = get_stripe_value(session, "id")
        if not session_id:
            raise ValidationFailure("Checkout session has no id", "INVALID_SESSION")
        currency = get_stripe_value(session, "currency")
        customer_details = get_stripe_value(session, "customer_details")
        return cls(
            id=session_id,
            payment_status=get_stripe_value(session, "payment_status"),
            status=get_stripe_value(session, "status"),
            customer_id=stripe_id(get_stripe_value(session, "customer")),
            customer_email=get_stripe_value(customer_details, "email"),
            subscription_id=stripe_id(get_stripe_value(session, "subscription")),
            metadata=_metadata(session),
            amount_total=from_minor_units(get_stripe_value(session, "amount_total")),
            currency=currency.upper() if currency else None,
            payment_intent_id=stripe_id(get_stripe_value(session, "payment_intent")),
            invoice_id=stripe_id(get_stripe_value(session, "invoice")),
        )

    @property
    def user_id(self) -> Optional[int]:
        return metadata_user_id(self.metadata)

    @property
    def plan(self) -> Optional[str]:
        return self.metadata.get("plan")


class SubscriptionSnapshot(BaseModel):
    id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    price_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_provider(cls, subscription: Any) -> "SubscriptionSnapshot":
        """Build a snapshot from a Stripe subscription

        Raises:
            ValidationFailure: missing id or a status with no local equivalent
        """
        sub_id = get_stripe_value(subscription, "id")
        if not sub_id:
            raise ValidationFailure("Subscription snapshot has no id", "INVALID_SUBSCRIPTION")

        raw_status = get_stripe_value(subscription, "status")
        status = subscription_status_from_provider(raw_status)
        if status is None:
            raise ValidationFailure(f"Unknown subscription status: {raw_status}", "UNKNOWN_SUBSCRIPTION_STATUS")

        # Newer API versions moved the period fields onto the subscription item
        items = get_stripe_value(get_stripe_value(subscription, "items"), "data") or []
        first_item = items[0] if items else None
        price = get_stripe_value(first_item, "price")

        period_start = get_stripe_value(subscription, "current_period_start")
        if period_start is None:
            period_start = get_stripe_value(first_item, "current_period_start")
        period_end = get_stripe_value(subscription, "current_period_end")
        if period_end is None:
            period_end = get_stripe_value(first_item, "current_period_end")

        currency = get_stripe_value(subscription, "currency") or get_stripe_value(price, "currency")
        return cls(
            id=sub_id,
            status=status,
            current_period_start=from_timestamp(period_start),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(get_stripe_value(subscription, "cancel_at_period_end", False)),
            canceled_at=from_timestamp(get_stripe_value(subscription, "canceled_at")),
            trial_start=from_timestamp(get_stripe_value(subscription, "trial_start")),
            trial_end=from_timestamp(get_stripe_value(subscription, "trial_end")),
            price_id=get_stripe_value(price, "id"),
            customer_id=stripe_id(get_stripe_value(subscription, "customer")),
            amount=from_minor_units(get_stripe_value(price, "unit_amount")),
            currency=currency.upper() if currency else None,
            metadata=_metadata(subscription),
        )

    @property
    def user_id(self) -> Optional[int]:
        return metadata_user_id(self.metadata)

    @property
    def plan(self) -> Optional[str]:
        return self.metadata.get("plan")
