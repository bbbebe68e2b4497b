"""Subscription projection: local lifecycle of Stripe subscriptions

Functions here add and flush; the caller owns the commit.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import NotFoundFailure, ValidationFailure
from app.core.logging import log_payment_event
from app.models.enums import SubscriptionStatus, LIVE_SUBSCRIPTION_STATUSES
from app.models.subscription import Subscription, as_utc
from app.models.user import User
from app.schemas.subscriptions import SubscriptionSnapshot
from app.services.plan_catalog import get_plan, plan_for_price_id

logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE)


def find_by_stripe_id(stripe_subscription_id: Optional[str], db: Session) -> Optional[Subscription]:
    if not stripe_subscription_id:
        return None
    return db.query(Subscription).filter(
        Subscription.stripe_subscription_id == stripe_subscription_id
    ).first()


def find_live_subscription(user_id: int, db: Session) -> Optional[Subscription]:
    """Most recent active or trialing subscription of a user"""
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES)
    ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()


def find_latest_subscription(user_id: int, db: Session) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.user_id == user_id
    ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()


def is_stale(subscription: Subscription, event_created: Optional[datetime]) -> bool:
    """True when an older event would overwrite state from a newer one"""
    if not settings.BILLING_ENFORCE_EVENT_ORDER or event_created is None:
        return False
    last_event_at = as_utc(subscription.last_event_at)
    return last_event_at is not None and as_utc(event_created) < last_event_at


def _advance_marker(subscription: Subscription, event_created: Optional[datetime]):
    if event_created is None:
        return
    last_event_at = as_utc(subscription.last_event_at)
    if last_event_at is None or as_utc(event_created) > last_event_at:
        subscription.last_event_at = event_created


def _resolve_plan(snapshot: SubscriptionSnapshot, plan_hint: Optional[str],
                  existing: Optional[Subscription]) -> Optional[str]:
    for candidate in (plan_hint, snapshot.plan, plan_for_price_id(snapshot.price_id)):
        if candidate and get_plan(candidate):
            return candidate
    return existing.plan if existing else None


def _apply_snapshot(subscription: Subscription, snapshot: SubscriptionSnapshot):
    subscription.status = snapshot.status
    subscription.stripe_subscription_id = snapshot.id
    if snapshot.current_period_start:
        subscription.current_period_start = snapshot.current_period_start
    if snapshot.current_period_end:
        subscription.current_period_end = snapshot.current_period_end
        subscription.end_date = snapshot.current_period_end
    subscription.cancel_at_period_end = snapshot.cancel_at_period_end
    if snapshot.canceled_at:
        subscription.cancelled_at = snapshot.canceled_at
    elif snapshot.status != SubscriptionStatus.CANCELLED:
        subscription.cancelled_at = None
    subscription.trial_start = snapshot.trial_start
    subscription.trial_end = snapshot.trial_end
    if snapshot.price_id:
        subscription.stripe_price_id = snapshot.price_id
    if snapshot.customer_id:
        subscription.stripe_customer_id = snapshot.customer_id
    if snapshot.amount is not None:
        subscription.amount = snapshot.amount
    if snapshot.currency:
        subscription.currency = snapshot.currency


def upsert(
    snapshot: SubscriptionSnapshot,
    user: User,
    db: Session,
    plan_hint: Optional[str] = None,
    event_created: Optional[datetime] = None
) -> Tuple[Subscription, bool]:
    """Create or update the local subscription from a Stripe snapshot

    Lookup order: Stripe subscription ID, then the user's most recent live
    subscription, otherwise a new row seeded from the plan duration.

    Returns:
        (subscription, applied). applied is False when the event is older
        than the last one applied to this subscription.

    Raises:
        ValidationFailure: no plan can be determined for a new subscription
    """
    subscription = find_by_stripe_id(snapshot.id, db)
    if subscription is None:
        subscription = find_live_subscription(user.id, db)

    if subscription is not None and is_stale(subscription, event_created):
        logger.info(
            f"Skipping stale update for subscription {subscription.id} "
            f"(event {event_created.isoformat()} < {as_utc(subscription.last_event_at).isoformat()})"
        )
        return subscription, False

    plan = _resolve_plan(snapshot, plan_hint, subscription)
    created = subscription is None
    if created:
        if not plan:
            raise ValidationFailure(
                f"Cannot determine plan for Stripe subscription {snapshot.id}", "UNKNOWN_PLAN"
            )
        subscription = Subscription(user_id=user.id, plan=plan, currency=settings.DEFAULT_CURRENCY)
        subscription.user = user
        subscription.amount = get_plan(plan)["price"]
        subscription.seed_period_from_plan(snapshot.current_period_start or datetime.now(timezone.utc))
        db.add(subscription)
    elif plan:
        subscription.plan = plan

    _apply_snapshot(subscription, snapshot)
    _advance_marker(subscription, event_created)
    db.flush()

    log_payment_event(
        "SUBSCRIPTION_CREATED" if created else "SUBSCRIPTION_UPDATED",
        {
            "subscription_id": subscription.id,
            "stripe_subscription_id": snapshot.id,
            "plan": subscription.plan,
            "status": subscription.status.value,
        },
        user.id
    )
    return subscription, True


def mark_cancelled(
    stripe_subscription_id: str,
    db: Session,
    cancelled_at: Optional[datetime] = None,
    event_created: Optional[datetime] = None
) -> Tuple[Subscription, bool]:
    """Terminal cancellation from Stripe

    Raises:
        NotFoundFailure: no local subscription with this Stripe ID
    """
    subscription = find_by_stripe_id(stripe_subscription_id, db)
    if subscription is None:
        raise NotFoundFailure(f"Subscription not found: {stripe_subscription_id}", "SUBSCRIPTION_NOT_FOUND")

    if is_stale(subscription, event_created):
        logger.info(f"Skipping stale cancellation for subscription {subscription.id}")
        return subscription, False

    subscription.status = SubscriptionStatus.CANCELLED
    subscription.cancelled_at = cancelled_at or datetime.now(timezone.utc)
    _advance_marker(subscription, event_created)
    db.flush()

    log_payment_event("SUBSCRIPTION_DELETED", {"subscription_id": subscription.id}, subscription.user_id)
    return subscription, True


def expire_lapsed(db: Session, now: Optional[datetime] = None) -> List[Subscription]:
    """Expire subscriptions set to cancel at period end whose end date has passed"""
    now = now or datetime.now(timezone.utc)
    candidates = db.query(Subscription).filter(
        Subscription.status.in_(EXPIRABLE_STATUSES),
        Subscription.cancel_at_period_end.is_(True)
    ).all()

    expired = []
    for subscription in candidates:
        if as_utc(subscription.end_date) <= now:
            subscription.status = SubscriptionStatus.EXPIRED
            expired.append(subscription)
            log_payment_event("SUBSCRIPTION_EXPIRED", {"subscription_id": subscription.id}, subscription.user_id)
    if expired:
        db.flush()
    return expired
