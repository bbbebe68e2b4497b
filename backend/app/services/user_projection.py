"""User projection: the subscription status cached on users"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.core.exceptions import NotFoundFailure
from app.models.enums import LIVE_SUBSCRIPTION_STATUSES, UserSubscriptionStatus, user_status_for
from app.models.subscription import Subscription
from app.models.user import User
from app.services.subscription_projection import find_latest_subscription

logger = logging.getLogger(__name__)


def reflect(subscription: Subscription, db: Session) -> User:
    """Copy a subscription's status onto its user

    The user keeps pointing at its current subscription while that one is
    live; the cached status always follows the subscription pointed to.
    Does not commit.
    """
    user = subscription.user or db.get(User, subscription.user_id)
    current = user.current_subscription
    if current is None or current.id == subscription.id or current.status not in LIVE_SUBSCRIPTION_STATUSES:
        user.current_subscription = subscription
        current = subscription

    status = user_status_for(current.status)
    if user.subscription_status != status:
        logger.info(f"User {user.id} subscription status {_value(user.subscription_status)} -> {status.value}")
    user.subscription_status = status
    db.flush()
    return user


def resync_user(user_id: int, db: Session) -> UserSubscriptionStatus:
    """Recompute the cache from the referenced (or most recent) subscription and commit"""
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundFailure(f"User {user_id} not found", "USER_NOT_FOUND")

    subscription = user.current_subscription or find_latest_subscription(user_id, db)
    if subscription is None:
        user.subscription_status = UserSubscriptionStatus.NONE
    else:
        reflect(subscription, db)
    db.commit()
    return user.subscription_status


def _value(status: Optional[UserSubscriptionStatus]) -> str:
    return status.value if status else "none"
