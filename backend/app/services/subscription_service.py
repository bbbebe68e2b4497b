"""Subscription use cases behind the API routes"""
import logging
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import AuthorizationFailure, NotFoundFailure, ValidationFailure
from app.core.logging import log_payment_event, security_logger
from app.core.metrics import webhook_rejections_counter
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.subscriptions import from_timestamp
from app.services.plan_catalog import get_plan
from app.services.reconciliation import ReconciliationController
from app.services.stripe_gateway import CheckoutGateway
from app.services.stripe_service import create_checkout_session, list_customer_invoices, set_cancel_at_period_end
from app.services.subscription_projection import find_latest_subscription, find_live_subscription

logger = logging.getLogger(__name__)


def _get_user(user_id: int, db: Session) -> User:
    user = db.get(User, user_id)
    if user is None:
        logger.warning(f"Subscription request for missing user {user_id}")
        raise NotFoundFailure("User account no longer exists", "USER_NOT_FOUND")
    return user


# ============================================================================
# WEBHOOK PROCESSING
# ============================================================================

def process_stripe_webhook(
    payload: bytes,
    sig_header: Optional[str],
    db: Session,
    controller: ReconciliationController
) -> Dict[str, Any]:
    """Verify and apply a Stripe webhook

    The signature is checked over the raw bytes before anything is parsed.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe-Signature header
        db: Database session
        controller: Reconciliation controller

    Returns:
        Dict with the event outcome

    Raises:
        ValidationFailure: missing/invalid signature or unparsable body
        UpstreamFailure, PersistenceFailure: retryable processing failures
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise ValidationFailure("Webhook secret not configured", "WEBHOOK_NOT_CONFIGURED")
    if not sig_header:
        webhook_rejections_counter.labels(reason="signature").inc()
        raise ValidationFailure("Missing stripe-signature header", "INVALID_SIGNATURE")

    try:
        event = stripe.Webhook.construct_event(
            payload,
            sig_header,
            settings.STRIPE_WEBHOOK_SECRET,
            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        ).to_dict()
    except stripe.SignatureVerificationError as e:
        webhook_rejections_counter.labels(reason="signature").inc()
        security_logger.warning(f"Invalid Stripe webhook signature: {e}")
        raise ValidationFailure("Invalid signature", "INVALID_SIGNATURE")
    except ValueError as e:
        webhook_rejections_counter.labels(reason="payload").inc()
        logger.error(f"Invalid webhook payload: {e}")
        raise ValidationFailure("Invalid payload", "INVALID_PAYLOAD")

    if not event.get("id") or not event.get("type"):
        webhook_rejections_counter.labels(reason="payload").inc()
        raise ValidationFailure("Invalid payload", "INVALID_PAYLOAD")

    outcome = controller.apply_provider_event(
        event["type"],
        event["id"],
        event,
        db,
        event_created=from_timestamp(event.get("created"))
    )
    return {"status": outcome, "event_id": event["id"]}


# ============================================================================
# CHECKOUT
# ============================================================================

def create_subscription_checkout(
    user_id: int,
    plan_key: str,
    success_url: Optional[str],
    cancel_url: Optional[str],
    db: Session
) -> Dict[str, Any]:
    """Create a Stripe Checkout Session for a plan

    Raises:
        ValidationFailure: unknown or unconfigured plan, or the user already
            has a live subscription
    """
    plan = get_plan(plan_key)
    if not plan:
        raise ValidationFailure(f"Invalid plan: {plan_key}", "INVALID_PLAN")
    if not plan["stripe_price_id"]:
        raise ValidationFailure(f"Plan {plan_key} is not configured with a Stripe price", "PLAN_NOT_CONFIGURED")

    user = _get_user(user_id, db)
    existing = find_live_subscription(user_id, db)
    if existing is not None:
        raise ValidationFailure("Vous avez déjà un abonnement actif", "EXISTING_SUBSCRIPTION")

    frontend_url = settings.FRONTEND_URL.rstrip("/")
    result = create_checkout_session(
        user,
        plan_key,
        plan["stripe_price_id"],
        success_url or f"{frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url or f"{frontend_url}/subscription/plans",
        db
    )
    log_payment_event("CHECKOUT_SESSION_CREATED", {"session_id": result["session_id"], "plan": plan_key}, user_id)
    return result


def get_checkout_session_status(
    user_id: int,
    session_id: str,
    gateway: CheckoutGateway
) -> Dict[str, Any]:
    """Read a checkout session owned by the user"""
    session = gateway.retrieve_session(session_id)
    if session.user_id != user_id:
        security_logger.warning(
            f"Checkout session {session_id} read by user {user_id} but owned by {session.user_id}"
        )
        raise AuthorizationFailure("Session non autorisée", "UNAUTHORIZED_SESSION")

    return {
        "status": session.payment_status,
        "payment_status": session.payment_status,
        "session_status": session.status,
        "customer_email": session.customer_email,
        "amount_total": float(session.amount_total) if session.amount_total is not None else None,
        "currency": session.currency,
        "subscription_id": session.subscription_id,
    }


# ============================================================================
# CURRENT SUBSCRIPTION / CANCEL / REACTIVATE
# ============================================================================

def get_current_subscription(user_id: int, db: Session) -> Dict[str, Any]:
    user = _get_user(user_id, db)
    subscription = find_latest_subscription(user_id, db)
    return {
        "subscription": subscription.to_dict() if subscription else None,
        "has_active_subscription": user.has_active_subscription(),
        "subscription_status": user.subscription_details()["status"],
    }


def _set_cancellation(subscription: Subscription, cancel: bool, db: Session):
    if subscription.stripe_subscription_id:
        set_cancel_at_period_end(subscription.stripe_subscription_id, cancel)
    subscription.cancel_at_period_end = cancel
    db.commit()
    db.refresh(subscription)


def cancel_user_subscription(user_id: int, db: Session) -> Dict[str, Any]:
    """Cancel at the end of the current period

    Raises:
        NotFoundFailure: no live subscription
    """
    subscription = find_live_subscription(user_id, db)
    if subscription is None:
        raise NotFoundFailure("Aucun abonnement actif trouvé", "NO_ACTIVE_SUBSCRIPTION")

    if not subscription.cancel_at_period_end:
        _set_cancellation(subscription, True, db)
        log_payment_event("SUBSCRIPTION_CANCELLED", {"subscription_id": subscription.id}, user_id)

    return {
        "message": "Abonnement annulé. Il restera actif jusqu'à la fin de la période en cours.",
        "subscription": subscription.to_dict(),
    }


def reactivate_user_subscription(user_id: int, db: Session) -> Dict[str, Any]:
    """Revoke a scheduled cancellation

    Raises:
        NotFoundFailure: no live subscription scheduled for cancellation
    """
    subscription = find_live_subscription(user_id, db)
    if subscription is None or not subscription.cancel_at_period_end:
        raise NotFoundFailure("Aucun abonnement à réactiver", "NO_SUBSCRIPTION_TO_REACTIVATE")

    _set_cancellation(subscription, False, db)
    log_payment_event("SUBSCRIPTION_REACTIVATED", {"subscription_id": subscription.id}, user_id)
    return {
        "message": "Abonnement réactivé",
        "subscription": subscription.to_dict(),
    }


# ============================================================================
# INVOICES
# ============================================================================

def get_user_invoices(user_id: int, db: Session) -> Dict[str, Any]:
    user = _get_user(user_id, db)
    if not user.stripe_customer_id:
        return {"invoices": []}
    return {"invoices": list_customer_invoices(user.stripe_customer_id)}
