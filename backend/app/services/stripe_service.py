"""Stripe calls for the account routes: customers, checkout sessions, cancellation flags and invoices"""
import logging
from typing import Any, Dict, List

import stripe
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import UpstreamFailure
from app.models.user import User
from app.schemas.subscriptions import from_minor_units, from_timestamp, get_stripe_value
from app.services.stripe_gateway import stripe_errors

logger = logging.getLogger(__name__)


def _require_stripe():
    if not settings.STRIPE_SECRET_KEY:
        logger.error("Stripe secret key not configured.")
        raise UpstreamFailure("Stripe not configured", "STRIPE_NOT_CONFIGURED")


def get_or_create_stripe_customer(user: User, db: Session) -> str:
    """Return the user's Stripe customer ID, creating the customer if needed"""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    _require_stripe()
    with stripe_errors("customer creation"):
        customer = stripe.Customer.create(
            email=user.email,
            name=user.username,
            metadata={"user_id": str(user.id)}
        )

    user.stripe_customer_id = customer.id
    db.commit()
    logger.info(f"Created Stripe customer {customer.id} for user {user.id}")
    return customer.id


def create_checkout_session(
    user: User,
    plan_key: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    db: Session
) -> Dict:
    """Create a subscription-mode Checkout Session tagged with the user and plan"""
    customer_id = get_or_create_stripe_customer(user, db)
    metadata = {"user_id": str(user.id), "plan": plan_key}

    with stripe_errors("checkout session creation"):
        session = stripe.checkout.Session.create(
            mode="subscription",
            payment_method_types=["card"],
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
    return {"session_id": session.id, "checkout_url": session.url}


def set_cancel_at_period_end(stripe_subscription_id: str, cancel: bool):
    """Schedule or revoke cancellation at the end of the current period"""
    _require_stripe()
    with stripe_errors("subscription update"):
        stripe.Subscription.modify(stripe_subscription_id, cancel_at_period_end=cancel)


def list_customer_invoices(customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Most recent invoices of a customer, newest first"""
    _require_stripe()
    with stripe_errors("invoice listing"):
        invoices = stripe.Invoice.list(customer=customer_id, limit=limit)

    return [
        {
            "id": get_stripe_value(invoice, "id"),
            "number": get_stripe_value(invoice, "number"),
            "amount": from_minor_units(get_stripe_value(invoice, "amount_paid")),
            "currency": get_stripe_value(invoice, "currency"),
            "status": get_stripe_value(invoice, "status"),
            "date": from_timestamp(get_stripe_value(invoice, "created")),
            "pdf_url": get_stripe_value(invoice, "invoice_pdf"),
            "hosted_url": get_stripe_value(invoice, "hosted_invoice_url"),
        }
        for invoice in get_stripe_value(invoices, "data") or []
    ]
