"""Payment ledger: attempts, successes, failures, refunds and disputes

Functions here add and flush; the caller owns the commit. Stripe payloads
are plain webhook dicts.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, NamedTuple, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import NotFoundFailure
from app.core.logging import log_payment_event
from app.models.enums import PaymentStatus
from app.models.payment import Payment, PaymentRefund, PaymentDispute, PaymentWebhookEvent
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.subscriptions import (
    CheckoutSessionSnapshot, get_stripe_value, stripe_id, from_minor_units, metadata_user_id
)
from app.services.subscription_projection import find_by_stripe_id

logger = logging.getLogger(__name__)

# A success never moves a payment out of these
SETTLED_STATUSES = (PaymentStatus.REFUNDED, PaymentStatus.DISPUTED)


class EventRef(NamedTuple):
    """The Stripe event a ledger change comes from"""
    event_id: str
    event_type: str
    created: Optional[datetime] = None


def record_webhook_event(payment: Payment, event_type: str, event_id: str, db: Session) -> bool:
    """Append to the payment's applied-event list (False if already there)"""
    if payment.has_event(event_id):
        return False
    payment.webhook_events.append(PaymentWebhookEvent(event_type=event_type, event_id=event_id))
    db.flush()
    return True


def _already_applied(payment: Payment, event: Optional[EventRef]) -> bool:
    if event is not None and payment.has_event(event.event_id):
        logger.info(f"Event {event.event_id} already applied to payment {payment.id}")
        return True
    return False


def _track(payment: Payment, event: Optional[EventRef], db: Session):
    if event is not None:
        record_webhook_event(payment, event.event_type, event.event_id, db)
    else:
        db.flush()


def find_payment(
    db: Session,
    payment_intent_id: Optional[str] = None,
    checkout_session_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    charge_id: Optional[str] = None
) -> Optional[Payment]:
    """Locate a payment by its Stripe identifiers, most specific first"""
    if payment_intent_id:
        payment = db.query(Payment).filter(Payment.stripe_payment_intent_id == payment_intent_id).first()
        if payment:
            return payment
    if checkout_session_id:
        payment = db.query(Payment).filter(Payment.stripe_checkout_session_id == checkout_session_id).first()
        if payment:
            return payment
    if invoice_id:
        query = db.query(Payment).filter(Payment.stripe_invoice_id == invoice_id)
        if payment_intent_id:
            query = query.filter(Payment.stripe_payment_intent_id.is_(None))
        payment = query.first()
        if payment:
            return payment
    if charge_id:
        return db.query(Payment).filter(Payment.stripe_charge_id == charge_id).first()
    return None


def _resolve_user(metadata: dict, customer_id: Optional[str], db: Session) -> Optional[User]:
    user_id = metadata_user_id(metadata)
    if user_id is not None:
        user = db.get(User, user_id)
        if user:
            return user
    if customer_id:
        return db.query(User).filter(User.stripe_customer_id == customer_id).first()
    return None


def _resolve_subscription(metadata: dict, user: User, db: Session) -> Optional[Subscription]:
    stripe_subscription_id = metadata.get("subscription_id") or metadata.get("subscriptionId")
    subscription = find_by_stripe_id(stripe_subscription_id, db)
    if subscription and subscription.user_id == user.id:
        return subscription
    return user.current_subscription


def _receipt_url(intent: Any) -> Optional[str]:
    charges = get_stripe_value(get_stripe_value(intent, "charges"), "data") or []
    if charges:
        return get_stripe_value(charges[0], "receipt_url")
    latest_charge = get_stripe_value(intent, "latest_charge")
    if latest_charge is not None and not isinstance(latest_charge, str):
        return get_stripe_value(latest_charge, "receipt_url")
    return None


def record_success(intent: Any, db: Session, event: Optional[EventRef] = None) -> Tuple[Payment, bool]:
    """Apply a succeeded PaymentIntent

    Returns:
        (payment, changed)

    Raises:
        NotFoundFailure: no payment and no resolvable owner for the intent
    """
    intent_id = get_stripe_value(intent, "id")
    invoice_id = stripe_id(get_stripe_value(intent, "invoice"))
    metadata = dict(get_stripe_value(intent, "metadata") or {})
    amount = from_minor_units(get_stripe_value(intent, "amount_received") or get_stripe_value(intent, "amount"))
    currency = get_stripe_value(intent, "currency")

    payment = find_payment(db, payment_intent_id=intent_id, invoice_id=invoice_id)
    if payment is None:
        user = _resolve_user(metadata, stripe_id(get_stripe_value(intent, "customer")), db)
        if user is None:
            raise NotFoundFailure(f"No user for payment intent {intent_id}", "USER_NOT_FOUND")
        payment = Payment(
            user_id=user.id,
            subscription=_resolve_subscription(metadata, user, db),
            amount=amount or Decimal("0"),
            currency=(currency or settings.DEFAULT_CURRENCY).upper(),
            status=PaymentStatus.PENDING,
            stripe_payment_intent_id=intent_id,
            stripe_invoice_id=invoice_id,
            description=get_stripe_value(intent, "description") or "Paiement abonnement",
        )
        payment.user = user
        db.add(payment)
    elif _already_applied(payment, event):
        return payment, False

    payment.stripe_payment_intent_id = intent_id
    if payment.status in SETTLED_STATUSES:
        logger.info(f"Payment {payment.id} is {payment.status.value}, not marking succeeded")
    else:
        payment.status = PaymentStatus.SUCCEEDED
        payment.paid_at = payment.paid_at or datetime.now(timezone.utc)
        payment.failure_reason = None
        if amount is not None:
            payment.amount = amount
    payment.stripe_charge_id = stripe_id(get_stripe_value(intent, "latest_charge")) or payment.stripe_charge_id
    payment.receipt_url = _receipt_url(intent) or payment.receipt_url
    _track(payment, event, db)

    log_payment_event("PAYMENT_SUCCEEDED", {"payment_id": payment.id, "amount": payment.amount}, payment.user_id)
    return payment, True


def record_failure(intent_id: str, reason: Optional[str], db: Session,
                   event: Optional[EventRef] = None) -> Optional[Payment]:
    """Mark a payment failed; unknown intents are only logged"""
    payment = find_payment(db, payment_intent_id=intent_id)
    log_payment_event(
        "PAYMENT_FAILED",
        {"payment_intent_id": intent_id, "error": reason},
        payment.user_id if payment else None
    )
    if payment is None:
        logger.warning(f"Payment failure for unknown intent {intent_id}")
        return None
    if _already_applied(payment, event):
        return payment

    if payment.status in (PaymentStatus.SUCCEEDED,) + SETTLED_STATUSES:
        logger.info(f"Ignoring failure for payment {payment.id} already {payment.status.value}")
    else:
        payment.status = PaymentStatus.FAILED
        payment.failed_at = datetime.now(timezone.utc)
        payment.failure_reason = reason
    _track(payment, event, db)
    return payment


def record_refund(
    payment: Payment,
    amount: Decimal,
    reason: Optional[str],
    stripe_refund_id: Optional[str],
    db: Session,
    event: Optional[EventRef] = None
) -> bool:
    """Append a refund; the payment becomes refunded once refunds cover its amount

    Returns:
        False if this refund was already recorded
    """
    if payment.has_refund(stripe_refund_id) or _already_applied(payment, event):
        return False

    absorbed = _absorb_provisional(payment, Decimal(amount))
    payment.refunds.append(PaymentRefund(
        amount=Decimal(amount),
        reason=reason,
        stripe_refund_id=stripe_refund_id
    ))
    db.flush()

    _mark_refunded_if_covered(payment)
    _track(payment, event, db)

    log_payment_event(
        "PAYMENT_REFUNDED",
        {"payment_id": payment.id, "amount": amount, "absorbed": absorbed, "net_amount": payment.net_amount},
        payment.user_id
    )
    return True


def record_charge_refund_total(
    payment: Payment,
    amount_refunded: Decimal,
    charge_id: Optional[str],
    db: Session
) -> Optional[Decimal]:
    """Bring refunds up to a charge's amount_refunded when the refund list is not expanded

    The gap is stored as a provisional refund. When the individual refund
    arrives later under its own id it replaces the provisional amount.

    Returns:
        The amount recorded, or None if refunds already cover the total
    """
    missing = Decimal(amount_refunded) - payment.total_refunded
    if missing <= 0:
        return None

    payment.refunds.append(PaymentRefund(
        amount=missing,
        stripe_refund_id=f"{charge_id}:{amount_refunded}",
        provisional=True
    ))
    db.flush()
    _mark_refunded_if_covered(payment)

    log_payment_event(
        "PAYMENT_REFUNDED",
        {"payment_id": payment.id, "amount": missing, "provisional": True, "net_amount": payment.net_amount},
        payment.user_id
    )
    return missing


def _absorb_provisional(payment: Payment, amount: Decimal) -> Decimal:
    """Consume provisional refunds covering a refund now known by id"""
    remaining = amount
    for refund in list(payment.provisional_refunds):
        if remaining <= 0:
            break
        taken = min(Decimal(refund.amount), remaining)
        remaining -= taken
        if taken == Decimal(refund.amount):
            payment.refunds.remove(refund)
        else:
            refund.amount = Decimal(refund.amount) - taken
    return amount - remaining


def _mark_refunded_if_covered(payment: Payment):
    if payment.total_refunded >= Decimal(payment.amount) and payment.status != PaymentStatus.REFUNDED:
        payment.status = PaymentStatus.REFUNDED
        payment.refunded_at = datetime.now(timezone.utc)


def record_dispute(
    payment: Payment,
    amount: Decimal,
    reason: Optional[str],
    status: Optional[str],
    stripe_dispute_id: Optional[str],
    db: Session,
    event: Optional[EventRef] = None
) -> bool:
    if _already_applied(payment, event):
        return False
    if stripe_dispute_id and any(d.stripe_dispute_id == stripe_dispute_id for d in payment.disputes):
        return False

    payment.disputes.append(PaymentDispute(
        amount=Decimal(amount),
        reason=reason,
        status=status,
        stripe_dispute_id=stripe_dispute_id
    ))
    payment.status = PaymentStatus.DISPUTED
    _track(payment, event, db)

    log_payment_event("PAYMENT_DISPUTED", {"payment_id": payment.id, "reason": reason}, payment.user_id)
    return True


def create_from_checkout(
    session: CheckoutSessionSnapshot,
    user: User,
    subscription: Optional[Subscription],
    db: Session,
    event: Optional[EventRef] = None
) -> Tuple[Payment, bool]:
    """Payment for a completed checkout session, created only if absent

    Returns:
        (payment, created)
    """
    payment = find_payment(
        db,
        payment_intent_id=session.payment_intent_id,
        checkout_session_id=session.id,
        invoice_id=session.invoice_id
    )
    if payment is not None:
        payment.stripe_checkout_session_id = payment.stripe_checkout_session_id or session.id
        payment.stripe_invoice_id = payment.stripe_invoice_id or session.invoice_id
        if payment.subscription_id is None and subscription is not None:
            payment.subscription = subscription
        if not _already_applied(payment, event):
            _track(payment, event, db)
        return payment, False

    amount = session.amount_total
    if amount is None and subscription is not None:
        amount = subscription.amount
    plan = subscription.plan_details if subscription is not None else None
    paid = session.payment_status == "paid"

    payment = Payment(
        user_id=user.id,
        amount=amount if amount is not None else Decimal("0"),
        currency=(session.currency or settings.DEFAULT_CURRENCY).upper(),
        status=PaymentStatus.SUCCEEDED if paid else PaymentStatus.PENDING,
        stripe_payment_intent_id=session.payment_intent_id,
        stripe_invoice_id=session.invoice_id,
        stripe_checkout_session_id=session.id,
        description=f"Abonnement {plan['name']}" if plan else "Paiement Stripe Checkout",
        paid_at=datetime.now(timezone.utc) if paid else None,
    )
    payment.user = user
    payment.subscription = subscription
    db.add(payment)
    _track(payment, event, db)

    log_payment_event(
        "CHECKOUT_PAYMENT_RECORDED",
        {"payment_id": payment.id, "session_id": session.id, "status": payment.status.value},
        user.id
    )
    return payment, True


def payment_for_charge(charge_or_refund: Any, db: Session) -> Optional[Payment]:
    """Payment behind a Charge, Refund or Dispute payload"""
    intent_id = stripe_id(get_stripe_value(charge_or_refund, "payment_intent"))
    charge_id = stripe_id(get_stripe_value(charge_or_refund, "charge"))
    if charge_id is None and get_stripe_value(charge_or_refund, "object") == "charge":
        charge_id = get_stripe_value(charge_or_refund, "id")
    return find_payment(db, payment_intent_id=intent_id, charge_id=charge_id)

