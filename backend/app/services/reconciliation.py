"""Billing state reconciliation

Both ways Stripe state reaches us go through ReconciliationController:

* push: signed webhook events, at least once and in any order
  (``apply_provider_event``)
* pull: an authenticated user asking us to look up their checkout session
  (``sync_from_session``)

Both paths share the checkout reconciliation and the subscription upsert, so
they converge on the same local state. Writes are committed in two steps:
Subscription/Payment first, then the user cache. If the second commit
fails, a cache resync task is queued and the failure is reported as
retryable.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    AuthorizationFailure, NotFoundFailure, PersistenceFailure, UpstreamFailure, ValidationFailure
)
from app.core.logging import log_payment_event, security_logger
from app.core.metrics import session_sync_counter, webhook_events_counter
from app.core.otel import billing_span
from app.db.task_queue import enqueue_user_cache_resync
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.subscriptions import (
    CheckoutSessionSnapshot, SubscriptionSnapshot, from_minor_units, from_timestamp,
    get_stripe_value, stripe_id
)
from app.services import payment_ledger, subscription_projection, user_projection
from app.services.event_store import log_stripe_event, mark_stripe_event_processed, record_event_error
from app.services.idempotency import IdempotencyCache, get_idempotency_cache
from app.services.payment_ledger import EventRef
from app.services.stripe_gateway import CheckoutGateway, get_checkout_gateway

logger = logging.getLogger(__name__)

# Outcomes of apply_provider_event
ALREADY_PROCESSED = "already_processed"
APPLIED = "applied"
IGNORED = "ignored"
REJECTED = "rejected"
SKIPPED = "skipped"


class ReconciliationController:
    def __init__(self, gateway: CheckoutGateway, idempotency_cache: IdempotencyCache):
        self.gateway = gateway
        self.idempotency_cache = idempotency_cache
        self._handlers: Dict[str, Callable[[Dict[str, Any], EventRef, Session], str]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "payment_intent.succeeded": self._on_payment_succeeded,
            "payment_intent.payment_failed": self._on_payment_failed,
            "charge.refunded": self._on_charge_refunded,
            "refund.created": self._on_refund_created,
            "charge.dispute.created": self._on_dispute_created,
            "invoice.payment_succeeded": self._on_invoice,
            "invoice.payment_failed": self._on_invoice,
        }

    # ------------------------------------------------------------------
    # Push path
    # ------------------------------------------------------------------

    def apply_provider_event(
        self,
        event_type: str,
        event_id: str,
        payload: Dict[str, Any],
        db: Session,
        event_created: Optional[datetime] = None
    ) -> str:
        """Apply one Stripe event exactly once

        Returns:
            already_processed, applied, ignored, rejected or skipped

        Raises:
            UpstreamFailure, PersistenceFailure: retryable, the event stays unprocessed
        """
        with billing_span("stripe.event.apply", event_type=event_type, event_id=event_id) as span:
            outcome = self._apply(event_type, event_id, payload, db, event_created)
            span.set_attribute("billing.outcome", outcome)
        webhook_events_counter.labels(event_type=event_type, outcome=outcome).inc()
        return outcome

    def _apply(self, event_type, event_id, payload, db, event_created) -> str:
        if self.idempotency_cache.seen(event_id):
            logger.info(f"Webhook event {event_id} already processed (cache)")
            return ALREADY_PROCESSED

        ledger_row = log_stripe_event(event_id, event_type, payload, db)
        if ledger_row.processed:
            logger.info(f"Webhook event {event_id} already processed")
            self._remember(event_id)
            return ALREADY_PROCESSED

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring unhandled webhook event type {event_type} ({event_id})")
            self._finish(event_id, db)
            return IGNORED

        if event_created is None:
            event_created = from_timestamp(payload.get("created"))
        event = EventRef(event_id, event_type, event_created)

        try:
            data_object = (payload.get("data") or {}).get("object")
            if not isinstance(data_object, dict):
                raise ValidationFailure(f"Event {event_id} has no data object", "INVALID_EVENT")
            outcome = handler(data_object, event, db)
        except (ValidationFailure, AuthorizationFailure) as e:
            db.rollback()
            logger.warning(f"Rejected webhook event {event_id} ({event_type}): {e.code}: {e.message}")
            self._finish(event_id, db, error_message=f"{e.code}: {e.message}")
            return REJECTED
        except NotFoundFailure as e:
            db.rollback()
            logger.warning(f"Skipped webhook event {event_id} ({event_type}): {e.message}")
            self._finish(event_id, db, error_message=f"{e.code}: {e.message}")
            return SKIPPED
        except (UpstreamFailure, PersistenceFailure) as e:
            db.rollback()
            logger.error(f"Retryable failure on webhook event {event_id} ({event_type}): {e.message}")
            record_event_error(event_id, e.message, db)
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error on webhook event {event_id} ({event_type}): {e}", exc_info=True)
            record_event_error(event_id, str(e), db)
            raise PersistenceFailure(f"Could not apply event {event_id}") from e

        self._finish(event_id, db)
        logger.info(f"Processed webhook event {event_id} of type {event_type}: {outcome}")
        return outcome

    def _finish(self, event_id: str, db: Session, error_message: Optional[str] = None):
        mark_stripe_event_processed(event_id, db, error_message=error_message)
        self._remember(event_id)

    def _remember(self, event_id: str):
        self.idempotency_cache.mark(event_id, settings.WEBHOOK_IDEMPOTENCY_TTL)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_checkout_completed(self, session: Dict[str, Any], event: EventRef, db: Session) -> str:
        snapshot = CheckoutSessionSnapshot.from_provider(session)
        user = self._resolve_user(snapshot.user_id, snapshot.customer_id, db)
        if user is None:
            raise NotFoundFailure(f"No user for checkout session {snapshot.id}", "USER_NOT_FOUND")

        self._reconcile_checkout(snapshot, user, db, event)
        log_payment_event(
            "CHECKOUT_SESSION_COMPLETED",
            {"session_id": snapshot.id, "plan": snapshot.plan},
            user.id
        )
        return APPLIED

    def _on_subscription_changed(self, data: Dict[str, Any], event: EventRef, db: Session) -> str:
        snapshot = SubscriptionSnapshot.from_provider(data)
        existing = subscription_projection.find_by_stripe_id(snapshot.id, db)
        user = self._resolve_user(snapshot.user_id, snapshot.customer_id, db)
        if user is None and existing is not None:
            user = existing.user
        if user is None:
            raise NotFoundFailure(f"No user for subscription {snapshot.id}", "USER_NOT_FOUND")
        self._check_subscription_owner(existing, user)

        subscription, applied = subscription_projection.upsert(
            snapshot, user, db, event_created=event.created
        )
        if not applied:
            db.rollback()
            return SKIPPED
        self._commit(db, f"subscription {snapshot.id}")
        self._reflect_user(subscription, db)
        return APPLIED

    def _on_subscription_deleted(self, data: Dict[str, Any], event: EventRef, db: Session) -> str:
        stripe_subscription_id = get_stripe_value(data, "id")
        if not stripe_subscription_id:
            raise ValidationFailure("Subscription payload has no id", "INVALID_SUBSCRIPTION")

        subscription, applied = subscription_projection.mark_cancelled(
            stripe_subscription_id,
            db,
            cancelled_at=from_timestamp(get_stripe_value(data, "canceled_at")),
            event_created=event.created
        )
        if not applied:
            db.rollback()
            return SKIPPED
        self._commit(db, f"subscription {stripe_subscription_id}")
        self._reflect_user(subscription, db)
        return APPLIED

    def _on_payment_succeeded(self, intent: Dict[str, Any], event: EventRef, db: Session) -> str:
        payment_ledger.record_success(intent, db, event)
        self._commit(db, f"payment for intent {intent.get('id')}")
        return APPLIED

    def _on_payment_failed(self, intent: Dict[str, Any], event: EventRef, db: Session) -> str:
        last_error = get_stripe_value(intent, "last_payment_error")
        payment = payment_ledger.record_failure(
            get_stripe_value(intent, "id"),
            get_stripe_value(last_error, "message"),
            db,
            event
        )
        if payment is None:
            return SKIPPED
        self._commit(db, f"payment {payment.id}")
        return APPLIED

    def _on_charge_refunded(self, charge: Dict[str, Any], event: EventRef, db: Session) -> str:
        payment = self._payment_or_not_found(charge, db)
        if payment.has_event(event.event_id):
            return APPLIED

        refunds = get_stripe_value(get_stripe_value(charge, "refunds"), "data") or []
        if refunds:
            for refund in refunds:
                payment_ledger.record_refund(
                    payment,
                    from_minor_units(get_stripe_value(refund, "amount")) or Decimal("0"),
                    get_stripe_value(refund, "reason"),
                    get_stripe_value(refund, "id"),
                    db
                )
        else:
            payment_ledger.record_charge_refund_total(
                payment,
                from_minor_units(get_stripe_value(charge, "amount_refunded")) or Decimal("0"),
                get_stripe_value(charge, "id"),
                db
            )
        payment_ledger.record_webhook_event(payment, event.event_type, event.event_id, db)
        self._commit(db, f"refunds for payment {payment.id}")
        return APPLIED

    def _on_refund_created(self, refund: Dict[str, Any], event: EventRef, db: Session) -> str:
        payment = self._payment_or_not_found(refund, db)
        payment_ledger.record_refund(
            payment,
            from_minor_units(get_stripe_value(refund, "amount")) or Decimal("0"),
            get_stripe_value(refund, "reason"),
            get_stripe_value(refund, "id"),
            db,
            event
        )
        self._commit(db, f"refund for payment {payment.id}")
        return APPLIED

    def _on_dispute_created(self, dispute: Dict[str, Any], event: EventRef, db: Session) -> str:
        payment = self._payment_or_not_found(dispute, db)
        payment_ledger.record_dispute(
            payment,
            from_minor_units(get_stripe_value(dispute, "amount")) or Decimal("0"),
            get_stripe_value(dispute, "reason"),
            get_stripe_value(dispute, "status"),
            get_stripe_value(dispute, "id"),
            db,
            event
        )
        self._commit(db, f"dispute for payment {payment.id}")
        return APPLIED

    def _on_invoice(self, invoice: Dict[str, Any], event: EventRef, db: Session) -> str:
        name = "INVOICE_PAYMENT_SUCCEEDED" if event.event_type == "invoice.payment_succeeded" else "INVOICE_PAYMENT_FAILED"
        log_payment_event(
            name,
            {
                "invoice_id": get_stripe_value(invoice, "id"),
                "customer": stripe_id(get_stripe_value(invoice, "customer")),
                "amount_paid": from_minor_units(get_stripe_value(invoice, "amount_paid")),
            }
        )
        return APPLIED

    # ------------------------------------------------------------------
    # Pull path
    # ------------------------------------------------------------------

    def sync_from_session(self, user_id: int, session_id: str, db: Session) -> Dict[str, Any]:
        """Reconcile a checkout session on behalf of its owner

        Raises:
            AuthorizationFailure: the session or subscription belongs to someone else
            ValidationFailure: unpaid session, no subscription, unknown session
            UpstreamFailure: Stripe unreachable
            PersistenceFailure: a local write did not commit
        """
        try:
            with billing_span("stripe.session.sync", user_id=user_id, session_id=session_id):
                result = self._sync_from_session(user_id, session_id, db)
        except (ValidationFailure, AuthorizationFailure, NotFoundFailure, UpstreamFailure, PersistenceFailure) as e:
            db.rollback()
            session_sync_counter.labels(outcome=e.code.lower()).inc()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            session_sync_counter.labels(outcome="persistence_error").inc()
            logger.error(f"Database error syncing session {session_id}: {e}", exc_info=True)
            raise PersistenceFailure(f"Could not sync session {session_id}") from e
        session_sync_counter.labels(outcome="synced").inc()
        return result

    def _sync_from_session(self, user_id: int, session_id: str, db: Session) -> Dict[str, Any]:
        user = db.get(User, user_id)
        if user is None:
            raise NotFoundFailure(f"User {user_id} not found", "USER_NOT_FOUND")

        session = self.gateway.retrieve_session(session_id)
        if session.user_id != user_id:
            security_logger.warning(
                f"Checkout session {session_id} requested by user {user_id} "
                f"but owned by {session.user_id}"
            )
            raise AuthorizationFailure("Session non autorisée", "UNAUTHORIZED_SESSION")
        if session.payment_status != "paid":
            raise ValidationFailure("Paiement non confirmé", "PAYMENT_NOT_CONFIRMED")
        if not session.subscription_id:
            raise ValidationFailure("Aucun abonnement trouvé pour cette session", "NO_SUBSCRIPTION_FOUND")

        subscription, snapshot = self._reconcile_checkout(session, user, db)
        log_payment_event("SUBSCRIPTION_SYNCED", {"session_id": session.id, "plan": subscription.plan}, user.id)

        return {
            "user": user.profile(),
            "subscription": {
                "id": snapshot.id,
                "status": subscription.status.value,
                "plan": subscription.plan,
                "current_period_end": snapshot.current_period_end.isoformat() if snapshot.current_period_end else None,
                "cancel_at_period_end": snapshot.cancel_at_period_end,
            },
            "session": {
                "id": session.id,
                "payment_status": session.payment_status,
                "amount_total": float(session.amount_total) if session.amount_total is not None else None,
                "currency": session.currency,
            },
        }

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _reconcile_checkout(
        self,
        session: CheckoutSessionSnapshot,
        user: User,
        db: Session,
        event: Optional[EventRef] = None
    ) -> Tuple[Optional[Subscription], Optional[SubscriptionSnapshot]]:
        """Customer ID, subscription and payment for a completed checkout"""
        if session.customer_id and user.stripe_customer_id != session.customer_id:
            user.stripe_customer_id = session.customer_id

        subscription = None
        snapshot = None
        if session.subscription_id:
            snapshot = self.gateway.retrieve_subscription(session.subscription_id)
            owner_id = snapshot.user_id
            if owner_id is not None and owner_id != user.id:
                security_logger.warning(
                    f"Subscription {snapshot.id} owned by user {owner_id} reconciled for user {user.id}"
                )
                raise AuthorizationFailure("Abonnement non autorisé", "UNAUTHORIZED_SUBSCRIPTION")
            self._check_subscription_owner(subscription_projection.find_by_stripe_id(snapshot.id, db), user)
            # A fresh read from Stripe: applied regardless of event order
            subscription, _ = subscription_projection.upsert(snapshot, user, db, plan_hint=session.plan)

        payment_ledger.create_from_checkout(session, user, subscription, db, event)
        self._commit(db, f"checkout session {session.id}")
        if subscription is not None:
            self._reflect_user(subscription, db)
        return subscription, snapshot

    def _resolve_user(self, user_id: Optional[int], customer_id: Optional[str], db: Session) -> Optional[User]:
        if user_id is not None:
            user = db.get(User, user_id)
            if user:
                return user
        if customer_id:
            return db.query(User).filter(User.stripe_customer_id == customer_id).first()
        return None

    def _check_subscription_owner(self, subscription: Optional[Subscription], user: User):
        if subscription is not None and subscription.user_id != user.id:
            security_logger.warning(
                f"Subscription {subscription.id} of user {subscription.user_id} claimed for user {user.id}"
            )
            raise AuthorizationFailure("Abonnement non autorisé", "UNAUTHORIZED_SUBSCRIPTION")

    def _payment_or_not_found(self, data: Dict[str, Any], db: Session):
        payment = payment_ledger.payment_for_charge(data, db)
        if payment is None:
            raise NotFoundFailure(f"No payment for {get_stripe_value(data, 'object')} {get_stripe_value(data, 'id')}",
                                  "PAYMENT_NOT_FOUND")
        return payment

    def _commit(self, db: Session, what: str):
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure(f"Could not save {what}: {e}") from e

    def _reflect_user(self, subscription: Subscription, db: Session):
        """Second step of the write: the user cache, with a queued resync on failure"""
        user_id = subscription.user_id
        try:
            user_projection.reflect(subscription, db)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"User cache update failed for user {user_id}: {e}")
            try:
                enqueue_user_cache_resync(user_id, reason=f"subscription {subscription.id}")
            except redis.RedisError as queue_error:
                logger.error(f"Could not queue cache resync for user {user_id}: {queue_error}")
            raise PersistenceFailure(f"Could not update subscription status of user {user_id}") from e


def get_reconciliation_controller(
    gateway: CheckoutGateway = Depends(get_checkout_gateway),
    idempotency_cache: IdempotencyCache = Depends(get_idempotency_cache)
) -> ReconciliationController:
    """FastAPI dependency"""
    return ReconciliationController(gateway, idempotency_cache)
