"""Global ledger of received Stripe events"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import PersistenceFailure
from app.models.stripe_event import StripeEvent

logger = logging.getLogger(__name__)


def get_stripe_event(event_id: str, db: Session) -> Optional[StripeEvent]:
    return db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()


def log_stripe_event(event_id: str, event_type: str, payload: dict, db: Session) -> StripeEvent:
    """Insert the event if absent and return the ledger row

    Two deliveries of the same event racing on the unique key both end up
    with the same row.
    """
    stripe_event = get_stripe_event(event_id, db)
    if stripe_event:
        return stripe_event

    stripe_event = StripeEvent(
        event_id=event_id,
        event_type=event_type,
        payload=payload,
        processed=False
    )
    db.add(stripe_event)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        stripe_event = get_stripe_event(event_id, db)
        if stripe_event is None:
            raise PersistenceFailure(f"Could not record Stripe event {event_id}")
        return stripe_event
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceFailure(f"Could not record Stripe event {event_id}: {e}") from e
    db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session, error_message: Optional[str] = None):
    stripe_event = get_stripe_event(event_id, db)
    if not stripe_event:
        return
    stripe_event.processed = True
    stripe_event.processed_at = datetime.now(timezone.utc)
    stripe_event.error_message = error_message
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceFailure(f"Could not mark Stripe event {event_id} processed: {e}") from e


def record_event_error(event_id: str, error_message: str, db: Session):
    """Keep the error on an unprocessed ledger row so the redelivery is retried"""
    try:
        stripe_event = get_stripe_event(event_id, db)
        if stripe_event and not stripe_event.processed:
            stripe_event.error_message = error_message
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not record error for Stripe event {event_id}: {e}")
