"""Background scheduler expiring lapsed subscriptions"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.metrics import expiry_sweep_counter
from app.db.redis import acquire_lock, release_lock
from app.db.session import SessionLocal
from app.services.subscription_projection import expire_lapsed
from app.services.user_projection import reflect

logger = logging.getLogger(__name__)

EXPIRY_LOCK_KEY = "billing:lock:expiry_sweep"


def run_expiry_sweep(db: Session, now: Optional[datetime] = None) -> int:
    """Expire lapsed subscriptions and refresh their users' cache

    Returns:
        Number of subscriptions expired
    """
    expired = expire_lapsed(db, now or datetime.now(timezone.utc))
    if not expired:
        return 0
    db.commit()

    for subscription in expired:
        reflect(subscription, db)
    db.commit()

    expiry_sweep_counter.inc(len(expired))
    logger.info(f"Expired {len(expired)} lapsed subscription(s)")
    return len(expired)


def _sweep_once():
    if not acquire_lock(EXPIRY_LOCK_KEY, timeout=settings.EXPIRY_SWEEP_INTERVAL):
        logger.debug("Expiry sweep already running elsewhere")
        return
    db = SessionLocal()
    try:
        run_expiry_sweep(db)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
        release_lock(EXPIRY_LOCK_KEY)


async def expiry_scheduler_task():
    """Run the expiry sweep every EXPIRY_SWEEP_INTERVAL seconds"""
    logger.info("Starting subscription expiry scheduler task...")

    while True:
        try:
            await asyncio.sleep(settings.EXPIRY_SWEEP_INTERVAL)
            await asyncio.to_thread(_sweep_once)
        except Exception as e:
            logger.error(f"Error in expiry scheduler task: {e}", exc_info=True)
