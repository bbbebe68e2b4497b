"""Background worker recomputing users' cached subscription status

Tasks are queued when the user write of a reconciliation fails after the
subscription write committed.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import NotFoundFailure
from app.core.metrics import cache_resync_counter
from app.db.session import SessionLocal
from app.db.task_queue import (
    RESYNC_USER_CACHE, dequeue_task, mark_task_completed, mark_task_failed,
    mark_task_processing, requeue_task
)
from app.services.user_projection import resync_user

logger = logging.getLogger(__name__)


def process_resync_task(task_data: Dict[str, Any], session_factory=SessionLocal) -> bool:
    """Run one resync task

    Returns:
        True if the user's cache was recomputed
    """
    task_id = task_data.get("task_id")
    user_id = task_data.get("payload", {}).get("user_id")

    if not user_id:
        logger.error(f"Task {task_id} missing user_id in payload")
        mark_task_failed(task_id, "Missing user_id in task payload", retry=False)
        cache_resync_counter.labels(status="invalid").inc()
        return False

    mark_task_processing(task_id)
    db = session_factory()
    try:
        status = resync_user(user_id, db)
        mark_task_completed(task_id, {"user_id": user_id, "subscription_status": status.value})
        cache_resync_counter.labels(status="completed").inc()
        logger.info(f"Resynced subscription cache of user {user_id}: {status.value}")
        return True
    except NotFoundFailure as e:
        logger.warning(f"Task {task_id}: {e.message}")
        mark_task_failed(task_id, e.message, retry=False)
        cache_resync_counter.labels(status="user_missing").inc()
        return False
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Task {task_id} failed for user {user_id}: {e}")
        mark_task_failed(task_id, str(e), retry=True)
        cache_resync_counter.labels(status="retried").inc()
        return False
    finally:
        db.close()


def is_due(task_data: Dict[str, Any], now=None) -> bool:
    retry_after = task_data.get("retry_after")
    if not retry_after:
        return True
    now = now or datetime.now(timezone.utc)
    return datetime.fromisoformat(retry_after) <= now


async def resync_worker_task() -> None:
    """Poll the resync queue forever"""
    logger.info("Starting cache resync worker task")

    while True:
        try:
            task_data = await dequeue_task(RESYNC_USER_CACHE, timeout=5)
            if task_data is None:
                continue

            if not is_due(task_data):
                # Backoff not elapsed yet
                requeue_task(task_data)
                await asyncio.sleep(1)
                continue

            await asyncio.to_thread(process_resync_task, task_data)
        except Exception as e:
            logger.error(f"Error in cache resync worker loop: {e}", exc_info=True)
            await asyncio.sleep(5)
