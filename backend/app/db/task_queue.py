"""Redis-based task queue for billing background jobs

Tasks live in a Redis list per task type; metadata (status, retry count,
errors) lives in a hash per task. Failed tasks are re-enqueued with an
exponential backoff until max_retries is reached.
"""
import json
import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional

from app.core.config import settings
from app.db.redis import get_redis_client, get_async_redis_client

logger = logging.getLogger(__name__)

# Redis key prefixes
QUEUE_KEY_PREFIX = "billing:task:queue:"
META_KEY_PREFIX = "billing:task:meta:"
PROCESSING_SET_KEY = "billing:task:processing"

# Task types
RESYNC_USER_CACHE = "resync_user_cache"

# Task TTL (24 hours for completed/failed tasks metadata)
TASK_META_TTL = 24 * 60 * 60


def enqueue_task(
    task_type: str,
    payload: Dict[str, Any],
    retry_count: int = 0,
    max_retries: int = 3,
    retry_after: Optional[datetime] = None
) -> str:
    """Push a task onto its queue

    Args:
        task_type: Queue name (e.g., 'resync_user_cache')
        payload: JSON-serialisable task payload
        retry_count: Attempts already made
        max_retries: Attempts allowed after the first one
        retry_after: Earliest time the worker may run the task

    Returns:
        task_id: Unique task identifier
    """
    task_id = str(uuid.uuid4())
    created_at = datetime.now(timezone.utc).isoformat()

    task_data = {
        "task_id": task_id,
        "task_type": task_type,
        "payload": payload,
        "retry_count": retry_count,
        "max_retries": max_retries,
        "created_at": created_at,
        "retry_after": retry_after.isoformat() if retry_after else None,
    }

    client = get_redis_client()
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    meta = {
        "task_id": task_id,
        "task_type": task_type,
        "payload": json.dumps(payload),
        "retry_count": str(retry_count),
        "max_retries": str(max_retries),
        "created_at": created_at,
        "status": "pending",
    }
    if retry_after:
        meta["retry_after"] = retry_after.isoformat()
    client.hset(meta_key, mapping=meta)
    client.expire(meta_key, TASK_META_TTL)

    client.lpush(f"{QUEUE_KEY_PREFIX}{task_type}", json.dumps(task_data))

    logger.info(f"Enqueued task {task_id} of type {task_type} (retry_count={retry_count})")
    return task_id


def enqueue_user_cache_resync(user_id: int, reason: str) -> str:
    """Schedule a recompute of a user's cached subscription status"""
    return enqueue_task(
        RESYNC_USER_CACHE,
        {"user_id": user_id, "reason": reason},
        max_retries=settings.CACHE_RESYNC_MAX_RETRIES
    )


def pop_task(task_type: str) -> Optional[Dict[str, Any]]:
    """Non-blocking dequeue"""
    task_json = get_redis_client().rpop(f"{QUEUE_KEY_PREFIX}{task_type}")
    return json.loads(task_json) if task_json else None


async def dequeue_task(task_type: str, timeout: int = 5) -> Optional[Dict[str, Any]]:
    """Blocking dequeue for the async worker

    Returns:
        Task dict if task available, None if timeout
    """
    client = get_async_redis_client()
    if client is None:
        raise RuntimeError("Async Redis client not available")

    result = await client.brpop(f"{QUEUE_KEY_PREFIX}{task_type}", timeout=timeout)
    if result is None:
        return None
    _, task_json = result
    return json.loads(task_json)


def requeue_task(task: Dict[str, Any]) -> None:
    """Put a task that is not due yet back at the tail of its queue"""
    get_redis_client().lpush(f"{QUEUE_KEY_PREFIX}{task['task_type']}", json.dumps(task))


def get_task_status(task_id: str) -> Optional[Dict[str, Any]]:
    meta = get_redis_client().hgetall(f"{META_KEY_PREFIX}{task_id}")
    if not meta:
        return None
    if "payload" in meta:
        meta["payload"] = json.loads(meta["payload"])
    for field in ("retry_count", "max_retries"):
        if field in meta:
            meta[field] = int(meta[field])
    return meta


def mark_task_processing(task_id: str) -> None:
    client = get_redis_client()
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client.hset(meta_key, mapping={
        "status": "processing",
        "started_at": datetime.now(timezone.utc).isoformat(),
    })
    client.sadd(PROCESSING_SET_KEY, task_id)


def mark_task_completed(task_id: str, result: Optional[Dict[str, Any]] = None) -> None:
    client = get_redis_client()
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client.hset(meta_key, "status", "completed")
    client.hset(meta_key, "completed_at", datetime.now(timezone.utc).isoformat())
    if result:
        client.hset(meta_key, "result", json.dumps(result))
    client.srem(PROCESSING_SET_KEY, task_id)
    logger.info(f"Marked task {task_id} as completed")


def mark_task_failed(task_id: str, error: str, retry: bool = True) -> Optional[str]:
    """Record a failure and schedule a retry with exponential backoff

    Returns:
        New task_id if a retry was scheduled, None otherwise
    """
    client = get_redis_client()
    meta_key = f"{META_KEY_PREFIX}{task_id}"

    meta = client.hgetall(meta_key)
    if not meta:
        logger.warning(f"Task {task_id} metadata not found")
        return None

    retry_count = int(meta.get("retry_count", "0"))
    max_retries = int(meta.get("max_retries", "3"))
    client.hset(meta_key, "error", error)
    client.srem(PROCESSING_SET_KEY, task_id)

    if retry and retry_count < max_retries:
        new_retry_count = retry_count + 1
        delay_seconds = min(300, 2 ** new_retry_count)  # Max 5 minutes
        client.hset(meta_key, "status", "retrying")

        new_task_id = enqueue_task(
            task_type=meta["task_type"],
            payload=json.loads(meta["payload"]),
            retry_count=new_retry_count,
            max_retries=max_retries,
            retry_after=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        )
        logger.info(
            f"Task {task_id} failed (attempt {retry_count + 1}/{max_retries + 1}), "
            f"retry {new_task_id} in {delay_seconds}s: {error}"
        )
        return new_task_id

    client.hset(meta_key, "status", "failed")
    client.hset(meta_key, "failed_at", datetime.now(timezone.utc).isoformat())
    logger.warning(f"Task {task_id} failed permanently after {retry_count + 1} attempts: {error}")
    return None
