"""Redis client for session lookup, webhook idempotency and locks"""
import redis
import redis.asyncio as aioredis
import logging
from typing import Optional
from app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None
_async_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_async_redis_client():
    """Get or create the async Redis client bound to the running event loop"""
    global _async_client
    import asyncio

    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None

    if _async_client is not None:
        client_loop = getattr(_async_client.connection_pool, '_loop', None)
        if client_loop is not current_loop:
            _async_client = None

    if _async_client is None:
        _async_client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=10
        )
        _async_client.connection_pool._loop = current_loop

    return _async_client


# Key prefixes
SESSION_KEY_PREFIX = "session:"
WEBHOOK_KEY_PREFIX = "stripe:webhook:"


def get_session(session_id: str) -> Optional[int]:
    """Get user_id from a session issued by the auth service"""
    user_id = get_redis_client().get(f"{SESSION_KEY_PREFIX}{session_id}")
    return int(user_id) if user_id else None


def is_webhook_event_seen(event_id: str) -> bool:
    """Check the short-lived processed-event marker"""
    return get_redis_client().exists(f"{WEBHOOK_KEY_PREFIX}{event_id}") == 1


def mark_webhook_event_seen(event_id: str, ttl: int) -> None:
    get_redis_client().setex(f"{WEBHOOK_KEY_PREFIX}{event_id}", ttl, "1")


def acquire_lock(lock_key: str, timeout: int = 30) -> bool:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock timeout in seconds (default 30)

    Returns:
        True if lock was acquired, False if lock already exists
    """
    result = get_redis_client().set(lock_key, "1", nx=True, ex=timeout)
    return result is True


def release_lock(lock_key: str) -> None:
    get_redis_client().delete(lock_key)
