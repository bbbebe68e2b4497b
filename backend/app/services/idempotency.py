"""Short-lived "already processed" markers for webhook events

A fast path in front of the stripe_events ledger. A cache miss is never
authoritative; a Redis outage degrades to the database check.
"""
import logging
from typing import Protocol

import redis

from app.db.redis import is_webhook_event_seen, mark_webhook_event_seen

logger = logging.getLogger(__name__)


class IdempotencyCache(Protocol):
    def seen(self, key: str) -> bool: ...

    def mark(self, key: str, ttl: int) -> None: ...


class RedisIdempotencyCache:
    def seen(self, key: str) -> bool:
        try:
            return is_webhook_event_seen(key)
        except redis.RedisError as e:
            logger.warning(f"Idempotency cache lookup failed for {key}: {e}")
            return False

    def mark(self, key: str, ttl: int) -> None:
        try:
            mark_webhook_event_seen(key, ttl)
        except redis.RedisError as e:
            logger.warning(f"Idempotency cache write failed for {key}: {e}")


def get_idempotency_cache() -> IdempotencyCache:
    return RedisIdempotencyCache()
