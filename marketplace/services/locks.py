"""
Redis locks for periodic jobs: a run that finds the lock taken skips instead of waiting.
"""
import logging
from contextlib import contextmanager
from typing import Iterator

import redis
from redis.exceptions import LockError

from marketplace.core.config import settings

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(settings.redis_url)
    return _client


@contextmanager
def skip_if_running(key: str, ttl: int, client: redis.Redis | None = None) -> Iterator[bool]:
    """Yield True when this run holds the lock, False when another run does."""
    lock = (client or get_redis()).lock(key, timeout=ttl)
    acquired = lock.acquire(blocking=False)
    if not acquired:
        logger.info("job_already_running", extra={"operation": key})
        yield False
        return
    try:
        yield True
    finally:
        try:
            lock.release()
        except LockError:
            # ttl expired mid-run; the next run may already own it
            logger.warning("job_lock_expired", extra={"operation": key})
