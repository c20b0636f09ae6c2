"""
Redis-backed run locks for periodic jobs.

Celery Beat may fire a job while the previous run is still executing (slow
Stripe API, retried task). Each periodic job wraps its body in
``job_lock(name)`` so at most one run is active at a time.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

import redis
from redis.exceptions import LockError

from mentorsub.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """
    Get or initialize a singleton sync Redis client.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


@contextmanager
def job_lock(name: str, timeout: Optional[int] = None) -> Iterator[bool]:
    """
    Try to acquire the run lock for ``name`` without blocking.

    Yields True when this caller owns the lock, False when another run holds
    it. The lock expires after ``timeout`` seconds so a crashed worker cannot
    wedge the job forever.
    """
    client = get_redis_client()
    lock = client.lock(
        f"mentorsub:job:{name}",
        timeout=timeout or settings.JOB_LOCK_TIMEOUT_SECONDS,
        blocking=False,
    )
    acquired = lock.acquire()
    if not acquired:
        logger.info("job_lock_busy: job=%s", name)
    try:
        yield acquired
    finally:
        if acquired:
            try:
                lock.release()
            except LockError:
                # Expired while running; another run may already own it.
                logger.warning("job_lock_expired: job=%s", name)
