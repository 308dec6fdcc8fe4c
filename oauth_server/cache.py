"""
Shared key-value cache handle (Redis). Holds the revocation ledger and rate-limit counters,
so every replica sees the same state. All calls are bounded by the socket timeouts set here.
"""
import logging

import redis

logger = logging.getLogger(__name__)

# ConnectionError and TimeoutError both derive from RedisError
CACHE_ERRORS = (redis.exceptions.RedisError,)


def create_cache(redis_url: str, timeout_seconds: float = 3.0) -> redis.Redis:
    """Build a pooled Redis client. No connection is made until the first command."""
    return redis.Redis.from_url(
        redis_url,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
        decode_responses=True,
        health_check_interval=30,
    )


def cache_is_ready(cache) -> bool:
    """PING the cache; used by the health endpoint. Never raises."""
    try:
        return bool(cache.ping())
    except CACHE_ERRORS as e:
        logger.warning("Cache ping failed: %s", e.__class__.__name__)
        return False
