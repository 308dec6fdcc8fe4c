"""
Rate limiting for POST /oauth/token. Fixed window per key (e.g. per IP) kept in the shared cache,
so the limit holds across replicas. A cache failure lets the request through.
"""
import logging

from oauth_server.cache import CACHE_ERRORS

logger = logging.getLogger(__name__)

_WINDOW_SECONDS = 60
_KEY_PREFIX = "rate_limit:"


class RateLimiter:
    def __init__(self, cache, limit: int, window_seconds: int = _WINDOW_SECONDS):
        self._cache = cache
        self._limit = limit
        self._window = window_seconds

    def check_and_consume(self, key: str) -> tuple[bool, int | None]:
        """
        Count this request against key's window.
        Returns (allowed, retry_after_seconds); retry_after is set (>= 1) only when not allowed.
        """
        if self._limit <= 0:
            return True, None
        cache_key = f"{_KEY_PREFIX}{key}"
        try:
            count = self._cache.incr(cache_key)
            if count == 1:
                self._cache.expire(cache_key, self._window)
            if count <= self._limit:
                return True, None
            ttl = self._cache.ttl(cache_key)
        except CACHE_ERRORS as e:
            logger.warning("Rate limit check failed for %s: %s; allowing request", key, e.__class__.__name__)
            return True, None
        if ttl is None or ttl < 0:
            # Counter lost its expiry (crash between INCR and EXPIRE); put it back
            try:
                self._cache.expire(cache_key, self._window)
            except CACHE_ERRORS as e:
                logger.debug("Could not reset expiry on %s: %s", cache_key, e.__class__.__name__)
            ttl = self._window
        return False, max(1, int(ttl))
