"""
Revocation ledger: token ids that must be rejected although still signed and unexpired.

Each entry lives in the shared cache under revoked_token:<jti> with a TTL equal to the token's
remaining lifetime, so the ledger never outlives the tokens it covers.

Lookup failures are fail-open by default: when the cache cannot answer, is_revoked() returns False
and logs a warning. This favours availability over instant revocation; pass fail_open=False (or set
REVOCATION_FAIL_OPEN=false) to reject instead.
"""
import logging
import math
from datetime import datetime

from oauth_server.cache import CACHE_ERRORS
from oauth_server.errors import StoreUnavailable
from oauth_server.tokens import Clock, utc_now

logger = logging.getLogger(__name__)

_KEY_PREFIX = "revoked_token:"


class RevocationLedger:
    def __init__(self, cache, clock: Clock = utc_now, fail_open: bool = True):
        self._cache = cache
        self._clock = clock
        self._fail_open = fail_open

    @property
    def fail_open(self) -> bool:
        return self._fail_open

    @staticmethod
    def _key(token_id: str) -> str:
        return f"{_KEY_PREFIX}{token_id}"

    def revoke(self, token_id: str, expires_at: datetime) -> bool:
        """
        Record token_id as revoked until expires_at. Idempotent.
        Returns False (and writes nothing) when the token has already expired.
        """
        ttl = math.ceil((expires_at - self._clock()).total_seconds())
        if ttl <= 0:
            return False
        try:
            self._cache.set(self._key(token_id), "revoked", ex=ttl)
        except CACHE_ERRORS as e:
            logger.warning("Revocation write failed for jti=%s: %s", token_id, e.__class__.__name__)
            raise StoreUnavailable() from e
        logger.debug("Revoked jti=%s ttl=%ss", token_id, ttl)
        return True

    def is_revoked(self, token_id: str) -> bool:
        try:
            return bool(self._cache.exists(self._key(token_id)))
        except CACHE_ERRORS as e:
            if self._fail_open:
                logger.warning(
                    "Revocation lookup failed for jti=%s (%s); treating as not revoked",
                    token_id,
                    e.__class__.__name__,
                )
                return False
            logger.warning("Revocation lookup failed for jti=%s (%s)", token_id, e.__class__.__name__)
            raise StoreUnavailable() from e
