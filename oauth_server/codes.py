"""
Authorization code store.

A code moves ISSUED -> CONSUMED or ISSUED -> EXPIRED and nothing else. consume() is a single
conditional UPDATE (used = false AND not expired) committed on its own, so among any number of
concurrent redemptions across any number of replicas exactly one sees a row come back.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.orm import sessionmaker

from oauth_server.database import store_call
from oauth_server.errors import CodeAlreadyUsed, CodeExpired, CodeInvalid
from oauth_server.models import AuthorizationCode, join_scopes
from oauth_server.tokens import Clock, utc_now

logger = logging.getLogger(__name__)

PKCE_METHOD_S256 = "S256"
PKCE_METHOD_PLAIN = "plain"
PKCE_METHODS = (PKCE_METHOD_S256, PKCE_METHOD_PLAIN)


@dataclass(frozen=True)
class PkceChallenge:
    challenge: str
    method: str = PKCE_METHOD_S256


def generate_code() -> str:
    # 32 random bytes = 256 bits
    return secrets.token_urlsafe(32)


class AuthorizationCodeStore:
    def __init__(self, session_factory: sessionmaker, ttl_seconds: int = 600, clock: Clock = utc_now):
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def create(
        self,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scopes,
        pkce: PkceChallenge | None = None,
        user_role: str = "",
    ) -> AuthorizationCode:
        """Persist a new code in one INSERT; the caller receives it only after the commit."""
        auth_code = AuthorizationCode(
            code=generate_code(),
            client_id=client_id,
            user_id=user_id,
            user_role=user_role or "",
            redirect_uri=redirect_uri,
            scopes=join_scopes(scopes),
            code_challenge=pkce.challenge if pkce else None,
            code_challenge_method=pkce.method if pkce else None,
            expires_at=self._clock() + self._ttl,
            used=False,
        )
        with self._session_factory() as db, store_call(db):
            db.add(auth_code)
            db.commit()
        return auth_code

    def consume(self, code: str) -> AuthorizationCode:
        """
        Atomically mark the code used and return it.
        Raises CodeInvalid (unknown), CodeExpired (past expiry, used or not) or CodeAlreadyUsed.
        """
        if not code:
            raise CodeInvalid()
        now = self._clock()
        with self._session_factory() as db, store_call(db):
            stmt = (
                update(AuthorizationCode)
                .where(
                    AuthorizationCode.code == code,
                    AuthorizationCode.used.is_(False),
                    AuthorizationCode.expires_at > now,
                )
                .values(used=True)
            )
            if db.get_bind().dialect.update_returning:
                consumed = db.scalars(
                    stmt.returning(AuthorizationCode),
                    execution_options={"synchronize_session": False},
                ).one_or_none()
                db.commit()
            else:
                result = db.execute(stmt, execution_options={"synchronize_session": False})
                won = result.rowcount == 1
                db.commit()
                consumed = self._get(db, code) if won else None
            if consumed is not None:
                return consumed

            # Lost: find out why
            existing = self._get(db, code)
        if existing is None:
            raise CodeInvalid()
        if existing.is_expired(now):
            raise CodeExpired()
        raise CodeAlreadyUsed()

    @staticmethod
    def _get(db, code: str) -> AuthorizationCode | None:
        return db.execute(select(AuthorizationCode).where(AuthorizationCode.code == code)).scalar_one_or_none()

    def prune_expired(self, older_than: datetime | None = None) -> int:
        """Delete codes that expired before older_than (default: now). Returns rows removed."""
        cutoff = older_than or self._clock()
        with self._session_factory() as db, store_call(db):
            result = db.execute(
                delete(AuthorizationCode).where(AuthorizationCode.expires_at <= cutoff),
                execution_options={"synchronize_session": False},
            )
            db.commit()
        if result.rowcount:
            logger.info("Pruned %s expired authorization codes", result.rowcount)
        return result.rowcount
