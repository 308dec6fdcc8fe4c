"""
Token codec: signed, time-bounded bearer tokens (HMAC JWTs via PyJWT).

issue() builds a claim set and signs it; validate() checks the signature with the single configured
algorithm, then re-checks expiry against the injected clock. Pure: no I/O, no shared state.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt

from oauth_server.errors import TokenExpired, TokenInvalid
from oauth_server.models import TOKEN_KIND_ACCESS, TOKEN_KIND_REFRESH

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_REQUIRED_CLAIMS = ["exp", "iat", "nbf", "jti", "sub", "iss"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Principal:
    """What downstream modules may rely on: who, which role, which scopes, until when."""

    subject: str
    role: str
    scopes: tuple[str, ...]
    expires_at: datetime
    client_id: str


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    client_id: str
    token_id: str
    kind: str
    issuer: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    role: str = ""
    user_id: str | None = None
    scopes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    def has_scope(self, required: str) -> bool:
        return required in self.scopes

    def principal(self) -> Principal:
        return Principal(
            subject=self.user_id or self.client_id,
            role=self.role,
            scopes=self.scopes,
            expires_at=self.expires_at,
            client_id=self.client_id,
        )

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenClaims":
        scopes = payload.get("scopes") or []
        if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
            raise TokenInvalid("Malformed scopes claim")
        kind = payload.get("kind")
        if kind not in (TOKEN_KIND_ACCESS, TOKEN_KIND_REFRESH):
            raise TokenInvalid("Unknown token kind")
        client_id = payload.get("client_id")
        if not isinstance(client_id, str) or not client_id:
            raise TokenInvalid("Missing client_id claim")
        return cls(
            subject=str(payload["sub"]),
            client_id=client_id,
            token_id=str(payload["jti"]),
            kind=kind,
            issuer=str(payload["iss"]),
            issued_at=datetime.fromtimestamp(payload["iat"], timezone.utc),
            not_before=datetime.fromtimestamp(payload["nbf"], timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
            role=str(payload.get("role") or ""),
            user_id=payload.get("user_id"),
            scopes=tuple(scopes),
        )


def has_scope(claims: TokenClaims | Principal, required: str) -> bool:
    """Capability check used by every consumer of validated tokens."""
    return required in claims.scopes


def has_any_scope(claims: TokenClaims | Principal, required) -> bool:
    return any(scope in claims.scopes for scope in required)


def has_all_scopes(claims: TokenClaims | Principal, required) -> bool:
    return all(scope in claims.scopes for scope in required)


class TokenCodec:
    def __init__(
        self,
        secret: str,
        issuer: str,
        algorithm: str = "HS256",
        leeway_seconds: int = 0,
        clock: Clock = utc_now,
    ):
        self._secret = secret
        self._issuer = issuer
        self._algorithm = algorithm
        self._leeway = leeway_seconds
        self._clock = clock

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def issue(
        self,
        subject: str,
        client_id: str,
        role: str,
        scopes,
        kind: str,
        ttl: int | timedelta,
        user_id: str | None = None,
    ) -> tuple[str, str]:
        """Sign a new token. Returns (token_string, token_id)."""
        if kind not in (TOKEN_KIND_ACCESS, TOKEN_KIND_REFRESH):
            raise ValueError(f"unknown token kind {kind!r}")
        if isinstance(ttl, int):
            ttl = timedelta(seconds=ttl)
        token_id = str(uuid.uuid4())
        now = self._clock()
        # JWT NumericDate is whole seconds
        iat = int(now.timestamp())
        payload = {
            "iss": self._issuer,
            "sub": subject,
            "client_id": client_id,
            "role": role or "",
            "scopes": list(scopes),
            "kind": kind,
            "jti": token_id,
            "iat": iat,
            "nbf": iat,
            "exp": int((now + ttl).timestamp()),
        }
        if user_id:
            payload["user_id"] = user_id
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm, headers={"typ": "JWT"})
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token, token_id

    def validate(self, token: str) -> TokenClaims:
        """Return the claims of a well-signed, unexpired token or raise TokenInvalid/TokenExpired."""
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError:
            raise TokenInvalid()
        if header.get("alg") != self._algorithm:
            # Algorithm substitution (e.g. "none" or another HMAC size) is never accepted
            logger.debug("Rejected token with alg=%s", header.get("alg"))
            raise TokenInvalid()
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                leeway=self._leeway,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired()
        except jwt.InvalidTokenError as e:
            logger.debug("Token rejected: %s", e)
            raise TokenInvalid()

        try:
            claims = TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError, OverflowError):
            raise TokenInvalid()

        # The library compared exp with the wall clock; compare with our clock too
        if claims.expires_at <= self._clock():
            raise TokenExpired()
        return claims
