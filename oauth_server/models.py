"""
SQLAlchemy models for the authorization server: OAuth clients, authorization codes, tokens, audit log.
"""
import json
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_CLIENT_CREDENTIALS = "client_credentials"
GRANT_REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = (GRANT_AUTHORIZATION_CODE, GRANT_CLIENT_CREDENTIALS, GRANT_REFRESH_TOKEN)

TOKEN_KIND_ACCESS = "access"
TOKEN_KIND_REFRESH = "refresh"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def split_scopes(value: str | None) -> list[str]:
    return [s for s in (value or "").split() if s]


def join_scopes(scopes) -> str:
    # Order-preserving de-duplication
    return " ".join(dict.fromkeys(s for s in scopes if s))


class Base(DeclarativeBase):
    pass


class OAuthClient(Base):
    __tablename__ = "oauth_clients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    # bcrypt hash; None = public client
    client_secret_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # JSON array of allowed redirect URIs; exact match required
    redirect_uris: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    grant_types: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    is_public: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def get_redirect_uris_list(self) -> list[str]:
        return json.loads(self.redirect_uris or "[]")

    def redirect_uri_allowed(self, uri: str) -> bool:
        # Whole-string equality only; prefix or substring matching is an open redirect
        return any(uri == registered for registered in self.get_redirect_uris_list())

    def get_scopes(self) -> list[str]:
        return split_scopes(self.scopes)

    def get_grant_types(self) -> list[str]:
        return split_scopes(self.grant_types)

    def grant_type_allowed(self, grant_type: str) -> bool:
        return grant_type in self.get_grant_types()

    @property
    def is_confidential(self) -> bool:
        return not self.is_public

    def to_public_dict(self) -> dict:
        """Client-facing view; never includes the secret or its hash."""
        return {
            "client_id": self.client_id,
            "name": self.name,
            "description": self.description,
            "redirect_uris": self.get_redirect_uris_list(),
            "scopes": self.get_scopes(),
            "grant_types": self.get_grant_types(),
            "is_public": self.is_public,
            "is_active": self.is_active,
        }


class AuthorizationCode(Base):
    __tablename__ = "oauth_authorization_codes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_role: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    code_challenge: Mapped[str | None] = mapped_column(String(255), nullable=True)
    code_challenge_method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    def is_expired(self, now: datetime) -> bool:
        return as_utc(self.expires_at) <= now


class OAuthToken(Base):
    """Issued token record. The token string itself is never stored, only its jti."""

    __tablename__ = "oauth_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    token_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # access | refresh
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class AuditLog(Base):
    """Security-relevant events. No tokens, secrets or verifiers stored."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)  # None = anonymous/client
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
