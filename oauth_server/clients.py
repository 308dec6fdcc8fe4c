"""
Client registry. Looks up registered applications and checks them for the grant flows:
existence, active status, allowed grant type, exact redirect URI, and (confidential clients) the
secret. Secrets are stored as bcrypt hashes; bcrypt.checkpw compares in constant time.

The grant flows only read from the registry; register/get/list/update/rotate/activate/delete are
administrator operations.
"""
import base64
import binascii
import json
import logging
import secrets
from datetime import datetime, timezone

import bcrypt
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from oauth_server.database import store_call
from oauth_server.errors import (
    ClientInactive,
    ClientNotFound,
    GrantTypeNotAllowed,
    InvalidClientSecret,
    InvalidRedirectUri,
    InvalidScope,
)
from oauth_server.models import SUPPORTED_GRANT_TYPES, OAuthClient, join_scopes

logger = logging.getLogger(__name__)


def hash_secret(secret: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = secret.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_secret(plain: str, hashed: str) -> bool:
    raw = plain.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(raw, hashed.encode("utf-8"))
    except ValueError:
        # Corrupt hash in the database
        logger.error("Stored client secret hash is not a valid bcrypt hash")
        return False


# Checked against when the client is unknown so both paths cost one bcrypt round
_DUMMY_HASH = hash_secret(secrets.token_urlsafe(16))


def parse_basic_auth(header_value: str | None) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        encoded = header_value.strip()[6:].strip()
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return client_id.strip(), client_secret


def _check_grant_types(grant_types: list[str], is_public: bool) -> None:
    unknown = sorted(set(grant_types) - set(SUPPORTED_GRANT_TYPES))
    if unknown:
        raise ValueError(f"Unsupported grant types: {', '.join(unknown)}")
    if not grant_types:
        raise ValueError("At least one grant type is required")
    if is_public and "client_credentials" in grant_types:
        raise ValueError("Public clients cannot use client_credentials")


class ClientRegistry:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def lookup(self, client_id: str) -> OAuthClient:
        """Return the client or raise ClientNotFound. Soft-deleted clients do not exist."""
        if not client_id:
            raise ClientNotFound()
        with self._session_factory() as db, store_call(db):
            client = db.execute(
                select(OAuthClient).where(
                    OAuthClient.client_id == client_id,
                    OAuthClient.deleted_at.is_(None),
                )
            ).scalar_one_or_none()
        if client is None:
            raise ClientNotFound()
        return client

    def authenticate(self, client_id: str, client_secret: str | None) -> OAuthClient:
        """
        Resolve the client and, when confidential, verify its secret.
        Unknown client and wrong secret raise different exceptions that render identically.
        """
        try:
            client = self.lookup(client_id)
        except ClientNotFound:
            verify_secret(client_secret or "", _DUMMY_HASH)
            logger.info("Client authentication failed: unknown client_id")
            raise
        if client.is_public:
            return client
        if not client_secret or not client.client_secret_hash:
            verify_secret(client_secret or "", _DUMMY_HASH)
            logger.info("Client authentication failed: missing secret for client_id=%s", client_id)
            raise InvalidClientSecret()
        if not verify_secret(client_secret, client.client_secret_hash):
            logger.info("Client authentication failed: bad secret for client_id=%s", client_id)
            raise InvalidClientSecret()
        return client

    @staticmethod
    def require_active(client: OAuthClient) -> None:
        if not client.is_active:
            raise ClientInactive()

    @staticmethod
    def require_grant_type(client: OAuthClient, grant_type: str) -> None:
        if not client.grant_type_allowed(grant_type):
            raise GrantTypeNotAllowed(f"Grant type {grant_type} not allowed for this client")

    @staticmethod
    def require_redirect_uri(client: OAuthClient, redirect_uri: str | None) -> None:
        if not redirect_uri or not client.redirect_uri_allowed(redirect_uri):
            raise InvalidRedirectUri()

    @staticmethod
    def resolve_scopes(client: OAuthClient, requested: str | None) -> list[str]:
        """Requested scopes must be a subset of the client's; empty means all of the client's."""
        allowed = client.get_scopes()
        wanted = [s for s in (requested or "").split() if s]
        if not wanted:
            return allowed
        invalid = sorted(set(wanted) - set(allowed))
        if invalid:
            raise InvalidScope(f"Invalid scope(s): {', '.join(invalid)}")
        return list(dict.fromkeys(wanted))

    # --- administrator operations ---

    def register(
        self,
        name: str,
        redirect_uris: list[str],
        scopes: list[str],
        grant_types: list[str],
        is_public: bool = False,
        description: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> tuple[OAuthClient, str | None]:
        """Create a client. Returns (client, plain_secret); the secret is only ever returned here."""
        _check_grant_types(grant_types, is_public)

        plain_secret = None
        secret_hash = None
        if not is_public:
            plain_secret = client_secret or secrets.token_urlsafe(32)
            secret_hash = hash_secret(plain_secret)

        client = OAuthClient(
            client_id=client_id or f"client_{secrets.token_urlsafe(16)}",
            client_secret_hash=secret_hash,
            name=name,
            description=description,
            redirect_uris=json.dumps(list(redirect_uris)),
            scopes=join_scopes(scopes),
            grant_types=join_scopes(grant_types),
            is_public=is_public,
            is_active=True,
        )
        with self._session_factory() as db, store_call(db):
            db.add(client)
            db.commit()
        logger.info("Registered client %s (public=%s)", client.client_id, is_public)
        return client, plain_secret

    def _load_for_update(self, db, client_id: str) -> OAuthClient:
        client = db.execute(
            select(OAuthClient).where(
                OAuthClient.client_id == client_id,
                OAuthClient.deleted_at.is_(None),
            )
        ).scalar_one_or_none()
        if client is None:
            raise ClientNotFound()
        return client

    def rotate_secret(self, client_id: str) -> str:
        """Replace a confidential client's secret. Returns the new plain secret."""
        plain_secret = secrets.token_urlsafe(32)
        with self._session_factory() as db, store_call(db):
            client = self._load_for_update(db, client_id)
            if client.is_public:
                raise ValueError("Public clients have no secret")
            client.client_secret_hash = hash_secret(plain_secret)
            db.commit()
        logger.info("Rotated secret for client %s", client_id)
        return plain_secret

    def set_active(self, client_id: str, active: bool) -> None:
        with self._session_factory() as db, store_call(db):
            client = self._load_for_update(db, client_id)
            client.is_active = active
            db.commit()
        logger.info("Client %s active=%s", client_id, active)

    def soft_delete(self, client_id: str) -> None:
        with self._session_factory() as db, store_call(db):
            client = self._load_for_update(db, client_id)
            client.deleted_at = datetime.now(timezone.utc)
            client.is_active = False
            db.commit()
        logger.info("Client %s deleted", client_id)

    def get(self, client_id: str) -> dict:
        """Client-facing view of one client (never the secret hash)."""
        return self.lookup(client_id).to_public_dict()

    def list_clients(self, page: int = 1, limit: int = 20) -> tuple[list[dict], int]:
        """One page of live clients, newest first. Returns (clients, total)."""
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        live = OAuthClient.deleted_at.is_(None)
        with self._session_factory() as db, store_call(db):
            total = db.execute(select(func.count()).select_from(OAuthClient).where(live)).scalar_one()
            rows = (
                db.execute(
                    select(OAuthClient)
                    .where(live)
                    .order_by(OAuthClient.created_at.desc(), OAuthClient.id.desc())
                    .limit(limit)
                    .offset((page - 1) * limit)
                )
                .scalars()
                .all()
            )
        return [client.to_public_dict() for client in rows], total

    def update(
        self,
        client_id: str,
        name: str | None = None,
        description: str | None = None,
        redirect_uris: list[str] | None = None,
        scopes: list[str] | None = None,
        grant_types: list[str] | None = None,
    ) -> dict:
        """Change a client's registration. Fields left as None keep their value."""
        with self._session_factory() as db, store_call(db):
            client = self._load_for_update(db, client_id)
            if grant_types is not None:
                _check_grant_types(grant_types, client.is_public)
                client.grant_types = join_scopes(grant_types)
            if name is not None:
                client.name = name
            if description is not None:
                client.description = description
            if redirect_uris is not None:
                client.redirect_uris = json.dumps(list(redirect_uris))
            if scopes is not None:
                client.scopes = join_scopes(scopes)
            db.commit()
            view = client.to_public_dict()
        logger.info("Updated client %s", client_id)
        return view
