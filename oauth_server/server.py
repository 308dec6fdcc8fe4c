"""
Authorization server: the grant dispatcher.

authorize() issues codes; token() dispatches on grant_type (authorization_code, client_credentials,
refresh_token); revoke() writes the revocation ledger; introspect() reports whether a token is
active. Collaborators are passed in, so tests can substitute any of them.
"""
import hashlib
import hmac
import logging
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from oauth_server.clients import ClientRegistry
from oauth_server.codes import PKCE_METHOD_PLAIN, PKCE_METHOD_S256, PKCE_METHODS, AuthorizationCodeStore, PkceChallenge
from oauth_server.config import Settings
from oauth_server.database import store_call
from oauth_server.errors import (
    CodeInvalid,
    InvalidClientSecret,
    InvalidRedirectUri,
    InvalidRequest,
    PkceVerificationFailed,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
    UnsupportedGrantType,
)
from oauth_server.models import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_CLIENT_CREDENTIALS,
    GRANT_REFRESH_TOKEN,
    TOKEN_KIND_ACCESS,
    TOKEN_KIND_REFRESH,
    OAuthToken,
    split_scopes,
)
from oauth_server.revocation import RevocationLedger
from oauth_server.tokens import Clock, TokenClaims, TokenCodec, utc_now

logger = logging.getLogger(__name__)

CLIENT_ROLE = "client"


def pkce_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(code_verifier: str | None, code_challenge: str | None, method: str | None) -> None:
    """
    Raise PkceVerificationFailed unless the verifier matches the stored challenge.
    No challenge and no verifier is fine; one without the other is not.
    """
    if not code_challenge and not code_verifier:
        return
    if not code_challenge or not code_verifier:
        raise PkceVerificationFailed()
    if method == PKCE_METHOD_S256:
        try:
            computed = pkce_s256(code_verifier)
        except UnicodeEncodeError:
            raise PkceVerificationFailed()
    elif method == PKCE_METHOD_PLAIN:
        computed = code_verifier
    else:
        raise PkceVerificationFailed()
    if not hmac.compare_digest(computed.encode("utf-8"), code_challenge.encode("utf-8")):
        raise PkceVerificationFailed()


@dataclass(frozen=True)
class AuthorizeResult:
    code: str
    state: str | None = None
    redirect_uri: str | None = None
    expires_at: datetime | None = None

    def to_dict(self) -> dict:
        data = {"code": self.code}
        if self.state:
            data["state"] = self.state
        return data


@dataclass(frozen=True)
class TokenRequest:
    grant_type: str
    client_id: str | None = None
    client_secret: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    refresh_token: str | None = None
    scope: str | None = None

    def to_dict(self) -> dict:
        data = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        if self.refresh_token is not None:
            data["refresh_token"] = self.refresh_token
        if self.scope:
            data["scope"] = self.scope
        return data


@dataclass(frozen=True)
class IntrospectionResult:
    active: bool
    scope: str | None = None
    client_id: str | None = None
    user_id: str | None = None
    sub: str | None = None
    role: str | None = None
    token_type: str | None = None
    token_kind: str | None = None
    exp: int | None = None
    iat: int | None = None

    def to_dict(self) -> dict:
        # Inactive tokens report nothing but active=false
        if not self.active:
            return {"active": False}
        data = {
            "active": True,
            "scope": self.scope,
            "client_id": self.client_id,
            "user_id": self.user_id,
            "sub": self.sub,
            "role": self.role,
            "token_type": self.token_type,
            "token_kind": self.token_kind,
            "exp": self.exp,
            "iat": self.iat,
        }
        return {k: v for k, v in data.items() if v is not None}


class AuthorizationServer:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        codec: TokenCodec,
        ledger: RevocationLedger,
        registry: ClientRegistry,
        codes: AuthorizationCodeStore,
        clock: Clock = utc_now,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self.codec = codec
        self.ledger = ledger
        self.registry = registry
        self.codes = codes
        self._clock = clock

    # --- authorization endpoint ---

    def authorize(
        self,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        scope: str | None = None,
        state: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        role: str = "",
    ) -> AuthorizeResult:
        """Validate the request and issue a single-use code. Does not touch tokens."""
        if not user_id:
            raise InvalidRequest("Authenticated user required")
        client = self.registry.lookup(client_id)
        self.registry.require_active(client)
        self.registry.require_redirect_uri(client, redirect_uri)
        self.registry.require_grant_type(client, GRANT_AUTHORIZATION_CODE)
        scopes = self.registry.resolve_scopes(client, scope)

        pkce = None
        if code_challenge:
            method = code_challenge_method or PKCE_METHOD_PLAIN
            if method not in PKCE_METHODS:
                raise InvalidRequest("code_challenge_method must be S256 or plain")
            pkce = PkceChallenge(challenge=code_challenge, method=method)
        elif code_challenge_method:
            raise InvalidRequest("code_challenge_method given without code_challenge")

        auth_code = self.codes.create(
            client_id=client.client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scopes=scopes,
            pkce=pkce,
            user_role=role,
        )
        logger.info(
            "Issued authorization code for client_id=%s user_id=%s pkce=%s",
            client.client_id,
            user_id,
            pkce.method if pkce else None,
        )
        return AuthorizeResult(
            code=auth_code.code,
            state=state,
            redirect_uri=redirect_uri,
            expires_at=auth_code.expires_at,
        )

    # --- token endpoint ---

    def token(self, request: TokenRequest) -> TokenResponse:
        if request.grant_type == GRANT_AUTHORIZATION_CODE:
            return self._grant_authorization_code(request)
        if request.grant_type == GRANT_CLIENT_CREDENTIALS:
            return self._grant_client_credentials(request)
        if request.grant_type == GRANT_REFRESH_TOKEN:
            return self._grant_refresh_token(request)
        raise UnsupportedGrantType()

    def _authenticated_client(self, request: TokenRequest, grant_type: str):
        client = self.registry.authenticate(request.client_id, request.client_secret)
        self.registry.require_active(client)
        self.registry.require_grant_type(client, grant_type)
        return client

    def _grant_authorization_code(self, request: TokenRequest) -> TokenResponse:
        if not request.code or not request.redirect_uri:
            raise InvalidRequest("code and redirect_uri are required for authorization_code grant")
        client = self._authenticated_client(request, GRANT_AUTHORIZATION_CODE)

        # Consumed before any further check: a failed attempt still burns the code
        auth_code = self.codes.consume(request.code)

        if auth_code.client_id != client.client_id:
            logger.warning("Code presented by client_id=%s was issued to another client", client.client_id)
            raise CodeInvalid("Authorization code was issued to another client")
        if auth_code.redirect_uri != request.redirect_uri:
            raise InvalidRedirectUri("redirect_uri does not match the authorization request")
        verify_pkce(request.code_verifier, auth_code.code_challenge, auth_code.code_challenge_method)

        scopes = split_scopes(auth_code.scopes)
        response = self._issue_pair(
            user_id=auth_code.user_id,
            role=auth_code.user_role,
            client_id=client.client_id,
            scopes=scopes,
        )
        logger.info("authorization_code grant: tokens issued for client_id=%s user_id=%s", client.client_id, auth_code.user_id)
        return response

    def _grant_client_credentials(self, request: TokenRequest) -> TokenResponse:
        client = self.registry.authenticate(request.client_id, request.client_secret)
        if client.is_public:
            # Nothing to authenticate with; a public client cannot act on its own behalf
            raise InvalidClientSecret()
        self.registry.require_active(client)
        self.registry.require_grant_type(client, GRANT_CLIENT_CREDENTIALS)
        scopes = self.registry.resolve_scopes(client, request.scope)

        ttl = self._settings.access_token_ttl
        now = self._clock()
        access_token, access_id = self.codec.issue(
            subject=client.client_id,
            client_id=client.client_id,
            role=CLIENT_ROLE,
            scopes=scopes,
            kind=TOKEN_KIND_ACCESS,
            ttl=ttl,
        )
        self._persist_tokens(
            OAuthToken(
                token_id=access_id,
                kind=TOKEN_KIND_ACCESS,
                client_id=client.client_id,
                user_id=None,
                scopes=" ".join(scopes),
                expires_at=now + timedelta(seconds=ttl),
            )
        )
        logger.info("client_credentials grant: access token issued for client_id=%s", client.client_id)
        return TokenResponse(access_token=access_token, expires_in=ttl, scope=" ".join(scopes))

    def _grant_refresh_token(self, request: TokenRequest) -> TokenResponse:
        if not request.refresh_token:
            raise InvalidRequest("refresh_token is required")
        client = self._authenticated_client(request, GRANT_REFRESH_TOKEN)

        claims = self.codec.validate(request.refresh_token)
        if claims.kind != TOKEN_KIND_REFRESH:
            raise TokenInvalid("Not a refresh token")
        if self.ledger.is_revoked(claims.token_id):
            raise TokenRevoked()
        if claims.client_id != client.client_id:
            logger.warning("Refresh token of client_id=%s presented by client_id=%s", claims.client_id, client.client_id)
            raise TokenInvalid("Refresh token was issued to another client")

        if self._settings.refresh_token_rotation:
            # Before issuing: a ledger failure writes no new rows
            self._revoke_claims(claims)
        response = self._issue_pair(
            user_id=claims.user_id,
            role=claims.role,
            client_id=client.client_id,
            scopes=list(claims.scopes),
        )
        logger.info(
            "refresh_token grant: new tokens issued for client_id=%s user_id=%s (rotation=%s)",
            client.client_id,
            claims.user_id,
            self._settings.refresh_token_rotation,
        )
        return response

    def _issue_pair(self, user_id: str | None, role: str, client_id: str, scopes: list[str]) -> TokenResponse:
        access_ttl = self._settings.access_token_ttl
        refresh_ttl = self._settings.refresh_token_ttl
        subject = user_id or client_id
        now = self._clock()
        access_token, access_id = self.codec.issue(
            subject=subject,
            client_id=client_id,
            role=role,
            scopes=scopes,
            kind=TOKEN_KIND_ACCESS,
            ttl=access_ttl,
            user_id=user_id,
        )
        refresh_token, refresh_id = self.codec.issue(
            subject=subject,
            client_id=client_id,
            role=role,
            scopes=scopes,
            kind=TOKEN_KIND_REFRESH,
            ttl=refresh_ttl,
            user_id=user_id,
        )
        scope = " ".join(scopes)
        self._persist_tokens(
            OAuthToken(
                token_id=access_id,
                kind=TOKEN_KIND_ACCESS,
                client_id=client_id,
                user_id=user_id,
                scopes=scope,
                expires_at=now + timedelta(seconds=access_ttl),
            ),
            OAuthToken(
                token_id=refresh_id,
                kind=TOKEN_KIND_REFRESH,
                client_id=client_id,
                user_id=user_id,
                scopes=scope,
                expires_at=now + timedelta(seconds=refresh_ttl),
            ),
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=access_ttl,
            refresh_token=refresh_token,
            scope=scope,
        )

    def _persist_tokens(self, *rows: OAuthToken) -> None:
        """All rows of one grant go in a single transaction."""
        with self._session_factory() as db, store_call(db):
            db.add_all(rows)
            db.commit()

    # --- revocation / introspection ---

    def revoke(self, token: str, token_type_hint: str | None = None) -> None:
        """
        Revoke an access or refresh token. Malformed and expired tokens are a silent success:
        revoking something that can no longer be used changes nothing, and says nothing about it.
        """
        try:
            claims = self.codec.validate(token)
        except (TokenInvalid, TokenExpired):
            logger.debug("Revoke of unusable token ignored (hint=%s)", token_type_hint)
            return
        self._revoke_claims(claims)
        logger.info("Revoked %s token jti=%s client_id=%s", claims.kind, claims.token_id, claims.client_id)

    def _revoke_claims(self, claims: TokenClaims) -> None:
        # The ledger entry is what rejects the token; the row flag is the record of it
        self.ledger.revoke(claims.token_id, claims.expires_at)
        with self._session_factory() as db, store_call(db):
            db.execute(
                update(OAuthToken).where(OAuthToken.token_id == claims.token_id).values(revoked=True),
                execution_options={"synchronize_session": False},
            )
            db.commit()

    def introspect(self, token: str, token_type_hint: str | None = None) -> IntrospectionResult:
        try:
            claims = self.codec.validate(token)
        except (TokenInvalid, TokenExpired):
            return IntrospectionResult(active=False)
        if self.ledger.is_revoked(claims.token_id):
            return IntrospectionResult(active=False)
        return IntrospectionResult(
            active=True,
            scope=claims.scope,
            client_id=claims.client_id,
            user_id=claims.user_id,
            sub=claims.subject,
            role=claims.role or None,
            token_type="Bearer",
            token_kind=claims.kind,
            exp=int(claims.expires_at.timestamp()),
            iat=int(claims.issued_at.timestamp()),
        )

    def authenticate_bearer(self, token: str) -> TokenClaims:
        """Claims of a live access token; refresh tokens never authenticate a request."""
        claims = self.codec.validate(token)
        if claims.kind != TOKEN_KIND_ACCESS:
            raise TokenInvalid("Not an access token")
        if self.ledger.is_revoked(claims.token_id):
            raise TokenRevoked()
        return claims
