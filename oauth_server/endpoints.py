"""
HTTP surface: POST /oauth/authorize, /oauth/token, /oauth/revoke, /oauth/introspect (JSON bodies).
Handlers translate requests into AuthorizationServer calls and record audit events; OAuthError is
rendered by the exception handler installed in main.create_app().
"""
import logging
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from oauth_server.audit import (
    EVENT_CODE_ISSUED,
    EVENT_INTROSPECT,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    EVENT_TOKEN_REVOKED,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    AuditQueue,
    get_client_ip,
)
from oauth_server.clients import parse_basic_auth
from oauth_server.errors import OAuthError
from oauth_server.models import GRANT_REFRESH_TOKEN
from oauth_server.principal import AuthenticatedUser, get_current_user, get_server
from oauth_server.server import AuthorizationServer, TokenRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/oauth")


class AuthorizeBody(BaseModel):
    client_id: str
    redirect_uri: str
    response_type: Literal["code"] = "code"
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None


class TokenBody(BaseModel):
    grant_type: str
    client_id: str | None = None
    client_secret: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None
    scope: str | None = None


class TokenLookupBody(BaseModel):
    token: str
    # Advisory only; an unrecognised hint is ignored
    token_type_hint: str | None = None


def get_audit(request: Request) -> AuditQueue:
    return request.app.state.audit


def _client_credentials(request: Request, body: TokenBody) -> tuple[str | None, str | None]:
    """
    (client_id, client_secret) from the body or from Authorization: Basic.
    Body takes precedence if both present.
    """
    if body.client_id and body.client_secret is not None:
        return body.client_id.strip(), body.client_secret
    basic = parse_basic_auth(request.headers.get("Authorization"))
    if basic:
        return basic
    if body.client_id:
        return body.client_id.strip(), body.client_secret
    return None, None


@router.post("/authorize")
def authorize(
    body: AuthorizeBody,
    request: Request,
    user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    server: Annotated[AuthorizationServer, Depends(get_server)],
    audit: Annotated[AuditQueue, Depends(get_audit)],
):
    """Issue an authorization code to the authenticated user for client_id. Returns {code, state?}."""
    ip = get_client_ip(request)
    try:
        result = server.authorize(
            user_id=user.user_id,
            client_id=body.client_id,
            redirect_uri=body.redirect_uri,
            scope=body.scope,
            state=body.state,
            code_challenge=body.code_challenge,
            code_challenge_method=body.code_challenge_method,
            role=user.role,
        )
    except OAuthError as e:
        audit.emit(
            EVENT_CODE_ISSUED,
            client_id=body.client_id,
            user_id=user.user_id,
            ip=ip,
            outcome=OUTCOME_FAIL,
            error_code=e.code,
        )
        raise
    audit.emit(EVENT_CODE_ISSUED, client_id=body.client_id, user_id=user.user_id, ip=ip, outcome=OUTCOME_SUCCESS)
    return result.to_dict()


@router.post("/token")
def token(
    body: TokenBody,
    request: Request,
    server: Annotated[AuthorizationServer, Depends(get_server)],
    audit: Annotated[AuditQueue, Depends(get_audit)],
):
    """
    authorization_code: exchange code (+ PKCE verifier) for access and refresh tokens.
    client_credentials: access token for the client itself, never a refresh token.
    refresh_token: new access/refresh pair with the same scopes.
    """
    ip = get_client_ip(request)
    allowed, retry_after = request.app.state.rate_limiter.check_and_consume(f"token:{ip}")
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": "slow_down", "error_description": "Too many token requests"},
            headers={"Retry-After": str(retry_after)},
        )

    client_id, client_secret = _client_credentials(request, body)
    token_request = TokenRequest(
        grant_type=body.grant_type,
        client_id=client_id,
        client_secret=client_secret,
        code=body.code,
        redirect_uri=body.redirect_uri,
        code_verifier=body.code_verifier,
        refresh_token=body.refresh_token,
        scope=body.scope,
    )
    event = EVENT_TOKEN_REFRESHED if body.grant_type == GRANT_REFRESH_TOKEN else EVENT_TOKEN_ISSUED
    try:
        response = server.token(token_request)
    except OAuthError as e:
        audit.emit(event, client_id=client_id, ip=ip, outcome=OUTCOME_FAIL, error_code=e.code)
        raise
    audit.emit(event, client_id=client_id, ip=ip, outcome=OUTCOME_SUCCESS)
    return response.to_dict()


@router.post("/revoke")
def revoke(
    body: TokenLookupBody,
    request: Request,
    server: Annotated[AuthorizationServer, Depends(get_server)],
    audit: Annotated[AuditQueue, Depends(get_audit)],
):
    """
    Revoke an access or refresh token. RFC 7009: 200 even for unknown, malformed or expired
    tokens, so the response says nothing about whether the token ever existed.
    """
    ip = get_client_ip(request)
    try:
        server.revoke(body.token, body.token_type_hint)
    except OAuthError as e:
        audit.emit(EVENT_TOKEN_REVOKED, ip=ip, outcome=OUTCOME_FAIL, error_code=e.code)
        raise
    audit.emit(EVENT_TOKEN_REVOKED, ip=ip, outcome=OUTCOME_SUCCESS)
    return {}


@router.post("/introspect")
def introspect(
    body: TokenLookupBody,
    request: Request,
    server: Annotated[AuthorizationServer, Depends(get_server)],
    audit: Annotated[AuditQueue, Depends(get_audit)],
):
    """RFC 7662: {active: false} for anything unusable; claims only when active."""
    result = server.introspect(body.token, body.token_type_hint)
    audit.emit(
        EVENT_INTROSPECT,
        client_id=result.client_id,
        ip=get_client_ip(request),
        outcome=OUTCOME_SUCCESS if result.active else OUTCOME_FAIL,
    )
    return result.to_dict()
