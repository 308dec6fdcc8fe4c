"""
Bearer authentication for routes that sit behind this server (FastAPI dependencies).

Downstream modules depend on Principal only (subject, role, scopes, expiry, client id), never on
the token's claim layout. require_scope() guards a route with a capability check;
require_role() and require_admin() guard it by the role the user signed in with.
"""
import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from oauth_server.errors import TokenExpired, TokenInvalid, TokenRevoked
from oauth_server.server import AuthorizationServer
from oauth_server.tokens import Principal, TokenClaims, has_scope

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

ADMIN_ROLES = ("admin", "superadmin")


def get_server(request: Request) -> AuthorizationServer:
    """The AuthorizationServer wired by create_app()."""
    return request.app.state.server


@dataclass(frozen=True)
class AuthenticatedUser:
    """What the user-authentication collaborator asserts for /oauth/authorize."""

    user_id: str
    role: str = ""


def _unauthorized(description: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "invalid_token", "error_description": description},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden(description: str, error: str = "access_denied") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"error": error, "error_description": description},
    )


def get_bearer_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """Extract Bearer token from Authorization header. Raises 401 if missing or not Bearer."""
    if credentials is None:
        raise _unauthorized("Authorization header missing")
    if credentials.scheme.lower() != "bearer":
        raise _unauthorized("Bearer scheme required")
    return credentials.credentials


def get_claims(
    token: Annotated[str, Depends(get_bearer_token)],
    server: Annotated[AuthorizationServer, Depends(get_server)],
) -> TokenClaims:
    """Dependency: live access token -> claims. StoreUnavailable propagates (503, retryable)."""
    try:
        return server.authenticate_bearer(token)
    except TokenExpired:
        raise _unauthorized("Token expired")
    except TokenRevoked:
        raise _unauthorized("Token has been revoked")
    except TokenInvalid:
        raise _unauthorized("Token verification failed")


def get_principal(claims: Annotated[TokenClaims, Depends(get_claims)]) -> Principal:
    return claims.principal()


def get_current_user(claims: Annotated[TokenClaims, Depends(get_claims)]) -> AuthenticatedUser:
    """Dependency for end-user routes: client-credentials tokens carry no user and are refused."""
    if not claims.user_id:
        raise _unauthorized("User authentication required")
    return AuthenticatedUser(user_id=claims.user_id, role=claims.role)


def require_scope(required: str):
    """Dependency factory: require the given scope in the access token."""

    def _check(principal: Annotated[Principal, Depends(get_principal)]) -> Principal:
        if not has_scope(principal, required):
            raise _forbidden(f"Scope '{required}' required", error="insufficient_scope")
        return principal

    return Depends(_check)


def require_role(*roles: str):
    """Dependency factory: the token's role must be one of roles."""

    def _check(principal: Annotated[Principal, Depends(get_principal)]) -> Principal:
        if not principal.role:
            raise _forbidden("Role information missing")
        if principal.role not in roles:
            logger.info("Role %s refused for subject=%s", principal.role, principal.subject)
            raise _forbidden("Insufficient permissions")
        return principal

    return Depends(_check)


def require_admin():
    return require_role(*ADMIN_ROLES)
