"""
Error taxonomy for the authorization server. Every failure a caller can cause is an OAuthError
with a machine-readable code, the RFC 6749 error string, and an HTTP status.
"""


class OAuthError(Exception):
    code = "OAUTH_ERROR"
    error = "invalid_request"
    status_code = 400
    retryable = False
    default_description = "Invalid request"

    def __init__(self, description: str | None = None):
        self.description = description or self.default_description
        super().__init__(self.description)

    @property
    def public_code(self) -> str:
        return self.code

    @property
    def public_description(self) -> str:
        return self.description

    def to_dict(self) -> dict:
        return {
            "error": self.error,
            "error_code": self.public_code,
            "error_description": self.public_description,
        }


class _ClientAuthenticationError(OAuthError):
    """Unknown client and wrong secret must look the same to the caller."""

    error = "invalid_client"
    status_code = 401
    default_description = "Client authentication failed"

    @property
    def public_code(self) -> str:
        return "INVALID_CLIENT"

    @property
    def public_description(self) -> str:
        return "Client authentication failed"


class ClientNotFound(_ClientAuthenticationError):
    code = "CLIENT_NOT_FOUND"


class InvalidClientSecret(_ClientAuthenticationError):
    code = "INVALID_CLIENT_SECRET"


class ClientInactive(OAuthError):
    code = "CLIENT_INACTIVE"
    error = "unauthorized_client"
    default_description = "Client is inactive"


class InvalidRedirectUri(OAuthError):
    code = "INVALID_REDIRECT_URI"
    error = "invalid_request"
    default_description = "redirect_uri is not registered for this client"


class GrantTypeNotAllowed(OAuthError):
    code = "GRANT_TYPE_NOT_ALLOWED"
    error = "unauthorized_client"
    default_description = "Grant type not allowed for this client"


class InvalidScope(OAuthError):
    code = "INVALID_SCOPE"
    error = "invalid_scope"
    default_description = "Requested scope is not allowed for this client"


class InvalidRequest(OAuthError):
    code = "INVALID_REQUEST"
    error = "invalid_request"


class CodeInvalid(OAuthError):
    code = "CODE_INVALID"
    error = "invalid_grant"
    default_description = "Invalid authorization code"


class CodeExpired(OAuthError):
    code = "CODE_EXPIRED"
    error = "invalid_grant"
    default_description = "Authorization code expired"


class CodeAlreadyUsed(OAuthError):
    code = "CODE_ALREADY_USED"
    error = "invalid_grant"
    default_description = "Authorization code already used"


class PkceVerificationFailed(OAuthError):
    code = "PKCE_VERIFICATION_FAILED"
    error = "invalid_grant"
    default_description = "PKCE verification failed"


class TokenInvalid(OAuthError):
    code = "TOKEN_INVALID"
    error = "invalid_grant"
    default_description = "Invalid token"


class TokenExpired(OAuthError):
    code = "TOKEN_EXPIRED"
    error = "invalid_grant"
    default_description = "Token expired"


class TokenRevoked(OAuthError):
    code = "TOKEN_REVOKED"
    error = "invalid_grant"
    default_description = "Token has been revoked"


class UnsupportedGrantType(OAuthError):
    code = "UNSUPPORTED_GRANT_TYPE"
    error = "unsupported_grant_type"
    default_description = "Unsupported grant type"


class StoreUnavailable(OAuthError):
    """Database or cache timed out or refused the connection. The only retryable error."""

    code = "STORE_UNAVAILABLE"
    error = "temporarily_unavailable"
    status_code = 503
    retryable = True
    default_description = "Backing store unavailable, retry later"
