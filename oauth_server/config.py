"""
OAuth server configuration. Values come from the environment; nothing secret lives in this file.
Settings.from_env() validates at startup so a bad deployment fails before serving requests.
"""
import logging
import os
import secrets
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")

# HMAC keys shorter than this are rejected (RFC 7518 §3.2 asks for >= hash size)
MIN_SECRET_BYTES = 32


class ConfigError(Exception):
    """Raised at startup for configuration that cannot work."""


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    jwt_secret: str
    environment: str = "development"
    issuer: str = "oauth-server"
    jwt_algorithm: str = "HS256"
    # Seconds of clock skew tolerated by the JWT library on nbf/iat
    jwt_leeway_seconds: int = 0

    access_token_ttl: int = 3600
    refresh_token_ttl: int = 30 * 24 * 3600
    code_ttl: int = 600

    database_url: str = "sqlite:///./oauth_server.db"
    redis_url: str = "redis://localhost:6379/0"
    # Bound on every database/cache call
    store_timeout_seconds: float = 3.0

    # Ledger lookup errors count as "not revoked" (availability over instant revocation)
    revocation_fail_open: bool = True
    # Revoke the presented refresh token when the refresh grant issues a new pair
    refresh_token_rotation: bool = False

    rate_limit_token_per_minute: int = 60
    audit_queue_size: int = 1000
    audit_workers: int = 2
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate(self) -> None:
        if not self.jwt_secret:
            raise ConfigError("JWT_SECRET is required")
        if len(self.jwt_secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ConfigError(f"JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes")
        if self.jwt_algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigError(
                f"JWT_ALGORITHM must be one of {', '.join(SUPPORTED_ALGORITHMS)}, got {self.jwt_algorithm!r}"
            )
        for name in ("access_token_ttl", "refresh_token_ttl", "code_ttl"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.store_timeout_seconds <= 0:
            raise ConfigError("store_timeout_seconds must be positive")
        if self.audit_queue_size <= 0 or self.audit_workers <= 0:
            raise ConfigError("audit_queue_size and audit_workers must be positive")

    @classmethod
    def from_env(cls) -> "Settings":
        environment = os.environ.get("APP_ENV", "development").strip().lower()
        secret = os.environ.get("JWT_SECRET", "")
        if not secret:
            if environment == "production":
                raise ConfigError("JWT_SECRET is required in production")
            # Tokens signed with this secret do not survive a restart
            secret = secrets.token_urlsafe(48)
            logger.warning("JWT_SECRET not set; using a random per-process secret (%s)", environment)
        return cls(
            jwt_secret=secret,
            environment=environment,
            issuer=os.environ.get("JWT_ISSUER", "oauth-server"),
            jwt_algorithm=os.environ.get("JWT_ALGORITHM", "HS256").strip().upper(),
            jwt_leeway_seconds=_env_int("JWT_LEEWAY_SECONDS", 0),
            access_token_ttl=_env_int("OAUTH_ACCESS_TOKEN_EXPIRY", 3600),
            refresh_token_ttl=_env_int("OAUTH_REFRESH_TOKEN_EXPIRY", 30 * 24 * 3600),
            code_ttl=_env_int("OAUTH_CODE_EXPIRY", 600),
            database_url=os.environ.get("AUTH_DATABASE_URL", "sqlite:///./oauth_server.db"),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
            store_timeout_seconds=_env_float("STORE_TIMEOUT_SECONDS", 3.0),
            revocation_fail_open=_env_bool("REVOCATION_FAIL_OPEN", True),
            refresh_token_rotation=_env_bool("REFRESH_TOKEN_ROTATION", False),
            rate_limit_token_per_minute=_env_int("RATE_LIMIT_TOKEN_PER_MINUTE", 60),
            audit_queue_size=_env_int("AUDIT_QUEUE_SIZE", 1000),
            audit_workers=_env_int("AUDIT_WORKERS", 2),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
