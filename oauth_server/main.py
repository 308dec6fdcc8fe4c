"""
OAuth 2.0 authorization server core.
create_app() wires settings, database, cache, codec, ledger, registry and code store into an
AuthorizationServer and mounts the /oauth routes. Run with uvicorn's factory mode.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from oauth_server.audit import AuditQueue
from oauth_server.cache import cache_is_ready, create_cache
from oauth_server.clients import ClientRegistry
from oauth_server.codes import AuthorizationCodeStore
from oauth_server.config import Settings
from oauth_server.database import init_db, make_engine, make_session_factory
from oauth_server.endpoints import router as oauth_router
from oauth_server.errors import InvalidRequest, OAuthError
from oauth_server.rate_limit import RateLimiter
from oauth_server.revocation import RevocationLedger
from oauth_server.seed import seed_from_env
from oauth_server.server import AuthorizationServer
from oauth_server.tokens import Clock, TokenCodec, utc_now

logger = logging.getLogger(__name__)


def build_server(settings: Settings, session_factory, cache, clock: Clock = utc_now) -> AuthorizationServer:
    """Assemble the grant dispatcher from its collaborators."""
    codec = TokenCodec(
        secret=settings.jwt_secret,
        issuer=settings.issuer,
        algorithm=settings.jwt_algorithm,
        leeway_seconds=settings.jwt_leeway_seconds,
        clock=clock,
    )
    ledger = RevocationLedger(cache, clock=clock, fail_open=settings.revocation_fail_open)
    registry = ClientRegistry(session_factory)
    codes = AuthorizationCodeStore(session_factory, ttl_seconds=settings.code_ttl, clock=clock)
    return AuthorizationServer(
        settings=settings,
        session_factory=session_factory,
        codec=codec,
        ledger=ledger,
        registry=registry,
        codes=codes,
        clock=clock,
    )


async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    headers = {"Retry-After": "1"} if exc.retryable else None
    if exc.status_code == 401:
        headers = {"WWW-Authenticate": "Basic"}
    logger.debug("%s %s -> %s (%s)", request.method, request.url.path, exc.code, exc.description)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies get the same error shape as every other failure: 400 invalid_request."""
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return await oauth_error_handler(request, InvalidRequest("; ".join(problems) or None))


def create_app(
    settings: Settings | None = None,
    *,
    engine: Engine | None = None,
    cache=None,
    clock: Clock = utc_now,
) -> FastAPI:
    """Build the application. Configuration errors raise here, before anything is served."""
    settings = settings or Settings.from_env()
    engine = engine or make_engine(settings.database_url, settings.store_timeout_seconds)
    cache = cache if cache is not None else create_cache(settings.redis_url, settings.store_timeout_seconds)
    session_factory = make_session_factory(engine)

    server = build_server(settings, session_factory, cache, clock=clock)
    audit = AuditQueue(session_factory, maxsize=settings.audit_queue_size, workers=settings.audit_workers)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create tables, drop expired codes, seed a client from env, start the audit workers."""
        init_db(engine)
        server.codes.prune_expired()
        seed_from_env(server.registry)
        audit.start()
        try:
            yield
        finally:
            audit.stop()

    app = FastAPI(title="OAuth Server", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.cache = cache
    app.state.server = server
    app.state.audit = audit
    app.state.rate_limiter = RateLimiter(cache, settings.rate_limit_token_per_minute)
    app.add_exception_handler(OAuthError, oauth_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(oauth_router, tags=["oauth"])

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "oauth_server", "cache": cache_is_ready(cache)}

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = Settings.from_env()
    logging.basicConfig(
        level=_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "oauth_server.main:create_app",
        factory=True,
        host="127.0.0.1",
        port=9000,
    )
