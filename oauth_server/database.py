"""
Database engine and sessions. SQLite for development and tests, any SQLAlchemy URL in deployment.
Every connection is opened with a bounded timeout; driver-level failures become StoreUnavailable.
"""
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from oauth_server.errors import StoreUnavailable
from oauth_server.models import Base

logger = logging.getLogger(__name__)


def make_engine(database_url: str, timeout_seconds: float = 3.0) -> Engine:
    """Create an engine whose connects, lock waits and pool checkouts are all bounded."""
    # SQLite: in-memory needs StaticPool so all connections share the same DB (for tests)
    # File-based SQLite needs check_same_thread=False for FastAPI's thread pool
    if database_url.startswith("sqlite:///:memory:") or database_url == "sqlite://":
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
            pool_timeout=timeout_seconds,
        )
    if database_url.startswith("postgresql"):
        statement_ms = int(timeout_seconds * 1000)
        return create_engine(
            database_url,
            connect_args={
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_ms}",
            },
            pool_timeout=timeout_seconds,
            pool_pre_ping=True,
        )
    return create_engine(database_url, pool_timeout=timeout_seconds, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables."""
    Base.metadata.create_all(bind=engine)


@contextmanager
def store_call(session: Session | None = None):
    """Translate connection failures and timeouts into the retryable StoreUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as e:
        if session is not None:
            session.rollback()
        logger.warning("Database call failed: %s", e.__class__.__name__)
        raise StoreUnavailable() from e
