"""
Pytest configuration for oauth_server. File-backed SQLite per test (tmp_path) and an in-process
stand-in for the Redis cache, so tests need neither a database server nor Redis.
"""
import os
import threading
from datetime import datetime, timedelta, timezone

import pytest
import redis
from fastapi.testclient import TestClient

# seed_from_env must not pick up a developer's local client during tests
for _name in ("OAUTH_CLIENT_ID", "OAUTH_REDIRECT_URIS", "OAUTH_REDIRECT_URI", "OAUTH_SEED_CLIENT_SECRET"):
    os.environ.pop(_name, None)

from oauth_server.clients import ClientRegistry
from oauth_server.config import Settings
from oauth_server.database import init_db, make_engine, make_session_factory
from oauth_server.main import build_server, create_app
from oauth_server.models import TOKEN_KIND_ACCESS

TEST_SECRET = "test-secret-0123456789abcdef0123456789abcdef"


class FakeClock:
    """Starts at wall time so PyJWT's own iat/nbf checks agree; advance() moves only this clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeCache:
    """
    The subset of redis.Redis the server uses (set/exists/incr/expire/ttl/ping), with TTLs measured
    on the given clock. Set down=True to make every call raise redis.exceptions.ConnectionError.
    """

    def __init__(self, clock=None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._data: dict[str, object] = {}
        self._expiry: dict[str, datetime] = {}
        self._lock = threading.Lock()
        self.down = False

    def _check(self):
        if self.down:
            raise redis.exceptions.ConnectionError("cache down")

    def _purge(self, name):
        deadline = self._expiry.get(name)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(name, None)
            self._expiry.pop(name, None)

    def set(self, name, value, ex=None):
        self._check()
        with self._lock:
            self._data[name] = value
            if ex is not None:
                self._expiry[name] = self._clock() + timedelta(seconds=ex)
            else:
                self._expiry.pop(name, None)
        return True

    def get(self, name):
        self._check()
        with self._lock:
            self._purge(name)
            return self._data.get(name)

    def exists(self, *names):
        self._check()
        with self._lock:
            count = 0
            for name in names:
                self._purge(name)
                count += name in self._data
            return count

    def incr(self, name, amount=1):
        self._check()
        with self._lock:
            self._purge(name)
            value = int(self._data.get(name, 0)) + amount
            self._data[name] = value
            return value

    def expire(self, name, time):
        self._check()
        with self._lock:
            if name not in self._data:
                return False
            self._expiry[name] = self._clock() + timedelta(seconds=time)
            return True

    def ttl(self, name):
        self._check()
        with self._lock:
            self._purge(name)
            if name not in self._data:
                return -2
            deadline = self._expiry.get(name)
            if deadline is None:
                return -1
            return int((deadline - self._clock()).total_seconds())

    def ping(self):
        self._check()
        return True

    def remaining(self, name) -> int | None:
        """Seconds until name expires (test helper, not part of the Redis API)."""
        deadline = self._expiry.get(name)
        if deadline is None:
            return None
        return int(round((deadline - self._clock()).total_seconds()))


def _settings(**overrides) -> Settings:
    values = {
        "jwt_secret": TEST_SECRET,
        "issuer": "test-issuer",
        "database_url": "sqlite://",
        "rate_limit_token_per_minute": 0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return FakeCache(clock)


@pytest.fixture
def make_settings():
    """Settings with test defaults; keyword arguments override."""
    return _settings


@pytest.fixture
def settings():
    return _settings()


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'oauth.db'}", timeout_seconds=30)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def registry(session_factory):
    return ClientRegistry(session_factory)


@pytest.fixture
def server(settings, session_factory, cache, clock):
    return build_server(settings, session_factory, cache, clock=clock)


@pytest.fixture
def confidential_client(registry):
    """cid-1: confidential, secret s3cr3t, code + refresh grants, redirect https://app/cb."""
    client, _ = registry.register(
        name="App One",
        redirect_uris=["https://app/cb"],
        scopes=["read", "write"],
        grant_types=["authorization_code", "refresh_token"],
        client_id="cid-1",
        client_secret="s3cr3t",
    )
    return client


@pytest.fixture
def public_client(registry):
    client, _ = registry.register(
        name="Mobile",
        redirect_uris=["com.example.app:/cb"],
        scopes=["read"],
        grant_types=["authorization_code", "refresh_token"],
        is_public=True,
        client_id="mobile-1",
    )
    return client


@pytest.fixture
def service_client(registry):
    client, _ = registry.register(
        name="Batch job",
        redirect_uris=[],
        scopes=["reports", "metrics"],
        grant_types=["client_credentials"],
        client_id="svc-1",
        client_secret="svc-secret",
    )
    return client


@pytest.fixture
def app(settings, engine, cache, clock):
    return create_app(settings, engine=engine, cache=cache, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def bearer(server):
    """Authorization header for an end user signed in through the first-party login app."""

    def _bearer(user_id="u-1", role="user") -> dict:
        token, _ = server.codec.issue(
            subject=user_id,
            client_id="login",
            role=role,
            scopes=[],
            kind=TOKEN_KIND_ACCESS,
            ttl=300,
            user_id=user_id,
        )
        return {"Authorization": f"Bearer {token}"}

    return _bearer
