"""
Tests for the HTTP surface: /oauth/authorize, /oauth/token, /oauth/revoke, /oauth/introspect, /health.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from oauth_server.main import create_app
from oauth_server.models import AuditLog, AuthorizationCode
from oauth_server.server import pkce_s256


def _error(r):
    body = r.json()
    return body.get("detail") or body


def _get_code(client, headers, **overrides):
    body = {
        "client_id": "cid-1",
        "redirect_uri": "https://app/cb",
        "scope": "read write",
        "state": "st-1",
        "code_challenge": pkce_s256("abc123"),
        "code_challenge_method": "S256",
    }
    body.update(overrides)
    r = client.post("/oauth/authorize", json=body, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()["code"]


def _token(client, code, **overrides):
    body = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": "https://app/cb",
        "code_verifier": "abc123",
        "client_id": "cid-1",
        "client_secret": "s3cr3t",
    }
    body.update(overrides)
    return client.post("/oauth/token", json=body)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "oauth_server", "cache": True}


def test_health_reports_cache_down(client, cache):
    cache.down = True
    assert client.get("/health").json()["cache"] is False


def test_startup_prunes_expired_codes(app, clock, session_factory):
    codes = app.state.server.codes
    stale = codes.create(client_id="cid-1", user_id="u-1", redirect_uri="https://app/cb", scopes=["read"])
    clock.advance(11 * 60)
    live = codes.create(client_id="cid-1", user_id="u-1", redirect_uri="https://app/cb", scopes=["read"])
    with TestClient(app):
        pass
    with session_factory() as db:
        remaining = db.execute(select(AuthorizationCode.code)).scalars().all()
    assert remaining == [live.code]
    assert stale.code not in remaining


def test_full_code_flow(client, bearer, confidential_client):
    """Authorize, exchange, replay, introspect, revoke, introspect again."""
    r = client.post(
        "/oauth/authorize",
        json={
            "client_id": "cid-1",
            "redirect_uri": "https://app/cb",
            "scope": "read write",
            "state": "st-1",
            "code_challenge": pkce_s256("abc123"),
            "code_challenge_method": "S256",
        },
        headers=bearer("u-1"),
    )
    assert r.status_code == 200
    data = r.json()
    assert data["state"] == "st-1"
    code = data["code"]

    r = _token(client, code)
    assert r.status_code == 200, r.text
    tokens = r.json()
    assert tokens["token_type"] == "Bearer"
    assert tokens["expires_in"] == 3600
    assert tokens["scope"] == "read write"
    assert tokens["access_token"]
    assert tokens["refresh_token"]

    r = _token(client, code)
    assert r.status_code == 400
    assert r.json() == {
        "error": "invalid_grant",
        "error_code": "CODE_ALREADY_USED",
        "error_description": "Authorization code already used",
    }

    r = client.post("/oauth/introspect", json={"token": tokens["access_token"]})
    assert r.status_code == 200
    info = r.json()
    assert info["active"] is True
    assert info["user_id"] == "u-1"
    assert info["client_id"] == "cid-1"
    assert info["scope"] == "read write"

    r = client.post("/oauth/revoke", json={"token": tokens["access_token"], "token_type_hint": "access_token"})
    assert r.status_code == 200
    assert r.json() == {}

    r = client.post("/oauth/introspect", json={"token": tokens["access_token"]})
    assert r.json() == {"active": False}


def test_authorize_requires_signed_in_user(client, confidential_client):
    r = client.post("/oauth/authorize", json={"client_id": "cid-1", "redirect_uri": "https://app/cb"})
    assert r.status_code == 401
    assert _error(r)["error"] == "invalid_token"


def test_authorize_refuses_client_token(client, service_client):
    r = client.post(
        "/oauth/token",
        json={"grant_type": "client_credentials", "client_id": "svc-1", "client_secret": "svc-secret"},
    )
    token = r.json()["access_token"]
    r = client.post(
        "/oauth/authorize",
        json={"client_id": "svc-1", "redirect_uri": "https://svc/cb"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert r.status_code == 401


def test_authorize_rejects_revoked_user_token(client, bearer, confidential_client):
    headers = bearer("u-1")
    client.post("/oauth/revoke", json={"token": headers["Authorization"].split(" ", 1)[1]})
    r = client.post("/oauth/authorize", json={"client_id": "cid-1", "redirect_uri": "https://app/cb"}, headers=headers)
    assert r.status_code == 401
    assert "revoked" in _error(r)["error_description"]


def test_authorize_bad_redirect(client, bearer, confidential_client):
    r = client.post(
        "/oauth/authorize",
        json={"client_id": "cid-1", "redirect_uri": "https://app/cbx"},
        headers=bearer(),
    )
    assert r.status_code == 400
    assert r.json()["error_code"] == "INVALID_REDIRECT_URI"


def test_authorize_only_supports_code_response_type(client, bearer, confidential_client):
    r = client.post(
        "/oauth/authorize",
        json={"client_id": "cid-1", "redirect_uri": "https://app/cb", "response_type": "token"},
        headers=bearer(),
    )
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"
    assert r.json()["error_code"] == "INVALID_REQUEST"


def test_unknown_client_and_wrong_secret_are_indistinguishable(client, confidential_client):
    unknown = client.post(
        "/oauth/token",
        json={"grant_type": "client_credentials", "client_id": "ghost", "client_secret": "s3cr3t"},
    )
    wrong = client.post(
        "/oauth/token",
        json={"grant_type": "client_credentials", "client_id": "cid-1", "client_secret": "wrong"},
    )
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json()
    assert unknown.json()["error"] == "invalid_client"
    assert unknown.json()["error_code"] == "INVALID_CLIENT"
    assert unknown.headers.get("www-authenticate") == "Basic"


def test_client_credentials_over_basic_auth(client, service_client):
    r = client.post("/oauth/token", json={"grant_type": "client_credentials"}, auth=("svc-1", "svc-secret"))
    assert r.status_code == 200, r.text
    data = r.json()
    assert "refresh_token" not in data
    assert data["scope"] == "reports metrics"


def test_refresh_over_basic_auth(client, bearer, confidential_client):
    tokens = _token(client, _get_code(client, bearer())).json()
    r = client.post(
        "/oauth/token",
        json={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
        auth=("cid-1", "s3cr3t"),
    )
    assert r.status_code == 200, r.text
    assert r.json()["scope"] == "read write"


def test_unsupported_grant_type(client, confidential_client):
    r = client.post("/oauth/token", json={"grant_type": "password", "client_id": "cid-1", "client_secret": "s3cr3t"})
    assert r.status_code == 400
    assert r.json()["error"] == "unsupported_grant_type"
    assert r.json()["error_code"] == "UNSUPPORTED_GRANT_TYPE"


def test_pkce_failure_over_http(client, bearer, confidential_client):
    r = _token(client, _get_code(client, bearer()), code_verifier="abc124")
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"
    assert r.json()["error_code"] == "PKCE_VERIFICATION_FAILED"


@pytest.mark.parametrize("token", ["garbage", "a.b.c", ""])
def test_revoke_unusable_token_still_200(client, token):
    r = client.post("/oauth/revoke", json={"token": token})
    assert r.status_code == 200
    assert r.json() == {}


def test_introspect_garbage(client):
    r = client.post("/oauth/introspect", json={"token": "garbage"})
    assert r.status_code == 200
    assert r.json() == {"active": False}


def test_unknown_token_type_hint_is_ignored(client, service_client):
    token = client.post(
        "/oauth/token",
        json={"grant_type": "client_credentials", "client_id": "svc-1", "client_secret": "svc-secret"},
    ).json()["access_token"]

    r = client.post("/oauth/introspect", json={"token": "x", "token_type_hint": "id_token"})
    assert r.status_code == 200
    assert r.json() == {"active": False}
    r = client.post("/oauth/introspect", json={"token": token, "token_type_hint": "id_token"})
    assert r.json()["active"] is True

    r = client.post("/oauth/revoke", json={"token": "x", "token_type_hint": "id_token"})
    assert r.status_code == 200
    assert r.json() == {}
    r = client.post("/oauth/revoke", json={"token": token, "token_type_hint": "id_token"})
    assert r.status_code == 200
    assert client.post("/oauth/introspect", json={"token": token}).json() == {"active": False}


def test_malformed_body_uses_error_shape(client):
    r = client.post("/oauth/token", json={"client_id": "cid-1", "client_secret": "s3cr3t"})
    assert r.status_code == 400
    body = r.json()
    assert set(body) == {"error", "error_code", "error_description"}
    assert body["error"] == "invalid_request"
    assert body["error_code"] == "INVALID_REQUEST"
    assert "grant_type" in body["error_description"]

    r = client.post("/oauth/introspect", json={})
    assert r.status_code == 400
    assert r.json()["error_code"] == "INVALID_REQUEST"


def test_revoke_with_cache_down_is_retryable(client, cache, service_client):
    token = client.post(
        "/oauth/token",
        json={"grant_type": "client_credentials", "client_id": "svc-1", "client_secret": "svc-secret"},
    ).json()["access_token"]
    cache.down = True
    r = client.post("/oauth/revoke", json={"token": token})
    assert r.status_code == 503
    assert r.headers.get("retry-after") == "1"
    assert r.json()["error"] == "temporarily_unavailable"
    assert r.json()["error_code"] == "STORE_UNAVAILABLE"


def test_token_endpoint_rate_limited(make_settings, engine, cache, clock, service_client):
    app = create_app(make_settings(rate_limit_token_per_minute=2), engine=engine, cache=cache, clock=clock)
    body = {"grant_type": "client_credentials", "client_id": "svc-1", "client_secret": "svc-secret"}
    with TestClient(app) as client:
        assert client.post("/oauth/token", json=body).status_code == 200
        assert client.post("/oauth/token", json=body).status_code == 200
        r = client.post("/oauth/token", json=body)
        assert r.status_code == 429
        assert _error(r)["error"] == "slow_down"
        assert int(r.headers["retry-after"]) >= 1
        clock.advance(61)
        assert client.post("/oauth/token", json=body).status_code == 200


def test_rate_limit_lets_requests_through_when_cache_down(make_settings, engine, cache, clock, service_client):
    app = create_app(make_settings(rate_limit_token_per_minute=1), engine=engine, cache=cache, clock=clock)
    body = {"grant_type": "client_credentials", "client_id": "svc-1", "client_secret": "svc-secret"}
    cache.down = True
    with TestClient(app) as client:
        assert client.post("/oauth/token", json=body).status_code == 200
        assert client.post("/oauth/token", json=body).status_code == 200


def test_audit_records_flow_without_tokens(app, client, bearer, session_factory, confidential_client):
    code = _get_code(client, bearer("u-1"))
    tokens = _token(client, code).json()
    _token(client, code)
    client.post("/oauth/revoke", json={"token": tokens["access_token"]})
    app.state.audit.join()

    with session_factory() as db:
        rows = db.execute(select(AuditLog).order_by(AuditLog.id)).scalars().all()
    events = [(r.event_type, r.outcome, r.error_code) for r in rows]
    assert ("code_issued", "success", None) in events
    assert ("token_issued", "success", None) in events
    assert ("token_issued", "fail", "CODE_ALREADY_USED") in events
    assert ("token_revoked", "success", None) in events
    code_row = next(r for r in rows if r.event_type == "code_issued")
    assert code_row.user_id == "u-1"
    assert code_row.client_id == "cid-1"

    secrets_seen = {tokens["access_token"], tokens["refresh_token"], code, "s3cr3t", "abc123"}
    for row in rows:
        for value in (row.event_type, row.client_id, row.user_id, row.ip, row.outcome, row.error_code):
            assert value not in secrets_seen
