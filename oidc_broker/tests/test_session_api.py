"""Tests for the first-party session API (/api/auth/*) and the gated /audit listing."""
from unittest.mock import patch

import httpx

from conftest import MockResponse, session_token_from


# --- /api/auth/session ---


def test_session_signed_out(client):
    r = client.get("/api/auth/session")
    assert r.status_code == 200
    assert r.json() == {
        "user": None,
        "config": {"googleClientId": "google-client-id", "environment": "development"},
    }


def test_session_signed_in(client, make_user, session_headers):
    user = make_user()
    r = client.get("/api/auth/session", headers=session_headers(user.id))
    assert r.status_code == 200
    assert r.json()["user"] == {"id": user.id, "email": "alice@example.com", "name": "Alice"}


def test_session_with_garbage_cookie_is_signed_out(client):
    r = client.get("/api/auth/session", headers={"Cookie": "auth_token=garbage"})
    assert r.status_code == 200
    assert r.json()["user"] is None


def test_session_reports_environment(client, orchestrator):
    orchestrator.environment = "production"
    assert client.get("/api/auth/session").json()["config"]["environment"] == "production"


# --- /api/auth/google ---


def test_google_sign_in_creates_user_and_sets_cookie(client, orchestrator):
    profile = {"id": "google-alice", "email": "alice@example.com", "name": "Alice"}
    with patch("oidc_broker.upstream.httpx.get", return_value=MockResponse(profile)) as get:
        r = client.post("/api/auth/google", json={"access_token": "browser-at"})
    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert data["user"]["email"] == "alice@example.com"
    assert get.call_args.kwargs["headers"]["Authorization"] == "Bearer browser-at"
    token = session_token_from(r)
    assert orchestrator.session_user_id(token) == data["user"]["id"]
    assert orchestrator.users.find_by_external_id("google-alice").id == data["user"]["id"]
    assert orchestrator.audit.recent(event_type="login_ok")[0]["user_id"] == data["user"]["id"]


def test_google_sign_in_cookie_attributes(client):
    profile = {"id": "google-alice", "email": "alice@example.com", "name": "Alice"}
    with patch("oidc_broker.upstream.httpx.get", return_value=MockResponse(profile)):
        r = client.post("/api/auth/google", json={"access_token": "browser-at"})
    cookie = r.headers["set-cookie"].lower()
    assert "httponly" in cookie
    assert "secure" in cookie
    assert "samesite=lax" in cookie


def test_google_sign_in_returning_user(client, make_user):
    user = make_user()
    profile = {"id": "google-alice", "email": "alice@example.com", "name": "Alice"}
    with patch("oidc_broker.upstream.httpx.get", return_value=MockResponse(profile)):
        r = client.post("/api/auth/google", json={"access_token": "browser-at"})
    assert r.status_code == 200
    assert r.json()["user"]["id"] == user.id


def test_google_sign_in_requires_token(client):
    for body in ({}, {"access_token": ""}, {"access_token": 42}, ["browser-at"]):
        r = client.post("/api/auth/google", json=body)
        assert r.status_code == 400
        assert r.json()["error"] == "Access token required"
        assert "set-cookie" not in r.headers


def test_google_sign_in_rejects_non_json(client):
    r = client.post("/api/auth/google", content=b"access_token=x", headers={"Content-Type": "text/plain"})
    assert r.status_code == 400


def test_google_sign_in_upstream_rejects_token(client, orchestrator):
    with patch("oidc_broker.upstream.httpx.get", return_value=MockResponse({"error": "invalid_token"}, 401)):
        r = client.post("/api/auth/google", json={"access_token": "expired-at"})
    assert r.status_code == 500
    assert r.json()["error"] == "Authentication failed"
    assert "set-cookie" not in r.headers
    assert orchestrator.audit.recent(event_type="login_fail")[0]["outcome"] == "fail"


def test_google_sign_in_upstream_unreachable(client):
    with patch("oidc_broker.upstream.httpx.get", side_effect=httpx.ConnectError("refused")):
        r = client.post("/api/auth/google", json={"access_token": "browser-at"})
    assert r.status_code == 500


def test_google_sign_in_email_conflict(client, make_user):
    make_user(email="alice@example.com", external_id="other-provider-id")
    profile = {"id": "google-new", "email": "alice@example.com", "name": "Alice"}
    with patch("oidc_broker.upstream.httpx.get", return_value=MockResponse(profile)):
        r = client.post("/api/auth/google", json={"access_token": "browser-at"})
    assert r.status_code == 409
    assert "already exists" in r.json()["error"]
    assert "set-cookie" not in r.headers


# --- /api/auth/logout ---


def test_api_logout_clears_cookie(client, make_user, session_headers):
    user = make_user()
    r = client.post("/api/auth/logout", headers=session_headers(user.id))
    assert r.status_code == 200
    assert r.json() == {"success": True}
    cookie = r.headers["set-cookie"].lower()
    assert cookie.startswith("auth_token=")
    assert "max-age=0" in cookie


# --- /audit ---


def test_audit_listing_disabled_by_default(client, make_user, session_headers):
    user = make_user()
    r = client.get("/audit", headers=session_headers(user.id))
    assert r.status_code == 404


def test_audit_listing_requires_session(client, orchestrator):
    orchestrator.audit.query_enabled = True
    r = client.get("/audit")
    assert r.status_code == 401


def test_audit_listing_filters(client, orchestrator, make_user, session_headers):
    orchestrator.audit.query_enabled = True
    user = make_user()
    orchestrator.audit.record("authorize", client_id="lrsr-cli")
    orchestrator.audit.record("token_fail", client_id="lrsr-cli", outcome="fail")
    orchestrator.audit.record("authorize", client_id="claude-desktop")
    headers = session_headers(user.id)

    r = client.get("/audit", headers=headers)
    assert r.status_code == 200
    assert [e["event_type"] for e in r.json()] == ["authorize", "token_fail", "authorize"]

    r = client.get("/audit", params={"event_type": "authorize", "client_id": "lrsr-cli"}, headers=headers)
    assert [(e["event_type"], e["client_id"]) for e in r.json()] == [("authorize", "lrsr-cli")]

    r = client.get("/audit", params={"outcome": "fail"}, headers=headers)
    assert [e["event_type"] for e in r.json()] == ["token_fail"]

    r = client.get("/audit", params={"limit": 1}, headers=headers)
    assert len(r.json()) == 1


def test_audit_listing_enabled_from_settings(settings):
    from dataclasses import replace

    from oidc_broker.dependencies import build_orchestrator

    assert build_orchestrator(settings).audit.query_enabled is False
    assert build_orchestrator(replace(settings, audit_endpoint_enabled=True)).audit.query_enabled is True
