"""
Pytest configuration for oidc_broker. Fresh ES256 key pair per run, in-memory SQLite,
and env set before any app module reads it.
"""
import json
import os
from contextlib import contextmanager
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient


def _generate_pem_pair() -> tuple[str, str]:
    key = ec.generate_private_key(ec.SECP256R1())
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


_PRIVATE_PEM, _PUBLIC_PEM = _generate_pem_pair()

os.environ.update(
    {
        "OIDC_ISSUER": "https://issuer.test",
        "OIDC_AUDIENCE": "lrsr-api",
        "OIDC_KEY_ID": "test-key",
        "OIDC_PRIVATE_KEY": _PRIVATE_PEM,
        "OIDC_PUBLIC_KEY": _PUBLIC_PEM,
        "OIDC_ALLOWED_CLIENT_IDS": '["lrsr-cli", "claude-desktop"]',
        "UPSTREAM_CLIENT_ID": "google-client-id",
        "UPSTREAM_CLIENT_SECRET": "google-client-secret",
        "BROKER_DATABASE_URL": "sqlite:///:memory:",
        "BROKER_STATE_STORE": "sql",
    }
)
for _var in (
    "OIDC_PRIVATE_KEY_PATH",
    "OIDC_PUBLIC_KEY_PATH",
    "OIDC_CLIENT_NAMES",
    "UPSTREAM_TOKEN_ENDPOINT",
    "ENVIRONMENT",
    "BROKER_AUDIT_ENDPOINT",
    "BROKER_STATE_PURGE_EVERY",
):
    os.environ.pop(_var, None)


@pytest.fixture
def pem_pair():
    return _PRIVATE_PEM, _PUBLIC_PEM


@pytest.fixture
def settings():
    from oidc_broker.config import load_settings

    return load_settings()


@pytest.fixture
def orchestrator(settings):
    """Fresh orchestrator; each build gets its own in-memory database."""
    from oidc_broker.dependencies import build_orchestrator

    return build_orchestrator(settings)


@pytest.fixture
def client(orchestrator):
    from oidc_broker.main import app

    app.state.orchestrator = orchestrator
    yield TestClient(app)
    app.state.orchestrator = None


@pytest.fixture
def make_user(orchestrator):
    def _make(email: str = "alice@example.com", external_id: str = "google-alice", name: str = "Alice"):
        return orchestrator.users.create(external_id=external_id, email=email, name=name)

    return _make


@pytest.fixture
def session_headers(orchestrator):
    """Cookie header for a signed-in browser (the cookie is Secure, so TestClient's jar won't send it over http)."""

    def _headers(user_id: int) -> dict:
        return {"Cookie": f"auth_token={orchestrator.tokens.mint_token(user_id)}"}

    return _headers


CLI_REDIRECT_URI = "http://127.0.0.1:8765/callback"
CLI_VERIFIER = "verifier-abc"


class MockResponse:
    def __init__(self, data, status_code: int = 200):
        self._data = data
        self.status_code = status_code
        self.text = json.dumps(data)

    def json(self):
        return self._data


def query_of(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def session_token_from(response) -> str:
    """Value of the auth_token cookie from a Set-Cookie header."""
    for header in response.headers.get_list("set-cookie"):
        name, _, rest = header.partition("=")
        if name.strip() == "auth_token":
            return rest.split(";", 1)[0]
    raise AssertionError("no auth_token cookie set")


@pytest.fixture
def upstream():
    """Patch the upstream token exchange and userinfo calls."""

    @contextmanager
    def _upstream(profile=None, token_response=None, token_status=200):
        token_data = token_response or {"access_token": "upstream-at", "refresh_token": "upstream-rt", "expires_in": 3599}
        profile_data = profile or {"id": "google-alice", "email": "alice@example.com", "name": "Alice"}
        with patch("oidc_broker.upstream.httpx.post", return_value=MockResponse(token_data, token_status)), patch(
            "oidc_broker.upstream.httpx.get", return_value=MockResponse(profile_data)
        ):
            yield

    return _upstream


@pytest.fixture
def authorize_params():
    from oidc_broker.pkce import challenge_from

    return {
        "response_type": "code",
        "client_id": "lrsr-cli",
        "redirect_uri": CLI_REDIRECT_URI,
        "state": "client-state-xyz",
        "code_challenge": challenge_from(CLI_VERIFIER, "S256"),
        "code_challenge_method": "S256",
    }


@pytest.fixture
def consent_request(client, upstream, authorize_params):
    """Drive /authorize and /callback for a browser with no session; returns (request_id, session headers)."""

    def _run(params=None, profile=None):
        r = client.get("/authorize", params={**authorize_params, **(params or {})}, follow_redirects=False)
        assert r.status_code == 302
        state = query_of(r.headers["location"])["state"]
        with upstream(profile=profile):
            r = client.get("/callback", params={"code": "upstream-code", "state": state}, follow_redirects=False)
        assert r.status_code == 302
        request_id = query_of(r.headers["location"])["request"]
        return request_id, {"Cookie": f"auth_token={session_token_from(r)}"}

    return _run
