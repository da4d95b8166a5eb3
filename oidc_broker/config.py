"""
Broker configuration. Read once from the environment at startup.
No secrets in this file; key material and upstream credentials come from env (or PEM files).
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from oidc_broker.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Access token lifetime (seconds). Long-lived: the CLI and desktop agent keep it for a month.
ACCESS_TOKEN_TTL_SECONDS = 30 * 24 * 60 * 60

# Ephemeral record lifetimes (seconds)
AUTH_REQUEST_TTL_SECONDS = 5 * 60
AUTH_CODE_TTL_SECONDS = 5 * 60
UPSTREAM_REFRESH_TOKEN_TTL_SECONDS = 90 * 24 * 60 * 60
# Expired ephemeral records are deleted once every this many writes
STATE_PURGE_EVERY_WRITES = 100

# Scopes presented on the approval page and advertised in discovery
SUPPORTED_SCOPES = ["openid", "profile", "email"]

SIGNING_ALGORITHM = "ES256"

GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"

DEFAULT_CLIENT_NAMES = {
    "lrsr-cli": "UserTests CLI",
    "claude-desktop": "Claude Desktop",
}


@dataclass(frozen=True)
class Settings:
    issuer: str
    audience: str
    key_id: str
    private_key_pem: str
    public_key_pem: str
    upstream_client_id: str
    upstream_client_secret: str
    allowed_client_ids: tuple[str, ...] = ()
    client_names: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CLIENT_NAMES))
    upstream_authorization_endpoint: str = GOOGLE_AUTHORIZATION_ENDPOINT
    upstream_token_endpoint: str = GOOGLE_TOKEN_ENDPOINT
    upstream_userinfo_endpoint: str = GOOGLE_USERINFO_ENDPOINT
    upstream_scope: str = "openid email profile"
    upstream_timeout_seconds: float = 10.0
    database_url: str = "sqlite:///./oidc_broker.db"
    state_store: str = "sql"
    approval_path: str = "/oauth/approve"
    home_path: str = "/"
    log_level: str = "INFO"
    environment: str = "development"
    audit_endpoint_enabled: bool = False
    state_purge_every: int = STATE_PURGE_EVERY_WRITES

    @property
    def callback_url(self) -> str:
        """Where the upstream provider sends the browser back to (our /callback)."""
        return f"{self.issuer}/callback"


def _read_env(name: str) -> str:
    return os.environ.get(name, "").strip()


def _read_pem(value_var: str, path_var: str) -> str:
    """PEM from the env var itself, or from the file named by the *_PATH variant."""
    value = os.environ.get(value_var, "").strip()
    if value:
        # Single-line secrets often carry literal \n sequences
        return value.replace("\\n", "\n")
    path = _read_env(path_var)
    if not path:
        return ""
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"{path_var} points to a missing file: {path}")
    return p.read_text()


def parse_allowed_client_ids(raw: str | None) -> tuple[str, ...]:
    """
    Parse OIDC_ALLOWED_CLIENT_IDS (JSON array of strings).
    Anything unparsable yields an empty allow-list, which denies every client.
    """
    if not raw or not raw.strip():
        return ()
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        logger.warning("Failed to parse OIDC_ALLOWED_CLIENT_IDS: %s", e)
        return ()
    if not isinstance(parsed, list):
        logger.warning("OIDC_ALLOWED_CLIENT_IDS must be a JSON array of strings")
        return ()
    return tuple(v for v in parsed if isinstance(v, str) and v)


def parse_client_names(raw: str | None) -> dict[str, str]:
    names = dict(DEFAULT_CLIENT_NAMES)
    if not raw or not raw.strip():
        return names
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        logger.warning("Failed to parse OIDC_CLIENT_NAMES: %s", e)
        return names
    if isinstance(parsed, dict):
        names.update({str(k): str(v) for k, v in parsed.items()})
    return names


def load_settings() -> Settings:
    """
    Build and validate Settings from the environment.
    Raises ConfigurationError naming every missing required variable.
    """
    required = {
        "OIDC_ISSUER": _read_env("OIDC_ISSUER").rstrip("/"),
        "OIDC_AUDIENCE": _read_env("OIDC_AUDIENCE"),
        "OIDC_KEY_ID": _read_env("OIDC_KEY_ID"),
        "OIDC_PRIVATE_KEY": _read_pem("OIDC_PRIVATE_KEY", "OIDC_PRIVATE_KEY_PATH"),
        "OIDC_PUBLIC_KEY": _read_pem("OIDC_PUBLIC_KEY", "OIDC_PUBLIC_KEY_PATH"),
        "UPSTREAM_CLIENT_ID": _read_env("UPSTREAM_CLIENT_ID"),
        "UPSTREAM_CLIENT_SECRET": _read_env("UPSTREAM_CLIENT_SECRET"),
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise ConfigurationError(f"Missing required env var(s): {', '.join(missing)}")

    state_store = (_read_env("BROKER_STATE_STORE") or "sql").lower()
    if state_store not in ("sql", "memory"):
        raise ConfigurationError("BROKER_STATE_STORE must be 'sql' or 'memory'")

    try:
        timeout = float(_read_env("UPSTREAM_TIMEOUT_SECONDS") or "10")
    except ValueError:
        raise ConfigurationError("UPSTREAM_TIMEOUT_SECONDS must be a number")

    try:
        purge_every = int(_read_env("BROKER_STATE_PURGE_EVERY") or STATE_PURGE_EVERY_WRITES)
    except ValueError:
        raise ConfigurationError("BROKER_STATE_PURGE_EVERY must be an integer")
    if purge_every < 1:
        raise ConfigurationError("BROKER_STATE_PURGE_EVERY must be at least 1")

    return Settings(
        issuer=required["OIDC_ISSUER"],
        audience=required["OIDC_AUDIENCE"],
        key_id=required["OIDC_KEY_ID"],
        private_key_pem=required["OIDC_PRIVATE_KEY"],
        public_key_pem=required["OIDC_PUBLIC_KEY"],
        upstream_client_id=required["UPSTREAM_CLIENT_ID"],
        upstream_client_secret=required["UPSTREAM_CLIENT_SECRET"],
        allowed_client_ids=parse_allowed_client_ids(os.environ.get("OIDC_ALLOWED_CLIENT_IDS")),
        client_names=parse_client_names(os.environ.get("OIDC_CLIENT_NAMES")),
        upstream_authorization_endpoint=_read_env("UPSTREAM_AUTHORIZATION_ENDPOINT") or GOOGLE_AUTHORIZATION_ENDPOINT,
        upstream_token_endpoint=_read_env("UPSTREAM_TOKEN_ENDPOINT") or GOOGLE_TOKEN_ENDPOINT,
        upstream_userinfo_endpoint=_read_env("UPSTREAM_USERINFO_ENDPOINT") or GOOGLE_USERINFO_ENDPOINT,
        upstream_scope=_read_env("UPSTREAM_SCOPE") or "openid email profile",
        upstream_timeout_seconds=timeout,
        database_url=_read_env("BROKER_DATABASE_URL") or "sqlite:///./oidc_broker.db",
        state_store=state_store,
        approval_path=_read_env("BROKER_APPROVAL_PATH") or "/oauth/approve",
        home_path=_read_env("BROKER_HOME_PATH") or "/",
        log_level=(_read_env("LOG_LEVEL") or "INFO").upper(),
        environment=_read_env("ENVIRONMENT") or "development",
        audit_endpoint_enabled=_read_env("BROKER_AUDIT_ENDPOINT").lower() in ("1", "true", "yes"),
        state_purge_every=purge_every,
    )
