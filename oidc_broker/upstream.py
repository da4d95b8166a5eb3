"""
Relying-party side: talk to the upstream identity provider (Google by default).
Build the authorization redirect, exchange the code server-to-server with
confidential-client credentials, and fetch the user profile.
"""
import logging
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from oidc_broker.errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpstreamTokens:
    access_token: str
    refresh_token: str | None = None


@dataclass(frozen=True)
class UpstreamProfile:
    external_id: str
    email: str
    name: str


class UpstreamIdentityBroker:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        authorization_endpoint: str,
        token_endpoint: str,
        userinfo_endpoint: str,
        redirect_uri: str,
        scope: str = "openid email profile",
        timeout: float = 10.0,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.userinfo_endpoint = userinfo_endpoint
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "UpstreamIdentityBroker":
        return cls(
            client_id=settings.upstream_client_id,
            client_secret=settings.upstream_client_secret,
            authorization_endpoint=settings.upstream_authorization_endpoint,
            token_endpoint=settings.upstream_token_endpoint,
            userinfo_endpoint=settings.upstream_userinfo_endpoint,
            redirect_uri=settings.callback_url,
            scope=settings.upstream_scope,
            timeout=settings.upstream_timeout_seconds,
        )

    def authorization_url(self, state: str) -> str:
        """Upstream authorize URL; offline access with forced consent so a refresh token is issued."""
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": self.scope,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str | None = None) -> UpstreamTokens:
        try:
            r = httpx.post(
                self.token_endpoint,
                data={
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri or self.redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error("Upstream token exchange request failed: %s", e)
            raise UpstreamError("Failed to reach upstream token endpoint") from e

        if r.status_code != 200:
            logger.error("Upstream token exchange failed: status=%s body=%s", r.status_code, r.text)
            raise UpstreamError("Failed to exchange authorization code with upstream provider", r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError("Upstream token response is not JSON") from e
        if not isinstance(data, dict):
            raise UpstreamError("Upstream token response is not a JSON object")
        access_token = data.get("access_token")
        if not access_token:
            logger.error("Upstream token response missing access_token")
            raise UpstreamError("Upstream token response missing access_token")
        return UpstreamTokens(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
        )

    def fetch_profile(self, access_token: str) -> UpstreamProfile:
        try:
            r = httpx.get(
                self.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error("Upstream userinfo request failed: %s", e)
            raise UpstreamError("Failed to reach upstream userinfo endpoint") from e

        if r.status_code != 200:
            logger.error("Upstream userinfo failed: status=%s body=%s", r.status_code, r.text)
            raise UpstreamError("Failed to fetch user info from upstream provider", r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError("Upstream userinfo response is not JSON") from e
        if not isinstance(data, dict):
            raise UpstreamError("Upstream userinfo response is not a JSON object")
        # Google v2 userinfo uses "id"; OIDC userinfo uses "sub"
        external_id = data.get("id") or data.get("sub")
        email = data.get("email")
        if not external_id or not email:
            logger.error("Upstream userinfo missing id/email (keys=%s)", sorted(data))
            raise UpstreamError("Upstream userinfo missing id or email")
        return UpstreamProfile(external_id=str(external_id), email=email, name=data.get("name") or "")
