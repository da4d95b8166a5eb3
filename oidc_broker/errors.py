"""
Broker exceptions. OAuthError carries a standard OAuth2 error code (or a plain
message for the cookie-authenticated approval endpoints) and the HTTP status.
"""


class ConfigurationError(RuntimeError):
    """Required configuration (keys, issuer, upstream credentials) is missing or unusable."""


class UpstreamError(RuntimeError):
    """The upstream identity provider rejected a call or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AccountConflictError(Exception):
    """Upstream email already belongs to a different local account."""


class OAuthError(Exception):
    def __init__(
        self,
        error: str,
        status_code: int = 400,
        description: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(description or error)
        self.error = error
        self.status_code = status_code
        self.description = description
        self.headers = headers or {}

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body
