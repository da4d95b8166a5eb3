"""
Authorization broker state machine.

Downstream (provider role): /authorize, approval read/decision, /token.
Upstream (relying-party role): redirect to the identity provider and /callback.

Lifecycle of one delegation:
  authorize --(no session)--> upstream --callback--> approval --decision--> code --token--> bearer token
  authorize --(session)--------------------------> approval ...
Pending requests and codes live only in the state store; every hop that binds
something new (user, code) writes a fresh opaque id.
"""
import logging
import secrets
from dataclasses import dataclass, replace
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.exc import SQLAlchemyError

from oidc_broker import pkce
from oidc_broker.audit import (
    AuditTrail,
    EVENT_AUTHORIZE,
    EVENT_CODE_ISSUED,
    EVENT_CONSENT_ALLOW,
    EVENT_CONSENT_DENY,
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    EVENT_TOKEN_FAIL,
    EVENT_TOKEN_ISSUED,
    OUTCOME_FAIL,
)
from oidc_broker.clients import ClientRegistry
from oidc_broker.config import SUPPORTED_SCOPES
from oidc_broker.errors import AccountConflictError, ConfigurationError, OAuthError, UpstreamError
from oidc_broker.oauth_store import (
    AuthorizationCode,
    AuthorizationRequest,
    StateStore,
    consume_authorization_code,
    consume_authorization_request,
    get_authorization_request,
    store_authorization_code,
    store_authorization_request,
    store_upstream_refresh_token,
)
from oidc_broker.token_service import TokenService
from oidc_broker.upstream import UpstreamIdentityBroker
from oidc_broker.users import LocalUser, UserLookup, resolve_user

logger = logging.getLogger(__name__)


def with_query(url: str, params: dict) -> str:
    """Add params to url (replacing same-named ones); None values are skipped."""
    params = {k: v for k, v in params.items() if v is not None}
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    return urlunsplit(parts._replace(query=urlencode(kept + list(params.items()))))


@dataclass(frozen=True)
class CallbackResult:
    redirect_url: str
    # Set when the browser has just proven identity; the HTTP layer stores it as the session cookie
    session_token: str | None = None


class AuthorizationOrchestrator:
    def __init__(
        self,
        *,
        tokens: TokenService,
        store: StateStore,
        upstream: UpstreamIdentityBroker,
        users: UserLookup,
        clients: ClientRegistry,
        audit: AuditTrail | None = None,
        approval_path: str = "/oauth/approve",
        home_path: str = "/",
        environment: str = "development",
    ):
        self.tokens = tokens
        self.store = store
        self.upstream = upstream
        self.users = users
        self.clients = clients
        self.audit = audit or AuditTrail()
        self.approval_path = approval_path
        self.home_path = home_path
        self.environment = environment

    @staticmethod
    def _new_id() -> str:
        return secrets.token_urlsafe(32)

    def _approval_url(self, request_id: str) -> str:
        return with_query(self.approval_path, {"request": request_id})

    def session_user_id(self, token: str | None) -> int | None:
        session = self.tokens.verify_token(token) if token else None
        return session["user_id"] if session else None

    # --- provider role: authorization request ---

    def authorize(
        self,
        *,
        client_id: str | None,
        redirect_uri: str | None,
        response_type: str | None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        state: str | None = None,
        session_user_id: int | None = None,
    ) -> str:
        """Validate the request, park it in the store, return where to send the browser."""
        if response_type != "code":
            raise OAuthError("invalid_request", 400, "response_type must be 'code'")
        if not client_id or not redirect_uri:
            raise OAuthError("invalid_request", 400, "client_id and redirect_uri are required")
        if not self.clients.is_allowed(client_id):
            logger.info("authorize rejected: client_id=%s not in allow-list", client_id)
            raise OAuthError("unauthorized_client", 401, "Unknown client_id")
        if code_challenge_method and code_challenge_method not in pkce.SUPPORTED_METHODS:
            raise OAuthError("invalid_request", 400, "code_challenge_method must be S256 or plain")
        if code_challenge_method and not code_challenge:
            raise OAuthError("invalid_request", 400, "code_challenge is required with code_challenge_method")
        if code_challenge and not code_challenge_method:
            # RFC 7636 4.3: absent method means plain
            code_challenge_method = pkce.METHOD_PLAIN

        request = AuthorizationRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge or None,
            code_challenge_method=code_challenge_method or None,
            original_state=state or None,
            user_id=session_user_id,
        )
        request_id = self._new_id()
        store_authorization_request(self.store, request_id, request)
        self.audit.record(EVENT_AUTHORIZE, client_id=client_id, user_id=session_user_id)

        if session_user_id is None:
            # Our request id doubles as the upstream state, binding the two flows
            return self.upstream.authorization_url(request_id)
        return self._approval_url(request_id)

    def login(self, *, session_user_id: int | None = None) -> str:
        """Plain website sign-in: no downstream client, callback lands on the home page."""
        if session_user_id is not None:
            return self.home_path
        request_id = self._new_id()
        store_authorization_request(self.store, request_id, AuthorizationRequest(client_id=None, redirect_uri=None))
        return self.upstream.authorization_url(request_id)

    # --- relying-party role: upstream callback ---

    def _callback_failure(self, pending: AuthorizationRequest, error: str, description: str, status_code: int) -> CallbackResult:
        self.audit.record(EVENT_LOGIN_FAIL, client_id=pending.client_id, outcome=OUTCOME_FAIL)
        if pending.redirect_uri:
            # Forward the caller's own state, never our request id
            url = with_query(
                pending.redirect_uri,
                {"error": error, "error_description": description, "state": pending.original_state},
            )
            return CallbackResult(redirect_url=url)
        raise OAuthError(error, status_code, description)

    def callback(self, *, code: str | None, state: str | None, error: str | None = None) -> CallbackResult:
        if error:
            pending = consume_authorization_request(self.store, state) if state else None
            if pending is None:
                raise OAuthError("invalid_request", 400, "Invalid or expired state")
            logger.info("Upstream returned error=%s for client_id=%s", error, pending.client_id)
            return self._callback_failure(pending, "access_denied", "Sign-in was cancelled at the identity provider", 400)

        if not code or not state:
            raise OAuthError("invalid_request", 400, "code and state are required")

        pending = consume_authorization_request(self.store, state)
        if pending is None:
            raise OAuthError("invalid_request", 400, "Invalid or expired state")

        request_id = None
        try:
            upstream_tokens = self.upstream.exchange_code(code, self.upstream.redirect_uri)
            profile = self.upstream.fetch_profile(upstream_tokens.access_token)
            user = resolve_user(self.users, external_id=profile.external_id, email=profile.email, name=profile.name)
            session_token = self.tokens.mint_token(user.id)
            if upstream_tokens.refresh_token:
                store_upstream_refresh_token(self.store, user.id, upstream_tokens.refresh_token)
            if pending.client_id:
                # Re-store under a new id now that the request is bound to a user
                request_id = self._new_id()
                store_authorization_request(self.store, request_id, replace(pending, user_id=user.id))
        except AccountConflictError as e:
            logger.info("Sign-in refused: %s", e)
            return self._callback_failure(pending, "invalid_grant", str(e), 400)
        except (UpstreamError, ConfigurationError) as e:
            logger.error("OIDC callback failed: %s", e)
            return self._callback_failure(pending, "server_error", "Sign-in with the identity provider failed", 502)
        except SQLAlchemyError as e:
            logger.error("OIDC callback failed on storage: %s", e)
            return self._callback_failure(pending, "server_error", "Sign-in could not be completed", 500)

        self.audit.record(EVENT_LOGIN_OK, client_id=pending.client_id, user_id=user.id)
        if request_id is None:
            return CallbackResult(redirect_url=self.home_path, session_token=session_token)
        return CallbackResult(redirect_url=self._approval_url(request_id), session_token=session_token)

    # --- first-party session API ---

    def session_info(self, *, session_user_id: int | None) -> dict:
        """Always answers: the signed-in user (or None) plus what the web UI needs to start a sign-in."""
        user = self.users.find_by_id(session_user_id) if session_user_id is not None else None
        return {
            "user": user.to_dict() if user else None,
            "config": {"googleClientId": self.upstream.client_id, "environment": self.environment},
        }

    def sign_in_with_upstream_token(self, access_token: str | None) -> tuple[LocalUser, str]:
        """Sign in with an access token the browser already obtained from the upstream provider."""
        if not access_token or not isinstance(access_token, str):
            raise OAuthError("Access token required", 400)
        try:
            profile = self.upstream.fetch_profile(access_token)
            user = resolve_user(self.users, external_id=profile.external_id, email=profile.email, name=profile.name)
        except AccountConflictError as e:
            self.audit.record(EVENT_LOGIN_FAIL, outcome=OUTCOME_FAIL)
            raise OAuthError(str(e), 409)
        except (UpstreamError, SQLAlchemyError) as e:
            logger.error("Token sign-in failed: %s", e)
            self.audit.record(EVENT_LOGIN_FAIL, outcome=OUTCOME_FAIL)
            raise OAuthError("Authentication failed", 500)
        self.audit.record(EVENT_LOGIN_OK, user_id=user.id)
        return user, self.tokens.mint_token(user.id)

    # --- consent ---

    def get_approval_request(self, *, request_id: str | None, session_user_id: int | None) -> dict:
        """What the approval page shows. Never includes the PKCE challenge or redirect URI."""
        if not request_id:
            raise OAuthError("Missing request parameter", 400)
        if session_user_id is None:
            raise OAuthError("Not authenticated", 401)
        request = get_authorization_request(self.store, request_id)
        if request is None:
            raise OAuthError("Invalid or expired request", 404)
        if request.user_id is None or request.user_id != session_user_id:
            raise OAuthError("Forbidden", 403)
        user = self.users.find_by_id(session_user_id)
        if user is None:
            raise OAuthError("User not found", 404)
        return {
            "clientId": request.client_id,
            "clientName": self.clients.display_name(request.client_id),
            "scopes": list(SUPPORTED_SCOPES),
            "user": {"id": user.id, "email": user.email},
        }

    def decision(self, *, request_id: str | None, approved, session_user_id: int | None) -> str:
        """Consume the pending request and return the client redirect (code or access_denied)."""
        if not request_id or not isinstance(request_id, str) or not isinstance(approved, bool):
            raise OAuthError("Invalid request", 400)
        if session_user_id is None:
            raise OAuthError("Not authenticated", 401)
        request = consume_authorization_request(self.store, request_id)
        if request is None:
            raise OAuthError("Invalid or expired request", 404)
        if request.user_id is None or request.user_id != session_user_id:
            logger.warning("Approval decision by user %s for request bound to %s", session_user_id, request.user_id)
            self.audit.record(EVENT_CONSENT_DENY, client_id=request.client_id, user_id=session_user_id, outcome=OUTCOME_FAIL)
            raise OAuthError("Forbidden", 403)
        if not request.client_id or not request.redirect_uri:
            raise OAuthError("invalid_request", 400, "Request is not an authorization request")

        if not approved:
            self.audit.record(EVENT_CONSENT_DENY, client_id=request.client_id, user_id=session_user_id)
            return with_query(
                request.redirect_uri,
                {
                    "error": "access_denied",
                    "error_description": "User denied authorization",
                    "state": request.original_state,
                },
            )

        code = self._new_id()
        store_authorization_code(
            self.store,
            code,
            AuthorizationCode(
                user_id=session_user_id,
                client_id=request.client_id,
                redirect_uri=request.redirect_uri,
                code_challenge=request.code_challenge,
                code_challenge_method=request.code_challenge_method,
            ),
        )
        self.audit.record(EVENT_CONSENT_ALLOW, client_id=request.client_id, user_id=session_user_id)
        self.audit.record(EVENT_CODE_ISSUED, client_id=request.client_id, user_id=session_user_id)
        return with_query(request.redirect_uri, {"code": code, "state": request.original_state})

    # --- token endpoint ---

    def _token_fail(self, client_id: str | None, error: str, description: str, status_code: int = 400) -> OAuthError:
        logger.info("token rejected: client_id=%s error=%s (%s)", client_id, error, description)
        self.audit.record(EVENT_TOKEN_FAIL, client_id=client_id, outcome=OUTCOME_FAIL)
        return OAuthError(error, status_code, description)

    def token(
        self,
        *,
        grant_type: str | None,
        code: str | None,
        code_verifier: str | None,
        redirect_uri: str | None,
        client_id: str | None,
    ) -> dict:
        if grant_type != "authorization_code" or not code or not redirect_uri or not client_id:
            raise self._token_fail(
                client_id,
                "invalid_request",
                "grant_type=authorization_code, code, redirect_uri and client_id are required",
            )
        if not self.clients.is_allowed(client_id):
            raise self._token_fail(client_id, "unauthorized_client", "Unknown client_id", 401)

        # Consumed before any check: a code is spent even when the exchange fails
        entry = consume_authorization_code(self.store, code)
        if entry is None:
            raise self._token_fail(client_id, "invalid_grant", "Invalid or expired authorization code")
        if entry.client_id != client_id:
            raise self._token_fail(client_id, "invalid_grant", "Client mismatch")
        if entry.redirect_uri != redirect_uri:
            raise self._token_fail(client_id, "invalid_grant", "redirect_uri mismatch")
        if entry.code_challenge:
            if not code_verifier:
                raise self._token_fail(client_id, "invalid_request", "code_verifier is required")
            if not pkce.matches(entry.code_challenge, code_verifier, entry.code_challenge_method):
                raise self._token_fail(client_id, "invalid_grant", "PKCE verification failed")

        access_token = self.tokens.mint_token(entry.user_id)
        user = self.users.find_by_id(entry.user_id)
        self.audit.record(EVENT_TOKEN_ISSUED, client_id=client_id, user_id=entry.user_id)
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": self.tokens.ttl_seconds,
            "id_token": access_token,
            "scope": " ".join(SUPPORTED_SCOPES),
            "user": user.to_dict() if user else None,
        }
