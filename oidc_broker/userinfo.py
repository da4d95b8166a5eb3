"""
OIDC UserInfo endpoint (GET /userinfo). Bearer token or session cookie.
"""
import logging

from fastapi import APIRouter, Depends, Request

from oidc_broker.dependencies import get_orchestrator
from oidc_broker.errors import OAuthError
from oidc_broker.orchestrator import AuthorizationOrchestrator
from oidc_broker.session_cookie import get_request_token

logger = logging.getLogger(__name__)
router = APIRouter()


def _unauthorized(token: str | None, description: str) -> OAuthError:
    # RFC 6750 3: no error code when the request carried no credentials at all
    challenge = 'Bearer error="invalid_token"' if token else "Bearer"
    return OAuthError("invalid_token", 401, description, headers={"WWW-Authenticate": challenge})


@router.get("/userinfo")
def userinfo(request: Request, orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator)):
    """Claims for the token's subject: sub, email, name."""
    token = get_request_token(request)
    user_id = orchestrator.session_user_id(token)
    if user_id is None:
        raise _unauthorized(token, "Invalid or expired token")
    user = orchestrator.users.find_by_id(user_id)
    if user is None:
        raise _unauthorized(token, "User not found")
    return {"sub": str(user.id), "email": user.email, "name": user.name}
