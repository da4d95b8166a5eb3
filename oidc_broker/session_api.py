"""
First-party session API for the broker's own web UI:
GET /api/auth/session and POST /api/auth/google (logout lives in logout.py).
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from oidc_broker.dependencies import get_orchestrator, get_session_user_id
from oidc_broker.errors import OAuthError
from oidc_broker.orchestrator import AuthorizationOrchestrator
from oidc_broker.session_cookie import set_session_cookie

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth")


@router.get("/session")
def session(
    session_user_id: int | None = Depends(get_session_user_id),
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
):
    """Always 200: {"user": {...} | null, "config": {"googleClientId", "environment"}}."""
    return orchestrator.session_info(session_user_id=session_user_id)


@router.post("/google")
async def google_sign_in(
    request: Request,
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
):
    """Body: {"access_token": str} from the upstream provider. Sets the session cookie."""
    try:
        body = await request.json()
    except ValueError:
        raise OAuthError("Access token required", 400)
    access_token = body.get("access_token") if isinstance(body, dict) else None
    user, token = await run_in_threadpool(orchestrator.sign_in_with_upstream_token, access_token)
    response = JSONResponse({"success": True, "user": user.to_dict()})
    set_session_cookie(response, token, max_age=orchestrator.tokens.ttl_seconds)
    return response
