"""
Browser-facing endpoints: GET /authorize, GET /login, GET /callback (upstream redirect target),
GET /authorize/request and POST /authorize/decision (approval UI backend).
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse

from oidc_broker.dependencies import get_orchestrator, get_session_user_id
from oidc_broker.errors import OAuthError
from oidc_broker.orchestrator import AuthorizationOrchestrator
from oidc_broker.session_cookie import set_session_cookie

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/authorize")
def authorize(
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    session_user_id: int | None = Depends(get_session_user_id),
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
):
    """
    OAuth2 authorization endpoint. Validation errors are JSON (400/401).
    No session: 302 to the upstream provider. Session: 302 to the local approval page.
    """
    url = orchestrator.authorize(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        state=state,
        session_user_id=session_user_id,
    )
    return RedirectResponse(url=url, status_code=302)


@router.get("/login")
def login(
    session_user_id: int | None = Depends(get_session_user_id),
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
):
    """Plain website sign-in through the upstream provider."""
    return RedirectResponse(url=orchestrator.login(session_user_id=session_user_id), status_code=302)


@router.get("/callback")
def callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
):
    """Upstream redirect target. Sets the session cookie on successful sign-in."""
    result = orchestrator.callback(code=code, state=state, error=error)
    response = RedirectResponse(url=result.redirect_url, status_code=302)
    if result.session_token:
        set_session_cookie(response, result.session_token, max_age=orchestrator.tokens.ttl_seconds)
    return response


@router.get("/authorize/request")
def approval_request(
    request: str | None = None,
    session_user_id: int | None = Depends(get_session_user_id),
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
):
    """Client metadata for the approval page. Cookie-authenticated; the request must be bound to this user."""
    return orchestrator.get_approval_request(request_id=request, session_user_id=session_user_id)


@router.post("/authorize/decision")
async def approval_decision(
    request: Request,
    session_user_id: int | None = Depends(get_session_user_id),
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
):
    """Body: {"requestId": str, "approved": bool}. Returns {"redirectUrl": ...} for the UI to follow."""
    try:
        body = await request.json()
    except ValueError:
        raise OAuthError("Invalid request", 400)
    if not isinstance(body, dict):
        raise OAuthError("Invalid request", 400)
    redirect_url = await run_in_threadpool(
        orchestrator.decision,
        request_id=body.get("requestId"),
        approved=body.get("approved"),
        session_user_id=session_user_id,
    )
    return JSONResponse({"redirectUrl": redirect_url})
