"""
GET /audit: recent audit events as JSON. Disabled unless BROKER_AUDIT_ENDPOINT is set,
and then only for a signed-in browser. No tokens or secrets are ever recorded.
"""
from fastapi import APIRouter, Depends

from oidc_broker.dependencies import get_orchestrator, get_session_user_id
from oidc_broker.errors import OAuthError
from oidc_broker.orchestrator import AuthorizationOrchestrator

router = APIRouter()


@router.get("/audit")
def list_audit_events(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
    session_user_id: int | None = Depends(get_session_user_id),
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
):
    """Most recent first; filter by event_type, outcome or client_id."""
    if not orchestrator.audit.query_enabled:
        raise OAuthError("Not found", 404)
    if session_user_id is None:
        raise OAuthError("Not authenticated", 401)
    return orchestrator.audit.recent(limit=limit, event_type=event_type, outcome=outcome, client_id=client_id)
