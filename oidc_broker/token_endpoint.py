"""
Token endpoint (POST /token). Authorization code exchange for public clients with PKCE.
Accepts application/json or application/x-www-form-urlencoded bodies.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from oidc_broker.dependencies import get_orchestrator
from oidc_broker.orchestrator import AuthorizationOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter()

_TOKEN_FIELDS = ("grant_type", "code", "code_verifier", "redirect_uri", "client_id")

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


async def _read_token_request(request: Request) -> dict[str, str | None]:
    content_type = request.headers.get("content-type", "")
    body: dict = {}
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        body = {k: form.get(k) for k in _TOKEN_FIELDS}
    else:
        # JSON, or no content type: try JSON
        try:
            parsed = await request.json()
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            body = parsed
    return {k: (str(body[k]) if body.get(k) is not None else None) for k in _TOKEN_FIELDS}


@router.post("/token")
async def token(
    request: Request,
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
):
    """
    authorization_code grant: the code is single-use and must match the client_id,
    redirect_uri and PKCE challenge it was issued for.
    """
    fields = await _read_token_request(request)
    result = await run_in_threadpool(
        orchestrator.token,
        grant_type=fields["grant_type"],
        code=fields["code"],
        code_verifier=fields["code_verifier"],
        redirect_uri=fields["redirect_uri"],
        client_id=fields["client_id"],
    )
    return JSONResponse(result, headers=NO_STORE_HEADERS)
