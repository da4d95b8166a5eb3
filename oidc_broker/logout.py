"""
POST /logout (and /api/auth/logout): end the broker's browser session. Issued bearer tokens stay valid until expiry.
"""
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from oidc_broker.session_cookie import clear_session_cookie

router = APIRouter()


@router.post("/logout")
@router.post("/api/auth/logout")
def logout():
    response = JSONResponse({"success": True})
    clear_session_cookie(response)
    return response
