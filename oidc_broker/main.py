"""
OIDC authorization broker: provider to downstream clients, relying party to the upstream IdP.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from oidc_broker.audit_api import router as audit_router
from oidc_broker.authorize import router as authorize_router
from oidc_broker.config import load_settings
from oidc_broker.dependencies import build_orchestrator
from oidc_broker.errors import ConfigurationError, OAuthError
from oidc_broker.logout import router as logout_router
from oidc_broker.session_api import router as session_router
from oidc_broker.token_endpoint import router as token_router
from oidc_broker.userinfo import router as userinfo_router
from oidc_broker.well_known import router as well_known_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate settings, create tables and load the signing keys on startup."""
    if getattr(app.state, "orchestrator", None) is None:
        settings = load_settings()
        orchestrator = build_orchestrator(settings)
        orchestrator.tokens.load_keys()
        app.state.orchestrator = orchestrator
    yield


app = FastAPI(title="OIDC Broker", version="0.1.0", lifespan=lifespan)
app.include_router(authorize_router, tags=["authorize"])
app.include_router(token_router, tags=["token"])
app.include_router(userinfo_router, tags=["userinfo"])
app.include_router(logout_router, tags=["session"])
app.include_router(session_router, tags=["session"])
app.include_router(well_known_router, tags=["well-known"])
app.include_router(audit_router, tags=["audit"])


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers={"Cache-Control": "no-store", **exc.headers})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error("Configuration error while handling %s: %s", request.url.path, exc)
    return JSONResponse({"error": "server_error"}, status_code=500)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "oidc_broker"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=load_settings().log_level)
    uvicorn.run(
        "oidc_broker.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
