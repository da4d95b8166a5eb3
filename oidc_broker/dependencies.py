"""
Wiring: build the orchestrator and its collaborators from Settings, and the
FastAPI dependencies that hand them to the routers.
"""
import logging
import threading

from fastapi import Depends, Request

from oidc_broker.audit import AuditTrail
from oidc_broker.clients import ClientRegistry
from oidc_broker.config import Settings, load_settings
from oidc_broker.database import create_db_engine, create_session_factory, init_db
from oidc_broker.oauth_store import MemoryStateStore, SqlStateStore
from oidc_broker.orchestrator import AuthorizationOrchestrator
from oidc_broker.session_cookie import get_session_token
from oidc_broker.token_service import TokenService
from oidc_broker.upstream import UpstreamIdentityBroker
from oidc_broker.users import SqlUserLookup

logger = logging.getLogger(__name__)

_build_lock = threading.Lock()


def build_orchestrator(settings: Settings) -> AuthorizationOrchestrator:
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    if settings.state_store == "memory":
        store = MemoryStateStore(purge_every=settings.state_purge_every)
    else:
        store = SqlStateStore(session_factory, purge_every=settings.state_purge_every)
    store.purge_expired()

    logger.info(
        "Broker configured: issuer=%s state_store=%s (%d live records) allowed_clients=%d",
        settings.issuer,
        settings.state_store,
        store.count(),
        len(settings.allowed_client_ids),
    )
    if not settings.allowed_client_ids:
        logger.warning("OIDC_ALLOWED_CLIENT_IDS is empty; every client will be rejected")

    return AuthorizationOrchestrator(
        tokens=TokenService.from_settings(settings),
        store=store,
        upstream=UpstreamIdentityBroker.from_settings(settings),
        users=SqlUserLookup(session_factory),
        clients=ClientRegistry(settings.allowed_client_ids, settings.client_names),
        audit=AuditTrail(session_factory, query_enabled=settings.audit_endpoint_enabled),
        approval_path=settings.approval_path,
        home_path=settings.home_path,
        environment=settings.environment,
    )


def get_orchestrator(request: Request) -> AuthorizationOrchestrator:
    """The app-wide orchestrator; built on first use when lifespan did not run (e.g. bare TestClient)."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        with _build_lock:
            orchestrator = getattr(request.app.state, "orchestrator", None)
            if orchestrator is None:
                orchestrator = build_orchestrator(load_settings())
                request.app.state.orchestrator = orchestrator
    return orchestrator


def get_session_user_id(
    request: Request,
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
) -> int | None:
    """User id from a valid session cookie, else None."""
    return orchestrator.session_user_id(get_session_token(request))
