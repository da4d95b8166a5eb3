"""
Well-known endpoints: JWKS and OpenID Connect discovery.
"""
from fastapi import APIRouter, Depends

from oidc_broker import pkce
from oidc_broker.config import SIGNING_ALGORITHM, SUPPORTED_SCOPES
from oidc_broker.dependencies import get_orchestrator
from oidc_broker.orchestrator import AuthorizationOrchestrator

router = APIRouter()


@router.get("/.well-known/jwks.json")
def jwks_json(orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator)):
    """JSON Web Key Set for token signature verification."""
    return orchestrator.tokens.get_jwks()


@router.get("/.well-known/openid-configuration")
def openid_configuration(orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator)):
    """OpenID Connect discovery document."""
    issuer = orchestrator.tokens.issuer
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "userinfo_endpoint": f"{issuer}/userinfo",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "code_challenge_methods_supported": list(pkce.SUPPORTED_METHODS),
        "token_endpoint_auth_methods_supported": ["none"],
        "scopes_supported": list(SUPPORTED_SCOPES),
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
    }
