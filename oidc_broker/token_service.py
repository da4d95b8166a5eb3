"""
ES256 bearer tokens: signing, verification and JWKS publication.
Key material is configured externally (PEM); it is imported once on first use and cached.
The broker never generates or rotates keys.
"""
import logging
import threading
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from oidc_broker.config import ACCESS_TOKEN_TTL_SECONDS, SIGNING_ALGORITHM
from oidc_broker.errors import ConfigurationError

logger = logging.getLogger(__name__)

_COORDINATE_BYTES = 32  # P-256


def _b64url_uint(value: int) -> str:
    return urlsafe_b64encode(value.to_bytes(_COORDINATE_BYTES, "big")).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key: ec.EllipticCurvePublicKey, kid: str) -> dict:
    """Export a P-256 public key as a JWK annotated for signature verification."""
    numbers = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "x": _b64url_uint(numbers.x),
        "y": _b64url_uint(numbers.y),
        "use": "sig",
        "alg": SIGNING_ALGORITHM,
        "kid": kid,
    }


def _check_curve(key, label: str) -> None:
    if not isinstance(key.curve, ec.SECP256R1):
        raise ConfigurationError(f"{label} must be a P-256 key for {SIGNING_ALGORITHM}")


def load_private_key(pem: str) -> ec.EllipticCurvePrivateKey:
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"OIDC_PRIVATE_KEY is not a usable PEM private key: {e}") from e
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ConfigurationError("OIDC_PRIVATE_KEY must be an EC private key")
    _check_curve(key, "OIDC_PRIVATE_KEY")
    return key


def load_public_key(pem: str) -> ec.EllipticCurvePublicKey:
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"OIDC_PUBLIC_KEY is not a usable PEM public key: {e}") from e
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise ConfigurationError("OIDC_PUBLIC_KEY must be an EC public key")
    _check_curve(key, "OIDC_PUBLIC_KEY")
    return key


class TokenService:
    def __init__(
        self,
        *,
        private_key_pem: str | None,
        public_key_pem: str | None,
        key_id: str | None,
        audience: str | None,
        issuer: str | None,
        ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS,
    ):
        self._private_key_pem = private_key_pem
        self._public_key_pem = public_key_pem
        self._key_id = key_id
        self._audience = audience
        self._issuer = issuer
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._signing_key = None
        self._verification_key = None
        self._jwks = None

    @classmethod
    def from_settings(cls, settings) -> "TokenService":
        return cls(
            private_key_pem=settings.private_key_pem,
            public_key_pem=settings.public_key_pem,
            key_id=settings.key_id,
            audience=settings.audience,
            issuer=settings.issuer,
        )

    @staticmethod
    def _require(value: str | None, label: str) -> str:
        if not value or not value.strip():
            raise ConfigurationError(f"Missing required configuration: {label}")
        return value

    @property
    def issuer(self) -> str:
        return self._require(self._issuer, "OIDC_ISSUER")

    @property
    def audience(self) -> str:
        return self._require(self._audience, "OIDC_AUDIENCE")

    @property
    def key_id(self) -> str:
        return self._require(self._key_id, "OIDC_KEY_ID")

    def _get_signing_key(self) -> ec.EllipticCurvePrivateKey:
        if self._signing_key is None:
            with self._lock:
                if self._signing_key is None:
                    self._signing_key = load_private_key(self._require(self._private_key_pem, "OIDC_PRIVATE_KEY"))
        return self._signing_key

    def _get_verification_key(self) -> ec.EllipticCurvePublicKey:
        if self._verification_key is None:
            with self._lock:
                if self._verification_key is None:
                    self._verification_key = load_public_key(self._require(self._public_key_pem, "OIDC_PUBLIC_KEY"))
        return self._verification_key

    def load_keys(self) -> None:
        """Import both keys now instead of on first use."""
        self._get_signing_key()
        self._get_verification_key()

    def mint_token(self, user_id: int) -> str:
        """Signed bearer token whose subject is the local user id."""
        now = datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "sub": str(user_id),
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.ttl_seconds)).timestamp()),
        }
        return jwt.encode(
            payload,
            self._get_signing_key(),
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": self.key_id, "typ": "JWT"},
        )

    def verify_token(self, token: str | None) -> dict | None:
        """
        Return {"user_id": int} for a valid token, None otherwise.
        Bad signature, wrong issuer/audience, expiry and non-numeric subjects all collapse to None.
        """
        if not token:
            return None
        public_key = self._get_verification_key()
        try:
            payload = jwt.decode(
                token,
                public_key,
                algorithms=[SIGNING_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.InvalidTokenError as e:
            logger.debug("Token rejected: %s", e)
            return None
        try:
            user_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            return None
        return {"user_id": user_id}

    def get_jwks(self) -> dict:
        if self._jwks is None:
            jwk = public_key_to_jwk(self._get_verification_key(), self.key_id)
            self._jwks = {"keys": [jwk]}
        return self._jwks
