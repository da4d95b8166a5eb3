"""
PKCE (RFC 7636) challenge computation and verification. S256 and plain.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode

METHOD_S256 = "S256"
METHOD_PLAIN = "plain"
SUPPORTED_METHODS = (METHOD_S256, METHOD_PLAIN)


def sha256_base64url(data: bytes) -> str:
    """base64url(SHA-256(data)) without padding."""
    digest = hashlib.sha256(data).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def challenge_from(verifier: str, method: str) -> str:
    if method == METHOD_S256:
        return sha256_base64url(verifier.encode("ascii"))
    if method == METHOD_PLAIN:
        return verifier
    raise ValueError(f"Unsupported code_challenge_method: {method}")


def matches(stored_challenge: str, verifier: str, method: str | None) -> bool:
    """
    Recompute the challenge from the verifier with the method bound at issuance
    and compare against the stored challenge.
    """
    if method not in SUPPORTED_METHODS:
        return False
    try:
        computed = challenge_from(verifier, method).encode("ascii")
    except UnicodeEncodeError:
        # Verifiers are ASCII by definition
        return False
    return secrets.compare_digest(computed, stored_challenge.encode("ascii", "replace"))
