"""Tests for PKCE challenge computation and matching."""
import hashlib
import re
from base64 import urlsafe_b64encode

import pytest

from oidc_broker.pkce import challenge_from, matches, sha256_base64url


def test_sha256_base64url_rfc7636_appendix_b():
    # RFC 7636 Appendix B test vector
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert sha256_base64url(verifier.encode("ascii")) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_sha256_base64url_has_no_padding():
    value = sha256_base64url(b"verifier-abc")
    assert "=" not in value
    assert len(value) == 43
    assert re.match(r"^[A-Za-z0-9_-]+$", value)


def test_challenge_from_s256():
    expected = urlsafe_b64encode(hashlib.sha256(b"verifier-abc").digest()).rstrip(b"=").decode("ascii")
    assert challenge_from("verifier-abc", "S256") == expected


def test_challenge_from_plain_returns_verifier():
    assert challenge_from("verifier-abc", "plain") == "verifier-abc"


def test_challenge_from_unknown_method():
    with pytest.raises(ValueError):
        challenge_from("verifier-abc", "S512")


def test_matches_s256():
    challenge = challenge_from("verifier-abc", "S256")
    assert matches(challenge, "verifier-abc", "S256") is True
    assert matches(challenge, "verifier-xyz", "S256") is False


def test_matches_plain():
    assert matches("verifier-abc", "verifier-abc", "plain") is True
    assert matches("verifier-abc", "other", "plain") is False


def test_matches_uses_stored_method():
    """An S256-bound challenge cannot be satisfied by sending the challenge itself as a plain verifier."""
    challenge = challenge_from("verifier-abc", "S256")
    assert matches(challenge, challenge, "S256") is False


def test_matches_rejects_missing_or_unknown_method():
    assert matches("abc", "abc", None) is False
    assert matches("abc", "abc", "S512") is False


def test_matches_non_ascii_verifier():
    assert matches("abc", "ábc", "S256") is False


def test_matches_non_ascii_plain_verifier():
    assert matches("abc", "ábc", "plain") is False
