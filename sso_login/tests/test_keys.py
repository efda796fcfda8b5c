"""Tests for RS256 verification against a tenant JWKS and algorithm pinning."""
import hashlib
import hmac
import json
import time
from dataclasses import replace
from unittest.mock import patch

import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key
from jwt.utils import base64url_encode

from sso_login.errors import ConfigurationError, InvalidIdToken
from sso_login.keys import HS256Verifier, RS256Verifier, reset_jwks_clients, verifier_for

JWKS_URI = "https://tenant.example.com/.well-known/jwks.json"


def _int_to_b64url(value: int) -> str:
    length = (value.bit_length() + 7) // 8
    return base64url_encode(value.to_bytes(length, "big")).decode("utf-8")


def _make_key_and_jwks(kid="test-key"):
    key = generate_private_key(65537, 2048, default_backend())
    pub = key.public_key().public_numbers()
    jwk = {"kty": "RSA", "kid": kid, "alg": "RS256", "use": "sig", "n": _int_to_b64url(pub.n), "e": _int_to_b64url(pub.e)}
    return key, {"keys": [jwk]}


def _serve_jwks(jwks: dict):
    """Answer JWKS fetches from memory."""
    return patch.object(jwt.PyJWKClient, "fetch_data", autospec=True, return_value=jwks)


def _rs_token(key, kid="test-key", **claims):
    now = int(time.time())
    payload = {"sub": "auth0|alice", "iat": now, "exp": now + 300}
    payload.update(claims)
    return jwt.encode(payload, key, algorithm="RS256", headers={"kid": kid})


def _hs_token_with_raw_key(secret: bytes, kid: str, claims: dict) -> str:
    # Signed by hand: PyJWT refuses asymmetric key material as an HMAC secret
    header = base64url_encode(json.dumps({"alg": "HS256", "typ": "JWT", "kid": kid}).encode("utf-8"))
    payload = base64url_encode(json.dumps(claims).encode("utf-8"))
    signing_input = header + b"." + payload
    signature = base64url_encode(hmac.new(secret, signing_input, hashlib.sha256).digest())
    return (signing_input + b"." + signature).decode("ascii")


@pytest.fixture(autouse=True)
def _fresh_jwks():
    reset_jwks_clients()
    yield
    reset_jwks_clients()


def test_rs256_token_verified_with_jwks_key():
    key, jwks = _make_key_and_jwks()
    with _serve_jwks(jwks) as fetch:
        claims = RS256Verifier(JWKS_URI).decode(_rs_token(key))
    assert claims["sub"] == "auth0|alice"
    assert fetch.called


def test_rs256_unknown_kid_rejected():
    key, jwks = _make_key_and_jwks()
    with _serve_jwks(jwks) as fetch, pytest.raises(InvalidIdToken) as exc:
        RS256Verifier(JWKS_URI).decode(_rs_token(key, kid="rotated-away"))
    assert fetch.called
    assert "Could not resolve signing key" in exc.value.message


def test_rs256_token_signed_by_other_key_rejected():
    _, jwks = _make_key_and_jwks()
    other_key, _ = _make_key_and_jwks()
    with _serve_jwks(jwks) as fetch, pytest.raises(InvalidIdToken) as exc:
        RS256Verifier(JWKS_URI).decode(_rs_token(other_key))
    assert fetch.called
    assert "Signature verification failed" in exc.value.message


def test_rs256_verifier_refuses_hs256_token():
    key, jwks = _make_key_and_jwks()
    pem = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    # HMAC-signed with the public key as secret: classic algorithm confusion
    token = _hs_token_with_raw_key(pem, "test-key", {"sub": "auth0|mallory"})
    with _serve_jwks(jwks) as fetch, pytest.raises(InvalidIdToken):
        RS256Verifier(JWKS_URI).decode(token)
    assert fetch.called


def test_hs256_verifier_refuses_rs256_token():
    key, _ = _make_key_and_jwks()
    with pytest.raises(InvalidIdToken):
        HS256Verifier("hs-secret-0123456789abcdef-0123456789").decode(_rs_token(key))


def test_jwks_fetch_failure_is_invalid_token():
    key, _ = _make_key_and_jwks()
    failure = jwt.PyJWKClientConnectionError("Fail to fetch data from the url, err: connection refused")
    with patch.object(jwt.PyJWKClient, "fetch_data", side_effect=failure), pytest.raises(InvalidIdToken) as exc:
        RS256Verifier(JWKS_URI).decode(_rs_token(key))
    assert "Could not resolve signing key" in exc.value.message


def test_verifier_for_pins_configured_algorithm(settings):
    assert isinstance(verifier_for(settings), HS256Verifier)
    rs = verifier_for(replace(settings, signing_algorithm="RS256"))
    assert isinstance(rs, RS256Verifier)
    assert rs.jwks_uri == JWKS_URI
    assert rs.cache_seconds == settings.cache_expiration_minutes * 60


def test_verifier_for_rejects_unknown_algorithm(settings):
    with pytest.raises(ConfigurationError):
        verifier_for(replace(settings, signing_algorithm="none"))


def test_hs256_requires_secret():
    with pytest.raises(ConfigurationError):
        HS256Verifier("")
