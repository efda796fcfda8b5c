"""
Signature verification keys for ID tokens.
The algorithm is fixed when a verifier is built from configuration: an HS256 verifier only ever
accepts HS256 with the client secret, an RS256 verifier only RS256 with a key from the tenant JWKS.
"""
import base64
import binascii
import logging
import threading

import jwt
from jwt import PyJWKClient

from sso_login.config import Settings
from sso_login.errors import ConfigurationError, InvalidIdToken

logger = logging.getLogger(__name__)

# Process-wide JWKS clients keyed by URI; PyJWKClient caches the JWK set for `lifespan` seconds
_jwks_clients: dict[str, PyJWKClient] = {}
_jwks_lock = threading.Lock()


def get_jwks_client(uri: str, lifespan: int, timeout: float) -> PyJWKClient:
    with _jwks_lock:
        client = _jwks_clients.get(uri)
        if client is None:
            client = PyJWKClient(
                uri=uri,
                cache_jwk_set=True,
                lifespan=max(lifespan, 1),
                timeout=int(max(timeout, 1)),
            )
            _jwks_clients[uri] = client
        return client


def reset_jwks_clients() -> None:
    """Drop cached JWKS clients so the next verification refetches (tests, key rotation)."""
    with _jwks_lock:
        _jwks_clients.clear()


class SignatureVerifier:
    algorithm: str = ""

    def key_for(self, token: str):
        raise NotImplementedError

    def decode(self, token: str, leeway: int = 0) -> dict:
        """
        Verify signature (and exp/iat/nbf when present). Claim checks are done by the caller.
        Raises InvalidIdToken on any failure.
        """
        key = self.key_for(token)
        try:
            return jwt.decode(
                token,
                key,
                algorithms=[self.algorithm],
                leeway=leeway,
                options={"verify_aud": False, "verify_iss": False},
            )
        except jwt.InvalidTokenError as e:
            raise InvalidIdToken(str(e))


class HS256Verifier(SignatureVerifier):
    algorithm = "HS256"

    def __init__(self, secret: str, b64_encoded: bool = False):
        if not secret:
            raise ConfigurationError("Client secret is required for HS256")
        if b64_encoded:
            try:
                padded = secret + "=" * (-len(secret) % 4)
                self._key = base64.urlsafe_b64decode(padded.encode("ascii"))
            except (binascii.Error, ValueError) as e:
                raise ConfigurationError(f"Client secret is not valid base64: {e}")
        else:
            self._key = secret.encode("utf-8")

    def key_for(self, token: str):
        return self._key


class RS256Verifier(SignatureVerifier):
    algorithm = "RS256"

    def __init__(self, jwks_uri: str, cache_seconds: int = 86400, timeout: float = 10.0):
        self.jwks_uri = jwks_uri
        self.cache_seconds = cache_seconds
        self.timeout = timeout

    def key_for(self, token: str):
        client = get_jwks_client(self.jwks_uri, self.cache_seconds, self.timeout)
        try:
            return client.get_signing_key_from_jwt(token).key
        except jwt.PyJWKClientError as e:
            logger.warning("JWKS key resolution failed for %s: %s", self.jwks_uri, e)
            raise InvalidIdToken(f"Could not resolve signing key: {e}")
        except jwt.InvalidTokenError as e:
            raise InvalidIdToken(str(e))


def verifier_for(settings: Settings) -> SignatureVerifier:
    """Build the one verifier this deployment accepts."""
    if settings.signing_algorithm == "HS256":
        return HS256Verifier(settings.client_secret, settings.client_secret_b64_encoded)
    if settings.signing_algorithm == "RS256":
        return RS256Verifier(
            settings.jwks_uri,
            cache_seconds=settings.cache_expiration_minutes * 60,
            timeout=settings.http_timeout_seconds,
        )
    raise ConfigurationError(f"Unsupported signing algorithm: {settings.signing_algorithm}")
