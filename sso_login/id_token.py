"""
ID token validation: signature first, then sub, iss, aud, azp, auth_time and nonce, in that order.
The first failing check raises InvalidIdToken with a short fixed message.
"""
import logging
import time
from typing import Callable

from sso_login.config import Settings
from sso_login.errors import InvalidIdToken
from sso_login.keys import SignatureVerifier, verifier_for

logger = logging.getLogger(__name__)

NonceValidator = Callable[[str | None], bool]


def _audiences(claims: dict) -> list[str]:
    aud = claims.get("aud")
    if aud is None or aud == "" or aud == []:
        return []
    if isinstance(aud, list):
        return [str(a) for a in aud]
    return [str(aud)]


def validate_claims(
    claims: dict,
    *,
    expected_issuer: str,
    expected_audience: str,
    validate_nonce: bool = False,
    max_age: int | None = None,
    nonce_validator: NonceValidator | None = None,
    now: float | None = None,
) -> dict:
    """Run the claim checks on already signature-verified claims. Returns claims unchanged."""
    if not claims.get("sub"):
        raise InvalidIdToken("Missing token sub")

    if "iss" not in claims or claims["iss"] != expected_issuer:
        raise InvalidIdToken("Invalid token iss")

    aud_list = _audiences(claims)
    if not aud_list or expected_audience not in aud_list:
        raise InvalidIdToken("Invalid token aud")

    # azp is only meaningful when several audiences share the token
    if len(aud_list) > 1 and (not claims.get("azp") or claims["azp"] not in aud_list):
        raise InvalidIdToken("Invalid token azp")

    if max_age is not None:
        current = time.time() if now is None else now
        auth_time = claims.get("auth_time")
        try:
            expired = not auth_time or current >= float(auth_time) + max_age
        except (TypeError, ValueError):
            expired = True
        if expired:
            raise InvalidIdToken("Invalid token auth_time")

    if validate_nonce:
        if nonce_validator is None or not nonce_validator(claims.get("nonce")):
            raise InvalidIdToken("Invalid token nonce")

    return claims


def decode_id_token(
    token: str,
    verifier: SignatureVerifier,
    expected_issuer: str,
    expected_audience: str,
    validate_nonce: bool = False,
    max_age: int | None = None,
    nonce_validator: NonceValidator | None = None,
    leeway: int = 0,
) -> dict:
    """Verify and decode an ID token. Never returns claims for a token that fails any check."""
    if not token or not isinstance(token, str):
        raise InvalidIdToken("Missing token")
    claims = verifier.decode(token.strip(), leeway=leeway)
    return validate_claims(
        claims,
        expected_issuer=expected_issuer,
        expected_audience=expected_audience,
        validate_nonce=validate_nonce,
        max_age=max_age,
        nonce_validator=nonce_validator,
    )


class IdTokenValidator:
    """decode_id_token bound to one deployment's verifier, issuer and audience."""

    def __init__(self, verifier: SignatureVerifier, issuer: str, audience: str, leeway: int = 0):
        self.verifier = verifier
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdTokenValidator":
        return cls(
            verifier_for(settings),
            issuer=settings.issuer,
            audience=settings.client_id,
            leeway=settings.jwt_leeway_seconds,
        )

    def decode(
        self,
        token: str,
        validate_nonce: bool = False,
        max_age: int | None = None,
        nonce_validator: NonceValidator | None = None,
    ) -> dict:
        try:
            return decode_id_token(
                token,
                self.verifier,
                self.issuer,
                self.audience,
                validate_nonce=validate_nonce,
                max_age=max_age,
                nonce_validator=nonce_validator,
                leeway=self.leeway,
            )
        except InvalidIdToken as e:
            logger.info("ID token rejected: %s", e.message)
            raise
