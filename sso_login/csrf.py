"""
Single-use state and nonce tokens for CSRF and replay protection.
Each token is stored twice: in a short-lived cookie and as a server-held row. A callback value is
accepted only when it matches the cookie and the row can be deleted in one statement, so a replayed
or duplicated callback fails even if it races the first delivery.
"""
import base64
import binascii
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.orm import Session
from starlette.responses import Response

from sso_login.config import Settings
from sso_login.models import CsrfToken

logger = logging.getLogger(__name__)

STATE_COOKIE = "sso_login_state"
NONCE_COOKIE = "sso_login_nonce"

KIND_STATE = "state"
KIND_NONCE = "nonce"


def _utc_now() -> datetime:
    # Naive UTC: compared inside SQL, where DateTime columns carry no zone
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_token() -> str:
    """Random URL-safe value (256 bits)."""
    return secrets.token_urlsafe(32)


def encode_state(state: dict) -> str:
    """Serialize the state envelope {interim, nonce, redirect_to} as base64(JSON)."""
    return base64.b64encode(json.dumps(state, separators=(",", ":")).encode("utf-8")).decode("ascii")


def decode_state(value: str | None) -> dict | None:
    """Decode a state envelope; None if it is not base64(JSON object)."""
    if not value:
        return None
    raw = value.strip()
    try:
        padded = raw + "=" * (-len(raw) % 4)
        if "-" in raw or "_" in raw:
            decoded = base64.urlsafe_b64decode(padded)
        else:
            decoded = base64.b64decode(padded)
        data = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


class CsrfTokenStore:
    """Issues, cookie-binds and validates one kind of single-use token."""

    def __init__(
        self,
        db: Session,
        kind: str,
        cookie_name: str,
        ttl_seconds: int = 600,
        *,
        secure: bool = False,
        samesite: str = "lax",
    ):
        self.db = db
        self.kind = kind
        self.cookie_name = cookie_name
        self.ttl_seconds = ttl_seconds
        self.secure = secure
        self.samesite = samesite

    @classmethod
    def for_state(cls, db: Session, settings: Settings) -> "CsrfTokenStore":
        return cls(db, KIND_STATE, STATE_COOKIE, settings.state_ttl_seconds, **_cookie_policy(settings))

    @classmethod
    def for_nonce(cls, db: Session, settings: Settings) -> "CsrfTokenStore":
        return cls(db, KIND_NONCE, NONCE_COOKIE, settings.state_ttl_seconds, **_cookie_policy(settings))

    def issue(self, subject: str | None = None) -> str:
        """
        Create and persist a new token. The caller binds it to the response cookie. A token issued
        for a subject only validates for that same subject.
        """
        self._purge_expired()
        token = generate_token()
        self.db.add(
            CsrfToken(
                kind=self.kind,
                value=token,
                subject=subject,
                expires_at=_utc_now() + timedelta(seconds=self.ttl_seconds),
            )
        )
        self.db.commit()
        return token

    def consume(self, token: str, subject: str | None = None) -> bool:
        """Atomically delete the server-held record. True for exactly one caller per token."""
        stmt = (
            delete(CsrfToken)
            .where(
                CsrfToken.kind == self.kind,
                CsrfToken.value == token,
                (CsrfToken.subject == subject) if subject is not None else CsrfToken.subject.is_(None),
                CsrfToken.expires_at > _utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount == 1

    def validate(self, token: str | None, cookie_value: str | None, subject: str | None = None) -> bool:
        """
        True only if token equals the cookie-bound value and has not been used or expired.
        Any failure here is a CSRF failure for the caller.
        """
        # Values decoded from JSON can be any type
        token = token if isinstance(token, str) else None
        cookie_value = cookie_value if isinstance(cookie_value, str) else None
        if not token or not cookie_value:
            logger.info("%s validation failed: missing %s", self.kind, "value" if not token else "cookie")
            return False
        if not hmac.compare_digest(token.encode("utf-8"), cookie_value.encode("utf-8")):
            logger.info("%s validation failed: cookie mismatch", self.kind)
            return False
        if not self.consume(token, subject):
            logger.info("%s validation failed: unknown, expired or already used", self.kind)
            return False
        return True

    def bind_to_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            self.cookie_name,
            token,
            max_age=self.ttl_seconds,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite=self.samesite,
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            self.cookie_name, path="/", httponly=True, secure=self.secure, samesite=self.samesite
        )

    def _purge_expired(self) -> None:
        self.db.execute(
            delete(CsrfToken)
            .where(CsrfToken.expires_at <= _utc_now())
            .execution_options(synchronize_session=False)
        )


def _cookie_policy(settings: Settings) -> dict:
    # form_post callbacks are cross-site POSTs; Lax cookies would not be sent with them
    if settings.implicit_flow:
        return {"secure": True, "samesite": "none"}
    return {"secure": settings.cookie_secure, "samesite": "lax"}
