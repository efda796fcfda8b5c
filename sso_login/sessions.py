"""
Local login sessions. The browser holds a random token in a cookie; the server keeps only its hash.
Duration follows the "remember session" setting: a browser-session cookie with a short server-side
lifetime by default, a persistent cookie with an extended lifetime when remembering.
"""
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import Request
from sqlalchemy import delete
from sqlalchemy.orm import Session
from starlette.responses import Response

from sso_login.models import LoginSession, User

logger = logging.getLogger(__name__)

SESSION_COOKIE = "sso_login_session"
DEFAULT_SESSION_SECONDS = 2 * 24 * 3600
REMEMBER_SESSION_SECONDS = 14 * 24 * 3600


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def session_lifetime(remember: bool) -> int:
    return REMEMBER_SESSION_SECONDS if remember else DEFAULT_SESSION_SECONDS


def create_session(db: Session, user_id: int, remember: bool) -> str:
    """Persist a new session and return the raw cookie value."""
    token = secrets.token_urlsafe(32)
    db.add(
        LoginSession(
            token_hash=_hash(token),
            user_id=user_id,
            remember=remember,
            expires_at=_utc_now() + timedelta(seconds=session_lifetime(remember)),
        )
    )
    db.commit()
    return token


def get_session_user(db: Session, token: str | None) -> User | None:
    if not token:
        return None
    row = (
        db.query(LoginSession)
        .filter(LoginSession.token_hash == _hash(token), LoginSession.expires_at > _utc_now())
        .first()
    )
    return row.user if row else None


def current_user(request: Request, db: Session) -> User | None:
    return get_session_user(db, request.cookies.get(SESSION_COOKIE))


def destroy_session(db: Session, token: str | None) -> None:
    if not token:
        return
    db.execute(
        delete(LoginSession)
        .where(LoginSession.token_hash == _hash(token))
        .execution_options(synchronize_session=False)
    )
    db.commit()


def set_session_cookie(response: Response, token: str, remember: bool, secure: bool = False) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        # No max_age: cookie ends with the browser session unless remembering
        max_age=REMEMBER_SESSION_SECONDS if remember else None,
        path="/",
        httponly=True,
        secure=secure,
        samesite="lax",
    )


def clear_session_cookie(response: Response, secure: bool = False) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/", httponly=True, secure=secure, samesite="lax")
