"""
Audit trail for login events and the operational error log for aborted logins.
Security-relevant events only; no tokens, secrets or full profiles.
"""
import logging

from fastapi import Request
from sqlalchemy.orm import Session

from sso_login.models import AuditLog, ErrorLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_NEW_USER = "login_new_user"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_VERIFICATION_REQUIRED = "verification_required"
EVENT_LOGOUT = "logout"
EVENT_IDENTITY_DELETED = "identity_deleted"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (e.g. request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    user_id: int | None = None,
    subject: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record."""
    db.add(
        AuditLog(
            event_type=event_type,
            user_id=user_id,
            subject=subject,
            ip=ip,
            outcome=outcome,
        )
    )
    db.commit()


def log_error(db: Session, section: str, code: str, message: str) -> None:
    """Write to the operational error log and the application log."""
    logger.error("%s [%s]: %s", section, code, message)
    try:
        db.add(ErrorLog(section=section, code=str(code)[:64], message=message))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning("Could not persist error log entry: %s", e)
