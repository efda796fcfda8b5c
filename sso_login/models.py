"""
SQLAlchemy models: local users, identity mappings, single-use CSRF tokens, login sessions, audit and error log.
"""
import json
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    # Random password for provider-created accounts; local password login is not offered
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class IdentityMapping(Base):
    """
    Local user <-> external subject. Both sides are UNIQUE so concurrent first logins for the same
    subject cannot both commit.
    """
    __tablename__ = "identity_mappings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), unique=True, nullable=False)
    subject: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    profile: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # JSON string
    last_update: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, nullable=False)

    user: Mapped["User"] = relationship("User", backref="identity_mappings")

    def get_profile(self) -> dict:
        return json.loads(self.profile or "{}")


class CsrfToken(Base):
    """Server-held half of a state or nonce value; the other half lives in a cookie."""
    __tablename__ = "csrf_tokens"
    __table_args__ = (UniqueConstraint("kind", "value", name="uq_csrf_kind_value"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # state | nonce | resend
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    # Set for tokens that authorize an action on one subject only (resend)
    subject: Mapped[str | None] = mapped_column(String(512), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class LoginSession(Base):
    __tablename__ = "login_sessions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    # sha256 of the cookie value; the raw value is never stored
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    remember: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    user: Mapped["User"] = relationship("User", backref="login_sessions")


class AuditLog(Base):
    """Security-relevant login events. No tokens stored."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(nullable=True)  # None = anonymous
    subject: Mapped[str | None] = mapped_column(String(512), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail


class ErrorLog(Base):
    """Operational error log for aborted logins and failed provider calls."""
    __tablename__ = "error_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    section: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
