"""
Identity resolver: external subject <-> local user account.
Lookups, account creation (or joining an existing account by verified email), profile sync and
explicit mapping removal. Subject uniqueness is enforced by the identity_mappings table, not here.
"""
import json
import logging
import re
import secrets
from datetime import datetime, timezone

import bcrypt
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from sso_login.config import Settings
from sso_login.errors import (
    CouldNotCreateUser,
    DuplicateIdentity,
    EmailNotVerified,
    RegistrationNotEnabled,
)
from sso_login.hooks import Abort, LoginHooks
from sso_login.models import IdentityMapping, User

logger = logging.getLogger(__name__)

# Priority order for the description backfill
DESCRIPTION_CLAIMS = ("headline", "description", "bio", "about")

_USERNAME_RE = re.compile(r"[^A-Za-z0-9_.@-]")


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def strategy_of(subject: str | None) -> str:
    """'google-oauth2|123' -> 'google-oauth2'."""
    return (subject or "").split("|", 1)[0]


def description_from(userinfo: dict) -> str | None:
    for claim in DESCRIPTION_CLAIMS:
        value = userinfo.get(claim)
        if value:
            return str(value)
    return None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UsersRepo:
    def __init__(self, db: Session, settings: Settings, hooks: LoginHooks | None = None):
        self.db = db
        self.settings = settings
        self.hooks = hooks or LoginHooks()

    # --- lookups ---

    def get_user(self, user_id: int) -> User | None:
        return self.db.query(User).filter(User.id == user_id).first()

    def find(self, subject: str | None) -> User | None:
        if not subject:
            return None
        mapping = self.db.query(IdentityMapping).filter(IdentityMapping.subject == subject).first()
        return mapping.user if mapping else None

    def find_for_profile(self, userinfo: dict) -> User | None:
        """
        Linked identities are tried in the order the provider lists them; the first that maps to a
        local user wins. Without identities, the subject is looked up directly.
        """
        identities = userinfo.get("identities")
        if isinstance(identities, list) and identities:
            for identity in identities:
                if not isinstance(identity, dict):
                    continue
                subject = f"{identity.get('provider')}|{identity.get('user_id')}"
                user = self.find(subject)
                if user is not None:
                    logger.debug("Resolved linked identity %s to user %s", subject, user.id)
                    return user
            return None
        return self.find(userinfo.get("sub"))

    def mapping_for(self, user_id: int) -> IdentityMapping | None:
        return self.db.query(IdentityMapping).filter(IdentityMapping.user_id == user_id).first()

    def profile_for(self, user_id: int) -> dict | None:
        mapping = self.mapping_for(user_id)
        return mapping.get_profile() if mapping else None

    # --- email policy ---

    def strategy_skips_verified_email(self, strategy: str) -> bool:
        return strategy in self.settings.skip_strategies

    def email_verification_enforced(self, userinfo: dict) -> bool:
        return self.settings.requires_verified_email and not self.strategy_skips_verified_email(
            strategy_of(userinfo.get("sub"))
        )

    # --- writes ---

    def create(self, userinfo: dict, id_token: str | None = None, access_token: str | None = None) -> int:
        """
        Create a local account for a first-time subject, or join an existing account that has the
        same verified email. Returns the local user id.
        """
        subject = userinfo.get("sub")
        if not subject:
            raise CouldNotCreateUser("Missing subject")
        email = userinfo.get("email") or None
        skips_verification = self.strategy_skips_verified_email(strategy_of(subject))

        join_user = self.db.query(User).filter(User.email == email).first() if email else None
        if join_user is not None:
            if not userinfo.get("email_verified") and not skips_verification:
                raise EmailNotVerified(userinfo)
            existing = self.mapping_for(join_user.id)
            if existing is not None and existing.subject != subject:
                raise CouldNotCreateUser("There is a user with the same email")
            self._insert_mapping(join_user.id, userinfo)
            logger.info("Joined subject %s to existing user %s by email", subject, join_user.id)
            return join_user.id

        if not (self.settings.registration_enabled or self.settings.auto_provisioning):
            raise RegistrationNotEnabled("Registration is not enabled")

        verdict = self.hooks.run_should_create_user(userinfo)
        if isinstance(verdict, Abort):
            raise CouldNotCreateUser(verdict.message)
        if verdict is False:
            raise CouldNotCreateUser("Could not create user. The registration process was rejected.")

        user = User(
            username=self._unique_username(userinfo),
            password_hash=hash_password(secrets.token_urlsafe(24)),
            email=email,
            display_name=userinfo.get("name") or userinfo.get("nickname"),
            first_name=userinfo.get("given_name"),
            last_name=userinfo.get("family_name"),
            description=description_from(userinfo),
        )
        try:
            self.db.add(user)
            self.db.flush()
            self.db.add(self._new_mapping(user.id, userinfo))
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if self.find(subject) is not None:
                raise DuplicateIdentity(f"Subject {subject} was linked by a concurrent login")
            raise CouldNotCreateUser(f"Could not create user: {e.orig}")
        user_id = user.id
        logger.info("Created user %s for subject %s", user_id, subject)
        self.hooks.notify_user_created(user_id, userinfo)
        return user_id

    def update_local_user(self, user: User, userinfo: dict) -> None:
        """Follow a provider-side email change; backfill an empty description."""
        email = userinfo.get("email")
        if not email or user.email == email:
            return
        try:
            user.email = email
            if not user.description:
                user.description = description_from(userinfo)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Could not update email for user %s: %s", user.id, e)

    def update(self, user_id: int, userinfo: dict) -> None:
        """Sync the stored profile for a login. Best-effort: failures are logged only."""
        try:
            mapping = self.mapping_for(user_id)
            if mapping is None:
                self.db.add(self._new_mapping(user_id, userinfo))
            else:
                mapping.subject = userinfo.get("sub") or mapping.subject
                mapping.profile = _dump_profile(userinfo)
                mapping.last_update = _now()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Profile sync failed for user %s: %s", user_id, e)

    def delete_mapping(self, user_id: int) -> bool:
        mapping = self.mapping_for(user_id)
        if mapping is None:
            return False
        self.db.delete(mapping)
        self.db.commit()
        logger.info("Deleted identity mapping for user %s", user_id)
        return True

    # --- helpers ---

    def _new_mapping(self, user_id: int, userinfo: dict) -> IdentityMapping:
        return IdentityMapping(
            user_id=user_id,
            subject=userinfo["sub"],
            profile=_dump_profile(userinfo),
            last_update=_now(),
        )

    def _insert_mapping(self, user_id: int, userinfo: dict) -> None:
        try:
            self.db.add(self._new_mapping(user_id, userinfo))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateIdentity(f"Subject {userinfo['sub']} is already linked")

    def _unique_username(self, userinfo: dict) -> str:
        candidates = [
            userinfo.get("username"),
            userinfo.get("nickname"),
            (userinfo.get("email") or "").split("@")[0],
            userinfo.get("name"),
            userinfo.get("sub"),
        ]
        base = ""
        for candidate in candidates:
            base = _USERNAME_RE.sub("", str(candidate or ""))[:60]
            if base:
                break
        if not base:
            base = "user"
        username = base
        while self.db.query(User.id).filter(User.username == username).first() is not None:
            username = f"{base}{secrets.randbelow(10000)}"
        return username


def _dump_profile(userinfo: dict) -> str:
    return json.dumps(userinfo, default=str)
