"""
Extension points for the login flow.

Policy hooks (before_login, resolve_local_user, should_create_user) run in registration order and
may stop the flow by returning an Abort; a raising policy hook counts as one. Notification hooks
(user_created, session_established, user_login) run after the fact; their failures are logged and
do not undo the login.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from sso_login.errors import BeforeLoginRejected

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Abort:
    """Returned by a policy hook to stop the login with a user-visible message."""

    message: str
    code: str = BeforeLoginRejected.code


@dataclass
class LoginContext:
    """What notification hooks receive about a completed login."""

    user_id: int
    userinfo: dict
    is_new: bool
    id_token: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None


@dataclass
class LoginHooks:
    before_login: list[Callable[[Any], "Abort | None"]] = field(default_factory=list)
    resolve_local_user: list[Callable[[Any, dict], Any]] = field(default_factory=list)
    should_create_user: list[Callable[[dict], "bool | Abort"]] = field(default_factory=list)
    user_created: list[Callable[[int, dict], None]] = field(default_factory=list)
    session_established: list[Callable[[int, bool], None]] = field(default_factory=list)
    user_login: list[Callable[[LoginContext], None]] = field(default_factory=list)

    def run_before_login(self, user) -> Abort | None:
        """First Abort wins. An exception raised by a hook counts as an Abort with its message."""
        for hook in self.before_login:
            try:
                result = hook(user)
            except Exception as e:
                logger.info("before_login hook %s raised: %s", _name(hook), e)
                return Abort(str(e) or "Login rejected")
            if isinstance(result, Abort):
                return result
        return None

    def run_resolve_local_user(self, user, userinfo: dict):
        """
        Each hook receives the previous hook's user and returns it or a replacement (or Abort).
        A raising hook aborts the login like run_before_login.
        """
        for hook in self.resolve_local_user:
            try:
                user = hook(user, userinfo)
            except Exception as e:
                logger.info("resolve_local_user hook %s raised: %s", _name(hook), e)
                return Abort(str(e) or "Could not resolve local user")
            if isinstance(user, Abort):
                return user
        return user

    def run_should_create_user(self, userinfo: dict) -> Abort | bool:
        for hook in self.should_create_user:
            try:
                result = hook(userinfo)
            except Exception as e:
                logger.info("should_create_user hook %s raised: %s", _name(hook), e)
                return Abort(str(e) or "Could not create user")
            if isinstance(result, Abort):
                return result
            if result is False:
                return False
        return True

    def notify_user_created(self, user_id: int, userinfo: dict) -> None:
        _notify(self.user_created, user_id, userinfo)

    def notify_session_established(self, user_id: int, remember: bool) -> None:
        _notify(self.session_established, user_id, remember)

    def notify_user_login(self, context: LoginContext) -> None:
        _notify(self.user_login, context)


def _notify(hooks: list, *args) -> None:
    for hook in hooks:
        try:
            hook(*args)
        except Exception as e:
            logger.warning("Notification hook %s failed: %s", _name(hook), e)


def _name(hook) -> str:
    return getattr(hook, "__qualname__", None) or repr(hook)
