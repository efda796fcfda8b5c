"""
Login flow controller.

Builds authorize requests and runs provider callbacks through the login state machine:

    IDLE -> AUTHORIZE_BUILT                      (start_login; the request ends with a redirect)
    CALLBACK_RECEIVED -> STATE_VALIDATED
        -> CODE_EXCHANGE | IMPLICIT_DECODE
        -> TOKEN_VALIDATED -> IDENTITY_RESOLVED -> SESSION_ESTABLISHED

Every step after CALLBACK_RECEIVED can end in ABORTED. Each stage returns either its payload or a
terminal outcome; handle_callback stops at the first terminal. Leaf components (state store, token
validator, users repo) raise LoginError subclasses, which are converted to outcomes here.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Union
from urllib.parse import quote, urlencode, urlsplit

from sqlalchemy.orm import Session

from sso_login import provider_api, sessions
from sso_login.audit import (
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_NEW_USER,
    EVENT_LOGIN_OK,
    EVENT_VERIFICATION_REQUIRED,
    OUTCOME_FAIL,
    log_audit,
    log_error,
)
from sso_login.config import Settings
from sso_login.csrf import NONCE_COOKIE, STATE_COOKIE, CsrfTokenStore, decode_state, encode_state
from sso_login.errors import (
    CouldNotCreateUser,
    CsrfFailure,
    DuplicateIdentity,
    EmailNotVerified,
    InvalidIdToken,
    LoginFlowValidation,
    RegistrationNotEnabled,
)
from sso_login.hooks import Abort, LoginContext, LoginHooks
from sso_login.id_token import IdTokenValidator
from sso_login.models import User
from sso_login.users import UsersRepo

logger = logging.getLogger(__name__)

FLOW_CODE = "code"
FLOW_IMPLICIT = "implicit"

# Claims that only describe the token itself, not the user
ID_TOKEN_ONLY_CLAIMS = ("iss", "aud", "iat", "exp", "nonce")

NO_EMAIL_MESSAGE = (
    "This account does not have an email associated, as required by your site administrator."
)
REGISTRATION_MESSAGE = (
    "Could not create user. The registration process is not available. "
    "Please contact your site's administrator."
)


class FlowState(str, Enum):
    IDLE = "idle"
    AUTHORIZE_BUILT = "authorize_built"
    CALLBACK_RECEIVED = "callback_received"
    STATE_VALIDATED = "state_validated"
    CODE_EXCHANGE = "code_exchange"
    IMPLICIT_DECODE = "implicit_decode"
    TOKEN_VALIDATED = "token_validated"
    IDENTITY_RESOLVED = "identity_resolved"
    SESSION_ESTABLISHED = "session_established"
    ABORTED = "aborted"


# --- inputs ---


@dataclass(frozen=True)
class LoginRequest:
    """A request that may start a provider login (login page hit or explicit login action)."""

    action: str | None = None
    redirect_to: str | None = None
    connection: str | None = None
    interim: bool = False
    override: bool = False
    logged_in: bool = False

    @property
    def explicit(self) -> bool:
        return self.action == "start"


@dataclass(frozen=True)
class IncomingCallback:
    """Everything the state machine may read from a callback request."""

    flow: str | None
    query: Mapping[str, str] = field(default_factory=dict)
    form: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    logged_in: bool = False
    ip: str | None = None

    @property
    def flow_type(self) -> str:
        return FLOW_IMPLICIT if self.flow == FLOW_IMPLICIT else FLOW_CODE

    @property
    def params(self) -> Mapping[str, str]:
        """Implicit callbacks are form posts; code callbacks arrive in the query string."""
        return self.form if self.flow_type == FLOW_IMPLICIT else self.query

    def param(self, name: str) -> str | None:
        return self.query.get(name) or self.form.get(name) or None


# --- authorize request ---


@dataclass(frozen=True)
class AuthorizeRequest:
    client_id: str
    scope: str
    response_type: str
    response_mode: str
    redirect_uri: str
    state: str
    nonce: str | None = None
    connection: str | None = None

    def as_params(self) -> dict:
        params = {
            "client_id": self.client_id,
            "scope": self.scope,
            "response_type": self.response_type,
            "response_mode": self.response_mode,
            "redirect_uri": self.redirect_uri,
        }
        if self.nonce:
            params["nonce"] = self.nonce
        if self.connection:
            params["connection"] = self.connection
        params["state"] = self.state
        return params


@dataclass(frozen=True)
class LoginStart:
    """Redirect to the provider plus the tokens the response must bind to cookies."""

    url: str
    state_token: str
    nonce_token: str | None = None


@dataclass(frozen=True)
class LoginRedirect:
    url: str


# --- outcomes ---


@dataclass(frozen=True)
class LoginSucceeded:
    user_id: int
    is_new: bool
    redirect_to: str
    interim: bool
    remember: bool
    session_token: str


@dataclass(frozen=True)
class AlreadyLoggedIn:
    redirect_to: str


@dataclass(frozen=True)
class VerificationRequired:
    userinfo: dict


@dataclass(frozen=True)
class LoginAborted:
    message: str
    code: str | None = None
    failed_at: FlowState | None = None


LoginOutcome = Union[LoginSucceeded, AlreadyLoggedIn, VerificationRequired, LoginAborted]
_TERMINALS = (LoginSucceeded, AlreadyLoggedIn, VerificationRequired, LoginAborted)


@dataclass
class _Tokens:
    userinfo: dict
    id_token: str
    access_token: str | None = None
    refresh_token: str | None = None


@dataclass
class _Resolved:
    user: User
    is_new: bool


def clean_id_token(claims: dict) -> dict:
    """Profile from ID token claims: drop token-only claims, cross-fill sub and user_id."""
    profile = {k: v for k, v in claims.items() if k not in ID_TOKEN_ONLY_CLAIMS}
    if "user_id" not in profile and "sub" in profile:
        profile["user_id"] = profile["sub"]
    elif "sub" not in profile and "user_id" in profile:
        profile["sub"] = profile["user_id"]
    return profile


class LoginFlowController:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        hooks: LoginHooks | None = None,
        *,
        validator: IdTokenValidator | None = None,
        users_repo: UsersRepo | None = None,
        profile_fetcher: Callable[[Settings, str], dict | None] | None = None,
    ):
        self.db = db
        self.settings = settings
        self.hooks = hooks or LoginHooks()
        self._validator = validator
        self.users_repo = users_repo or UsersRepo(db, settings, self.hooks)
        self.profile_fetcher = profile_fetcher or provider_api.fetch_user_profile
        self.state_store = CsrfTokenStore.for_state(db, settings)
        self.nonce_store = CsrfTokenStore.for_nonce(db, settings)
        self.flow_state = FlowState.IDLE

    @property
    def validator(self) -> IdTokenValidator:
        if self._validator is None:
            self._validator = IdTokenValidator.from_settings(self.settings)
        return self._validator

    def _enter(self, state: FlowState) -> None:
        logger.debug("login flow: %s -> %s", self.flow_state.value, state.value)
        self.flow_state = state

    # --- authorize ---

    def get_scope(self) -> str:
        return " ".join(self.settings.scope)

    def get_authorize_params(
        self,
        connection: str | None = None,
        redirect_to: str | None = None,
        interim: bool = False,
    ) -> AuthorizeRequest:
        """Issue state (and nonce for the implicit flow) and assemble the authorize request."""
        implicit = self.settings.implicit_flow
        state_token = self.state_store.issue()
        nonce_token = self.nonce_store.issue() if implicit else None
        state = encode_state(
            {
                "interim": bool(interim),
                "nonce": state_token,
                "redirect_to": redirect_to or self.settings.default_login_redirection,
            }
        )
        return AuthorizeRequest(
            client_id=self.settings.client_id,
            scope=self.get_scope(),
            response_type="id_token" if implicit else "code",
            response_mode="form_post" if implicit else "query",
            redirect_uri=self.settings.implicit_redirect_uri if implicit else self.settings.redirect_uri,
            state=state,
            nonce=nonce_token,
            connection=connection or None,
        )

    def build_authorize_url(self, request: AuthorizeRequest) -> str:
        return f"https://{self.settings.auth_domain}/authorize?{urlencode(request.as_params(), quote_via=quote)}"

    def start_login(self, request: LoginRequest) -> LoginStart | LoginRedirect | None:
        """
        IDLE -> AUTHORIZE_BUILT. None means "do not redirect": logout action, login override,
        provider not configured, or auto-login off without an explicit login action.
        """
        if request.action == "logout" or request.override:
            return None
        if request.logged_in:
            target = self._safe_redirect(request.redirect_to)
            # Cache buster so pages that check auth do not loop on a cached redirect
            sep = "&" if "?" in target else "?"
            return LoginRedirect(f"{target}{sep}{int(time.time())}")
        if not self.settings.ready:
            return None
        if not (self.settings.auto_login or request.explicit):
            return None

        connection = request.connection or self.settings.auto_login_method or None
        params = self.get_authorize_params(connection, request.redirect_to, request.interim)
        self._enter(FlowState.AUTHORIZE_BUILT)
        # The state envelope's nonce is the state-store token
        state_token = decode_state(params.state)["nonce"]
        return LoginStart(self.build_authorize_url(params), state_token, params.nonce)

    # --- callback ---

    @property
    def expected_flow(self) -> str:
        return FLOW_IMPLICIT if self.settings.implicit_flow else FLOW_CODE

    def is_callback(self, callback: IncomingCallback) -> bool:
        return bool(callback.flow) and self.settings.ready

    def handle_callback(self, callback: IncomingCallback) -> LoginOutcome:
        self._enter(FlowState.CALLBACK_RECEIVED)

        # Provider-reported errors end the flow before any state handling
        error = callback.param("error")
        error_description = callback.param("error_description")
        if error or error_description:
            return self._abort(error_description or error, error, callback)

        if callback.logged_in:
            return AlreadyLoggedIn(self.settings.default_login_redirection)

        state = self._validate_state(callback)
        if isinstance(state, _TERMINALS):
            return state

        # The callback's flow marker is caller-controlled; only the configured flow is accepted
        if callback.flow_type != self.expected_flow:
            return self._abort("Unexpected callback flow", LoginFlowValidation.code, callback)

        if callback.flow_type == FLOW_IMPLICIT:
            tokens = self._implicit_decode(callback)
        else:
            tokens = self._code_exchange(callback)
        if isinstance(tokens, _TERMINALS):
            return tokens
        self._enter(FlowState.TOKEN_VALIDATED)

        resolved = self._resolve_identity(tokens, callback)
        if isinstance(resolved, _TERMINALS):
            return resolved
        self._enter(FlowState.IDENTITY_RESOLVED)

        return self._establish_session(resolved, tokens, state, callback)

    def _validate_state(self, callback: IncomingCallback) -> dict | LoginAborted:
        state = decode_state(callback.params.get("state"))
        token = state.get("nonce") if state else None
        if not self.state_store.validate(token, callback.cookies.get(STATE_COOKIE)):
            return self._abort("Invalid state", CsrfFailure.code, callback)
        self._enter(FlowState.STATE_VALIDATED)
        return state

    def _code_exchange(self, callback: IncomingCallback) -> _Tokens | LoginAborted:
        self._enter(FlowState.CODE_EXCHANGE)
        code = callback.query.get("code")
        if not code:
            return self._abort("Missing authorization code", LoginFlowValidation.code, callback)

        data = provider_api.exchange_code(self.settings, code, self.settings.redirect_uri)
        if not data:
            return self._abort("Error exchanging code", LoginFlowValidation.code, callback)
        id_token = data.get("id_token")
        if not id_token:
            return self._abort("No ID token found", LoginFlowValidation.code, callback)

        claims = self._decode(id_token, callback)
        if isinstance(claims, LoginAborted):
            return claims

        userinfo = None
        if self.settings.use_management_api:
            userinfo = self.profile_fetcher(self.settings, claims["sub"])
        if not userinfo:
            userinfo = clean_id_token(claims)
        if not userinfo.get("sub"):
            userinfo["sub"] = userinfo.get("user_id") or claims["sub"]

        return _Tokens(
            userinfo=userinfo,
            id_token=id_token,
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
        )

    def _implicit_decode(self, callback: IncomingCallback) -> _Tokens | LoginAborted:
        self._enter(FlowState.IMPLICIT_DECODE)
        id_token = callback.form.get("id_token") or callback.form.get("token")
        if not id_token:
            return self._abort("No ID token found", LoginFlowValidation.code, callback)

        nonce_cookie = callback.cookies.get(NONCE_COOKIE)
        claims = self._decode(
            id_token,
            callback,
            validate_nonce=True,
            nonce_validator=lambda nonce: self.nonce_store.validate(nonce, nonce_cookie),
        )
        if isinstance(claims, LoginAborted):
            return claims
        return _Tokens(userinfo=clean_id_token(claims), id_token=id_token)

    def _decode(self, id_token: str, callback: IncomingCallback, **kwargs) -> dict | LoginAborted:
        try:
            return self.validator.decode(id_token, **kwargs)
        except InvalidIdToken as e:
            return self._abort(
                "Invalid ID token",
                InvalidIdToken.code,
                callback,
                detail=f"Invalid ID token: {e.message}",
            )

    def _resolve_identity(
        self, tokens: _Tokens, callback: IncomingCallback
    ) -> _Resolved | VerificationRequired | LoginAborted:
        userinfo = tokens.userinfo
        repo = self.users_repo

        if repo.email_verification_enforced(userinfo):
            if not userinfo.get("email"):
                return self._abort(NO_EMAIL_MESSAGE, LoginFlowValidation.code, callback)
            if not userinfo.get("email_verified"):
                return self._needs_verification(userinfo, callback)

        user = repo.find_for_profile(userinfo)
        user = self.hooks.run_resolve_local_user(user, userinfo)
        if isinstance(user, Abort):
            return self._abort(user.message, user.code, callback)

        if user is not None:
            return self._sync_existing(user, userinfo)

        try:
            user_id = repo.create(userinfo, tokens.id_token, tokens.access_token)
        except DuplicateIdentity:
            # Lost a creation race: the winner's account is the one to use
            user = repo.find_for_profile(userinfo) or repo.find(userinfo.get("sub"))
            if user is None:
                return self._abort("Could not create user", CouldNotCreateUser.code, callback)
            return self._sync_existing(user, userinfo)
        except EmailNotVerified as e:
            return self._needs_verification(e.userinfo, callback)
        except RegistrationNotEnabled:
            return self._abort(REGISTRATION_MESSAGE, RegistrationNotEnabled.code, callback)
        except CouldNotCreateUser as e:
            return self._abort(e.message, e.code, callback)
        return _Resolved(user=repo.get_user(user_id), is_new=True)

    def _sync_existing(self, user: User, userinfo: dict) -> _Resolved:
        self.users_repo.update_local_user(user, userinfo)
        self.users_repo.update(user.id, userinfo)
        return _Resolved(user=user, is_new=False)

    def _establish_session(
        self, resolved: _Resolved, tokens: _Tokens, state: dict, callback: IncomingCallback
    ) -> LoginSucceeded | LoginAborted:
        user = resolved.user
        veto = self.hooks.run_before_login(user)
        if veto is not None:
            return self._abort(veto.message, veto.code, callback)

        remember = self.settings.remember_users_session
        session_token = sessions.create_session(self.db, user.id, remember)
        self._enter(FlowState.SESSION_ESTABLISHED)

        self.hooks.notify_session_established(user.id, remember)
        self.hooks.notify_user_login(
            LoginContext(
                user_id=user.id,
                userinfo=tokens.userinfo,
                is_new=resolved.is_new,
                id_token=tokens.id_token,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
            )
        )
        log_audit(
            self.db,
            EVENT_LOGIN_NEW_USER if resolved.is_new else EVENT_LOGIN_OK,
            user_id=user.id,
            subject=tokens.userinfo.get("sub"),
            ip=callback.ip,
        )
        return LoginSucceeded(
            user_id=user.id,
            is_new=resolved.is_new,
            redirect_to=self._redirect_target(state),
            interim=bool(state.get("interim")),
            remember=remember,
            session_token=session_token,
        )

    # --- terminals ---

    def _needs_verification(self, userinfo: dict, callback: IncomingCallback) -> VerificationRequired:
        log_audit(
            self.db,
            EVENT_VERIFICATION_REQUIRED,
            subject=userinfo.get("sub"),
            ip=callback.ip,
            outcome=OUTCOME_FAIL,
        )
        return VerificationRequired(userinfo)

    def _abort(
        self,
        message: str | None,
        code: str | None,
        callback: IncomingCallback,
        detail: str | None = None,
    ) -> LoginAborted:
        failed_at = self.flow_state
        self._enter(FlowState.ABORTED)
        # No partial session may survive an aborted login
        sessions.destroy_session(self.db, callback.cookies.get(sessions.SESSION_COOKIE))
        log_error(self.db, f"login_flow.{failed_at.value}", code or "unknown", detail or message or "")
        log_audit(self.db, EVENT_LOGIN_FAIL, ip=callback.ip, outcome=OUTCOME_FAIL)
        return LoginAborted(message=message or "", code=code, failed_at=failed_at)

    # --- redirects ---

    def _safe_redirect(self, url: str | None) -> str:
        """Same-site targets only; anything else goes to the default destination."""
        default = self.settings.default_login_redirection
        if not url:
            return default
        if url.startswith("/") and not url.startswith("//"):
            return f"{self.settings.base_url}{url}"
        parts = urlsplit(url)
        if parts.scheme in ("http", "https") and parts.netloc == urlsplit(self.settings.base_url).netloc:
            return url
        logger.info("Refusing off-site redirect target %s", url)
        return default

    def _redirect_target(self, state: dict) -> str:
        redirect_to = state.get("redirect_to")
        if not redirect_to or redirect_to == self.settings.login_url:
            return self.settings.default_login_redirection
        return self._safe_redirect(str(redirect_to))

    # --- logout ---

    def logout_url(self, return_to: str | None = None) -> str:
        return_to = return_to or self.settings.home_url
        return (
            f"https://{self.settings.domain}/v2/logout"
            f"?client_id={quote(self.settings.client_id, safe='')}&returnTo={quote(return_to, safe='')}"
        )

    def logout_redirect(self, return_to: str | None = None) -> str | None:
        """
        Where to send the browser after the local session is gone; None means render the local
        logged-out page. Auto-login sites must not land on the login trigger again.
        """
        if not self.settings.ready:
            return None
        if self.settings.single_logout:
            return self.logout_url(return_to or self.settings.home_url)
        if self.settings.auto_login:
            return self.settings.home_url
        return None

    def login_link(self) -> str:
        """Link offered on the failure page: a fresh attempt via provider logout."""
        if not self.settings.ready:
            return self.settings.login_url
        return self.logout_url(f"{self.settings.login_url}?action=start")
