"""
SSO login configuration. One immutable Settings value built from the environment and passed
to every component; nothing reads os.environ after startup.
No secrets in this file; credentials come from env.
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


def _env_list(name: str, default: str = "") -> tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(s.strip() for s in raw.split(",") if s.strip())


@dataclass(frozen=True)
class Settings:
    # Identity provider tenant domain (iss is https://{domain}/)
    domain: str = ""
    # Custom login domain for /authorize; falls back to domain
    custom_domain: str = ""
    client_id: str = ""
    client_secret: str = ""
    client_secret_b64_encoded: bool = False
    # Pinned ID token algorithm: RS256 (JWKS) or HS256 (client secret)
    signing_algorithm: str = "RS256"
    implicit_flow: bool = False

    # This site
    base_url: str = "http://127.0.0.1:8000"
    default_login_redirection: str = "http://127.0.0.1:8000/"

    # Login policy
    remember_users_session: bool = False
    requires_verified_email: bool = True
    skip_strategies: tuple[str, ...] = ()
    registration_enabled: bool = False
    auto_provisioning: bool = False
    auto_login: bool = False
    auto_login_method: str = ""
    single_logout: bool = False
    use_management_api: bool = True
    scope: tuple[str, ...] = field(default=("openid", "email", "profile"))

    # Limits
    cache_expiration_minutes: int = 1440
    jwt_leeway_seconds: int = 60
    http_timeout_seconds: float = 10.0
    state_ttl_seconds: int = 600

    database_url: str = "sqlite:///./sso_login.db"
    cookie_secure: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        base_url = os.environ.get("OAUTH_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
        return cls(
            domain=os.environ.get("OAUTH_DOMAIN", "").strip().rstrip("/"),
            custom_domain=os.environ.get("OAUTH_CUSTOM_DOMAIN", "").strip().rstrip("/"),
            client_id=os.environ.get("OAUTH_CLIENT_ID", ""),
            client_secret=os.environ.get("OAUTH_CLIENT_SECRET", ""),
            client_secret_b64_encoded=_env_bool("OAUTH_CLIENT_SECRET_B64_ENCODED", False),
            signing_algorithm=os.environ.get("OAUTH_SIGNING_ALGORITHM", "RS256").strip().upper(),
            implicit_flow=_env_bool("OAUTH_IMPLICIT_FLOW", False),
            base_url=base_url,
            default_login_redirection=os.environ.get("OAUTH_DEFAULT_LOGIN_REDIRECTION", f"{base_url}/"),
            remember_users_session=_env_bool("OAUTH_REMEMBER_USERS_SESSION", False),
            requires_verified_email=_env_bool("OAUTH_REQUIRES_VERIFIED_EMAIL", True),
            skip_strategies=_env_list("OAUTH_SKIP_STRATEGIES"),
            registration_enabled=_env_bool("OAUTH_REGISTRATION_ENABLED", False),
            auto_provisioning=_env_bool("OAUTH_AUTO_PROVISIONING", False),
            auto_login=_env_bool("OAUTH_AUTO_LOGIN", False),
            auto_login_method=os.environ.get("OAUTH_AUTO_LOGIN_METHOD", "").strip(),
            single_logout=_env_bool("OAUTH_SINGLE_LOGOUT", False),
            use_management_api=_env_bool("OAUTH_USE_MANAGEMENT_API", True),
            scope=_env_list("OAUTH_SCOPE", "openid,email,profile"),
            cache_expiration_minutes=_env_int("OAUTH_CACHE_EXPIRATION_MINUTES", 1440),
            jwt_leeway_seconds=_env_int("OAUTH_JWT_LEEWAY_SECONDS", 60),
            http_timeout_seconds=float(os.environ.get("OAUTH_HTTP_TIMEOUT_SECONDS", "10") or 10),
            state_ttl_seconds=_env_int("OAUTH_STATE_TTL_SECONDS", 600),
            database_url=os.environ.get("SSO_DATABASE_URL", "sqlite:///./sso_login.db"),
            cookie_secure=_env_bool("OAUTH_COOKIE_SECURE", base_url.startswith("https://")),
        )

    @property
    def auth_domain(self) -> str:
        """Domain used for the browser-facing /authorize redirect."""
        return self.custom_domain or self.domain

    @property
    def issuer(self) -> str:
        return f"https://{self.domain}/"

    @property
    def jwks_uri(self) -> str:
        return f"https://{self.domain}/.well-known/jwks.json"

    @property
    def redirect_uri(self) -> str:
        return f"{self.base_url}/callback?auth0=1"

    @property
    def implicit_redirect_uri(self) -> str:
        return f"{self.base_url}/callback?auth0=implicit"

    @property
    def home_url(self) -> str:
        return f"{self.base_url}/"

    @property
    def login_url(self) -> str:
        return f"{self.base_url}/login"

    @property
    def ready(self) -> bool:
        """True when the provider connection is configured well enough to attempt logins."""
        return bool(self.domain and self.client_id)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
