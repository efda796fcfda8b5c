"""
Outbound calls to the identity provider: code exchange, client-credentials token,
Management API user fetch and verification email. Every call is bounded by the configured timeout;
failures return None/False and are logged, never raised.
"""
import logging
from urllib.parse import quote

import httpx

from sso_login.config import Settings

logger = logging.getLogger(__name__)


def _json_or_none(r: httpx.Response) -> dict | None:
    try:
        data = r.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _error_description(r: httpx.Response) -> str:
    err = _json_or_none(r) or {}
    return str(err.get("error_description") or err.get("message") or err.get("error") or r.status_code)


def exchange_code(settings: Settings, code: str, redirect_uri: str) -> dict | None:
    """Authorization code -> token response {access_token?, id_token, refresh_token?}."""
    try:
        r = httpx.post(
            f"https://{settings.domain}/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": settings.client_id,
                "client_secret": settings.client_secret,
            },
            headers={"Accept": "application/json"},
            timeout=settings.http_timeout_seconds,
        )
    except httpx.HTTPError as e:
        logger.warning("Code exchange failed: %s", e)
        return None
    if r.status_code != 200:
        logger.warning("Code exchange rejected (%s): %s", r.status_code, _error_description(r))
        return None
    return _json_or_none(r)


def client_credentials_token(settings: Settings) -> str | None:
    """Server-to-server token for the Management API."""
    try:
        r = httpx.post(
            f"https://{settings.domain}/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": settings.client_id,
                "client_secret": settings.client_secret,
                "audience": f"https://{settings.domain}/api/v2/",
            },
            headers={"Accept": "application/json"},
            timeout=settings.http_timeout_seconds,
        )
    except httpx.HTTPError as e:
        logger.warning("Client credentials grant failed: %s", e)
        return None
    if r.status_code != 200:
        logger.warning("Client credentials grant rejected (%s): %s", r.status_code, _error_description(r))
        return None
    data = _json_or_none(r) or {}
    return data.get("access_token") or None


def get_user(settings: Settings, api_token: str, subject: str) -> dict | None:
    try:
        r = httpx.get(
            f"https://{settings.domain}/api/v2/users/{quote(subject, safe='')}",
            headers={"Authorization": f"Bearer {api_token}", "Accept": "application/json"},
            timeout=settings.http_timeout_seconds,
        )
    except httpx.HTTPError as e:
        logger.warning("Get user failed: %s", e)
        return None
    if r.status_code != 200:
        logger.warning("Get user rejected (%s): %s", r.status_code, _error_description(r))
        return None
    return _json_or_none(r)


def fetch_user_profile(settings: Settings, subject: str) -> dict | None:
    """Full profile by subject, or None so the caller falls back to ID token claims."""
    api_token = client_credentials_token(settings)
    if not api_token:
        return None
    return get_user(settings, api_token, subject)


def send_verification_email(settings: Settings, subject: str) -> bool:
    api_token = client_credentials_token(settings)
    if not api_token:
        return False
    try:
        r = httpx.post(
            f"https://{settings.domain}/api/v2/jobs/verification-email",
            json={"user_id": subject, "client_id": settings.client_id},
            headers={"Authorization": f"Bearer {api_token}", "Accept": "application/json"},
            timeout=settings.http_timeout_seconds,
        )
    except httpx.HTTPError as e:
        logger.warning("Verification email request failed: %s", e)
        return False
    if r.status_code not in (200, 201):
        logger.warning("Verification email rejected (%s): %s", r.status_code, _error_description(r))
        return False
    return True
