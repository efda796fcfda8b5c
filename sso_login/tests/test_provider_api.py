"""Tests for outbound provider calls (code exchange, Management API, verification email)."""
from unittest.mock import patch

import httpx

from sso_login import provider_api


class MockResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.headers = {}
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def test_exchange_code_success(settings):
    tokens = {"id_token": "eyJ.x.y", "access_token": "at"}
    with patch("sso_login.provider_api.httpx.post", return_value=MockResponse(200, tokens)) as post:
        assert provider_api.exchange_code(settings, "the-code", settings.redirect_uri) == tokens
    url = post.call_args[0][0]
    data = post.call_args[1]["data"]
    assert url == "https://tenant.example.com/oauth/token"
    assert data["grant_type"] == "authorization_code"
    assert data["code"] == "the-code"
    assert data["redirect_uri"] == "http://testserver/callback?auth0=1"
    assert data["client_secret"] == settings.client_secret
    assert post.call_args[1]["timeout"] == settings.http_timeout_seconds


def test_exchange_code_rejected(settings):
    err = {"error": "invalid_grant", "error_description": "Invalid authorization code"}
    with patch("sso_login.provider_api.httpx.post", return_value=MockResponse(403, err)):
        assert provider_api.exchange_code(settings, "bad", settings.redirect_uri) is None


def test_exchange_code_transport_error(settings):
    with patch("sso_login.provider_api.httpx.post", side_effect=httpx.ConnectTimeout("timed out")):
        assert provider_api.exchange_code(settings, "code", settings.redirect_uri) is None


def test_exchange_code_non_json_body(settings):
    with patch("sso_login.provider_api.httpx.post", return_value=MockResponse(200, None)):
        assert provider_api.exchange_code(settings, "code", settings.redirect_uri) is None


def test_fetch_user_profile(settings):
    profile = {"user_id": "auth0|alice", "email": "alice@example.com"}
    with patch(
        "sso_login.provider_api.httpx.post", return_value=MockResponse(200, {"access_token": "mgmt"})
    ) as post, patch("sso_login.provider_api.httpx.get", return_value=MockResponse(200, profile)) as get:
        assert provider_api.fetch_user_profile(settings, "auth0|alice") == profile
    assert post.call_args[1]["data"]["grant_type"] == "client_credentials"
    assert post.call_args[1]["data"]["audience"] == "https://tenant.example.com/api/v2/"
    assert get.call_args[0][0] == "https://tenant.example.com/api/v2/users/auth0%7Calice"
    assert get.call_args[1]["headers"]["Authorization"] == "Bearer mgmt"


def test_fetch_user_profile_without_api_token(settings):
    with patch("sso_login.provider_api.httpx.post", return_value=MockResponse(401, {"error": "access_denied"})), patch(
        "sso_login.provider_api.httpx.get"
    ) as get:
        assert provider_api.fetch_user_profile(settings, "auth0|alice") is None
    get.assert_not_called()


def test_fetch_user_profile_get_fails(settings):
    with patch(
        "sso_login.provider_api.httpx.post", return_value=MockResponse(200, {"access_token": "mgmt"})
    ), patch("sso_login.provider_api.httpx.get", side_effect=httpx.ConnectError("down")):
        assert provider_api.fetch_user_profile(settings, "auth0|alice") is None


def test_send_verification_email(settings):
    with patch(
        "sso_login.provider_api.httpx.post",
        side_effect=[MockResponse(200, {"access_token": "mgmt"}), MockResponse(201, {"status": "pending"})],
    ) as post:
        assert provider_api.send_verification_email(settings, "auth0|alice") is True
    job_call = post.call_args_list[1]
    assert job_call[0][0] == "https://tenant.example.com/api/v2/jobs/verification-email"
    assert job_call[1]["json"] == {"user_id": "auth0|alice", "client_id": "client-abc"}


def test_send_verification_email_rejected(settings):
    with patch(
        "sso_login.provider_api.httpx.post",
        side_effect=[MockResponse(200, {"access_token": "mgmt"}), MockResponse(400, {"message": "bad user"})],
    ):
        assert provider_api.send_verification_email(settings, "auth0|alice") is False
