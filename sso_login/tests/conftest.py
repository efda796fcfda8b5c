"""
Pytest configuration for sso_login. In-memory SQLite, fresh tables per test, HS256 test tenant.
"""
import os
import time

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["SSO_DATABASE_URL"] = "sqlite:///:memory:"
# Tests build their own Settings; ignore whatever tenant the shell points at
for _name in [k for k in os.environ if k.startswith("OAUTH_")]:
    del os.environ[_name]

import jwt
import pytest

from sso_login.config import Settings
from sso_login.database import SessionLocal, engine
from sso_login.models import Base

TEST_SECRET = "test-client-secret-0123456789abcdef"


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        domain="tenant.example.com",
        client_id="client-abc",
        client_secret=TEST_SECRET,
        signing_algorithm="HS256",
        base_url="http://testserver",
        default_login_redirection="http://testserver/",
        registration_enabled=True,
        use_management_api=False,
        jwt_leeway_seconds=0,
    )


@pytest.fixture
def make_id_token(settings):
    """Sign an ID token for the test tenant. Claims set to None are left out."""

    def _make(secret: str = TEST_SECRET, **overrides):
        now = int(time.time())
        claims = {
            "iss": settings.issuer,
            "aud": settings.client_id,
            "sub": "auth0|alice",
            "iat": now,
            "exp": now + 600,
            "nickname": "alice",
            "name": "Alice Example",
            "email": "alice@example.com",
            "email_verified": True,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(claims, secret, algorithm="HS256")

    return _make
