"""
Fixtures for API integration tests.

The app runs against the per-test SQLite session with the clock, config and
payment processor replaced through dependency_overrides.
"""

import time
import pytest
import jwt
from fastapi.testclient import TestClient

AUTH_SECRET = "integration-auth-secret-0123456789abcdef"


@pytest.fixture
def processor(billing_client):
    """Processor client injected into requests; set to None to simulate no Stripe."""
    return {"client": billing_client}


@pytest.fixture
def app(db_session, clock, access_config, processor, monkeypatch):
    from gymaccess.api.dependencies import get_clock, get_config, get_processor_client
    from gymaccess.auth.identity import reset_token_verifier
    from gymaccess.database.session import get_db_session
    from gymaccess.main import create_app

    monkeypatch.setenv("AUTH_JWT_SECRET", AUTH_SECRET)
    monkeypatch.delenv("AUTH_JWT_AUDIENCE", raising=False)
    reset_token_verifier()

    application = create_app()

    async def _db():
        yield db_session

    async def _processor():
        yield processor["client"]

    application.dependency_overrides[get_db_session] = _db
    application.dependency_overrides[get_clock] = lambda: clock
    application.dependency_overrides[get_config] = lambda: access_config
    application.dependency_overrides[get_processor_client] = _processor

    yield application

    application.dependency_overrides.clear()
    reset_token_verifier()


@pytest.fixture
def client(app):
    return TestClient(app)


def make_access_token(user_id="user-1", email="member@example.com", email_verified=True):
    payload = {
        "sub": user_id,
        "email": email,
        "email_verified": email_verified,
        "exp": int(time.time()) + 3600,
    }
    return jwt.encode(payload, AUTH_SECRET, algorithm="HS256")


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_access_token()}"}
