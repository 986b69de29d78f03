# quotagate/conftest.py
from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from quotagate.core.admin_auth import AdminActor
from quotagate.core.config import settings
from quotagate.core.database import create_all_tables, dispose_engine, init_engine
from quotagate.core.identity import create_test_token
from quotagate.core.metrics import METRICS
from quotagate.core.rate_limit import reset_ai_limiter
from quotagate.features.ai.service import set_transport_for_tests
from quotagate.features.usage.service import get_dispatcher, reset_dispatcher
from quotagate.features.users.service import ensure_user

TEST_JWT_SECRET = "test-secret-for-quotagate"

# Winter noon in Rome (UTC+1); safely inside one reference day
NOON = datetime(2026, 1, 15, 11, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings for every test (no .env leakage)."""
    overrides = {
        "ENV": "test",
        "ENVIRONMENT": "test",
        "JWT_SECRET": TEST_JWT_SECRET,
        "JWT_ISSUER": None,
        "JWT_AUDIENCE": None,
        "JWT_JWKS_URL": None,
        "AUTH_ALLOW_USER_HEADER": False,
        "QUOTA_TIMEZONE": "Europe/Rome",
        "QUOTA_CAS_MAX_ATTEMPTS": 8,
        "AI_RATE_LIMIT_ENABLED": True,
        "AI_RATE_LIMIT_MAX": 10,
        "AI_RATE_LIMIT_WINDOW_SECONDS": 60,
        "AI_MAX_INPUT_CHARS": 4000,
        "AI_API_URL": "http://ai.test/v1/reply",
        "AI_API_KEY": None,
        "USAGE_LOG_MODE": "thread",
    }
    for key, value in overrides.items():
        monkeypatch.setattr(settings, key, value)
    yield settings


@pytest.fixture(autouse=True)
def db(tmp_path, test_settings):
    """
    Fresh SQLite database file per test.

    A file (not :memory:) so worker threads share the same database.
    """
    url = f"sqlite:///{tmp_path / 'quotagate.db'}"
    init_engine(url)
    create_all_tables()
    reset_dispatcher()
    reset_ai_limiter()
    METRICS.reset()
    yield url
    get_dispatcher().flush()
    reset_dispatcher()
    reset_ai_limiter()
    set_transport_for_tests(None)
    dispose_engine()


@pytest.fixture
def admin_actor():
    ensure_user("admin_1", display_name="Admin One", role="admin")
    return AdminActor(actor_id="admin_1", actor_name="Admin One")


@pytest.fixture
def make_user():
    def _make(user_id: str = "user_1", role: str = "user", display_name: str = None):
        ensure_user(user_id, display_name=display_name, role=role)
        return user_id

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user_id: str, role: str = None, **kwargs):
        token = create_test_token(user_id, role=role, **kwargs)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def admin_headers(admin_actor, auth_headers):
    return auth_headers(admin_actor.actor_id, role="admin", name=admin_actor.actor_name)


@pytest.fixture
def client():
    from quotagate.main import app

    return TestClient(app)


@pytest.fixture
def ai_replies():
    """Route downstream AI calls to an in-process transport. Returns the captured requests."""
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"reply": "Here is a hint."})

    set_transport_for_tests(httpx.MockTransport(handler))
    return captured
