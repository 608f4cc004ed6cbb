# backend/conftest.py
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.core.config import Settings
from backend.core.metrics import METRICS
from backend.core.services import build_services
from backend.features.analysis.repository import InMemoryAnalysisRepository
from backend.features.usage.store import InMemoryQuotaStore
from backend.models.user import AuthenticatedUser
from backend.tests.mocks import FakeAuthClient, FakeClock, FakeNow, StubGenerator


TEST_USERS = {
    "free-token": AuthenticatedUser(id="user-free", email="free@example.com", plan="free"),
    "standard-token": AuthenticatedUser(id="user-standard", email="standard@example.com", plan="standard"),
    "pro-token": AuthenticatedUser(id="user-pro", email="pro@example.com", plan="professional"),
    "enterprise-token": AuthenticatedUser(id="user-ent", email="ent@example.com", plan="enterprise"),
    "admin-token": AuthenticatedUser(id="user-admin", email="admin@example.com", plan="enterprise", is_admin=True),
    "unknown-plan-token": AuthenticatedUser(id="user-ghost", email="ghost@example.com", plan="platinum"),
}


def make_settings(**overrides) -> Settings:
    values = dict(
        ENV="test",
        ANTHROPIC_API_KEY="test-key",
        REDIS_URL=None,
        DATABASE_URL=None,
        TEST_DATABASE_URL=None,
        QUOTA_STORE_BACKEND="memory",
        RATE_LIMIT_ENABLED=True,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Counters are process-global; start every test from zero."""
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_now():
    return FakeNow(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def auth_client():
    return FakeAuthClient(TEST_USERS)


@pytest.fixture
def generator():
    return StubGenerator()


@pytest.fixture
def quota_store():
    return InMemoryQuotaStore()


@pytest.fixture
def services(quota_store, generator, auth_client, fake_clock, fake_now):
    return build_services(
        make_settings(),
        quota_store=quota_store,
        generator=generator,
        repository=InMemoryAnalysisRepository(),
        auth_client=auth_client,
        clock=fake_clock,
        now=fake_now,
    )


@pytest.fixture
def client(services):
    from backend.main import create_app

    return TestClient(create_app(services=services))
