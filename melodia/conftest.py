# melodia/conftest.py
import os
from datetime import datetime

import pytest

# Must be set before melodia.core.config builds its settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from sqlalchemy import delete, insert

from melodia.core.database import (
    create_all_tables,
    dispose_engine,
    get_db_session,
    init_engine,
    metadata,
    users,
)
from melodia.core.metrics import METRICS
from melodia.core.timeutil import utc_now
from melodia.tests.mocks import SnapRecorder, make_provider


@pytest.fixture(scope="session")
def db_url(tmp_path_factory):
    """
    Provide the database URL for tests.

    TEST_DATABASE_URL wins (e.g. a disposable Postgres); otherwise a fresh
    SQLite file per session.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{tmp_path_factory.mktemp('db') / 'melodia_test.db'}"


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """Create all tables once per session."""
    init_engine(db_url)
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """Clear every table and counter before each test."""
    with get_db_session() as session:
        for table in reversed(metadata.sorted_tables):
            session.execute(delete(table))
    METRICS.reset()
    yield


@pytest.fixture
def make_user():
    """Insert a user row directly, with whatever entitlement state the test needs."""

    def _make(
        user_id: str,
        *,
        is_premium: bool = False,
        premium_expires_at: datetime = None,
        username: str = None,
        email: str = None,
    ) -> str:
        now = utc_now()
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    username=username,
                    email=email,
                    display_name=username,
                    status="active",
                    is_premium=is_premium,
                    premium_expires_at=premium_expires_at,
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    return _make


@pytest.fixture
def snap():
    """Records Snap API calls and answers with sequential tokens."""
    return SnapRecorder()


@pytest.fixture
def provider(snap):
    gateway = make_provider(snap)
    yield gateway
    gateway.close()


@pytest.fixture
def billing_enabled(monkeypatch, provider):
    """Route the service (and the API) to the mock-transport provider."""
    from melodia.core.config import settings

    monkeypatch.setattr(settings, "MIDTRANS_SERVER_KEY", provider.server_key)
    monkeypatch.setattr("melodia.features.billing.service.get_provider", lambda: provider)
    return provider


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from melodia.main import app

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
