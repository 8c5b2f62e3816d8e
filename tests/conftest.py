"""
Shared test fixtures for ChargeWatch tests.

Provides environment variables for Settings, a mock async DB session and
a TestClient whose DB dependency yields that mock.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)
- 2026-10-03: API client fixture with DB override (STORY-102)

TODO:
- None
"""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from chargewatch.config import Settings
from chargewatch.db.session import get_async_session
from chargewatch.main import app
from tests.factories import SERVICE_TOKEN


@pytest.fixture(autouse=True)
def _set_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure required env vars are set for every test."""
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@localhost/db")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("SERVICE_TOKENS", f"{SERVICE_TOKEN}:scraper")
    monkeypatch.setenv("VAPID_PRIVATE_KEY", "test-vapid-key")


@pytest.fixture()
def settings() -> Settings:
    """Settings loaded from the test environment."""
    return Settings()


@pytest.fixture()
def mock_db_session() -> AsyncMock:
    """Mock AsyncSession; ``add`` is synchronous like the real one."""
    session = AsyncMock()
    session.add = MagicMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = None
    result.scalars.return_value.all.return_value = []
    result.all.return_value = []
    session.execute.return_value = result
    return session


@pytest.fixture()
def client(mock_db_session: AsyncMock) -> Iterator[TestClient]:
    """TestClient with the DB session dependency replaced by the mock.

    Server exceptions are rendered by the app's handlers instead of being
    re-raised, so error envelopes can be asserted.
    """

    async def override_get_session():
        yield mock_db_session

    app.dependency_overrides[get_async_session] = override_get_session
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
