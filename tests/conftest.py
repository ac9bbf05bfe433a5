"""Pytest configuration and shared fixtures.

Tests run without a database: services receive an AsyncMock session and
the HTTP tests override the get_db dependency.
"""

import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set testing mode BEFORE importing app so the limiter and pool are configured for tests
os.environ["TESTING"] = "true"
os.environ.setdefault("API_TOKEN", "test-api-token")

from oncall_api.config import settings

settings.testing = True
settings.api_token = "test-api-token"

from oncall_api.database import get_db
from oncall_api.main import app

def make_db() -> AsyncMock:
    """An AsyncSession stand-in that supports savepoints."""
    db = AsyncMock()
    db.add = MagicMock()
    savepoint = MagicMock()
    savepoint.__aenter__ = AsyncMock(return_value=None)
    savepoint.__aexit__ = AsyncMock(return_value=False)
    db.begin_nested = MagicMock(return_value=savepoint)
    return db


@pytest.fixture
def mock_db() -> AsyncMock:
    return make_db()


@pytest_asyncio.fixture
async def client(mock_db) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client with get_db bound to mock_db."""

    async def _override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = _override_get_db
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_db, None)
