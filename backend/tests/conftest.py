"""
Pytest configuration and shared fixtures.

This module provides:
- Environment variable setup for tests
- A temp-file SQLite Database with all tables created
- Gateway / app fixtures wired to the catalog entities
- A recording file store for cleanup assertions
"""

import os
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest


# Set test environment variables BEFORE any imports
# This must happen first to ensure settings load with test values
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOG_JSON"] = "false"


class RecordingFileStore:
    """IFileStore double that records deleted keys."""

    def __init__(self, base_url: str = "https://files.test", fail: bool = False):
        self.base_url = base_url
        self.fail = fail
        self.deleted: List[str] = []

    def extract_key(self, url: Optional[str]) -> Optional[str]:
        prefix = f"{self.base_url}/"
        if url and url.startswith(prefix):
            return url[len(prefix):]
        return None

    async def delete(self, key: str) -> None:
        if self.fail:
            raise OSError(f"cannot delete {key}")
        self.deleted.append(key)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'datagate-test.db'}"


@pytest.fixture
async def database(database_url):
    """Connected Database with every table created; disposed afterwards."""
    from datagate.core.database import Database

    db = Database(database_url)
    await db.connect()
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def runner(database):
    """TransactionRunner that does not actually sleep between attempts."""
    from datagate.services.transaction_runner import TransactionRunner

    return TransactionRunner(database, sleep=AsyncMock())


@pytest.fixture
def registry():
    from datagate.entities import build_registry

    return build_registry()


@pytest.fixture
def file_store() -> RecordingFileStore:
    return RecordingFileStore()


@pytest.fixture
def product_gateway(registry, database, runner, file_store):
    from datagate.services.entity_gateway import EntityGateway

    return EntityGateway(registry.get("products"), database, runner, file_store=file_store)


@pytest.fixture
def category_gateway(registry, database, runner, file_store):
    from datagate.services.entity_gateway import EntityGateway

    return EntityGateway(registry.get("categories"), database, runner, file_store=file_store)


@pytest.fixture
def test_settings(database_url):
    from datagate.core.config import Settings

    return Settings(
        database_url=database_url,
        environment="test",
        rate_limit_enabled=False,
        log_json=False,
    )


@pytest.fixture
async def app(test_settings, file_store):
    """Application with its lifespan running (database connected, tables created)."""
    from datagate.main import create_app

    application = create_app(test_settings, file_store=file_store)
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def client(app):
    """httpx AsyncClient talking to the app in-process."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
