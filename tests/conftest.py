"""Shared test fixtures for pytest.

Environment defaults are set before any application module is imported so
that settings and the database engine pick up the test configuration
(in-memory sqlite, no env file).
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient


os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from core.config import Settings
from dependencies.batches import get_batch_manager
from dependencies.db import build_engine, build_session_factory, create_tables
from main import app
from services.batch.adapters import ReadinessRegistry
from services.batch.job_store import BatchJobStore
from services.batch.manager import BatchJobManager
from tests.fixtures.batch_fixtures import FakeFinalizer, FakeGenerator


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with polling intervals short enough for unit tests."""
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        ENVIRONMENT="test",
        UPSTREAM_BASE_URL="http://writer.test/api",
        UPSTREAM_RETRY_BACKOFF_SECONDS=0,
        POLL_INTERVAL_SECONDS=0.01,
        GRACE_INTERVAL_SECONDS=0.03,
        UNIT_TIMEOUT_SECONDS=0.3,
        READINESS_TIMEOUT_SECONDS=0.15,
    )


@pytest_asyncio.fixture
async def job_store() -> AsyncGenerator[BatchJobStore, None]:
    """Store over a private in-memory database, created per test."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield BatchJobStore(build_session_factory(engine))
    await engine.dispose()


@pytest_asyncio.fixture
async def batch_manager(
    fast_settings: Settings, job_store: BatchJobStore
) -> AsyncGenerator[BatchJobManager, None]:
    readiness = ReadinessRegistry()
    manager = BatchJobManager(
        fast_settings,
        job_store,
        FakeGenerator(),
        FakeFinalizer(readiness.for_novel),
        readiness=readiness,
    )
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def async_client(
    batch_manager: BatchJobManager,
) -> AsyncGenerator[AsyncClient, None]:
    """Async client over ASGI with the batch manager backed by fakes."""
    app.dependency_overrides[get_batch_manager] = lambda: batch_manager
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_batch_manager, None)
