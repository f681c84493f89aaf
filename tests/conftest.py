"""Shared fixtures: isolated fake Redis, repositories, and an app client with test doubles."""

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chatbot_api.api.app import app, get_orchestrator, get_repository
from chatbot_api.repositories.redis_store import RedisRepository
from chatbot_api.services.orchestrator import GenerationOrchestrator
from tests.helpers.fakes import RecordingBackendFactory

USER_ID = "user-1"


@pytest.fixture
def redis_server():
    """A private fake Redis server per test."""
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def redis_client(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def repository(redis_client):
    return RedisRepository(redis_client, ttl_seconds=3600, write_retries=20)


@pytest.fixture
def backend_factory():
    return RecordingBackendFactory()


@pytest.fixture
def orchestrator(backend_factory):
    return GenerationOrchestrator(backend_factory, timeout=5.0)


@pytest_asyncio.fixture
async def client(repository, orchestrator):
    """API client authenticated as USER_ID with the fake store and backends wired in."""
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-User-Id": USER_ID},
    ) as client:
        yield client
    app.dependency_overrides.clear()
