"""Route test fixtures — an app wired to memory storage and a scripted provider.

Invariants:
    - Each test gets a fresh app and runtime; nothing leaks between tests
    - The lifespan is not run: the runtime is attached to app.state directly,
      so no test touches Anthropic or a database

Design Decisions:
    - httpx ASGITransport over TestClient: routes are async, tests stay async
"""

import pytest
from httpx import ASGITransport, AsyncClient

from agent_server.api.deps import build_runtime
from agent_server.infrastructure.memory_store import MemoryStorageProvider
from agent_server.main import create_app
from tests.api.route_helpers import route_settings
from tests.services.fake_provider import ScriptedProvider


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def settings():
    return route_settings()


@pytest.fixture
async def runtime(settings, provider):
    runtime = await build_runtime(
        settings, storage=MemoryStorageProvider(), provider=provider,
    )
    yield runtime
    await runtime.close()


@pytest.fixture
async def client(runtime):
    app = create_app()
    app.state.runtime = runtime
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def session_id(client):
    res = await client.post("/api/v1/sessions", json={"user_id": "user-1"})
    return res.json()["session"]["id"]
