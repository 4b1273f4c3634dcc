"""Service test fixtures — in-memory storage, settings, and a session factory.

Invariants:
    - Every test gets a fresh MemoryStorageProvider (no shared state between tests)
    - Settings are built explicitly; nothing reads the process environment
    - The default factory has no sandbox scheduler and exclusive mode off

Design Decisions:
    - Memory storage over SQLite here: service tests exercise session semantics, the
      SQL store has its own tests under tests/infrastructure
"""

import pytest

from agent_server.config import Settings
from agent_server.infrastructure.memory_store import MemoryStorageProvider
from agent_server.services.exclusive_gate import ExclusiveModeGate
from agent_server.services.session_factory import AgentSessionFactory
from tests.services.fake_provider import ScriptedProvider


@pytest.fixture
def settings():
    return Settings(
        anthropic_api_key="test-key",
        storage_backend="memory",
        tool_call_engine="native",
        agent_model="model-a",
        available_models=["model-a", "model-b"],
        agent_instructions="You are a test agent.",
        agent_max_iterations=5,
        sandbox_enabled=False,
    )


@pytest.fixture
async def storage():
    provider = MemoryStorageProvider()
    await provider.initialize()
    yield provider
    await provider.close()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def gate():
    return ExclusiveModeGate(enabled=False)


@pytest.fixture
def factory(settings, storage, provider, gate):
    return AgentSessionFactory(
        settings=settings, storage=storage, provider=provider, gate=gate,
    )
