"""API Dependencies — process-wide runtime assembly and per-request lookups.

Invariants:
    - One ServerRuntime per process, built in the FastAPI lifespan and stored on
      app.state.runtime; routes reach it only through get_runtime()
    - get_live_session() restores a stored session through the factory when it is
      not in the pool, and registers it before returning
    - Unknown or unrestorable sessions raise SessionNotFoundError (404)

Design Decisions:
    - app.state over module globals: tests build their own runtime (memory storage,
      fake provider) and attach it without touching the lifespan
"""

import logging
from dataclasses import dataclass

from fastapi import Request

from agent_server.config import Settings
from agent_server.core.errors import SessionNotFoundError
from agent_server.core.repository_protocols import StorageProvider
from agent_server.infrastructure.anthropic_client import AnthropicChatProvider
from agent_server.infrastructure.sandbox_manager import SandboxManager
from agent_server.infrastructure.storage import create_storage_provider
from agent_server.services.agent import ChatProvider
from agent_server.services.agent_session import AgentSession
from agent_server.services.exclusive_gate import ExclusiveModeGate
from agent_server.services.sandbox_scheduler import SandboxScheduler
from agent_server.services.session_factory import AgentSessionFactory
from agent_server.services.session_pool import SessionPool
from agent_server.services.tools import ToolRegistry
from agent_server.services.user_config_service import UserConfigService

logger = logging.getLogger(__name__)


@dataclass
class ServerRuntime:
    settings: Settings
    storage: StorageProvider
    gate: ExclusiveModeGate
    pool: SessionPool
    factory: AgentSessionFactory
    user_configs: UserConfigService
    sandbox_manager: SandboxManager | None = None
    sandbox_scheduler: SandboxScheduler | None = None

    async def close(self) -> None:
        await self.pool.cleanup_all()
        if self.sandbox_manager is not None:
            await self.sandbox_manager.close()
        await self.storage.close()


async def build_runtime(
    settings: Settings,
    *,
    storage: StorageProvider | None = None,
    provider: ChatProvider | None = None,
    tools: ToolRegistry | None = None,
    sandbox_manager: SandboxManager | None = None,
) -> ServerRuntime:
    """Wire storage, admission control, pool, sandboxes, and the session factory."""
    storage = storage or create_storage_provider(settings)
    await storage.initialize()

    provider = provider or AnthropicChatProvider(
        api_key=settings.anthropic_api_key,
        max_retries=settings.anthropic_max_retries,
        base_delay_ms=settings.anthropic_base_delay_ms,
        max_delay_ms=settings.anthropic_max_delay_ms,
        timeout_seconds=settings.anthropic_timeout_seconds,
        max_tokens=settings.anthropic_max_tokens,
    )
    gate = ExclusiveModeGate(settings.exclusive_mode)
    user_configs = UserConfigService(storage.user_configs)

    scheduler = None
    if sandbox_manager is None and settings.sandbox_enabled:
        sandbox_manager = SandboxManager(
            base_url=settings.sandbox_base_url,
            jwt_token=settings.sandbox_jwt_token,
            default_ttl_minutes=settings.sandbox_ttl_minutes,
            create_mock=settings.sandbox_create_mock,
            timeout_seconds=settings.sandbox_timeout_seconds,
        )
    if sandbox_manager is not None:
        scheduler = SandboxScheduler(
            sandbox_manager, storage.sandbox_allocations, user_configs,
        )

    factory = AgentSessionFactory(
        settings=settings,
        storage=storage,
        provider=provider,
        gate=gate,
        tools=tools,
        sandbox_scheduler=scheduler,
    )
    pool = SessionPool(
        max_sessions=settings.session_pool_max_sessions,
        memory_limit_mb=settings.session_pool_memory_limit_mb,
        check_interval_s=settings.session_pool_check_interval_s,
        session_memory_mb=settings.session_memory_estimate_mb,
    )
    logger.info(
        f"Runtime ready (engine={settings.tool_call_engine}, "
        f"exclusive={settings.exclusive_mode}, sandbox={scheduler is not None})",
    )
    return ServerRuntime(
        settings=settings,
        storage=storage,
        gate=gate,
        pool=pool,
        factory=factory,
        user_configs=user_configs,
        sandbox_manager=sandbox_manager,
        sandbox_scheduler=scheduler,
    )


def get_runtime(request: Request) -> ServerRuntime:
    return request.app.state.runtime


async def get_live_session(
    session_id: str, runtime: ServerRuntime,
) -> AgentSession:
    session = runtime.pool.get(session_id)
    if session is not None:
        return session
    restored = await runtime.factory.restore_session(session_id)
    if restored is None:
        raise SessionNotFoundError(session_id)
    await runtime.pool.set(session_id, restored.session)
    return restored.session
