"""Session Factory — creates and restores AgentSessions with sandbox integration.

Invariants:
    - A new session is persisted before it is initialized (events need the row)
    - Sandbox allocation is best effort unless require_sandbox is set
    - Restoring an unknown session (or one that fails to restore) returns None;
      the caller turns that into SessionNotFoundError
    - A restored session whose sandbox is gone gets a new one, and the new URL is
      written back to its metadata before the agent is built

Design Decisions:
    - The factory owns the agent builder: engine kind, provider, tools, and limits come
      from settings here, so AgentSession stays storage- and provider-agnostic
    - Session ids are URL-safe random tokens, not UUIDs (ids appear in query strings)
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Callable

from agent_server.config import Settings
from agent_server.core.errors import SandboxProvisionError, SandboxOperationError
from agent_server.core.records import SessionInfo, now_ms
from agent_server.core.repository_protocols import StorageProvider
from agent_server.engines.factory import create_tool_call_engine
from agent_server.services.agent import Agent, ChatProvider
from agent_server.services.agent_session import AgentSession, TelemetrySink
from agent_server.services.exclusive_gate import ExclusiveModeGate
from agent_server.services.sandbox_scheduler import SandboxScheduler
from agent_server.services.tools import ToolRegistry

logger = logging.getLogger(__name__)

AGENT_NAME = "agent-server"


@dataclass
class CreatedSession:
    session: AgentSession
    session_info: SessionInfo
    storage_unsubscribe: Callable[[], None]


def model_catalog(settings: Settings) -> tuple[list[dict], dict]:
    """(available models, default model) as {provider, id} configs."""
    available = [{"provider": "anthropic", "id": m} for m in settings.available_models]
    default = {"provider": "anthropic", "id": settings.agent_model}
    return available, default


def new_session_id() -> str:
    return secrets.token_urlsafe(15)


class AgentSessionFactory:
    def __init__(
        self,
        *,
        settings: Settings,
        storage: StorageProvider,
        provider: ChatProvider,
        gate: ExclusiveModeGate,
        tools: ToolRegistry | None = None,
        sandbox_scheduler: SandboxScheduler | None = None,
        telemetry_factory: Callable[[str], TelemetrySink] | None = None,
    ):
        self.settings = settings
        self.storage = storage
        self.provider = provider
        self.gate = gate
        self.tools = tools or ToolRegistry()
        self.sandbox_scheduler = sandbox_scheduler
        self.telemetry_factory = telemetry_factory
        self.available_models, self.default_model = model_catalog(settings)

    def build_agent(
        self,
        model_config: dict,
        session_info: SessionInfo | None,
        initial_events: list[dict],
    ) -> Agent:
        instructions = self.settings.agent_instructions
        sandbox_url = (session_info.metadata if session_info else {}).get("sandboxUrl")
        if sandbox_url:
            instructions += f"\n\nYour sandbox environment is available at {sandbox_url}."
        return Agent(
            engine=create_tool_call_engine(
                self.settings.tool_call_engine,
                think_token=self.settings.seed_think_token,
            ),
            provider=self.provider,
            model=model_config["id"],
            instructions=instructions,
            tools=self.tools,
            max_iterations=self.settings.agent_max_iterations,
            initial_events=initial_events,
            session_id=session_info.id if session_info else None,
        )

    def _new_session(self, session_info: SessionInfo) -> AgentSession:
        telemetry = (
            self.telemetry_factory(session_info.id) if self.telemetry_factory else None
        )
        return AgentSession(
            session_info.id,
            storage=self.storage,
            agent_builder=self.build_agent,
            gate=self.gate,
            available_models=self.available_models,
            default_model=self.default_model,
            session_info=session_info,
            telemetry=telemetry,
        )

    async def create_session(
        self, user_id: str | None = None, require_sandbox: bool = False,
    ) -> CreatedSession:
        session_id = new_session_id()
        sandbox_url = None
        if self.sandbox_scheduler is not None and user_id:
            try:
                sandbox_url = await self.sandbox_scheduler.get_sandbox_url(
                    user_id=user_id, session_id=session_id,
                )
            except (SandboxProvisionError, SandboxOperationError) as e:
                if require_sandbox:
                    raise
                logger.error(
                    f"Failed to allocate sandbox for session {session_id}: {e.message}",
                    extra={"session_id": session_id, "user_id": user_id},
                )

        now = now_ms()
        metadata: dict = {
            "agentInfo": {"name": AGENT_NAME, "configuredAt": now},
            "modelConfig": self.default_model,
        }
        if sandbox_url:
            metadata["sandboxUrl"] = sandbox_url
        info = await self.storage.sessions.create_session(SessionInfo(
            id=session_id,
            created_at=now,
            updated_at=now,
            workspace=self.settings.workspace,
            user_id=user_id,
            metadata=metadata,
        ))
        logger.info(
            f"Created session (sandbox={sandbox_url})",
            extra={"session_id": session_id, "user_id": user_id},
        )

        session = self._new_session(info)
        result = await session.initialize()
        return CreatedSession(session, info, result.storage_unsubscribe)

    async def restore_session(self, session_id: str) -> CreatedSession | None:
        try:
            info = await self.storage.sessions.get_session_info(session_id)
            if info is None:
                return None

            old_url = info.metadata.get("sandboxUrl")
            if self.sandbox_scheduler is not None and info.user_id:
                info = await self._reallocate_sandbox(info, old_url)

            session = self._new_session(info)
            result = await session.initialize()
            logger.info("Session restored from storage", extra={"session_id": session_id})
            return CreatedSession(session, info, result.storage_unsubscribe)
        except Exception as e:
            logger.error(
                f"Failed to restore session {session_id}: {e}",
                extra={"session_id": session_id}, exc_info=True,
            )
            return None

    async def _reallocate_sandbox(
        self, info: SessionInfo, old_url: str | None,
    ) -> SessionInfo:
        try:
            if await self.sandbox_scheduler.check_instance_exist(old_url):
                return info
            new_url = await self.sandbox_scheduler.get_sandbox_url(
                user_id=info.user_id, session_id=info.id,
            )
            updated = await self.storage.sessions.update_session_info(
                info.id, {"metadata": {"sandboxUrl": new_url}},
            )
            logger.info(
                f"Sandbox reallocated: {old_url} -> {new_url}",
                extra={"session_id": info.id, "user_id": info.user_id},
            )
            return updated
        except (SandboxProvisionError, SandboxOperationError) as e:
            logger.warning(
                f"Failed to reallocate sandbox: {e.message}",
                extra={"session_id": info.id},
            )
            return info
