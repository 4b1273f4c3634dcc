"""Agent Session — couples one agent runtime to one conversation and its event log.

Invariants:
    - State machine: created -> initializing -> ready <-> executing -> disposed
    - Exactly one agent instance at a time; update_model_config() swaps it while the
      session id and persisted history stay the same
    - Persisted events exclude pure streaming deltas (should_store_event)
    - Persistence and telemetry failures are logged, never raised into the loop
    - The exclusive slot is claimed before any work and released on every exit path
    - One query per session at a time: a second query while executing is a 409
    - Failed queries never raise: non-streaming returns {success: False, error},
      streaming yields one synthetic system error event

Design Decisions:
    - The agent is built by an injected builder (model_config, session_info,
      initial_events) -> Agent, so the session never knows provider or engine details
    - A missing or retired session model override falls back to the default model
      with a warning instead of failing initialization
"""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Protocol

from agent_server.core.domain_types import AgentStatus, SessionState, should_store_event
from agent_server.core.errors import (
    ConflictError, ErrorContext, normalize_agent_error,
)
from agent_server.core.records import SessionInfo
from agent_server.core.repository_protocols import StorageProvider
from agent_server.services.agent import Agent
from agent_server.services.event_stream import EventStreamBridge
from agent_server.services.exclusive_gate import ExclusiveModeGate

logger = logging.getLogger(__name__)


class TelemetrySink(Protocol):
    async def process_agent_event(self, event: dict) -> None: ...

    async def flush(self) -> None: ...


AgentBuilder = Callable[[dict, SessionInfo | None, list[dict]], Agent]


@dataclass
class InitializeResult:
    storage_unsubscribe: Callable[[], None]


class AgentSession:
    """A live conversation: agent instance, subscriptions, admission control."""

    def __init__(
        self,
        session_id: str,
        *,
        storage: StorageProvider,
        agent_builder: AgentBuilder,
        gate: ExclusiveModeGate,
        available_models: list[dict],
        default_model: dict,
        session_info: SessionInfo | None = None,
        telemetry: TelemetrySink | None = None,
    ):
        self.id = session_id
        self.storage = storage
        self.agent_builder = agent_builder
        self.gate = gate
        self.available_models = available_models
        self.default_model = default_model
        self.session_info = session_info
        self.telemetry = telemetry
        self.event_bridge = EventStreamBridge()
        self.state = SessionState.CREATED
        self.agent: Agent | None = None
        self._storage_unsubscribe: Callable[[], None] | None = None
        self._bridge_unsubscribe: Callable[[], None] | None = None

    # -- lifecycle ------------------------------------------------------------

    async def initialize(self) -> InitializeResult:
        self.state = SessionState.INITIALIZING
        self.agent = await self._create_agent()
        unsubscribe = self._setup_event_streams()
        self.state = SessionState.READY
        await self.event_bridge.emit("ready", {"sessionId": self.id})
        return InitializeResult(storage_unsubscribe=unsubscribe)

    async def _create_agent(self) -> Agent:
        stored_events = await self.storage.events.get_session_events(self.id)
        model_config = self.resolve_model_config(self.session_info)
        agent = self.agent_builder(model_config, self.session_info, stored_events)
        await agent.initialize()
        logger.info(
            f"Created agent with model {model_config.get('id')} "
            f"and {len(stored_events)} stored events",
            extra={"session_id": self.id},
        )
        return agent

    def resolve_model_config(self, session_info: SessionInfo | None) -> dict:
        override = (session_info.metadata if session_info else {}).get("modelConfig")
        if override:
            for model in self.available_models:
                if (
                    model.get("provider") == override.get("provider")
                    and model.get("id") == override.get("id")
                ):
                    return model
            logger.warning(
                f"Session model {override.get('provider')}/{override.get('id')} "
                "not available, falling back to default",
                extra={"session_id": self.id},
            )
        return self.default_model

    def _setup_event_streams(self) -> Callable[[], None]:
        stream = self.agent.event_stream
        storage_unsubscribe = stream.subscribe(self._handle_event)
        if self._bridge_unsubscribe:
            self._bridge_unsubscribe()
        self._bridge_unsubscribe = self.event_bridge.connect(stream)
        self._storage_unsubscribe = storage_unsubscribe
        return storage_unsubscribe

    async def _handle_event(self, event: dict) -> None:
        if should_store_event(event):
            try:
                await self.storage.events.save_event(self.id, event)
            except Exception as e:
                logger.error(
                    f"Failed to save event to storage: {e}",
                    extra={"session_id": self.id, "event_type": event.get("type")},
                )
        if self.telemetry is not None:
            try:
                await self.telemetry.process_agent_event(event)
            except Exception as e:
                logger.error(
                    f"Failed to process telemetry event: {e}",
                    extra={"session_id": self.id},
                )

    def get_processing_status(self) -> bool:
        return self.agent is not None and self.agent.status() == AgentStatus.EXECUTING

    # -- queries --------------------------------------------------------------

    def _ensure_ready(self) -> None:
        if self.agent is None or self.state == SessionState.DISPOSED:
            raise ConflictError(
                f"Session {self.id} is not ready", "SESSION_NOT_READY",
                ErrorContext(session_id=self.id),
            )

    def _admit(self) -> None:
        """Claim the exclusive slot, then refuse a second query on a busy session."""
        self._ensure_ready()
        self.gate.claim(self.id)
        if self.state == SessionState.EXECUTING:
            self.gate.release(self.id)
            raise ConflictError(
                f"Session {self.id} is already running a query", "SESSION_BUSY",
                ErrorContext(session_id=self.id),
            )
        self.state = SessionState.EXECUTING

    async def run_query(
        self, input: Any, environment_input: dict | None = None,
    ) -> dict:
        self._admit()
        try:
            result = await self.agent.run(input, environment_input)
            return {"success": True, "result": result}
        except Exception as e:
            error = normalize_agent_error(e, ErrorContext(session_id=self.id))
            logger.error(
                f"Query failed: {error.message}",
                extra={"session_id": self.id, "error_code": error.code},
            )
            await self.event_bridge.emit("error", {"message": error.message})
            return {"success": False, "error": error.to_query_error()}
        finally:
            self._finish_query()

    async def run_query_streaming(
        self, input: Any, environment_input: dict | None = None,
    ) -> AsyncIterator[dict]:
        """Claim the slot now; the returned iterator releases it when it ends."""
        self._admit()
        return self._stream_query(input, environment_input)

    async def _stream_query(
        self, input: Any, environment_input: dict | None,
    ) -> AsyncIterator[dict]:
        try:
            async for event in self.agent.run_streaming(input, environment_input):
                yield event
        except Exception as e:
            error = normalize_agent_error(e, ErrorContext(session_id=self.id))
            logger.error(
                f"Streaming query failed: {error.message}",
                extra={"session_id": self.id, "error_code": error.code},
            )
            await self.event_bridge.emit("error", {"message": error.message})
            yield error.to_event()
        finally:
            self._finish_query()

    def _finish_query(self) -> None:
        self.gate.release(self.id)
        if self.state == SessionState.EXECUTING:
            self.state = SessionState.READY

    async def abort_query(self) -> bool:
        if self.agent is None:
            return False
        aborted = self.agent.abort()
        if aborted:
            self.gate.release(self.id)
            await self.event_bridge.emit("aborted", {"sessionId": self.id})
        return aborted

    # -- reconfiguration & teardown ------------------------------------------

    async def update_model_config(self, session_info: SessionInfo) -> None:
        """Replace the agent with one built for the new model, keeping history."""
        self.session_info = session_info
        if self._storage_unsubscribe:
            self._storage_unsubscribe()
            self._storage_unsubscribe = None
        if self.agent is not None and hasattr(self.agent, "dispose"):
            await self.agent.dispose()
        self.agent = await self._create_agent()
        self._setup_event_streams()
        self.state = SessionState.READY
        logger.info("Session agent replaced after model change", extra={"session_id": self.id})

    async def cleanup(self) -> None:
        self.gate.release(self.id)
        if self._storage_unsubscribe:
            self._storage_unsubscribe()
            self._storage_unsubscribe = None
        if self._bridge_unsubscribe:
            self._bridge_unsubscribe()
            self._bridge_unsubscribe = None
        if self.agent is not None and hasattr(self.agent, "dispose"):
            await self.agent.dispose()
        if self.telemetry is not None:
            try:
                await self.telemetry.flush()
            except Exception as e:
                logger.error(
                    f"Failed to flush telemetry: {e}", extra={"session_id": self.id},
                )
        self.state = SessionState.DISPOSED
        await self.event_bridge.emit("closed", {"sessionId": self.id})
