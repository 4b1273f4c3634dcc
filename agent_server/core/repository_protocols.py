"""Boundary Protocols — DAO contracts between services and storage backends.

Invariants:
    - Services NEVER import a concrete store — dependency arrows point inward only
    - All IO operations accessed through Protocol types
    - Implementations (SQL, in-memory) provided via StorageProvider injection
    - Events for one session are returned in (timestamp, insertion) order

Design Decisions:
    - Protocol over ABC: structural subtyping, no inheritance hierarchy
    - Async in Protocol: every DAO call is a suspension point because implementations do IO
    - Convenience user-config operations (quota, links, fragments) live in
      UserConfigService on top of get/update, so backends stay minimal
"""

from typing import Protocol

from agent_server.core.domain_types import AllocationStrategy
from agent_server.core.records import (
    SandboxAllocation, SessionInfo, UserConfigInfo,
)


class SessionDAO(Protocol):
    """Contract for session records — implemented by storage backends."""
    async def create_session(self, info: SessionInfo) -> SessionInfo: ...
    async def update_session_info(
        self, session_id: str, updates: dict,
    ) -> SessionInfo: ...
    async def get_session_info(self, session_id: str) -> SessionInfo | None: ...
    async def get_all_sessions(self) -> list[SessionInfo]: ...
    async def get_user_sessions(self, user_id: str) -> list[SessionInfo]: ...
    async def delete_session(self, session_id: str) -> bool: ...
    async def session_exists(self, session_id: str) -> bool: ...
    async def update_session_timestamp(self, session_id: str) -> None: ...


class EventDAO(Protocol):
    """Contract for the per-session event log."""
    async def save_event(self, session_id: str, event: dict) -> None: ...
    async def get_session_events(self, session_id: str) -> list[dict]: ...
    async def get_session_events_paginated(
        self, session_id: str, offset: int = 0, limit: int = 100,
    ) -> list[dict]: ...
    async def get_session_event_count(self, session_id: str) -> int: ...
    async def delete_session_events(self, session_id: str) -> int: ...
    async def delete_events_older_than(self, cutoff_ms: int) -> int: ...


class SandboxAllocationDAO(Protocol):
    """Contract for the sandbox allocation table."""
    async def create_allocation(
        self, allocation: SandboxAllocation,
    ) -> SandboxAllocation: ...
    async def get_allocation(self, sandbox_id: str) -> SandboxAllocation | None: ...
    async def get_user_allocations(self, user_id: str) -> list[SandboxAllocation]: ...
    async def get_session_allocation(
        self, session_id: str,
    ) -> SandboxAllocation | None: ...
    async def get_available_allocations(
        self, strategy: AllocationStrategy, user_id: str | None = None,
    ) -> list[SandboxAllocation]: ...
    async def update_last_used(self, sandbox_id: str) -> None: ...
    async def deactivate_allocation(self, sandbox_id: str) -> None: ...
    async def activate_allocation(self, sandbox_id: str) -> None: ...
    async def delete_allocation(self, sandbox_id: str) -> bool: ...
    async def get_allocations_unused_since(
        self, cutoff_ms: int,
    ) -> list[SandboxAllocation]: ...
    async def get_inactive_allocations(self) -> list[SandboxAllocation]: ...
    async def update_allocation(
        self, sandbox_id: str, updates: dict,
    ) -> SandboxAllocation | None: ...


class UserConfigDAO(Protocol):
    """Contract for per-user configuration."""
    async def get_user_config(self, user_id: str) -> UserConfigInfo | None: ...
    async def create_user_config(
        self, user_id: str, config: dict | None = None,
    ) -> UserConfigInfo: ...
    async def update_user_config(
        self, user_id: str, updates: dict,
    ) -> UserConfigInfo | None: ...
    async def delete_user_config(self, user_id: str) -> bool: ...


class StorageProvider(Protocol):
    """Bundle of DAOs plus backend lifecycle."""
    sessions: SessionDAO
    events: EventDAO
    sandbox_allocations: SandboxAllocationDAO
    user_configs: UserConfigDAO

    async def initialize(self) -> None: ...
    async def close(self) -> None: ...
    async def health_check(self) -> bool: ...
