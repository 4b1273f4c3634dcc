"""In-Memory Storage — dict-backed DAOs for single-process development and tests.

Invariants:
    - Same observable behavior as the SQL store (ordering, conflicts, cascades)
    - Records are copied on the way in and out: callers never alias stored state
    - Events keep insertion order; the stable sort by timestamp preserves it for ties

Design Decisions:
    - No locks: asyncio is single-threaded and no method awaits between read and write
"""

import copy
import logging

from agent_server.core.domain_types import AllocationStrategy
from agent_server.core.errors import SessionConflictError, SessionNotFoundError
from agent_server.core.records import (
    SandboxAllocation, SessionInfo, UserConfig, UserConfigInfo, now_ms,
)

logger = logging.getLogger(__name__)


class MemorySessionDAO:
    def __init__(self, events: "MemoryEventDAO"):
        self._sessions: dict[str, SessionInfo] = {}
        self._events = events

    async def create_session(self, info: SessionInfo) -> SessionInfo:
        if info.id in self._sessions:
            raise SessionConflictError(info.id)
        self._sessions[info.id] = copy.deepcopy(info)
        return copy.deepcopy(info)

    async def update_session_info(
        self, session_id: str, updates: dict,
    ) -> SessionInfo:
        info = self._sessions.get(session_id)
        if info is None:
            raise SessionNotFoundError(session_id)
        if "metadata" in updates:
            info.metadata = {**info.metadata, **(updates["metadata"] or {})}
        if "workspace" in updates:
            info.workspace = updates["workspace"]
        if "user_id" in updates:
            info.user_id = updates["user_id"]
        info.updated_at = now_ms()
        return copy.deepcopy(info)

    async def get_session_info(self, session_id: str) -> SessionInfo | None:
        info = self._sessions.get(session_id)
        return copy.deepcopy(info) if info else None

    async def get_all_sessions(self) -> list[SessionInfo]:
        return self._sorted(self._sessions.values())

    async def get_user_sessions(self, user_id: str) -> list[SessionInfo]:
        return self._sorted(
            s for s in self._sessions.values() if s.user_id == user_id
        )

    async def delete_session(self, session_id: str) -> bool:
        await self._events.delete_session_events(session_id)
        return self._sessions.pop(session_id, None) is not None

    async def session_exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def update_session_timestamp(self, session_id: str) -> None:
        info = self._sessions.get(session_id)
        if info is not None:
            info.updated_at = now_ms()

    def _sorted(self, sessions) -> list[SessionInfo]:
        return [
            copy.deepcopy(s)
            for s in sorted(sessions, key=lambda s: s.updated_at, reverse=True)
        ]


class MemoryEventDAO:
    def __init__(self):
        self._events: dict[str, list[dict]] = {}
        self.sessions: MemorySessionDAO | None = None

    async def save_event(self, session_id: str, event: dict) -> None:
        stored = copy.deepcopy(event)
        stored.setdefault("timestamp", now_ms())
        self._events.setdefault(session_id, []).append(stored)
        if self.sessions is not None:
            await self.sessions.update_session_timestamp(session_id)

    async def get_session_events(self, session_id: str) -> list[dict]:
        events = self._events.get(session_id, [])
        return copy.deepcopy(sorted(events, key=lambda e: e["timestamp"]))

    async def get_session_events_paginated(
        self, session_id: str, offset: int = 0, limit: int = 100,
    ) -> list[dict]:
        events = await self.get_session_events(session_id)
        return events[offset:offset + limit]

    async def get_session_event_count(self, session_id: str) -> int:
        return len(self._events.get(session_id, []))

    async def delete_session_events(self, session_id: str) -> int:
        return len(self._events.pop(session_id, []))

    async def delete_events_older_than(self, cutoff_ms: int) -> int:
        removed = 0
        for session_id, events in self._events.items():
            kept = [e for e in events if e["timestamp"] >= cutoff_ms]
            removed += len(events) - len(kept)
            self._events[session_id] = kept
        return removed


class MemorySandboxAllocationDAO:
    def __init__(self):
        self._rows: dict[str, SandboxAllocation] = {}

    async def create_allocation(
        self, allocation: SandboxAllocation,
    ) -> SandboxAllocation:
        self._rows[allocation.sandbox_id] = copy.deepcopy(allocation)
        return copy.deepcopy(allocation)

    async def get_allocation(self, sandbox_id: str) -> SandboxAllocation | None:
        row = self._rows.get(sandbox_id)
        return copy.deepcopy(row) if row else None

    async def get_user_allocations(self, user_id: str) -> list[SandboxAllocation]:
        return self._select(lambda r: r.user_id == user_id and r.is_active)

    async def get_session_allocation(
        self, session_id: str,
    ) -> SandboxAllocation | None:
        rows = self._select(lambda r: r.session_id == session_id and r.is_active)
        return rows[0] if rows else None

    async def get_available_allocations(
        self, strategy: AllocationStrategy, user_id: str | None = None,
    ) -> list[SandboxAllocation]:
        def available(row: SandboxAllocation) -> bool:
            if row.allocation_strategy != strategy or not row.is_active:
                return False
            if strategy == AllocationStrategy.SHARED_POOL:
                return row.user_id is None or row.user_id == user_id
            return user_id is None or row.user_id == user_id

        return self._select(available)

    async def update_last_used(self, sandbox_id: str) -> None:
        await self.update_allocation(sandbox_id, {"last_used_at": now_ms()})

    async def deactivate_allocation(self, sandbox_id: str) -> None:
        await self.update_allocation(sandbox_id, {"is_active": False})

    async def activate_allocation(self, sandbox_id: str) -> None:
        await self.update_allocation(
            sandbox_id, {"is_active": True, "last_used_at": now_ms()},
        )

    async def delete_allocation(self, sandbox_id: str) -> bool:
        return self._rows.pop(sandbox_id, None) is not None

    async def get_allocations_unused_since(
        self, cutoff_ms: int,
    ) -> list[SandboxAllocation]:
        return self._select(lambda r: r.last_used_at < cutoff_ms and r.is_active)

    async def get_inactive_allocations(self) -> list[SandboxAllocation]:
        return self._select(lambda r: not r.is_active)

    async def update_allocation(
        self, sandbox_id: str, updates: dict,
    ) -> SandboxAllocation | None:
        row = self._rows.get(sandbox_id)
        if row is None:
            return None
        for key, value in updates.items():
            if key == "allocation_strategy":
                value = AllocationStrategy(value)
            setattr(row, key, value)
        return copy.deepcopy(row)

    def _select(self, predicate) -> list[SandboxAllocation]:
        rows = [r for r in self._rows.values() if predicate(r)]
        rows.sort(key=lambda r: r.last_used_at, reverse=True)
        return copy.deepcopy(rows)


class MemoryUserConfigDAO:
    def __init__(self):
        self._configs: dict[str, UserConfigInfo] = {}

    async def get_user_config(self, user_id: str) -> UserConfigInfo | None:
        info = self._configs.get(user_id)
        return copy.deepcopy(info) if info else None

    async def create_user_config(
        self, user_id: str, config: dict | None = None,
    ) -> UserConfigInfo:
        now = now_ms()
        info = UserConfigInfo(
            user_id=user_id,
            created_at=now,
            updated_at=now,
            config=UserConfig.from_dict(config),
        )
        self._configs[user_id] = info
        return copy.deepcopy(info)

    async def update_user_config(
        self, user_id: str, updates: dict,
    ) -> UserConfigInfo | None:
        info = self._configs.get(user_id)
        if info is None:
            return None
        info.config = UserConfig.from_dict(updates, base=info.config)
        info.updated_at = now_ms()
        return copy.deepcopy(info)

    async def delete_user_config(self, user_id: str) -> bool:
        return self._configs.pop(user_id, None) is not None


class MemoryStorageProvider:
    """StorageProvider keeping everything in process memory."""

    def __init__(self):
        self.events = MemoryEventDAO()
        self.sessions = MemorySessionDAO(self.events)
        self.events.sessions = self.sessions
        self.sandbox_allocations = MemorySandboxAllocationDAO()
        self.user_configs = MemoryUserConfigDAO()

    async def initialize(self) -> None:
        logger.info("In-memory storage initialized")

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True
