"""SQL Storage — SQLAlchemy async implementations of the DAO protocols.

Invariants:
    - Every DAO call opens and commits its own session (no cross-call transactions)
    - Rows never leave this module: callers receive records (core/records.py)
    - Session events are ordered by (timestamp, id); id is the insertion sequence
    - Deleting a session removes its events in the same transaction

Design Decisions:
    - One class per DAO sharing a DatabaseSessionManager (ADR: Protocol over ABC,
      composition over a generic repository base)
    - JSON columns hold metadata, events and user configs as-is: the schema only
      indexes what queries filter on
"""

import logging

from sqlalchemy import delete, func, select

from agent_server.core.domain_types import AllocationStrategy
from agent_server.core.errors import SessionConflictError, SessionNotFoundError
from agent_server.core.records import (
    SandboxAllocation, SessionInfo, UserConfig, UserConfigInfo, now_ms,
)
from agent_server.infrastructure.database import DatabaseSessionManager
from agent_server.models.event import Event
from agent_server.models.sandbox_allocation import SandboxAllocationRow
from agent_server.models.session import Session as SessionModel
from agent_server.models.user_config import UserConfigRow

logger = logging.getLogger(__name__)


# ─── Row <-> record ──────────────────────────────────────────────

def _session_record(row: SessionModel) -> SessionInfo:
    return SessionInfo(
        id=row.id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        workspace=row.workspace,
        user_id=row.user_id,
        metadata=dict(row.session_metadata or {}),
    )


def _allocation_record(row: SandboxAllocationRow) -> SandboxAllocation:
    return SandboxAllocation(
        sandbox_id=row.sandbox_id,
        sandbox_url=row.sandbox_url,
        allocation_strategy=AllocationStrategy(row.allocation_strategy),
        user_id=row.user_id,
        session_id=row.session_id,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        is_active=row.is_active,
    )


def _user_config_record(row: UserConfigRow) -> UserConfigInfo:
    return UserConfigInfo(
        user_id=row.user_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        config=UserConfig.from_dict(row.config),
    )


# ─── Sessions ────────────────────────────────────────────────────

class SqlSessionDAO:
    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def create_session(self, info: SessionInfo) -> SessionInfo:
        async with self._db.session() as db:
            if await db.get(SessionModel, info.id) is not None:
                raise SessionConflictError(info.id)
            row = SessionModel(
                id=info.id,
                created_at=info.created_at,
                updated_at=info.updated_at,
                workspace=info.workspace,
                user_id=info.user_id,
                session_metadata=dict(info.metadata),
            )
            db.add(row)
            await db.commit()
            return _session_record(row)

    async def update_session_info(
        self, session_id: str, updates: dict,
    ) -> SessionInfo:
        async with self._db.session() as db:
            row = await db.get(SessionModel, session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            if "metadata" in updates:
                row.session_metadata = {
                    **(row.session_metadata or {}), **(updates["metadata"] or {}),
                }
            if "workspace" in updates:
                row.workspace = updates["workspace"]
            if "user_id" in updates:
                row.user_id = updates["user_id"]
            row.updated_at = now_ms()
            await db.commit()
            return _session_record(row)

    async def get_session_info(self, session_id: str) -> SessionInfo | None:
        async with self._db.session() as db:
            row = await db.get(SessionModel, session_id)
            return _session_record(row) if row else None

    async def get_all_sessions(self) -> list[SessionInfo]:
        async with self._db.session() as db:
            result = await db.execute(
                select(SessionModel).order_by(SessionModel.updated_at.desc()),
            )
            return [_session_record(r) for r in result.scalars().all()]

    async def get_user_sessions(self, user_id: str) -> list[SessionInfo]:
        async with self._db.session() as db:
            result = await db.execute(
                select(SessionModel)
                .where(SessionModel.user_id == user_id)
                .order_by(SessionModel.updated_at.desc()),
            )
            return [_session_record(r) for r in result.scalars().all()]

    async def delete_session(self, session_id: str) -> bool:
        async with self._db.session() as db:
            await db.execute(delete(Event).where(Event.session_id == session_id))
            result = await db.execute(
                delete(SessionModel).where(SessionModel.id == session_id),
            )
            await db.commit()
            return result.rowcount > 0

    async def session_exists(self, session_id: str) -> bool:
        async with self._db.session() as db:
            result = await db.execute(
                select(func.count()).select_from(SessionModel)
                .where(SessionModel.id == session_id),
            )
            return result.scalar_one() > 0

    async def update_session_timestamp(self, session_id: str) -> None:
        async with self._db.session() as db:
            row = await db.get(SessionModel, session_id)
            if row is None:
                logger.warning(
                    f"Timestamp update for unknown session {session_id}",
                    extra={"session_id": session_id},
                )
                return
            row.updated_at = now_ms()
            await db.commit()


# ─── Events ──────────────────────────────────────────────────────

class SqlEventDAO:
    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def save_event(self, session_id: str, event: dict) -> None:
        async with self._db.session() as db:
            db.add(Event(
                event_id=str(event.get("id", "")),
                session_id=session_id,
                type=str(event.get("type", "")),
                timestamp=int(event.get("timestamp") or now_ms()),
                data=event,
            ))
            row = await db.get(SessionModel, session_id)
            if row is not None:
                row.updated_at = now_ms()
            await db.commit()

    async def get_session_events(self, session_id: str) -> list[dict]:
        async with self._db.session() as db:
            result = await db.execute(
                select(Event.data)
                .where(Event.session_id == session_id)
                .order_by(Event.timestamp, Event.id),
            )
            return list(result.scalars().all())

    async def get_session_events_paginated(
        self, session_id: str, offset: int = 0, limit: int = 100,
    ) -> list[dict]:
        async with self._db.session() as db:
            result = await db.execute(
                select(Event.data)
                .where(Event.session_id == session_id)
                .order_by(Event.timestamp, Event.id)
                .offset(offset)
                .limit(limit),
            )
            return list(result.scalars().all())

    async def get_session_event_count(self, session_id: str) -> int:
        async with self._db.session() as db:
            result = await db.execute(
                select(func.count()).select_from(Event)
                .where(Event.session_id == session_id),
            )
            return result.scalar_one()

    async def delete_session_events(self, session_id: str) -> int:
        async with self._db.session() as db:
            result = await db.execute(
                delete(Event).where(Event.session_id == session_id),
            )
            await db.commit()
            return result.rowcount

    async def delete_events_older_than(self, cutoff_ms: int) -> int:
        async with self._db.session() as db:
            result = await db.execute(
                delete(Event).where(Event.timestamp < cutoff_ms),
            )
            await db.commit()
            return result.rowcount


# ─── Sandbox allocations ─────────────────────────────────────────

class SqlSandboxAllocationDAO:
    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def create_allocation(
        self, allocation: SandboxAllocation,
    ) -> SandboxAllocation:
        async with self._db.session() as db:
            row = SandboxAllocationRow(
                sandbox_id=allocation.sandbox_id,
                sandbox_url=allocation.sandbox_url,
                user_id=allocation.user_id,
                session_id=allocation.session_id,
                allocation_strategy=allocation.allocation_strategy.value,
                created_at=allocation.created_at,
                last_used_at=allocation.last_used_at,
                is_active=allocation.is_active,
            )
            db.add(row)
            await db.commit()
            return _allocation_record(row)

    async def get_allocation(self, sandbox_id: str) -> SandboxAllocation | None:
        async with self._db.session() as db:
            row = await db.get(SandboxAllocationRow, sandbox_id)
            return _allocation_record(row) if row else None

    async def get_user_allocations(self, user_id: str) -> list[SandboxAllocation]:
        return await self._select(
            SandboxAllocationRow.user_id == user_id,
            SandboxAllocationRow.is_active.is_(True),
        )

    async def get_session_allocation(
        self, session_id: str,
    ) -> SandboxAllocation | None:
        rows = await self._select(
            SandboxAllocationRow.session_id == session_id,
            SandboxAllocationRow.is_active.is_(True),
        )
        return rows[0] if rows else None

    async def get_available_allocations(
        self, strategy: AllocationStrategy, user_id: str | None = None,
    ) -> list[SandboxAllocation]:
        conditions = [
            SandboxAllocationRow.allocation_strategy == strategy.value,
            SandboxAllocationRow.is_active.is_(True),
        ]
        if strategy == AllocationStrategy.SHARED_POOL:
            # Shared rows are either unbound or bound to this user
            bound = SandboxAllocationRow.user_id.is_(None)
            if user_id is not None:
                bound = bound | (SandboxAllocationRow.user_id == user_id)
            conditions.append(bound)
        elif user_id is not None:
            conditions.append(SandboxAllocationRow.user_id == user_id)
        return await self._select(*conditions)

    async def update_last_used(self, sandbox_id: str) -> None:
        await self.update_allocation(sandbox_id, {"last_used_at": now_ms()})

    async def deactivate_allocation(self, sandbox_id: str) -> None:
        await self.update_allocation(sandbox_id, {"is_active": False})

    async def activate_allocation(self, sandbox_id: str) -> None:
        await self.update_allocation(
            sandbox_id, {"is_active": True, "last_used_at": now_ms()},
        )

    async def delete_allocation(self, sandbox_id: str) -> bool:
        async with self._db.session() as db:
            result = await db.execute(
                delete(SandboxAllocationRow)
                .where(SandboxAllocationRow.sandbox_id == sandbox_id),
            )
            await db.commit()
            return result.rowcount > 0

    async def get_allocations_unused_since(
        self, cutoff_ms: int,
    ) -> list[SandboxAllocation]:
        return await self._select(
            SandboxAllocationRow.last_used_at < cutoff_ms,
            SandboxAllocationRow.is_active.is_(True),
        )

    async def get_inactive_allocations(self) -> list[SandboxAllocation]:
        return await self._select(SandboxAllocationRow.is_active.is_(False))

    async def update_allocation(
        self, sandbox_id: str, updates: dict,
    ) -> SandboxAllocation | None:
        async with self._db.session() as db:
            row = await db.get(SandboxAllocationRow, sandbox_id)
            if row is None:
                return None
            for key, value in updates.items():
                if key == "allocation_strategy":
                    value = AllocationStrategy(value).value
                setattr(row, key, value)
            await db.commit()
            return _allocation_record(row)

    async def _select(self, *conditions) -> list[SandboxAllocation]:
        async with self._db.session() as db:
            result = await db.execute(
                select(SandboxAllocationRow)
                .where(*conditions)
                .order_by(SandboxAllocationRow.last_used_at.desc()),
            )
            return [_allocation_record(r) for r in result.scalars().all()]


# ─── User configs ────────────────────────────────────────────────

class SqlUserConfigDAO:
    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def get_user_config(self, user_id: str) -> UserConfigInfo | None:
        async with self._db.session() as db:
            row = await db.get(UserConfigRow, user_id)
            return _user_config_record(row) if row else None

    async def create_user_config(
        self, user_id: str, config: dict | None = None,
    ) -> UserConfigInfo:
        now = now_ms()
        async with self._db.session() as db:
            row = UserConfigRow(
                user_id=user_id,
                created_at=now,
                updated_at=now,
                config=UserConfig.from_dict(config).to_dict(),
            )
            db.add(row)
            await db.commit()
            return _user_config_record(row)

    async def update_user_config(
        self, user_id: str, updates: dict,
    ) -> UserConfigInfo | None:
        async with self._db.session() as db:
            row = await db.get(UserConfigRow, user_id)
            if row is None:
                return None
            current = UserConfig.from_dict(row.config)
            row.config = UserConfig.from_dict(updates, base=current).to_dict()
            row.updated_at = now_ms()
            await db.commit()
            return _user_config_record(row)

    async def delete_user_config(self, user_id: str) -> bool:
        async with self._db.session() as db:
            result = await db.execute(
                delete(UserConfigRow).where(UserConfigRow.user_id == user_id),
            )
            await db.commit()
            return result.rowcount > 0


class SqlStorageProvider:
    """StorageProvider backed by one DatabaseSessionManager."""

    def __init__(self, db: DatabaseSessionManager, create_tables: bool = False):
        self._db = db
        self._create_tables = create_tables
        self.sessions = SqlSessionDAO(db)
        self.events = SqlEventDAO(db)
        self.sandbox_allocations = SqlSandboxAllocationDAO(db)
        self.user_configs = SqlUserConfigDAO(db)

    async def initialize(self) -> None:
        if self._create_tables:
            await self._db.create_all()
        logger.info("SQL storage initialized")

    async def close(self) -> None:
        await self._db.dispose()

    async def health_check(self) -> bool:
        return await self._db.health_check()
