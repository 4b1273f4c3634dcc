"""Session Pool — bounded LRU registry of live sessions with memory-pressure eviction.

Invariants:
    - The pool is the sole owner of live sessions; eviction always calls cleanup()
    - get() and set() of an existing id both count as an access (move to MRU end)
    - Eviction triggers when size > max_sessions or estimated memory > 80% of the limit
    - Eviction removes max(ceil(10% of size), size - max_sessions) least recently used
    - A session whose cleanup() fails is logged and still removed

Design Decisions:
    - OrderedDict order is the LRU order: no per-entry timestamps to sort
    - Memory is estimated as population x per-session constant: a tunable policy
      value, not a measurement
    - Periodic check runs as one asyncio task owned by the pool (start()/stop()
      called from the FastAPI lifespan)
"""

import asyncio
import logging
import math
from collections import OrderedDict
from typing import Iterator, Protocol

logger = logging.getLogger(__name__)

MEMORY_PRESSURE_RATIO = 0.8
MIN_EVICTION_RATIO = 0.1


class PooledSession(Protocol):
    id: str

    async def cleanup(self) -> None: ...


class SessionPool:
    def __init__(
        self,
        max_sessions: int = 200,
        memory_limit_mb: float = 512,
        check_interval_s: float = 30.0,
        session_memory_mb: float = 3.0,
    ):
        self.max_sessions = max_sessions
        self.memory_limit_mb = memory_limit_mb
        self.check_interval_s = check_interval_s
        self.session_memory_mb = session_memory_mb
        self._sessions: OrderedDict[str, PooledSession] = OrderedDict()
        self._monitor: asyncio.Task | None = None

    # -- registry -------------------------------------------------------------

    async def set(self, session_id: str, session: PooledSession) -> None:
        if session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return
        self._sessions[session_id] = session
        await self.evict_if_needed()

    def get(self, session_id: str) -> PooledSession | None:
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
        return session

    def has(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def delete(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await self._cleanup_session(session_id, session)
        return True

    def keys(self) -> list[str]:
        return list(self._sessions.keys())

    def values(self) -> Iterator[PooledSession]:
        return iter(list(self._sessions.values()))

    def size(self) -> int:
        return len(self._sessions)

    # -- memory pressure ------------------------------------------------------

    def estimated_memory_mb(self) -> float:
        return len(self._sessions) * self.session_memory_mb

    def get_memory_stats(self) -> dict:
        estimated = self.estimated_memory_mb()
        return {
            "sessions": len(self._sessions),
            "estimatedMemoryMB": estimated,
            "memoryLimitMB": self.memory_limit_mb,
            "memoryUsagePercent": (
                estimated / self.memory_limit_mb * 100 if self.memory_limit_mb else 0.0
            ),
        }

    async def evict_if_needed(self) -> int:
        """Evict LRU sessions under pressure. Returns how many were evicted."""
        size = len(self._sessions)
        estimated = self.estimated_memory_mb()
        threshold = self.memory_limit_mb * MEMORY_PRESSURE_RATIO
        if estimated <= threshold and size <= self.max_sessions:
            return 0

        target = max(
            math.ceil(size * MIN_EVICTION_RATIO),
            size - self.max_sessions if size > self.max_sessions else 0,
        )
        logger.warning(
            f"Session pool under pressure: {size} sessions, ~{estimated:.0f}MB "
            f"(threshold {threshold:.0f}MB, max {self.max_sessions}); evicting {target}",
        )
        return await self._evict_oldest(target)

    async def _evict_oldest(self, count: int) -> int:
        victims = list(self._sessions.items())[:count]
        for session_id, session in victims:
            self._sessions.pop(session_id, None)
            await self._cleanup_session(session_id, session)
            logger.info(
                f"Evicted session {session_id} (LRU)", extra={"session_id": session_id},
            )
        return len(victims)

    async def _cleanup_session(self, session_id: str, session: PooledSession) -> None:
        try:
            await session.cleanup()
        except Exception as e:
            logger.error(
                f"Failed to clean up session {session_id}: {e}",
                extra={"session_id": session_id},
            )

    # -- periodic check -------------------------------------------------------

    def start(self) -> None:
        if self._monitor is None or self._monitor.done():
            self._monitor = asyncio.create_task(self._monitor_loop())

    async def stop(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval_s)
            try:
                await self.evict_if_needed()
            except Exception as e:
                logger.error(f"Session pool check failed: {e}", exc_info=True)

    async def cleanup_all(self) -> None:
        """Stop monitoring and clean up every live session."""
        await self.stop()
        sessions = list(self._sessions.items())
        self._sessions.clear()
        await asyncio.gather(*(
            self._cleanup_session(session_id, session)
            for session_id, session in sessions
        ))
