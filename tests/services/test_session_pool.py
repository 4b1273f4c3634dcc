"""Session Pool — verifies LRU order, eviction policy, and cleanup guarantees.

Tests:
    - get() refreshes recency so the untouched session is evicted first
    - Memory pressure above 80% of the limit evicts the oldest sessions
    - delete() and cleanup_all() call cleanup() on every removed session
    - A failing cleanup() still removes the session
"""

import asyncio

from agent_server.services.session_pool import SessionPool


class FakeSession:
    def __init__(self, id, fail=False):
        self.id = id
        self.fail = fail
        self.cleaned = 0

    async def cleanup(self):
        self.cleaned += 1
        if self.fail:
            raise RuntimeError("cleanup failed")


async def _fill(pool, *ids):
    sessions = {i: FakeSession(i) for i in ids}
    for session_id, session in sessions.items():
        await pool.set(session_id, session)
    return sessions


async def test_recent_access_protects_from_eviction():
    pool = SessionPool(max_sessions=3)
    sessions = await _fill(pool, "s1", "s2", "s3")
    assert pool.get("s1") is sessions["s1"]

    await pool.set("s4", FakeSession("s4"))
    assert pool.keys() == ["s3", "s1", "s4"]
    assert not pool.has("s2")
    assert sessions["s2"].cleaned == 1


async def test_memory_pressure_evicts_oldest():
    pool = SessionPool(max_sessions=100, memory_limit_mb=10, session_memory_mb=3)
    sessions = await _fill(pool, "a", "b")
    assert pool.size() == 2

    await pool.set("c", FakeSession("c"))
    assert pool.keys() == ["b", "c"]
    assert sessions["a"].cleaned == 1


async def test_eviction_removes_at_least_ten_percent():
    pool = SessionPool(max_sessions=100, memory_limit_mb=1000, session_memory_mb=1)
    await _fill(pool, *[f"s{i}" for i in range(25)])
    pool.memory_limit_mb = 20
    evicted = await pool.evict_if_needed()
    assert evicted == 3
    assert pool.keys()[0] == "s3"


async def test_no_eviction_below_thresholds():
    pool = SessionPool(max_sessions=5, memory_limit_mb=100, session_memory_mb=3)
    await _fill(pool, "a", "b")
    assert await pool.evict_if_needed() == 0


async def test_set_existing_id_only_refreshes_recency():
    pool = SessionPool(max_sessions=5)
    sessions = await _fill(pool, "a", "b")
    await pool.set("a", sessions["a"])
    assert pool.keys() == ["b", "a"]
    assert pool.size() == 2


async def test_delete_cleans_up_and_reports():
    pool = SessionPool()
    sessions = await _fill(pool, "a")
    assert await pool.delete("a") is True
    assert sessions["a"].cleaned == 1
    assert await pool.delete("a") is False


async def test_failing_cleanup_still_removes():
    pool = SessionPool()
    await pool.set("bad", FakeSession("bad", fail=True))
    assert await pool.delete("bad") is True
    assert not pool.has("bad")


async def test_cleanup_all_stops_monitor_and_empties_pool():
    pool = SessionPool(check_interval_s=3600)
    sessions = await _fill(pool, "a", "b")
    pool.start()
    await pool.cleanup_all()
    assert pool.size() == 0
    assert all(s.cleaned == 1 for s in sessions.values())
    assert pool._monitor is None


async def test_monitor_runs_periodic_checks():
    pool = SessionPool(max_sessions=100, memory_limit_mb=10, session_memory_mb=3, check_interval_s=0.01)
    await _fill(pool, "a", "b")
    pool.session_memory_mb = 5
    pool.start()
    await asyncio.sleep(0.05)
    await pool.stop()
    assert pool.size() < 2


def test_memory_stats():
    pool = SessionPool(memory_limit_mb=100, session_memory_mb=3)
    stats = pool.get_memory_stats()
    assert stats == {
        "sessions": 0,
        "estimatedMemoryMB": 0,
        "memoryLimitMB": 100,
        "memoryUsagePercent": 0.0,
    }
