"""Agent Session — verifies lifecycle, persistence filtering, admission, and model swap.

Tests:
    - initialize() builds the agent from stored events and reaches READY
    - Only non-streaming events are persisted
    - A failed query returns {success: False} and frees the exclusive slot
    - Streaming failures end with one synthetic system error event
    - A second session is rejected while exclusive mode is busy
    - A second query on a running session is rejected, with or without exclusive mode
    - update_model_config() swaps the agent and keeps history
"""

import pytest

from agent_server.core.domain_types import SessionState
from agent_server.core.errors import ConflictError, ExclusiveModeBusyError
from tests.services.fake_provider import ScriptedProvider, answer, provider_failure


async def _created(factory):
    created = await factory.create_session(user_id="u1")
    return created.session


async def test_initialize_reaches_ready(factory):
    session = await _created(factory)
    assert session.state == SessionState.READY
    assert session.agent is not None
    assert not session.get_processing_status()


async def test_only_final_events_are_persisted(factory, storage):
    session = await _created(factory)
    result = await session.run_query("hello")
    assert result["success"] is True
    assert result["result"]["content"] == "done"

    stored = await storage.events.get_session_events(session.id)
    types = [e["type"] for e in stored]
    assert "assistant_streaming_message" not in types
    assert types[0] == "agent_run_start"
    assert "assistant_message" in types
    assert types[-1] == "agent_run_end"


async def test_failed_query_returns_error_payload(factory, provider):
    provider.responses.append(provider_failure())
    session = await _created(factory)
    result = await session.run_query("hello")
    assert result["success"] is False
    assert result["error"]["code"] == "PROVIDER_API_ERROR"
    assert session.state == SessionState.READY


async def test_streaming_failure_ends_with_system_error_event(factory, provider):
    provider.responses.append(provider_failure())
    session = await _created(factory)
    events = [e async for e in await session.run_query_streaming("hello")]
    assert events[-1]["type"] == "system"
    assert events[-1]["level"] == "error"
    assert events[-1]["details"]["errorCode"] == "PROVIDER_API_ERROR"
    assert session.state == SessionState.READY


async def test_exclusive_mode_rejects_a_second_session(factory):
    factory.gate.enabled = True
    first = await _created(factory)
    second = await _created(factory)

    stream = await first.run_query_streaming("long task")
    assert factory.gate.running_session_id == first.id
    with pytest.raises(ExclusiveModeBusyError) as exc_info:
        await second.run_query("me too")
    assert exc_info.value.running_session_id == first.id

    _ = [e async for e in stream]
    assert factory.gate.running_session_id is None
    result = await second.run_query("now")
    assert result["success"] is True


async def test_exclusive_mode_rejects_a_second_query_on_the_same_session(factory):
    factory.gate.enabled = True
    session = await _created(factory)
    stream = await session.run_query_streaming("one")
    await stream.__anext__()

    with pytest.raises(ExclusiveModeBusyError):
        await session.run_query_streaming("two")
    with pytest.raises(ExclusiveModeBusyError):
        await session.run_query("three")
    assert factory.gate.running_session_id == session.id

    events = [e async for e in stream]
    assert events[-1]["type"] == "agent_run_end"
    assert events[-1]["status"] == "idle"
    assert factory.gate.running_session_id is None


async def test_busy_session_rejects_a_second_query_without_exclusive_mode(factory):
    session = await _created(factory)
    stream = await session.run_query_streaming("one")

    with pytest.raises(ConflictError) as exc_info:
        await session.run_query("two")
    assert exc_info.value.code == "SESSION_BUSY"
    assert session.state == SessionState.EXECUTING

    _ = [e async for e in stream]
    assert session.state == SessionState.READY
    assert (await session.run_query("three"))["success"] is True


async def test_exclusive_slot_freed_after_failure(factory, provider):
    factory.gate.enabled = True
    provider.responses.append(provider_failure())
    session = await _created(factory)
    await session.run_query("fails")
    assert factory.gate.can_accept_new_request()


async def test_abort_releases_slot(factory):
    factory.gate.enabled = True
    session = await _created(factory)
    stream = await session.run_query_streaming("go")
    first = await stream.__anext__()
    assert first["type"] == "agent_run_start"
    assert await session.abort_query() is True
    assert factory.gate.can_accept_new_request()
    rest = [e async for e in stream]
    assert rest[-1]["status"] == "aborted"


async def test_abort_when_idle_is_false(factory):
    session = await _created(factory)
    assert await session.abort_query() is False


async def test_update_model_config_keeps_history(factory, storage, provider):
    session = await _created(factory)
    await session.run_query("first question")
    old_agent = session.agent

    info = await storage.sessions.update_session_info(
        session.id, {"metadata": {"modelConfig": {"provider": "anthropic", "id": "model-b"}}},
    )
    await session.update_model_config(info)
    assert session.agent is not old_agent
    assert session.agent.model == "model-b"

    await session.run_query("second question")
    messages = provider.requests[-1]["messages"]
    assert messages[1]["content"] == "first question"
    assert messages[-1]["content"] == "second question"
    assert provider.requests[-1]["model"] == "model-b"


async def test_unknown_model_override_falls_back_to_default(factory):
    session = await _created(factory)
    info = session.session_info
    info.metadata["modelConfig"] = {"provider": "anthropic", "id": "retired"}
    assert session.resolve_model_config(info) == factory.default_model


async def test_cleanup_disposes_and_blocks_queries(factory):
    session = await _created(factory)
    closed = []
    session.event_bridge.on("closed", closed.append)
    await session.cleanup()
    assert session.state == SessionState.DISPOSED
    assert closed == [{"sessionId": session.id}]
    with pytest.raises(ConflictError):
        await session.run_query("too late")


async def test_storage_failure_does_not_break_the_query(factory, storage):
    async def broken_save(session_id, event):
        raise RuntimeError("disk full")

    session = await _created(factory)
    storage.events.save_event = broken_save
    result = await session.run_query("hello")
    assert result["success"] is True


async def test_telemetry_receives_events(settings, storage, gate):
    from agent_server.services.session_factory import AgentSessionFactory

    class Recorder:
        def __init__(self):
            self.events, self.flushed = [], False

        async def process_agent_event(self, event):
            self.events.append(event["type"])

        async def flush(self):
            self.flushed = True

    recorders = {}

    def telemetry_for(session_id):
        recorders[session_id] = Recorder()
        return recorders[session_id]

    factory = AgentSessionFactory(
        settings=settings, storage=storage, provider=ScriptedProvider(answer("hi")),
        gate=gate, telemetry_factory=telemetry_for,
    )
    session = (await factory.create_session()).session
    await session.run_query("hello")
    await session.cleanup()
    recorder = recorders[session.id]
    assert "assistant_streaming_message" in recorder.events
    assert recorder.flushed
