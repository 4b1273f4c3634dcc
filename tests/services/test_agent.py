"""Agent Loop — verifies event order, tool execution, history, abort, and limits.

Tests:
    - A text answer emits start, user, deltas, assistant, final answer, end
    - A tool call runs the tool and feeds its result into the next request
    - A call cut off by the stop sequence and a held-back text tail are both streamed
      before assistant_message
    - Stored events rebuild the conversation for a replacement agent
    - abort() mid-stream closes the run as aborted without a final answer
    - A second run while one is in flight is rejected without disturbing it
    - The iteration limit emits a system error event
    - Provider failures propagate after an error run-end event
"""

import pytest

from agent_server.core.domain_types import AgentStatus
from agent_server.core.errors import ConflictError, ProviderAPIError
from agent_server.engines.native import NativeToolCallEngine
from agent_server.engines.prompt_engineering import PromptEngineeringToolCallEngine
from agent_server.services.agent import Agent
from agent_server.services.tools import Tool, ToolRegistry
from tests.services.fake_provider import (
    ScriptedProvider, answer, provider_failure, text_chunk, tool_call,
)


def _agent(provider, engine=None, **kwargs):
    return Agent(
        engine=engine or NativeToolCallEngine(),
        provider=provider,
        model="model-a",
        instructions="Be brief.",
        **kwargs,
    )


def _weather_tools():
    return ToolRegistry([Tool("weather", "Weather lookup", lambda a: f"sunny in {a['city']}")])


async def _collect(agent, query="hello"):
    return [event async for event in agent.run_streaming(query)]


async def test_text_answer_event_sequence():
    provider = ScriptedProvider(answer("Hi there"))
    agent = _agent(provider, session_id="s1")
    events = await _collect(agent)

    types = [e["type"] for e in events]
    assert types[:2] == ["agent_run_start", "user_message"]
    assert types[-3:] == ["assistant_message", "final_answer", "agent_run_end"]
    deltas = [e["content"] for e in events if e["type"] == "assistant_streaming_message"]
    assert "".join(deltas) == "Hi there"

    assistant = events[-3]
    assert assistant["content"] == "Hi there"
    assert assistant["toolCalls"] is None
    assert assistant["finishReason"] == "stop"
    assert all(
        e["messageId"] == assistant["messageId"]
        for e in events if e["type"] == "assistant_streaming_message"
    )
    assert events[-2]["content"] == "Hi there"
    assert events[-1]["status"] == "idle"
    assert events[-1]["sessionId"] == "s1"
    assert agent.status() == AgentStatus.IDLE


async def test_every_yielded_event_went_through_the_stream():
    agent = _agent(ScriptedProvider(answer("ok")))
    events = await _collect(agent)
    assert [e["id"] for e in agent.event_stream.get_events()] == [e["id"] for e in events]


async def test_request_carries_system_prompt_and_user_message():
    provider = ScriptedProvider(answer("ok"))
    await _collect(_agent(provider), query="What time is it?")
    messages = provider.requests[0]["messages"]
    assert messages[0] == {"role": "system", "content": "Be brief."}
    assert messages[1] == {"role": "user", "content": "What time is it?"}
    assert provider.requests[0]["model"] == "model-a"


async def test_tool_call_runs_tool_and_feeds_result_back():
    provider = ScriptedProvider(
        tool_call("call_1", "weather", '{"city": "Oslo"}'),
        answer("It is sunny."),
    )
    agent = _agent(provider, tools=_weather_tools())
    events = await _collect(agent, "Weather in Oslo?")

    tool_event = next(e for e in events if e["type"] == "tool_call")
    assert tool_event["toolCallId"] == "call_1"
    assert tool_event["arguments"] == {"city": "Oslo"}
    assert tool_event["tool"]["name"] == "weather"
    result_event = next(e for e in events if e["type"] == "tool_result")
    assert result_event["content"] == "sunny in Oslo"
    assert result_event["error"] is None

    streaming = [e for e in events if e["type"] == "assistant_streaming_tool_call"]
    assert streaming[0]["toolName"] == "weather"
    assert streaming[-1]["isComplete"] is True

    second_request = provider.requests[1]["messages"]
    assert second_request[-2]["tool_calls"][0]["id"] == "call_1"
    assert second_request[-1] == {
        "role": "tool", "tool_call_id": "call_1", "content": "sunny in Oslo",
    }
    assert events[-2]["type"] == "final_answer"
    assert events[-2]["content"] == "It is sunny."
    assert provider.requests[0]["tools"][0]["function"]["name"] == "weather"


async def test_unknown_tool_yields_error_result_and_loop_continues():
    provider = ScriptedProvider(tool_call("call_1", "missing", "{}"), answer("Sorry."))
    events = await _collect(_agent(provider))
    result_event = next(e for e in events if e["type"] == "tool_result")
    assert result_event["error"] == "Tool 'missing' not found"
    assert events[-1]["status"] == "idle"


async def test_prompt_engineering_history_uses_user_role_results():
    provider = ScriptedProvider(
        [text_chunk('<tool_call>{"name": "weather", "parameters": {"city": "Rome"}}</tool_call>')],
        answer("Warm."),
    )
    agent = _agent(provider, engine=PromptEngineeringToolCallEngine(), tools=_weather_tools())
    events = await _collect(agent)

    assert next(e for e in events if e["type"] == "tool_call")["arguments"] == {"city": "Rome"}
    second = provider.requests[1]["messages"]
    assert second[-2]["role"] == "assistant"
    assert second[-2]["content"].startswith("<tool_call>")
    assert second[-1] == {"role": "user", "content": "Tool: weather\nResult:\nsunny in Rome"}
    assert "<available_tools>" in second[0]["content"]


async def test_stop_sequence_cut_call_completes_before_assistant_message():
    provider = ScriptedProvider(
        [
            text_chunk('<tool_call>\n{"name": "weather",'),
            text_chunk(' "parameters": {"city": "Ro'),
            text_chunk('me"}}\n', finish_reason="stop"),
        ],
        answer("Warm."),
    )
    agent = _agent(provider, engine=PromptEngineeringToolCallEngine(), tools=_weather_tools())
    events = await _collect(agent)

    first_assistant = next(e for e in events if e["type"] == "assistant_message")
    cut = events[:events.index(first_assistant)]
    updates = [e for e in cut if e["type"] == "assistant_streaming_tool_call"]
    call = first_assistant["toolCalls"][0]
    assert "".join(u["argumentsDelta"] for u in updates) == call["function"]["arguments"]
    completions = [u for u in updates if u["isComplete"]]
    assert len(completions) == 1
    assert completions[0]["toolCallId"] == call["id"]
    assert next(e for e in events if e["type"] == "tool_result")["content"] == "sunny in Rome"


async def test_held_back_tail_is_streamed_before_assistant_message():
    provider = ScriptedProvider([text_chunk("a <b> c <tool"), text_chunk("_c", "stop")])
    agent = _agent(provider, engine=PromptEngineeringToolCallEngine())
    events = await _collect(agent)

    assistant = next(e for e in events if e["type"] == "assistant_message")
    streamed = [
        e["content"] for e in events[:events.index(assistant)]
        if e["type"] == "assistant_streaming_message"
    ]
    assert "".join(streamed) == assistant["content"] == "a <b> c <tool_c"


async def test_stored_events_rebuild_history():
    first = _agent(ScriptedProvider(
        tool_call("call_1", "weather", '{"city": "Oslo"}'), answer("Sunny."),
    ), tools=_weather_tools())
    await _collect(first, "Weather?")

    provider = ScriptedProvider(answer("Still sunny."))
    replacement = _agent(
        provider, tools=_weather_tools(), initial_events=first.event_stream.get_events(),
    )
    await replacement.initialize()
    await _collect(replacement, "And now?")

    messages = provider.requests[0]["messages"]
    assert [m["role"] for m in messages] == [
        "system", "user", "assistant", "tool", "assistant", "user",
    ]
    assert messages[-1]["content"] == "And now?"


async def test_abort_mid_stream_skips_final_answer():
    provider = ScriptedProvider(answer("a long answer"))
    agent = _agent(provider)
    provider.on_chunk = lambda chunk: agent.abort()
    events = await _collect(agent)

    types = [e["type"] for e in events]
    assert "final_answer" not in types
    assert "assistant_message" not in types
    assert events[-1]["type"] == "agent_run_end"
    assert events[-1]["status"] == "aborted"
    assert agent.status() == AgentStatus.ABORTED


async def test_overlapping_run_is_rejected():
    provider = ScriptedProvider(answer("first"))
    agent = _agent(provider)
    first = agent.run_streaming("one")
    await first.__anext__()

    with pytest.raises(ConflictError) as exc_info:
        await _collect(agent, "two")
    assert exc_info.value.code == "AGENT_BUSY"
    assert agent.status() == AgentStatus.EXECUTING

    rest = [e async for e in first]
    assert rest[-1]["status"] == "idle"
    user_messages = [m for m in provider.requests[0]["messages"] if m["role"] == "user"]
    assert user_messages == [{"role": "user", "content": "one"}]


def test_abort_when_idle_is_false():
    assert _agent(ScriptedProvider()).abort() is False


async def test_iteration_limit_emits_system_error_event():
    provider = ScriptedProvider(*[tool_call(f"call_{i}", "weather", '{"city": "X"}') for i in range(3)])
    agent = _agent(provider, tools=_weather_tools(), max_iterations=2)
    events = await _collect(agent)

    system = [e for e in events if e["type"] == "system"]
    assert len(system) == 1
    assert system[0]["level"] == "error"
    assert system[0]["details"]["errorCode"] == "AGENT_LOOP_EXCEEDED"
    assert len(provider.requests) == 2
    assert events[-1]["iterations"] == 2


async def test_provider_failure_propagates_after_error_run_end():
    agent = _agent(ScriptedProvider(provider_failure()))
    with pytest.raises(ProviderAPIError):
        await _collect(agent)
    assert agent.status() == AgentStatus.ERROR
    last = agent.event_stream.get_events()[-1]
    assert last["type"] == "agent_run_end"
    assert last["status"] == "error"


async def test_run_returns_last_assistant_message():
    agent = _agent(ScriptedProvider(answer("Done.")))
    result = await agent.run("go")
    assert result["type"] == "assistant_message"
    assert result["content"] == "Done."


async def test_environment_input_is_recorded_and_sent():
    provider = ScriptedProvider(answer("ok"))
    agent = _agent(provider)
    events = [e async for e in agent.run_streaming(
        "hi", {"content": "cwd=/tmp", "description": "env"},
    )]
    env = next(e for e in events if e["type"] == "environment_input")
    assert env["content"] == "cwd=/tmp"
    assert provider.requests[0]["messages"][-1] == {"role": "user", "content": "cwd=/tmp"}
