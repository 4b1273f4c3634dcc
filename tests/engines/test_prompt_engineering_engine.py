"""Prompt-Engineering Engine — verifies `<tool_call>` parsing across chunk boundaries.

Tests:
    - The three-fragment search call yields one call with streamed deltas
    - Content and tool calls are identical at every split point
    - Braces inside JSON strings do not end the parameters object
    - A name that arrives after the parameters still streams them
    - A call truncated by the stop sequence is closed at finalize by appending, with
      exactly one completion update, so the deltas still equal the arguments
    - A held-back tag prefix is streamed at finalize, never only in the final content
    - Prompt, request, and history shaping
"""

import json

import pytest

from agent_server.core.stream_types import ToolCallResult
from agent_server.engines.base import RequestContext
from agent_server.engines.prompt_engineering import (
    PromptEngineeringToolCallEngine, STOP_SEQUENCES, extract_clean_json_content,
)
from tests.engines.stream_helpers import SEARCH_TOOL, every_split, run_stream

SEARCH_FRAGMENTS = [
    '<tool_call>\n{"name": "search",',
    ' "parameters": {"q": "sp',
    'ace"}}\n</tool_call>',
]

MIXED_TEXT = (
    'Checking a<b {x} first.\n'
    '<tool_call>\n{"name": "search", "parameters": {"q": "a {b} \\"c\\""}}\n</tool_call>'
)


@pytest.fixture
def engine():
    return PromptEngineeringToolCallEngine()


def _calls(outcome):
    return [(c.name, json.loads(c.arguments)) for c in outcome.response.tool_calls or []]


def test_search_call_streams_parameter_deltas(engine):
    outcome = run_stream(engine, SEARCH_FRAGMENTS)

    assert outcome.content == ""
    assert _calls(outcome) == [("search", {"q": "space"})]
    non_empty = [u for u in outcome.updates if u.arguments_delta and not u.is_complete]
    assert len(non_empty) >= 2
    completions = outcome.completions()
    assert len(completions) == 1
    assert outcome.updates[-1] is completions[0]
    assert json.loads(outcome.deltas()) == {"q": "space"}
    assert outcome.response.finish_reason == "tool_calls"


def test_first_update_is_a_zero_length_start(engine):
    outcome = run_stream(engine, SEARCH_FRAGMENTS)
    first = outcome.updates[0]
    assert first.tool_name == "search"
    assert first.arguments_delta == ""
    assert not first.is_complete
    assert {u.tool_call_id for u in outcome.updates} == {first.tool_call_id}


def test_output_is_identical_at_every_split_point(engine):
    expected = run_stream(engine, [MIXED_TEXT])
    assert expected.content == "Checking a<b {x} first.\n"
    assert _calls(expected) == [("search", {"q": 'a {b} "c"'})]

    for fragments in every_split(MIXED_TEXT):
        outcome = run_stream(engine, fragments)
        assert outcome.content == expected.content
        assert _calls(outcome) == _calls(expected)
        assert outcome.deltas() == expected.deltas()


def test_character_by_character_stream(engine):
    outcome = run_stream(engine, list(MIXED_TEXT))
    assert outcome.content == "Checking a<b {x} first.\n"
    assert _calls(outcome) == [("search", {"q": 'a {b} "c"'})]
    assert json.loads(outcome.deltas()) == {"q": 'a {b} "c"'}


def test_name_after_parameters_still_streams_them(engine):
    text = '<tool_call>{"parameters": {"a": 1}, "name": "calc"}</tool_call>'
    outcome = run_stream(engine, [text[:20], text[20:]])
    assert _calls(outcome) == [("calc", {"a": 1})]
    assert outcome.deltas() == '{"a": 1}'


def test_call_without_parameters_completes_with_empty_object(engine):
    outcome = run_stream(engine, ['<tool_call>{"name": "now"}</tool_call>'])
    completion = outcome.completions()[0]
    assert completion.arguments_delta == "{}"
    assert outcome.response.tool_calls[0].arguments == "{}"


def test_two_calls_in_one_response(engine):
    text = (
        '<tool_call>{"name": "a", "parameters": {"x": 1}}</tool_call>\n'
        '<tool_call>{"name": "b", "parameters": {"y": 2}}</tool_call>'
    )
    outcome = run_stream(engine, [text])
    assert _calls(outcome) == [("a", {"x": 1}), ("b", {"y": 2})]
    assert len(outcome.completions()) == 2
    assert outcome.content == "\n"


@pytest.mark.parametrize("truncated, arguments", [
    ('<tool_call>\n{"name": "search", "parameters": {"q": "x"}}\n', '{"q": "x"}'),
    ('<tool_call>\n{"name": "search", "parameters": {"q": "x"}', '{"q": "x"}'),
    ('<tool_call>\n{"name": "search", "parameters": {"q": "x"}}\n</tool', '{"q": "x"}'),
    ('<tool_call>\n{"name": "search", "parameters": {"q": "x', '{"q": "x"}'),
    ('<tool_call>\n{"name": "search", "parameters": {"q": {"a": "b', '{"q": {"a": "b"}}'),
    ('<tool_call>\n{"name": "search"', "{}"),
])
def test_truncated_call_is_closed_by_appending(engine, truncated, arguments):
    outcome = run_stream(engine, [truncated])
    assert _calls(outcome) == [("search", json.loads(arguments))]
    assert outcome.response.finish_reason == "tool_calls"

    record = outcome.response.tool_calls[0]
    assert record.arguments == arguments
    assert outcome.deltas() == arguments
    assert outcome.updates[0].tool_call_id == record.id
    assert len(outcome.completions()) == 1
    assert outcome.updates[-1].is_complete


def test_stop_sequence_cut_completes_the_streamed_call(engine):
    # The stop sequence swallows </tool_call>, so the stream simply ends
    outcome = run_stream(engine, [
        '<tool_call>\n{"name": "search",',
        ' "parameters": {"q": "sp',
        'ace"}}\n',
    ])
    record = outcome.response.tool_calls[0]
    assert record.arguments == '{"q": "space"}'
    assert outcome.deltas() == record.arguments
    completions = outcome.completions()
    assert len(completions) == 1
    assert completions[0].tool_call_id == record.id
    assert completions[0].arguments_delta == ""
    assert outcome.updates[-1] is completions[0]


def test_call_that_cannot_be_closed_is_dropped(engine):
    outcome = run_stream(engine, [
        '<tool_call>\n{"name": "search", "parameters": {"q": "x\\',
    ])
    assert outcome.response.tool_calls is None
    assert outcome.completions() == []
    assert outcome.response.finish_reason == "stop"


def test_unparseable_block_yields_no_call(engine):
    outcome = run_stream(engine, ["<tool_call>not json</tool_call> after"])
    assert outcome.response.tool_calls is None
    assert outcome.content == " after"


def test_dangling_partial_tag_is_streamed_at_finalize(engine):
    outcome = run_stream(engine, ["see <tool_c"])
    assert outcome.response.content == "see <tool_c"
    assert outcome.response.content_delta == "<tool_c"
    assert outcome.content == outcome.response.content


def test_streamed_content_matches_final_content(engine):
    outcome = run_stream(engine, ["cost < 5 ", "<tool"])
    assert outcome.content == "cost < 5 <tool"
    assert outcome.content == outcome.response.content


def test_extract_clean_json_content():
    assert extract_clean_json_content(' {"a": 1}\n trailing') == '{"a": 1}'
    assert extract_clean_json_content("  plain  ") == "plain"


def test_prompt_lists_tools_and_format(engine):
    prompt = engine.prepare_prompt("Be helpful.", [SEARCH_TOOL])
    assert prompt.startswith("Be helpful.")
    assert "<available_tools>" in prompt
    assert "## search" in prompt
    assert '"required": ["q"]' in prompt
    assert engine.prepare_prompt("Be helpful.", []) == "Be helpful."


def test_request_uses_stop_sequences_and_no_tools(engine):
    request = engine.prepare_request(
        RequestContext("m", [{"role": "user", "content": "hi"}], [SEARCH_TOOL]),
    )
    assert request["stop"] == STOP_SEQUENCES
    assert "tools" not in request
    assert request["temperature"] == 0.7


def test_history_replays_raw_content_and_results_as_user(engine):
    message = engine.build_historical_assistant_message(
        {"content": "", "rawContent": "<tool_call>...</tool_call>"},
    )
    assert message == {"role": "assistant", "content": "<tool_call>...</tool_call>"}
    results = engine.build_historical_tool_call_result_messages(
        [ToolCallResult("c1", "search", {"hits": 2})],
    )
    assert results == [
        {"role": "user", "content": 'Tool: search\nResult:\n{"hits": 2}'},
    ]
