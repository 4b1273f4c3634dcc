"""Chunk builders and a stream driver shared by the engine tests."""

from dataclasses import dataclass

from agent_server.core.stream_types import ParsedModelResponse, StreamingToolCallUpdate


@dataclass
class Tool:
    name: str
    description: str
    parameters: dict


SEARCH_TOOL = Tool(
    name="search",
    description="Search the web",
    parameters={
        "type": "object",
        "properties": {"q": {"type": "string"}},
        "required": ["q"],
    },
)


def content_chunk(text: str, finish_reason: str | None = None) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": finish_reason}]}


def finish_chunk(reason: str) -> dict:
    return {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


@dataclass
class StreamOutcome:
    content: str
    reasoning: str
    updates: list[StreamingToolCallUpdate]
    response: ParsedModelResponse

    def deltas(self) -> str:
        return "".join(u.arguments_delta for u in self.updates)

    def completions(self) -> list[StreamingToolCallUpdate]:
        return [u for u in self.updates if u.is_complete]


def run_stream(engine, fragments: list[str], finish_reason: str = "stop") -> StreamOutcome:
    """Feed text fragments through an engine and finalize.

    The outcome collects what a client would see: every chunk's deltas followed by
    the deltas finalize releases.
    """
    state = engine.init_stream_processing_state()
    content, reasoning, updates = [], [], []
    for fragment in fragments:
        result = engine.process_streaming_chunk(content_chunk(fragment), state)
        content.append(result.content)
        reasoning.append(result.reasoning_content)
        updates.extend(result.streaming_tool_call_updates)
    result = engine.process_streaming_chunk(finish_chunk(finish_reason), state)
    updates.extend(result.streaming_tool_call_updates)
    response = engine.finalize_stream_processing(state)
    content.append(response.content_delta)
    reasoning.append(response.reasoning_delta)
    updates.extend(response.streaming_tool_call_updates)
    return StreamOutcome(
        content="".join(content),
        reasoning="".join(reasoning),
        updates=updates,
        response=response,
    )


def every_split(text: str):
    """Yield the text split into two fragments at every position."""
    for i in range(len(text) + 1):
        yield [text[:i], text[i:]]
