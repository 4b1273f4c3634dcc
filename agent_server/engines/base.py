"""Tool-Call Engine Contract — the capability every dialect implements.

Invariants:
    - One engine instance may serve many responses; all per-response data lives in the
      state object returned by init_stream_processing_state()
    - process_streaming_chunk() is synchronous and never re-emits content it already emitted
    - finalize_stream_processing() is called exactly once per response

Design Decisions:
    - Protocol over ABC: structural subtyping, engines share helpers through plain functions
      rather than a base class (ADR: no inheritance hierarchy)
    - Requests and messages are OpenAI chat-completions dicts; provider adapters translate
      at the infrastructure edge
"""

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_server.core.domain_types import ToolCallEngineKind
from agent_server.core.stream_types import (
    ParsedModelResponse,
    StreamChunkResult,
    StreamProcessingState,
    ToolCallResult,
    ToolSchema,
)


@dataclass
class RequestContext:
    """Inputs an engine needs to shape one provider request."""
    model: str
    messages: list[dict]
    tools: list[ToolSchema] = field(default_factory=list)
    temperature: float | None = None
    top_p: float | None = None


class ToolCallEngine(Protocol):
    """Contract for a tool-call dialect."""
    kind: ToolCallEngineKind

    def prepare_prompt(self, instructions: str, tools: list[ToolSchema]) -> str: ...

    def prepare_request(self, context: RequestContext) -> dict: ...

    def init_stream_processing_state(self) -> StreamProcessingState: ...

    def process_streaming_chunk(
        self, chunk: dict, state: Any,
    ) -> StreamChunkResult: ...

    def finalize_stream_processing(self, state: Any) -> ParsedModelResponse: ...

    def build_historical_assistant_message(self, assistant_event: dict) -> dict: ...

    def build_historical_tool_call_result_messages(
        self, results: list[ToolCallResult],
    ) -> list[dict]: ...


def read_chunk(chunk: dict) -> tuple[dict, str | None]:
    """Return (delta, finish_reason) of the first choice; tolerant of empty chunks."""
    choices = chunk.get("choices") or []
    if not choices:
        return {}, None
    choice = choices[0] or {}
    return choice.get("delta") or {}, choice.get("finish_reason")


def tool_to_openai(tool: ToolSchema) -> dict:
    """Render a tool as an OpenAI function definition."""
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters or {"type": "object", "properties": {}},
        },
    }


def tool_schema_json(tool: ToolSchema) -> str:
    """Compact JSON form of a tool's parameter schema, for prompt embedding."""
    return json.dumps(
        tool.parameters or {"type": "object", "properties": {}},
        ensure_ascii=False,
    )


def base_request(context: RequestContext, default_temperature: float) -> dict:
    """Fields shared by every dialect's request."""
    request: dict[str, Any] = {
        "model": context.model,
        "messages": context.messages,
        "temperature": (
            context.temperature if context.temperature is not None
            else default_temperature
        ),
        "stream": True,
    }
    if context.top_p is not None:
        request["top_p"] = context.top_p
    return request
