"""Native Tool-Call Engine — provider-structured function calling.

Invariants:
    - Tools travel out of band: prepare_prompt() never touches the instructions
    - The tools field is omitted entirely when there are no tools (some providers
      reject a present-but-empty list)
    - Deltas are accumulated by positional index with direct assignment, so sparse or
      out-of-order indexes never shift other calls
    - Every call still open when finish_reason == "tool_calls" gets exactly one
      completion update with an empty delta

Design Decisions:
    - Index map + ordered view: state.tool_calls is rebuilt from the map in index order
      whenever a new index appears
    - Empty arguments at finalize mean "no arguments" and are kept; non-empty arguments
      that do not parse are logged and dropped
"""

import json
from dataclasses import dataclass, field

from agent_server.core.domain_types import ToolCallEngineKind
from agent_server.core.stream_types import (
    ParsedModelResponse,
    StreamChunkResult,
    StreamProcessingState,
    StreamingToolCallUpdate,
    ToolCallRecord,
    ToolCallResult,
    ToolSchema,
    generate_tool_call_id,
)
from agent_server.engines.base import (
    RequestContext, base_request, read_chunk, tool_to_openai,
)
from agent_server.infrastructure.observability import (
    ComponentLogger, component_logger,
)


@dataclass
class NativeStreamState(StreamProcessingState):
    calls_by_index: dict[int, ToolCallRecord] = field(default_factory=dict)
    completed_ids: set[str] = field(default_factory=set)


class NativeToolCallEngine:
    """Accumulates provider tool-call deltas into complete calls."""

    kind = ToolCallEngineKind.NATIVE

    def __init__(self, logger: ComponentLogger | None = None):
        self.logger = component_logger("NativeToolCallEngine", logger, __name__)

    def prepare_prompt(self, instructions: str, tools: list[ToolSchema]) -> str:
        return instructions

    def prepare_request(self, context: RequestContext) -> dict:
        request = base_request(context, default_temperature=0.7)
        if context.tools:
            request["tools"] = [tool_to_openai(t) for t in context.tools]
        return request

    def init_stream_processing_state(self) -> NativeStreamState:
        return NativeStreamState()

    def process_streaming_chunk(
        self, chunk: dict, state: NativeStreamState,
    ) -> StreamChunkResult:
        delta, finish_reason = read_chunk(chunk)
        content = delta.get("content") or ""
        reasoning = delta.get("reasoning_content") or ""
        state.content_buffer += content
        state.reasoning_buffer += reasoning

        updates: list[StreamingToolCallUpdate] = []
        for part in delta.get("tool_calls") or []:
            update = self._apply_tool_call_delta(part, state)
            if update is not None:
                updates.append(update)

        if finish_reason:
            state.finish_reason = finish_reason
            if finish_reason == "tool_calls":
                updates.extend(self._complete_open_calls(state))

        return StreamChunkResult(
            content=content,
            reasoning_content=reasoning,
            has_tool_call_update=bool(updates),
            tool_calls=state.tool_calls,
            streaming_tool_call_updates=updates,
        )

    def finalize_stream_processing(
        self, state: NativeStreamState,
    ) -> ParsedModelResponse:
        tool_calls = [r for r in state.tool_calls if self._has_valid_arguments(r)]
        return ParsedModelResponse(
            content=state.content_buffer,
            reasoning_content=state.reasoning_buffer or None,
            tool_calls=tool_calls or None,
            finish_reason=state.finish_reason or "stop",
        )

    def build_historical_assistant_message(self, assistant_event: dict) -> dict:
        message: dict = {
            "role": "assistant",
            "content": assistant_event.get("content") or "",
        }
        tool_calls = assistant_event.get("toolCalls")
        if tool_calls:
            message["tool_calls"] = tool_calls
        return message

    def build_historical_tool_call_result_messages(
        self, results: list[ToolCallResult],
    ) -> list[dict]:
        return [
            {
                "role": "tool",
                "tool_call_id": result.tool_call_id,
                "content": result.text,
            }
            for result in results
        ]

    # -- internals ------------------------------------------------------------

    def _apply_tool_call_delta(
        self, part: dict, state: NativeStreamState,
    ) -> StreamingToolCallUpdate | None:
        index = part.get("index")
        if index is None:
            index = len(state.calls_by_index)
        record = state.calls_by_index.get(index)
        if record is None:
            record = ToolCallRecord(id=part.get("id") or generate_tool_call_id())
            state.calls_by_index[index] = record
            state.tool_calls = [
                state.calls_by_index[i] for i in sorted(state.calls_by_index)
            ]

        function = part.get("function") or {}
        name_part = function.get("name") or ""
        args_part = function.get("arguments") or ""
        if not name_part and not args_part:
            return None
        record.name += name_part
        record.arguments += args_part
        return StreamingToolCallUpdate(
            tool_call_id=record.id,
            tool_name=record.name,
            arguments_delta=args_part,
            is_complete=False,
        )

    def _complete_open_calls(
        self, state: NativeStreamState,
    ) -> list[StreamingToolCallUpdate]:
        updates = []
        for record in state.tool_calls:
            if record.id in state.completed_ids:
                continue
            state.completed_ids.add(record.id)
            updates.append(StreamingToolCallUpdate(
                tool_call_id=record.id,
                tool_name=record.name,
                arguments_delta="",
                is_complete=True,
            ))
        return updates

    def _has_valid_arguments(self, record: ToolCallRecord) -> bool:
        if not record.arguments.strip():
            return True
        try:
            json.loads(record.arguments)
            return True
        except json.JSONDecodeError as e:
            self.logger.error(
                "Dropping tool call %s (%s): malformed arguments: %s",
                record.id, record.name, e,
                extra={"tool_name": record.name},
            )
            return False
