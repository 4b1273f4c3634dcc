"""Prompt-Engineering Tool-Call Engine — `<tool_call>{json}</tool_call>` embedded in text.

Invariants:
    - Parser states: normal -> possible_tag_start -> collecting_tool_call ->
      possible_tag_end -> normal; exactly one character is consumed per transition
    - Text that might still be `<tool_call>` is held in the partial tag buffer and only
      released as content once it provably is not the tag
    - A zero-length start update is emitted the moment the tool name is recognizable
    - Once `"parameters": {` is seen, every character of that object (braces included)
      is forwarded verbatim; braces inside JSON strings do not change the depth
    - The parameters object is forwarded at most once per call
    - The completion update carries the characters that close the streamed parameters
      (usually none), or the full serialized arguments if nothing was streamed, so
      concatenated deltas always equal the record's arguments
    - Streamed arguments are never rewritten; a call whose arguments still do not parse
      once closed is dropped

Design Decisions:
    - Verbatim forwarding (no re-escaping): the parameters object is already JSON in the
      model's own output
    - A cursor into the tool-call buffer drives parameter forwarding, so a name that
      arrives after the parameters still streams the already-buffered parameter text
    - Finalize closes a call truncated by the stop sequence and returns the closing
      updates with the response; it falls back to regex extraction only when
      streaming produced no calls (avoids duplicates)
"""

import json
import re
from dataclasses import dataclass

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
    merge_updates,
)
from agent_server.core.tag_scanner import TagScanner
from agent_server.engines.base import (
    RequestContext, base_request, read_chunk, tool_schema_json,
)
from agent_server.infrastructure.observability import (
    ComponentLogger, component_logger,
)

OPEN_TAG = "<tool_call>"
CLOSE_TAG = "</tool_call>"
STOP_SEQUENCES = [CLOSE_TAG, CLOSE_TAG + "\n\n"]

_NAME_RE = re.compile(r'"name"\s*:\s*"([^"]+)"')
_PARAMETERS_RE = re.compile(r'"parameters"\s*:\s*\{')
_CLEAN_JSON_RE = re.compile(r"\s*\{[\s\S]*?\}(?=\s*(?:\}|\n|\Z))")
_BLOCK_RE = re.compile(r"<tool_call>([\s\S]*?)</tool_call>")

NORMAL = "normal"
POSSIBLE_TAG_START = "possible_tag_start"
COLLECTING_TOOL_CALL = "collecting_tool_call"
POSSIBLE_TAG_END = "possible_tag_end"

_OPEN_SCANNER = TagScanner([OPEN_TAG])
_CLOSE_SCANNER = TagScanner([CLOSE_TAG])


@dataclass
class PromptEngineeringStreamState(StreamProcessingState):
    parser_state: str = NORMAL
    partial_tag_buffer: str = ""
    normal_content_buffer: str = ""
    tool_call_buffer: str = ""
    has_active_tool_call: bool = False
    current: ToolCallRecord | None = None
    # parameter forwarding
    params_cursor: int = -1
    params_depth: int = 0
    params_in_string: bool = False
    params_escape: bool = False
    params_done: bool = False


class PromptEngineeringToolCallEngine:
    """Parses XML-wrapped JSON tool calls out of plain model text."""

    kind = ToolCallEngineKind.PROMPT_ENGINEERING

    def __init__(self, logger: ComponentLogger | None = None):
        self.logger = component_logger(
            "PromptEngineeringToolCallEngine", logger, __name__,
        )

    # -- prompt & request -----------------------------------------------------

    def prepare_prompt(self, instructions: str, tools: list[ToolSchema]) -> str:
        if not tools:
            return instructions
        self.logger.info("Preparing prompt with %d tools", len(tools))
        tools_description = "\n\n".join(
            f"## {tool.name}\n\n"
            f"Description: {tool.description}\n\n"
            f"Parameters JSON Schema:\n```json\n{tool_schema_json(tool)}\n```\n"
            for tool in tools
        )
        return f"""{instructions}

<tool_instruction>
  1. You have access to the following tools:

  <available_tools>
  {tools_description}
  </available_tools>

  2. To use a tool, your response MUST use the following format, you need to ensure that it is a valid JSON string matches the Parameters JSON Schema:

  <tool_call>
  {{
    "name": "tool_name",
    "parameters": {{
      "param1": "value1",
      "param2": "value2"
    }}
  }}
  </tool_call>

  3. If you want to provide a final answer without using tools, respond in a conversational manner WITHOUT using the tool_call format.
  4. WARNING:
    4.1. You can always ONLY call tools mentioned in <available_tools>
    4.2. After outputting </tool_call>, you MUST STOP immediately and wait for the tool result in the next agent loop. DO NOT generate any additional text.
    4.3. When you receive tool results, they will be provided in a user message. Use these results to continue your reasoning or provide a final answer.
</tool_instruction>
"""

    def prepare_request(self, context: RequestContext) -> dict:
        request = base_request(context, default_temperature=0.7)
        request["stop"] = list(STOP_SEQUENCES)
        return request

    # -- streaming ------------------------------------------------------------

    def init_stream_processing_state(self) -> PromptEngineeringStreamState:
        return PromptEngineeringStreamState()

    def process_streaming_chunk(
        self, chunk: dict, state: PromptEngineeringStreamState,
    ) -> StreamChunkResult:
        delta, finish_reason = read_chunk(chunk)
        if finish_reason:
            state.finish_reason = finish_reason

        reasoning = delta.get("reasoning_content") or ""
        state.reasoning_buffer += reasoning

        content = ""
        updates: list[StreamingToolCallUpdate] = []
        text = delta.get("content") or ""
        if text:
            state.content_buffer += text
            for char in text:
                content += self._step(char, state, updates)

        merged = merge_updates(updates)
        return StreamChunkResult(
            content=content,
            reasoning_content=reasoning,
            has_tool_call_update=bool(merged),
            tool_calls=state.tool_calls,
            streaming_tool_call_updates=merged,
        )

    def _step(
        self,
        char: str,
        state: PromptEngineeringStreamState,
        updates: list[StreamingToolCallUpdate],
    ) -> str:
        """Advance the FSM by one character; return content released by it."""
        if state.parser_state == NORMAL:
            if char == "<":
                state.parser_state = POSSIBLE_TAG_START
                state.partial_tag_buffer = char
                return ""
            state.normal_content_buffer += char
            return char

        if state.parser_state == POSSIBLE_TAG_START:
            state.partial_tag_buffer += char
            if _OPEN_SCANNER.match(state.partial_tag_buffer) == OPEN_TAG:
                self._open_tool_call(state)
                return ""
            if _OPEN_SCANNER.is_partial(state.partial_tag_buffer):
                return ""
            released = state.partial_tag_buffer
            state.partial_tag_buffer = ""
            state.parser_state = NORMAL
            # The rejected buffer may itself end in a new "<"
            if released.endswith("<") and len(released) > 1:
                state.normal_content_buffer += released[:-1]
                state.parser_state = POSSIBLE_TAG_START
                state.partial_tag_buffer = "<"
                return released[:-1]
            state.normal_content_buffer += released
            return released

        if state.parser_state == COLLECTING_TOOL_CALL:
            if char == "<":
                state.parser_state = POSSIBLE_TAG_END
                state.partial_tag_buffer = char
                return ""
            state.tool_call_buffer += char
            self._pump(state, updates)
            return ""

        # POSSIBLE_TAG_END
        state.partial_tag_buffer += char
        if _CLOSE_SCANNER.match(state.partial_tag_buffer) == CLOSE_TAG:
            completion = self._complete_tool_call(state)
            updates.extend(completion)
            self._reset_tool_call(state)
            state.parser_state = NORMAL
            return ""
        if _CLOSE_SCANNER.is_partial(state.partial_tag_buffer):
            return ""
        rejected = state.partial_tag_buffer
        state.partial_tag_buffer = ""
        state.parser_state = COLLECTING_TOOL_CALL
        if rejected.endswith("<") and len(rejected) > 1:
            state.tool_call_buffer += rejected[:-1]
            state.parser_state = POSSIBLE_TAG_END
            state.partial_tag_buffer = "<"
        else:
            state.tool_call_buffer += rejected
        self._pump(state, updates)
        return ""

    def _open_tool_call(self, state: PromptEngineeringStreamState) -> None:
        self._reset_tool_call(state)
        state.parser_state = COLLECTING_TOOL_CALL
        state.has_active_tool_call = True

    def _reset_tool_call(self, state: PromptEngineeringStreamState) -> None:
        state.partial_tag_buffer = ""
        state.tool_call_buffer = ""
        state.has_active_tool_call = False
        state.current = None
        state.params_cursor = -1
        state.params_depth = 0
        state.params_in_string = False
        state.params_escape = False
        state.params_done = False

    def _pump(
        self,
        state: PromptEngineeringStreamState,
        updates: list[StreamingToolCallUpdate],
    ) -> None:
        """Detect the name, then forward unseen parameter characters."""
        if state.current is None:
            match = _NAME_RE.search(state.tool_call_buffer)
            if match is None:
                return
            state.current = ToolCallRecord(
                id=generate_tool_call_id(), name=match.group(1),
            )
            updates.append(StreamingToolCallUpdate(
                state.current.id, state.current.name, "", False,
            ))

        if state.params_done:
            return
        if state.params_cursor < 0:
            match = _PARAMETERS_RE.search(state.tool_call_buffer)
            if match is None:
                return
            state.params_cursor = match.end() - 1

        forwarded = []
        buffer = state.tool_call_buffer
        while state.params_cursor < len(buffer) and not state.params_done:
            char = buffer[state.params_cursor]
            state.params_cursor += 1
            forwarded.append(char)
            self._track_depth(char, state)
        if forwarded:
            text = "".join(forwarded)
            state.current.arguments += text
            updates.append(StreamingToolCallUpdate(
                state.current.id, state.current.name, text, False,
            ))

    def _track_depth(self, char: str, state: PromptEngineeringStreamState) -> None:
        if state.params_in_string:
            if state.params_escape:
                state.params_escape = False
            elif char == "\\":
                state.params_escape = True
            elif char == '"':
                state.params_in_string = False
            return
        if char == '"':
            state.params_in_string = True
        elif char == "{":
            state.params_depth += 1
        elif char == "}":
            state.params_depth -= 1
            if state.params_depth == 0:
                state.params_done = True

    def _complete_tool_call(
        self, state: PromptEngineeringStreamState,
    ) -> list[StreamingToolCallUpdate]:
        data = self._parse_tool_call(state.tool_call_buffer)
        if data is None:
            return []
        name, params = data
        return self._finish_tool_call(state, name, params)

    def _finish_tool_call(
        self, state: PromptEngineeringStreamState, name: str, params: dict,
    ) -> list[StreamingToolCallUpdate]:
        """Close the current call by appending to its arguments, never rewriting them."""
        updates = []
        record = state.current
        if record is None:
            record = ToolCallRecord(id=generate_tool_call_id(), name=name)
            updates.append(StreamingToolCallUpdate(record.id, name, "", False))
        record.name = name

        if record.arguments:
            final_delta = _closing_suffix(state)
        else:
            final_delta = _compact(params)
        record.arguments += final_delta
        if not _is_json(record.arguments):
            self.logger.error(
                "Dropping tool call %s (%s): streamed parameters are not valid JSON",
                record.id, name, extra={"tool_name": name},
            )
            return updates

        state.tool_calls.append(record)
        self.logger.debug("Completed tool call: %s with ID: %s", name, record.id)
        updates.append(StreamingToolCallUpdate(record.id, name, final_delta, True))
        return updates

    def _parse_tool_call(self, raw: str) -> tuple[str, dict] | None:
        try:
            data = json.loads(extract_clean_json_content(raw))
        except json.JSONDecodeError as e:
            self.logger.error("Failed to parse tool call JSON: %s", e)
            return None
        if not isinstance(data, dict) or not data.get("name"):
            self.logger.error("Tool call JSON has no name: %r", raw[:200])
            return None
        params = data.get("parameters") or {}
        return str(data["name"]), params

    # -- finalize -------------------------------------------------------------

    def finalize_stream_processing(
        self, state: PromptEngineeringStreamState,
    ) -> ParsedModelResponse:
        tail = ""
        if state.parser_state == POSSIBLE_TAG_START:
            tail = state.partial_tag_buffer
            state.normal_content_buffer += tail
            state.partial_tag_buffer = ""
            state.parser_state = NORMAL
        final_content = state.normal_content_buffer

        updates: list[StreamingToolCallUpdate] = []
        if state.has_active_tool_call and state.tool_call_buffer:
            updates = self._close_truncated(state)
            self._reset_tool_call(state)
        final_tool_calls = list(state.tool_calls)

        if not final_tool_calls and _has_completed_block(state.content_buffer):
            final_content, final_tool_calls = self._extract_tool_calls(
                state.content_buffer,
            )

        finish_reason = (
            "tool_calls" if final_tool_calls else state.finish_reason or "stop"
        )
        self.logger.info(
            "Finalized with %d tool calls, finish_reason: %s",
            len(final_tool_calls), finish_reason,
        )
        return ParsedModelResponse(
            content=final_content,
            reasoning_content=state.reasoning_buffer or None,
            tool_calls=final_tool_calls or None,
            finish_reason=finish_reason,
            content_delta=tail,
            streaming_tool_call_updates=merge_updates(updates),
        )

    def _close_truncated(
        self, state: PromptEngineeringStreamState,
    ) -> list[StreamingToolCallUpdate]:
        """Complete a tool call whose closing tag was eaten by the stop sequence."""
        self.logger.info(
            "Detected incomplete tool call due to stop_sequence, attempting to complete parsing",
        )
        record = state.current
        if record is not None and record.arguments:
            return self._finish_tool_call(state, record.name, {})

        candidate = extract_clean_json_content(state.tool_call_buffer)
        missing = candidate.count("{") - candidate.count("}")
        if missing > 0:
            candidate += "}" * missing
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            self.logger.warning("Failed to parse incomplete tool call: %s", e)
            return []
        if not isinstance(data, dict) or not data.get("name"):
            return []
        self.logger.info(
            "Successfully recovered tool call: %s from truncated content", data["name"],
        )
        return self._finish_tool_call(
            state, str(data["name"]), data.get("parameters") or {},
        )

    def _extract_tool_calls(
        self, content: str,
    ) -> tuple[str, list[ToolCallRecord]]:
        records = []
        for block in _BLOCK_RE.finditer(content):
            data = self._parse_tool_call(block.group(1))
            if data is None:
                continue
            name, params = data
            records.append(ToolCallRecord(
                id=generate_tool_call_id(), name=name, arguments=_compact(params),
            ))
        cleaned = _BLOCK_RE.sub("", content).strip()
        return cleaned, records

    # -- history --------------------------------------------------------------

    def build_historical_assistant_message(self, assistant_event: dict) -> dict:
        return {
            "role": "assistant",
            "content": assistant_event.get("rawContent")
            or assistant_event.get("content") or "",
        }

    def build_historical_tool_call_result_messages(
        self, results: list[ToolCallResult],
    ) -> list[dict]:
        return [
            {
                "role": "user",
                "content": f"Tool: {result.tool_name}\nResult:\n{result.text}",
            }
            for result in results
        ]


def extract_clean_json_content(content: str) -> str:
    """First complete JSON object in `content`, or the trimmed content itself."""
    trimmed = content.strip()
    match = _CLEAN_JSON_RE.match(trimmed)
    if match:
        candidate = match.group(0).strip()
        if _is_json(candidate):
            return candidate
    return trimmed


def _has_completed_block(content: str) -> bool:
    return OPEN_TAG in content and CLOSE_TAG in content


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


def _compact(value) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _closing_suffix(state: PromptEngineeringStreamState) -> str:
    """Characters that close a parameters object the stream cut off."""
    if state.params_cursor < 0 or state.params_done:
        return ""
    suffix = '"' if state.params_in_string else ""
    return suffix + "}" * state.params_depth
