"""Seed Tool-Call Engine — `<seed:tool_call>` blocks with a runtime-named think tag.

Invariants:
    - Parser modes: TEXT, THINK, TOOL_BLOCK, FUNCTION_HEADER, FUNCTION,
      PARAMETER_HEADER, PARAMETER; each mode reacts only to its own tags
    - The unconsumed tail lives in `pending`; it is either a strict prefix of a tag
      meaningful in the current mode or an unfinished `name>` header
    - Chat content is text outside think tags and outside tool-call blocks; it is
      released in the chunk that made it unambiguous, or as the finalize content delta
      when the stream ends on a tag prefix that never completed
    - A tool-call block may hold any number of `<function=NAME>` blocks; each becomes
      its own ToolCallRecord with one start update and one completion update
    - Parameter bodies are raw text and are JSON-string escaped as they stream, so the
      concatenated deltas are exactly the record's arguments

Design Decisions:
    - Think tag name is injected at construction (settings.seed_think_token) rather than
      read from the process environment inside the parser
    - Text between tags inside a tool-call block is layout whitespace and is dropped
    - Finalize closes a dangling parameter or function by appending to its arguments
      and returns the closing updates, then drops calls whose arguments still do not
      parse; a block that only appeared inside reasoning is recovered by a
      regex pass when streaming produced no calls
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
from agent_server.engines.base import RequestContext, base_request, read_chunk
from agent_server.infrastructure.observability import (
    ComponentLogger, component_logger,
)

DEFAULT_THINK_TOKEN = "thinkt"

TOOL_BLOCK_OPEN = "<seed:tool_call>"
TOOL_BLOCK_CLOSE = "</seed:tool_call>"
FUNCTION_OPEN = "<function="
FUNCTION_CLOSE = "</function>"
PARAMETER_OPEN = "<parameter="
PARAMETER_CLOSE = "</parameter>"

_BLOCK_RE = re.compile(r"<seed:tool_call>([\s\S]*?)</seed:tool_call>")
_FUNCTION_RE = re.compile(r"<function=([^>]+)>([\s\S]*?)</function>")
_PARAMETER_RE = re.compile(r"<parameter=([^>]+)>([\s\S]*?)</parameter>")


class SeedMode:
    TEXT = "text"
    THINK = "think"
    TOOL_BLOCK = "tool_block"
    FUNCTION_HEADER = "function_header"
    FUNCTION = "function"
    PARAMETER_HEADER = "parameter_header"
    PARAMETER = "parameter"


@dataclass
class SeedStreamState(StreamProcessingState):
    mode: str = SeedMode.TEXT
    pending: str = ""
    chat_content: str = ""
    current: ToolCallRecord | None = None
    parameter_count: int = 0


class SeedToolCallEngine:
    """Parses the seed dialect: think tags, tool-call blocks, functions, parameters."""

    kind = ToolCallEngineKind.SEED

    def __init__(
        self,
        think_token: str | None = None,
        logger: ComponentLogger | None = None,
    ):
        self.think_token = think_token or DEFAULT_THINK_TOKEN
        self.think_open = f"<{self.think_token}>"
        self.think_close = f"</{self.think_token}>"
        self.logger = component_logger("SeedToolCallEngine", logger, __name__)
        self._scanners = {
            SeedMode.TEXT: TagScanner(
                [self.think_open, self.think_close, TOOL_BLOCK_OPEN],
            ),
            SeedMode.THINK: TagScanner([self.think_close]),
            SeedMode.TOOL_BLOCK: TagScanner([FUNCTION_OPEN, TOOL_BLOCK_CLOSE]),
            SeedMode.FUNCTION: TagScanner(
                [PARAMETER_OPEN, FUNCTION_CLOSE, TOOL_BLOCK_CLOSE],
            ),
            SeedMode.PARAMETER: TagScanner([PARAMETER_CLOSE]),
        }

    # -- prompt & request -----------------------------------------------------

    def prepare_prompt(self, instructions: str, tools: list[ToolSchema]) -> str:
        think_prompt = (
            "You should first think about the reasoning process in the mind and then "
            "provide the user with the answer. The reasoning process is enclosed within "
            f"{self.think_open} {self.think_close} tags, i.e. {self.think_open} "
            f"reasoning process here {self.think_close} answer here"
        )
        if not tools:
            return f"{instructions}\n\n{think_prompt}"

        functions = "\n".join(
            json.dumps({
                "type": "function",
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters or {"type": "object", "properties": {}},
            }, ensure_ascii=False)
            for tool in tools
        )
        return f"""{instructions}

{think_prompt}

## Function Definition

- You have access to the following functions:
{functions}

- To call a function, use the following structure without any suffix:

{self.think_open} reasoning process {self.think_close}
<seed:tool_call>
<function=example_function_name>
<parameter=example_parameter_1>value_1</parameter>
<parameter=example_parameter_2>
This is the value for the second parameter
that can span
multiple lines
</parameter>
</function>
</seed:tool_call>

## Important Notes
- Function calls must begin with <function= and end with </function>.
- All required parameters must be explicitly provided.
- You can call multiple functions within a single tool call. For example:
<seed:tool_call>
<function=example_function_1>
<parameter=example_parameter_1>value_1</parameter>
</function>

<function=example_function_2>
<parameter=example_parameter_3>value_4</parameter>
</function>
</seed:tool_call>
"""

    def prepare_request(self, context: RequestContext) -> dict:
        return base_request(context, default_temperature=1.0)

    # -- streaming ------------------------------------------------------------

    def init_stream_processing_state(self) -> SeedStreamState:
        return SeedStreamState()

    def process_streaming_chunk(
        self, chunk: dict, state: SeedStreamState,
    ) -> StreamChunkResult:
        delta, finish_reason = read_chunk(chunk)
        if finish_reason:
            state.finish_reason = finish_reason

        # Providers with native thinking send reasoning out of band
        reasoning = delta.get("reasoning_content") or ""
        state.reasoning_buffer += reasoning

        text = delta.get("content") or ""
        content = ""
        updates: list[StreamingToolCallUpdate] = []
        if text:
            state.content_buffer += text
            state.pending += text
            content, thinking = self._drain(state, updates)
            reasoning += thinking

        state.chat_content += content
        merged = merge_updates(updates)
        return StreamChunkResult(
            content=content,
            reasoning_content=reasoning,
            has_tool_call_update=bool(merged),
            tool_calls=state.tool_calls,
            streaming_tool_call_updates=merged,
        )

    def _drain(
        self,
        state: SeedStreamState,
        updates: list[StreamingToolCallUpdate],
    ) -> tuple[str, str]:
        """Consume `pending` as far as it is unambiguous; return (content, reasoning)."""
        content: list[str] = []
        thinking: list[str] = []

        while state.pending:
            mode = state.mode

            if mode in (SeedMode.FUNCTION_HEADER, SeedMode.PARAMETER_HEADER):
                end = state.pending.find(">")
                if end == -1:
                    break
                name = state.pending[:end].strip()
                state.pending = state.pending[end + 1:]
                if mode == SeedMode.FUNCTION_HEADER:
                    self._open_function(name, state, updates)
                else:
                    self._open_parameter(name, state, updates)
                continue

            result = self._scanners[mode].scan(state.pending)
            if result.literal:
                if mode == SeedMode.TEXT:
                    content.append(result.literal)
                elif mode == SeedMode.THINK:
                    thinking.append(result.literal)
                    state.reasoning_buffer += result.literal
                elif mode == SeedMode.PARAMETER:
                    self._append_arguments(escape_json_text(result.literal), state, updates)
                # whitespace between block elements is layout only

            state.pending = result.rest
            if result.tag is None:
                break
            self._on_tag(result.tag, state, updates)

        return "".join(content), "".join(thinking)

    def _on_tag(
        self,
        tag: str,
        state: SeedStreamState,
        updates: list[StreamingToolCallUpdate],
    ) -> None:
        mode = state.mode
        if mode == SeedMode.TEXT:
            if tag == self.think_open:
                state.mode = SeedMode.THINK
            elif tag == TOOL_BLOCK_OPEN:
                state.mode = SeedMode.TOOL_BLOCK
            else:
                self.logger.debug("Dropping stray think close tag")
        elif mode == SeedMode.THINK:
            state.mode = SeedMode.TEXT
        elif mode == SeedMode.TOOL_BLOCK:
            state.mode = (
                SeedMode.FUNCTION_HEADER if tag == FUNCTION_OPEN else SeedMode.TEXT
            )
        elif mode == SeedMode.FUNCTION:
            if tag == PARAMETER_OPEN:
                state.mode = SeedMode.PARAMETER_HEADER
            else:
                self._close_function(state, updates)
                state.mode = (
                    SeedMode.TOOL_BLOCK if tag == FUNCTION_CLOSE else SeedMode.TEXT
                )
        elif mode == SeedMode.PARAMETER:
            self._append_arguments('"', state, updates)
            state.mode = SeedMode.FUNCTION

    def _open_function(
        self,
        name: str,
        state: SeedStreamState,
        updates: list[StreamingToolCallUpdate],
    ) -> None:
        record = ToolCallRecord(id=generate_tool_call_id(), name=name)
        state.tool_calls.append(record)
        state.current = record
        state.parameter_count = 0
        state.mode = SeedMode.FUNCTION
        updates.append(StreamingToolCallUpdate(record.id, name, "", False))
        self.logger.debug("Started function %s with ID: %s", name, record.id)

    def _open_parameter(
        self,
        name: str,
        state: SeedStreamState,
        updates: list[StreamingToolCallUpdate],
    ) -> None:
        prefix = "{" if state.parameter_count == 0 else ","
        state.parameter_count += 1
        state.mode = SeedMode.PARAMETER
        self._append_arguments(f'{prefix}"{escape_json_text(name)}":"', state, updates)

    def _close_function(
        self,
        state: SeedStreamState,
        updates: list[StreamingToolCallUpdate],
    ) -> None:
        record = state.current
        if record is None:
            return
        closing = "}" if state.parameter_count else "{}"
        if state.mode == SeedMode.PARAMETER:
            closing = '"' + closing
        record.arguments += closing
        updates.append(StreamingToolCallUpdate(record.id, record.name, closing, True))
        state.current = None
        state.parameter_count = 0

    def _append_arguments(
        self,
        text: str,
        state: SeedStreamState,
        updates: list[StreamingToolCallUpdate],
    ) -> None:
        record = state.current
        if record is None or not text:
            return
        record.arguments += text
        updates.append(StreamingToolCallUpdate(record.id, record.name, text, False))

    # -- finalize -------------------------------------------------------------

    def finalize_stream_processing(self, state: SeedStreamState) -> ParsedModelResponse:
        content_tail = ""
        reasoning_tail = ""
        updates: list[StreamingToolCallUpdate] = []
        if state.pending:
            if state.mode == SeedMode.TEXT:
                content_tail = state.pending
                state.chat_content += content_tail
            elif state.mode == SeedMode.THINK:
                reasoning_tail = state.pending
                state.reasoning_buffer += reasoning_tail
            elif state.mode == SeedMode.PARAMETER:
                self._append_arguments(escape_json_text(state.pending), state, updates)
            elif state.mode in (SeedMode.FUNCTION_HEADER, SeedMode.PARAMETER_HEADER):
                self.logger.warning(
                    "Dropping unfinished %s header: %r", state.mode, state.pending,
                )
            state.pending = ""

        if state.current is not None:
            self.logger.info("Closed truncated function call: %s", state.current.name)
            self._close_function(state, updates)

        tool_calls = [r for r in state.tool_calls if self._has_valid_arguments(r)]
        if not tool_calls and TOOL_BLOCK_OPEN in state.content_buffer:
            tool_calls = parse_seed_tool_calls(state.content_buffer)
            if tool_calls:
                self.logger.info(
                    "Recovered %d tool calls from unstreamed blocks", len(tool_calls),
                )

        finish_reason = "tool_calls" if tool_calls else state.finish_reason or "stop"
        return ParsedModelResponse(
            content=state.chat_content,
            reasoning_content=state.reasoning_buffer or None,
            tool_calls=tool_calls or None,
            finish_reason=finish_reason,
            content_delta=content_tail,
            reasoning_delta=reasoning_tail,
            streaming_tool_call_updates=merge_updates(updates),
        )

    def _has_valid_arguments(self, record: ToolCallRecord) -> bool:
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
                "content": f'Tool "{result.tool_name}" result:\n{result.text}',
            }
            for result in results
        ]


def escape_json_text(text: str) -> str:
    """Escape raw text for the inside of a JSON string literal."""
    return json.dumps(text, ensure_ascii=False)[1:-1]


def parse_seed_tool_calls(text: str) -> list[ToolCallRecord]:
    """Extract every complete function call from complete `<seed:tool_call>` blocks."""
    records = []
    for block in _BLOCK_RE.finditer(text):
        for function in _FUNCTION_RE.finditer(block.group(1)):
            params = {
                name.strip(): value
                for name, value in _PARAMETER_RE.findall(function.group(2))
            }
            records.append(ToolCallRecord(
                id=generate_tool_call_id(),
                name=function.group(1).strip(),
                arguments=json.dumps(params, separators=(",", ":"), ensure_ascii=False),
            ))
    return records
