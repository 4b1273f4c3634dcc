"""Stream Types — data shapes exchanged between tool-call engines and the agent loop.

Invariants:
    - ToolCallRecord.arguments is append-only while the call is streaming
    - StreamingToolCallUpdate.to_wire() is the exact client wire shape
      {toolCallId, toolName, argumentsDelta, isComplete}
    - Concatenated argument deltas for one id equal ToolCallRecord.arguments, including
      the deltas finalize emits when it closes a truncated call
    - Tool call ids are generated once per invocation and never regenerated

Design Decisions:
    - Plain dataclasses over Pydantic: engines run per chunk on the hot path and
      never validate input (ADR: chunk processing is synchronous and cheap)
    - ToolSchema as Protocol: engines only need name/description/parameters and must
      not import the service layer that executes tools
"""

import json
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Protocol


class ToolSchema(Protocol):
    """What an engine needs to know about a tool."""
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCallRecord:
    """One tool invocation being assembled from the stream."""
    id: str
    name: str = ""
    arguments: str = ""

    def to_openai(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class StreamingToolCallUpdate:
    """A single incremental change to a tool call."""
    tool_call_id: str
    tool_name: str
    arguments_delta: str
    is_complete: bool

    def to_wire(self) -> dict:
        return {
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "argumentsDelta": self.arguments_delta,
            "isComplete": self.is_complete,
        }


@dataclass
class StreamProcessingState:
    """Common per-response state. Engines subclass it with their own fields."""
    content_buffer: str = ""
    reasoning_buffer: str = ""
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass
class StreamChunkResult:
    """What one chunk contributed."""
    content: str = ""
    reasoning_content: str = ""
    has_tool_call_update: bool = False
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    streaming_tool_call_updates: list[StreamingToolCallUpdate] = field(
        default_factory=list,
    )


@dataclass
class ParsedModelResponse:
    """Final, complete view of one model response.

    The `*_delta` fields and `streaming_tool_call_updates` carry what finalize
    released on top of the streamed chunks: a held-back tail that proved to be
    literal text, and the updates that close calls cut off by the end of stream.
    """
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCallRecord] | None = None
    finish_reason: str = "stop"
    content_delta: str = ""
    reasoning_delta: str = ""
    streaming_tool_call_updates: list[StreamingToolCallUpdate] = field(
        default_factory=list,
    )


@dataclass
class ToolCallResult:
    """Outcome of executing one tool call, replayed into history."""
    tool_call_id: str
    tool_name: str
    content: Any
    error: str | None = None

    @property
    def text(self) -> str:
        """Text form of the result, as the model will read it back."""
        if self.error:
            return f"Error: {self.error}"
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            return "".join(
                part.get("text", "") for part in self.content
                if isinstance(part, dict) and part.get("type") == "text"
            )
        return json.dumps(self.content, ensure_ascii=False)


_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_tool_call_id() -> str:
    """call_<ms>_<9 random base36 chars>."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))  # nosec B311
    return f"call_{int(time.time() * 1000)}_{suffix}"


def merge_updates(
    updates: list[StreamingToolCallUpdate],
) -> list[StreamingToolCallUpdate]:
    """Coalesce consecutive non-final deltas of the same call.

    Start updates (empty delta) and completion updates are kept as their own
    entries so consumers still see the call open and close.
    """
    merged: list[StreamingToolCallUpdate] = []
    for update in updates:
        last = merged[-1] if merged else None
        if (
            last is not None
            and last.tool_call_id == update.tool_call_id
            and not last.is_complete
            and not update.is_complete
            and last.arguments_delta
            and update.arguments_delta
        ):
            merged[-1] = StreamingToolCallUpdate(
                tool_call_id=last.tool_call_id,
                tool_name=update.tool_name or last.tool_name,
                arguments_delta=last.arguments_delta + update.arguments_delta,
                is_complete=False,
            )
        else:
            merged.append(update)
    return merged
