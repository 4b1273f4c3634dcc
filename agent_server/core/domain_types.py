"""Domain Types — rich types that replace bare primitives across the codebase.

Invariants:
    - SessionId, SandboxId, UserId wrap opaque strings — never compare against raw literals
    - All valid states encoded as Enums — no raw string matching
    - NON_PERSISTED_EVENT_TYPES is the single source for the streaming-delta exclusion set

Design Decisions:
    - NewType over dataclass wrappers: zero runtime cost, full type-checker support
    - str Enums: serialize to JSON without custom encoders (ADR: events and DAO rows are JSON)
    - AllocationStrategy values keep their hyphenated wire spelling (shared with other replicas)
"""

from enum import Enum
from typing import NewType


# ─── Identity Types ──────────────────────────────────────────────

SessionId = NewType("SessionId", str)
SandboxId = NewType("SandboxId", str)
UserId = NewType("UserId", str)


# ─── Enums ───────────────────────────────────────────────────────

class SessionState(str, Enum):
    """Session lifecycle: created -> initializing -> ready <-> executing -> disposed."""
    CREATED = "created"
    INITIALIZING = "initializing"
    READY = "ready"
    EXECUTING = "executing"
    DISPOSED = "disposed"


class AgentStatus(str, Enum):
    """Runtime status reported by an agent instance."""
    IDLE = "idle"
    EXECUTING = "executing"
    ABORTED = "aborted"
    ERROR = "error"


class AllocationStrategy(str, Enum):
    """Sandbox allocation policy."""
    SHARED_POOL = "Shared-Pool"
    USER_EXCLUSIVE = "User-Exclusive"
    SESSION_EXCLUSIVE = "Session-Exclusive"


class SandboxLiveness(str, Enum):
    """Outcome of probing a sandbox URL. Only ALIVE justifies reuse."""
    ALIVE = "alive"
    GONE = "gone"
    UNREACHABLE = "unreachable"


class ToolCallEngineKind(str, Enum):
    """The closed set of tool-call dialects."""
    NATIVE = "native"
    PROMPT_ENGINEERING = "prompt_engineering"
    SEED = "seed"


class EventType(str, Enum):
    """Agent event kinds carried on the event stream."""
    USER_MESSAGE = "user_message"
    ASSISTANT_MESSAGE = "assistant_message"
    ASSISTANT_STREAMING_MESSAGE = "assistant_streaming_message"
    ASSISTANT_THINKING_MESSAGE = "assistant_thinking_message"
    ASSISTANT_STREAMING_THINKING_MESSAGE = "assistant_streaming_thinking_message"
    ASSISTANT_STREAMING_TOOL_CALL = "assistant_streaming_tool_call"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    ENVIRONMENT_INPUT = "environment_input"
    AGENT_RUN_START = "agent_run_start"
    AGENT_RUN_END = "agent_run_end"
    FINAL_ANSWER = "final_answer"
    FINAL_ANSWER_STREAMING = "final_answer_streaming"


# Pure streaming deltas: the persisted stream reconstructs them from the final events.
NON_PERSISTED_EVENT_TYPES: frozenset[str] = frozenset({
    EventType.ASSISTANT_STREAMING_MESSAGE.value,
    EventType.ASSISTANT_STREAMING_THINKING_MESSAGE.value,
    EventType.ASSISTANT_STREAMING_TOOL_CALL.value,
    EventType.FINAL_ANSWER_STREAMING.value,
})


def should_store_event(event: dict) -> bool:
    """True unless the event is a pure streaming delta."""
    return event.get("type") not in NON_PERSISTED_EVENT_TYPES
