"""Agent — async agentic loop driven by a tool-call engine, emitting events as it goes.

Invariants:
    - Every event goes through the event stream before it is yielded to the caller
    - One run at a time per agent; status() is EXECUTING only while a run is in flight
    - A run started while another is in flight is rejected before it touches state
    - Everything finalize releases is streamed before assistant_message, so streamed
      content and argument deltas add up to what assistant_message reports
    - Tool errors never crash the loop: they become tool_result events with an error
    - History is rebuilt from events (initial events first), so a replacement agent
      seeded with stored events resumes the same conversation
    - Max iterations reached emits an AgentLoopExceededError system event, not an exception

Design Decisions:
    - The loop is one async generator: run() drains it, run_streaming() hands it out
      (ADR: same code path for streaming and non-streaming queries)
    - abort() is cooperative: the loop checks the flag between chunks and between
      iterations, then closes the run with status "aborted"
    - Providers speak OpenAI chat-completion chunks; the engine is the only component
      that understands the dialect inside them
"""

import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Protocol

from agent_server.core.domain_types import AgentStatus, EventType
from agent_server.core.errors import (
    AgentLoopExceededError, ConflictError, ErrorContext,
)
from agent_server.core.stream_types import (
    StreamingToolCallUpdate, ToolCallRecord, ToolCallResult,
)
from agent_server.engines.base import RequestContext, ToolCallEngine
from agent_server.services.event_stream import AgentEventStream, create_event
from agent_server.services.tools import ToolRegistry

logger = logging.getLogger(__name__)


class ChatProvider(Protocol):
    """Streams OpenAI-shaped chat-completion chunks for one request."""
    def stream_chat(self, request: dict) -> AsyncIterator[dict]: ...


class Agent:
    """One conversation's runtime: history, event stream, and the tool loop."""

    def __init__(
        self,
        *,
        engine: ToolCallEngine,
        provider: ChatProvider,
        model: str,
        instructions: str = "",
        tools: ToolRegistry | None = None,
        max_iterations: int = 50,
        temperature: float | None = None,
        initial_events: list[dict] | None = None,
        session_id: str | None = None,
    ):
        self.engine = engine
        self.provider = provider
        self.model = model
        self.instructions = instructions
        self.tools = tools or ToolRegistry()
        self.max_iterations = max_iterations
        self.temperature = temperature
        self.session_id = session_id
        self.event_stream = AgentEventStream(initial_events)
        self._status = AgentStatus.IDLE
        self._abort_requested = False
        self._messages: list[dict] = []
        self._initialized = False

    async def initialize(self) -> None:
        """Rebuild conversation history from the events the stream was seeded with."""
        self._messages = self._history_from_events(self.event_stream.get_events())
        self._initialized = True
        logger.info(
            f"Agent initialized with {len(self._messages)} history messages",
            extra={"session_id": self.session_id},
        )

    def status(self) -> AgentStatus:
        return self._status

    def abort(self) -> bool:
        """Request the running loop to stop. False when nothing is running."""
        if self._status != AgentStatus.EXECUTING:
            return False
        self._abort_requested = True
        return True

    async def dispose(self) -> None:
        self._abort_requested = self._status == AgentStatus.EXECUTING
        self._messages = []

    async def run(
        self, input: Any, environment_input: dict | None = None,
    ) -> dict | None:
        """Run to completion; returns the last assistant_message event."""
        final = None
        async for event in self.run_streaming(input, environment_input):
            if event["type"] == EventType.ASSISTANT_MESSAGE.value:
                final = event
        return final

    async def run_streaming(
        self, input: Any, environment_input: dict | None = None,
    ) -> AsyncIterator[dict]:
        if self._status == AgentStatus.EXECUTING:
            raise ConflictError(
                "Agent is already executing a run", "AGENT_BUSY",
                ErrorContext(session_id=self.session_id),
            )
        if not self._initialized:
            await self.initialize()
        self._status = AgentStatus.EXECUTING
        self._abort_requested = False
        started = time.monotonic()
        iterations = 0
        try:
            yield await self._emit(
                EventType.AGENT_RUN_START,
                sessionId=self.session_id,
                runOptions={"input": input},
                provider="openai-compatible",
                model=self.model,
            )
            yield await self._emit(EventType.USER_MESSAGE, content=input)
            self._messages.append({"role": "user", "content": input})
            if environment_input:
                yield await self._emit(
                    EventType.ENVIRONMENT_INPUT,
                    content=environment_input.get("content"),
                    description=environment_input.get("description"),
                    metadata=environment_input.get("metadata"),
                )
                self._messages.append(
                    {"role": "user", "content": environment_input.get("content")},
                )

            last_content = ""
            while True:
                if self._abort_requested:
                    break
                if iterations >= self.max_iterations:
                    error = AgentLoopExceededError(
                        self.max_iterations, ErrorContext(session_id=self.session_id),
                    )
                    event = error.to_event()
                    await self.event_stream.send_event(event)
                    yield event
                    break
                iterations += 1

                assistant_event = None
                async for event in self._iteration():
                    yield event
                    if event["type"] == EventType.ASSISTANT_MESSAGE.value:
                        assistant_event = event
                if assistant_event is None:
                    break  # aborted mid-stream
                last_content = assistant_event.get("content") or ""
                tool_calls = assistant_event.get("toolCalls") or []
                if not tool_calls:
                    break

                results = []
                for call in tool_calls:
                    if self._abort_requested:
                        break
                    async for event, result in self._execute_tool_call(call):
                        yield event
                        if result is not None:
                            results.append(result)
                self._messages.extend(
                    self.engine.build_historical_tool_call_result_messages(results),
                )

            status = "aborted" if self._abort_requested else "idle"
            if not self._abort_requested:
                yield await self._emit(
                    EventType.FINAL_ANSWER, content=last_content, isDeepResearch=False,
                )
            yield await self._emit(
                EventType.AGENT_RUN_END,
                sessionId=self.session_id,
                status=status,
                iterations=iterations,
                elapsedMs=int((time.monotonic() - started) * 1000),
            )
            self._status = (
                AgentStatus.ABORTED if self._abort_requested else AgentStatus.IDLE
            )
        except Exception as e:
            self._status = AgentStatus.ERROR
            logger.error(
                f"Agent run failed: {e}",
                extra={"session_id": self.session_id}, exc_info=True,
            )
            await self.event_stream.send_event(create_event(
                EventType.AGENT_RUN_END.value,
                sessionId=self.session_id,
                status="error",
                iterations=iterations,
                elapsedMs=int((time.monotonic() - started) * 1000),
            ))
            raise
        finally:
            if self._status == AgentStatus.EXECUTING:
                # Consumer stopped iterating before the run closed
                self._status = AgentStatus.IDLE

    # -- one model turn -------------------------------------------------------

    async def _iteration(self) -> AsyncIterator[dict]:
        message_id = f"msg_{uuid.uuid4().hex[:12]}"
        tool_list = self.tools.list()
        system = self.engine.prepare_prompt(self.instructions, tool_list)
        request = self.engine.prepare_request(RequestContext(
            model=self.model,
            messages=[{"role": "system", "content": system}, *self._messages],
            tools=tool_list,
            temperature=self.temperature,
        ))

        state = self.engine.init_stream_processing_state()
        async for chunk in self.provider.stream_chat(request):
            if self._abort_requested:
                return
            result = self.engine.process_streaming_chunk(chunk, state)
            async for event in self._stream_deltas(
                message_id, result.reasoning_content, result.content,
                result.streaming_tool_call_updates,
            ):
                yield event

        parsed = self.engine.finalize_stream_processing(state)
        # Tails held back by the parser and closers for truncated calls
        async for event in self._stream_deltas(
            message_id, parsed.reasoning_delta, parsed.content_delta,
            parsed.streaming_tool_call_updates,
        ):
            yield event
        if parsed.reasoning_content:
            yield await self._emit(
                EventType.ASSISTANT_THINKING_MESSAGE,
                content=parsed.reasoning_content,
                isComplete=True,
                messageId=message_id,
            )
        tool_calls = [r.to_openai() for r in parsed.tool_calls or []]
        assistant_event = await self._emit(
            EventType.ASSISTANT_MESSAGE,
            content=parsed.content or "",
            rawContent=state.content_buffer,
            toolCalls=tool_calls or None,
            finishReason=parsed.finish_reason,
            messageId=message_id,
        )
        self._messages.append(
            self.engine.build_historical_assistant_message(assistant_event),
        )
        yield assistant_event

    async def _stream_deltas(
        self,
        message_id: str,
        reasoning: str,
        content: str,
        updates: list[StreamingToolCallUpdate],
    ) -> AsyncIterator[dict]:
        if reasoning:
            yield await self._emit(
                EventType.ASSISTANT_STREAMING_THINKING_MESSAGE,
                content=reasoning,
                isComplete=False,
                messageId=message_id,
            )
        if content:
            yield await self._emit(
                EventType.ASSISTANT_STREAMING_MESSAGE,
                content=content,
                isComplete=False,
                messageId=message_id,
            )
        for update in updates:
            yield await self._emit(
                EventType.ASSISTANT_STREAMING_TOOL_CALL,
                messageId=message_id,
                **update.to_wire(),
            )

    async def _execute_tool_call(self, call: dict):
        function = call.get("function") or {}
        name = function.get("name", "")
        record = ToolCallRecord(call["id"], name, function.get("arguments") or "")
        try:
            args = json.loads(record.arguments) if record.arguments.strip() else {}
        except json.JSONDecodeError:
            args = {}
        tool = self.tools.get(name)
        yield await self._emit(
            EventType.TOOL_CALL,
            toolCallId=record.id,
            name=name,
            arguments=args,
            startTime=int(time.time() * 1000),
            tool=tool.describe() if tool else {"name": name},
        ), None

        started = time.monotonic()
        result = await self.tools.execute(record.id, name, args)
        event = await self._emit(
            EventType.TOOL_RESULT,
            toolCallId=record.id,
            name=name,
            content=result.content,
            error=result.error,
            elapsedMs=int((time.monotonic() - started) * 1000),
        )
        yield event, result

    # -- helpers --------------------------------------------------------------

    async def _emit(self, event_type: EventType, **fields: Any) -> dict:
        event = create_event(event_type.value, **fields)
        await self.event_stream.send_event(event)
        return event

    def _history_from_events(self, events: list[dict]) -> list[dict]:
        messages: list[dict] = []
        pending: list[ToolCallResult] = []

        def flush() -> None:
            if pending:
                messages.extend(
                    self.engine.build_historical_tool_call_result_messages(pending),
                )
                pending.clear()

        for event in events:
            kind = event.get("type")
            if kind == EventType.TOOL_RESULT.value:
                pending.append(ToolCallResult(
                    tool_call_id=event.get("toolCallId", ""),
                    tool_name=event.get("name", ""),
                    content=event.get("content"),
                    error=event.get("error"),
                ))
                continue
            if kind in (
                EventType.USER_MESSAGE.value, EventType.ENVIRONMENT_INPUT.value,
            ):
                flush()
                messages.append({"role": "user", "content": event.get("content")})
            elif kind == EventType.ASSISTANT_MESSAGE.value:
                flush()
                messages.append(self.engine.build_historical_assistant_message(event))
        flush()
        return messages
