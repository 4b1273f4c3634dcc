"""Anthropic Chat Provider — OpenAI-shaped streaming on top of AsyncAnthropic.

Invariants:
    - Rate limits (429): exponential backoff with jitter, respects Retry-After header
    - Transient errors (5xx, 529, connection): max_retries retries with exponential backoff
    - Client errors (4xx except 429): immediate failure, no retry
    - Retries happen only while opening the stream; once a chunk has been yielded a
      failure is raised, never replayed (the agent already emitted those deltas)
    - All failures mapped to ProviderAPIError (core/errors.py)

Design Decisions:
    - Engines speak OpenAI chat-completions dicts; translation lives here at the edge
      so engines never import the SDK (ADR: provider adapters at infrastructure edge)
    - Consecutive messages with the same role are merged: the Messages API requires
      alternating turns, while engine histories may put several tool results in a row
    - ±25% jitter on backoff: prevents thundering herd on shared rate limits
"""

import asyncio
import json
import logging
import random
from typing import Any, AsyncIterator

import anthropic
from anthropic import (
    APIError,
    APIConnectionError,
    APIStatusError,
    RateLimitError,
    APITimeoutError,
    InternalServerError,
)

from agent_server.core.errors import ErrorContext, ProviderAPIError

logger = logging.getLogger(__name__)

# OverloadedError (HTTP 529) is not re-exported by every SDK version.
_OVERLOADED_STATUS = 529

_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


def _is_overloaded(e: APIError) -> bool:
    """Check if error is Anthropic 529 Overloaded."""
    return isinstance(e, APIStatusError) and e.status_code == _OVERLOADED_STATUS


# ─── Request translation ─────────────────────────────────────────

def _tool_use_block(call: dict) -> dict:
    function = call.get("function") or {}
    raw = function.get("arguments") or ""
    try:
        arguments = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        arguments = {}
    return {
        "type": "tool_use",
        "id": call.get("id"),
        "name": function.get("name", ""),
        "input": arguments if isinstance(arguments, dict) else {},
    }


def _content_blocks(message: dict) -> list[dict]:
    role = message.get("role")
    if role == "tool":
        return [{
            "type": "tool_result",
            "tool_use_id": message.get("tool_call_id"),
            "content": message.get("content") or "",
        }]
    blocks: list[dict] = []
    content = message.get("content")
    if isinstance(content, list):
        blocks.extend(content)
    elif content:
        blocks.append({"type": "text", "text": content})
    if role == "assistant":
        blocks.extend(_tool_use_block(c) for c in message.get("tool_calls") or [])
    return blocks


def to_anthropic_request(request: dict, max_tokens: int) -> dict:
    """Translate an OpenAI chat-completions request into Messages API params."""
    system_parts: list[str] = []
    messages: list[dict] = []
    for message in request.get("messages", []):
        if message.get("role") == "system":
            if message.get("content"):
                system_parts.append(message["content"])
            continue
        role = "assistant" if message.get("role") == "assistant" else "user"
        blocks = _content_blocks(message)
        if not blocks:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})

    params: dict[str, Any] = {
        "model": request["model"],
        "max_tokens": request.get("max_tokens") or max_tokens,
        "messages": messages,
    }
    if system_parts:
        params["system"] = "\n\n".join(system_parts)
    if request.get("temperature") is not None:
        params["temperature"] = min(1.0, max(0.0, request["temperature"]))
    if request.get("top_p") is not None:
        params["top_p"] = request["top_p"]
    if request.get("stop"):
        params["stop_sequences"] = [s for s in request["stop"] if s.strip()]
    if request.get("tools"):
        params["tools"] = [
            {
                "name": t["function"]["name"],
                "description": t["function"].get("description", ""),
                "input_schema": t["function"].get("parameters")
                or {"type": "object", "properties": {}},
            }
            for t in request["tools"]
        ]
    return params


# ─── Response translation ────────────────────────────────────────

def _chunk(delta: dict, finish_reason: str | None = None) -> dict:
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


class StreamTranslator:
    """Turns raw Messages API stream events into chat-completions chunks."""

    def __init__(self):
        self._tool_index: dict[int, int] = {}

    def translate(self, event: Any) -> dict | None:
        kind = getattr(event, "type", None)
        if kind == "content_block_start":
            block = event.content_block
            if block.type != "tool_use":
                return None
            position = len(self._tool_index)
            self._tool_index[event.index] = position
            return _chunk({"tool_calls": [{
                "index": position,
                "id": block.id,
                "type": "function",
                "function": {"name": block.name, "arguments": ""},
            }]})
        if kind == "content_block_delta":
            delta = event.delta
            if delta.type == "text_delta":
                return _chunk({"content": delta.text})
            if delta.type == "thinking_delta":
                return _chunk({"reasoning_content": delta.thinking})
            if delta.type == "input_json_delta" and event.index in self._tool_index:
                return _chunk({"tool_calls": [{
                    "index": self._tool_index[event.index],
                    "function": {"arguments": delta.partial_json},
                }]})
            return None
        if kind == "message_delta":
            stop_reason = getattr(event.delta, "stop_reason", None)
            if stop_reason:
                return _chunk({}, _FINISH_REASONS.get(stop_reason, "stop"))
        return None


# ─── Client ──────────────────────────────────────────────────────

class AnthropicChatProvider:
    """ChatProvider backed by the Anthropic Messages API, with retry and error mapping."""

    def __init__(
        self,
        api_key: str,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 60_000,
        timeout_seconds: int = 300,
        max_tokens: int = 8192,
        client: Any = None,
    ):
        self.client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout_seconds,
        )
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.max_tokens = max_tokens

    async def stream_chat(
        self, request: dict, context: ErrorContext | None = None,
    ) -> AsyncIterator[dict]:
        params = to_anthropic_request(request, self.max_tokens)
        stream = await self._open_stream(params, context)
        translator = StreamTranslator()
        try:
            async for event in stream:
                chunk = translator.translate(event)
                if chunk is not None:
                    yield chunk
        except RateLimitError as e:
            raise ProviderAPIError(
                "Rate limit exceeded (streaming)",
                "rate_limit",
                retry_after_ms=self._extract_retry_after(e),
                context=context,
            )
        except APITimeoutError:
            raise ProviderAPIError(
                "API timeout during stream", "timeout", context=context,
            )
        except (APIConnectionError, InternalServerError) as e:
            raise ProviderAPIError(
                f"Connection error during stream: {e}",
                "connection_error",
                context=context,
            )
        except APIError as e:
            if _is_overloaded(e):
                raise ProviderAPIError(
                    "Anthropic API overloaded (529)", "overloaded", context=context,
                )
            raise ProviderAPIError(str(e), "client_error", context=context)

    async def _open_stream(self, params: dict, context: ErrorContext | None):
        """Open the event stream, retrying transient failures."""
        for attempt in range(self.max_retries + 1):
            try:
                stream = await self.client.messages.create(**params, stream=True)
                logger.info(
                    "Anthropic stream opened",
                    extra={"attempt": attempt + 1, "model": params.get("model")},
                )
                return stream

            except RateLimitError as e:
                await self._handle_rate_limit(e, attempt, context)

            except APITimeoutError:
                raise ProviderAPIError("API timeout", "timeout", context=context)

            except (APIConnectionError, InternalServerError) as e:
                await self._handle_transient_error(e, attempt, context)

            except APIError as e:
                if _is_overloaded(e):
                    await self._handle_transient_error(e, attempt, context)
                    continue
                raise ProviderAPIError(str(e), "client_error", context=context)

    async def _handle_rate_limit(
        self, e: RateLimitError, attempt: int, context: ErrorContext | None,
    ) -> None:
        """Handle rate limit error with retry or raise."""
        retry_after_ms = self._extract_retry_after(e)
        if attempt >= self.max_retries:
            raise ProviderAPIError(
                "Rate limit exceeded after retries",
                "rate_limit",
                retry_after_ms=retry_after_ms,
                context=context,
            )
        delay = retry_after_ms or self._backoff(attempt)
        logger.warning(
            f"Rate limit hit, retry after {delay}ms (attempt {attempt + 1})",
        )
        await asyncio.sleep(delay / 1000)

    async def _handle_transient_error(
        self, e: Exception, attempt: int, context: ErrorContext | None,
    ) -> None:
        """Handle transient errors with retry or raise."""
        if attempt >= self.max_retries:
            raise ProviderAPIError(
                f"Transient failure after {self.max_retries} retries: {e}",
                "connection_error",
                context=context,
            )
        delay = self._backoff(attempt)
        logger.warning(f"Transient error, retry after {delay}ms: {e}")
        await asyncio.sleep(delay / 1000)

    def _backoff(self, attempt: int) -> int:
        """Exponential backoff with ±25% jitter."""
        delay = min(self.max_delay_ms, (2 ** attempt) * self.base_delay_ms)
        return int(delay * random.uniform(0.75, 1.25))  # nosec B311

    def _extract_retry_after(self, error: RateLimitError) -> int | None:
        """Extract Retry-After header (returns milliseconds)."""
        response = getattr(error, "response", None)
        if response is None:
            return None
        value = response.headers.get("retry-after")
        try:
            return int(float(value) * 1000) if value else None
        except ValueError:
            return None
