"""Tools — callable tool definitions and the registry the agent dispatches through.

Invariants:
    - Tool names are unique within a registry (re-registering replaces)
    - Unknown tools produce an error result, never an exception
    - A tool's own exception becomes the result's error text; the loop continues

Design Decisions:
    - Explicit registration over auto-discovery: every tool the agent can call is
      registered by the code that builds the agent (ADR: no convention-over-config)
    - Handlers take one dict of arguments and may be sync or async
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from agent_server.core.stream_types import ToolCallResult

logger = logging.getLogger(__name__)


@dataclass
class Tool:
    """A named capability the model may invoke."""
    name: str
    description: str
    function: Callable[[dict], Any]
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )

    async def execute(self, args: dict) -> Any:
        result = self.function(args)
        if inspect.isawaitable(result):
            result = await result
        return result

    def describe(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "schema": self.parameters,
        }


class ToolRegistry:
    """Name -> Tool mapping."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list(self) -> list[Tool]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(
        self, tool_call_id: str, name: str, args: dict,
    ) -> ToolCallResult:
        tool = self._tools.get(name)
        if tool is None:
            logger.warning(f"Unknown tool requested: {name}", extra={"tool_name": name})
            return ToolCallResult(
                tool_call_id, name, None, error=f"Tool '{name}' not found",
            )
        try:
            content = await tool.execute(args)
        except Exception as e:
            logger.error(
                f"Tool {name} failed: {e}", extra={"tool_name": name}, exc_info=True,
            )
            return ToolCallResult(tool_call_id, name, None, error=str(e))
        return ToolCallResult(tool_call_id, name, content)
