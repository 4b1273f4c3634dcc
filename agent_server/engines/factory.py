"""Engine Factory — explicit routing from engine kind to engine class.

Invariants:
    - The set of engines is closed: unknown kinds raise ValidationError
    - Every kind->engine mapping is visible in one dict

Design Decisions:
    - Explicit dict over registration decorators (ADR: no convention-over-config)
"""

from agent_server.core.domain_types import ToolCallEngineKind
from agent_server.core.errors import ValidationError
from agent_server.engines.base import ToolCallEngine
from agent_server.engines.native import NativeToolCallEngine
from agent_server.engines.prompt_engineering import PromptEngineeringToolCallEngine
from agent_server.engines.seed import SeedToolCallEngine
from agent_server.infrastructure.observability import ComponentLogger


def create_tool_call_engine(
    kind: ToolCallEngineKind | str,
    *,
    think_token: str | None = None,
    logger: ComponentLogger | None = None,
) -> ToolCallEngine:
    """Build a fresh engine for `kind` ("native" | "prompt_engineering" | "seed")."""
    try:
        kind = ToolCallEngineKind(kind)
    except ValueError:
        raise ValidationError(
            f"Unknown tool call engine: {kind}", field="tool_call_engine",
        ) from None

    builders = {
        ToolCallEngineKind.NATIVE: lambda: NativeToolCallEngine(logger=logger),
        ToolCallEngineKind.PROMPT_ENGINEERING:
            lambda: PromptEngineeringToolCallEngine(logger=logger),
        ToolCallEngineKind.SEED:
            lambda: SeedToolCallEngine(think_token=think_token, logger=logger),
    }
    return builders[kind]()
