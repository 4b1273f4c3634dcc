"""Session Schemas — Pydantic models with field-level validation for API boundaries.

Invariants:
    - QueryRequest.query: a non-blank string or a non-empty list of content parts
    - ModelConfigUpdate.id is non-empty; availability is checked by the route
      against settings, not here

Design Decisions:
    - Query accepts either plain text or OpenAI-style content parts: the agent
      forwards it unchanged into the user message
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class SessionCreate(BaseModel):
    """Session creation — optional owner, optional hard sandbox requirement."""
    user_id: str | None = Field(None, min_length=1, max_length=128)
    require_sandbox: bool = False


class SessionMetadataUpdate(BaseModel):
    """Shallow-merged into the stored metadata."""
    metadata: dict[str, Any]


class ModelConfigUpdate(BaseModel):
    provider: str = Field("anthropic", min_length=1)
    id: str = Field(min_length=1)


class QueryRequest(BaseModel):
    """One user turn against a session."""
    session_id: str = Field(min_length=1)
    query: str | list[dict[str, Any]]
    environment_input: dict[str, Any] | None = None

    @field_validator("query")
    @classmethod
    def check_query(cls, v):
        if isinstance(v, str):
            if not v.strip():
                raise ValueError("query cannot be empty or whitespace")
            return v
        if not v:
            raise ValueError("query content list cannot be empty")
        return v


class AbortRequest(BaseModel):
    session_id: str = Field(min_length=1)
