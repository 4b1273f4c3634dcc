"""Application Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - All secrets come from environment variables (never hardcoded)
    - get_settings() is cached (lru_cache) — single instance per process
    - The default agent model is always a member of available_models

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support (ADR: developer UX)
    - Defaults provided for all non-secret settings: works out-of-the-box with docker-compose
    - Session-pool and sandbox knobs are plain settings, not constants: they are tuning
      policy, not contract
"""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database
    database_url: str = (
        "postgresql+asyncpg://agent:agent@db:5432/agent_server"
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_postgres_url(cls, v: str) -> str:
        """Hosting providers hand out postgresql:// but asyncpg needs postgresql+asyncpg://."""
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Storage: "sql" (SQLAlchemy async) or "memory" (single process, tests/dev)
    storage_backend: str = "sql"

    # Anthropic
    anthropic_api_key: str = "sk-ant-placeholder"
    anthropic_max_retries: int = 3
    anthropic_timeout_seconds: int = 300
    anthropic_base_delay_ms: int = 1000
    anthropic_max_delay_ms: int = 60_000
    anthropic_max_tokens: int = 8192

    # Agent
    agent_max_iterations: int = 50
    agent_model: str = "claude-sonnet-4-5"
    available_models: list[str] = ["claude-sonnet-4-5"]
    agent_instructions: str = "You are a helpful agent. Use the available tools when they help."
    tool_call_engine: str = "native"
    seed_think_token: str = "thinkt"
    workspace: str = "/tmp/agent-workspace"

    # Admission control
    exclusive_mode: bool = False

    # Session pool
    session_pool_max_sessions: int = 200
    session_pool_memory_limit_mb: int = 512
    session_pool_check_interval_s: float = 30.0
    session_memory_estimate_mb: float = 3.0

    # Sandbox
    sandbox_enabled: bool = False
    sandbox_base_url: str = "sandbox.local"
    sandbox_jwt_token: str = ""
    sandbox_ttl_minutes: int = 1440
    sandbox_create_mock: str = ""
    sandbox_timeout_seconds: float = 30.0

    # API
    cors_origins: list[str] = ["http://localhost:5173"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("tool_call_engine")
    @classmethod
    def check_engine(cls, v: str) -> str:
        if v not in ("native", "prompt_engineering", "seed"):
            raise ValueError(f"tool_call_engine must be native|prompt_engineering|seed, got {v}")
        return v

    @field_validator("storage_backend")
    @classmethod
    def check_storage(cls, v: str) -> str:
        if v not in ("sql", "memory"):
            raise ValueError(f"storage_backend must be sql|memory, got {v}")
        return v

    @model_validator(mode="after")
    def include_default_model(self) -> "Settings":
        if self.agent_model not in self.available_models:
            self.available_models = [self.agent_model, *self.available_models]
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
