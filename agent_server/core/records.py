"""Persistence Records — storage-agnostic shapes exchanged with the DAO layer.

Invariants:
    - Timestamps are integer milliseconds since the epoch
    - SessionInfo.metadata is an open map; known keys are agentInfo, modelConfig,
      sandboxUrl, name, tags
    - UserConfig always carries every field; partial input is merged over the defaults
    - A SandboxAllocation is never deleted on release, only deactivated

Design Decisions:
    - Plain dataclasses over ORM objects: the in-memory and SQL stores return the same
      shapes, and services never hold a live DB row (ADR: storage backends swappable)
    - to_dict() emits the camelCase wire form used by the HTTP layer and stored events
"""

import time
from dataclasses import dataclass, field
from typing import Any

from agent_server.core.domain_types import AllocationStrategy


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionInfo:
    """One conversation's durable record."""
    id: str
    created_at: int
    updated_at: int
    workspace: str
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "workspace": self.workspace,
            "userId": self.user_id,
            "metadata": self.metadata,
        }


@dataclass
class SandboxAllocation:
    """A remote sandbox and who it is bound to."""
    sandbox_id: str
    sandbox_url: str
    allocation_strategy: AllocationStrategy
    user_id: str | None = None
    session_id: str | None = None
    created_at: int = field(default_factory=now_ms)
    last_used_at: int = field(default_factory=now_ms)
    is_active: bool = True


@dataclass
class UserConfig:
    """Per-user preferences."""
    sandbox_allocation_strategy: AllocationStrategy = AllocationStrategy.SHARED_POOL
    sandbox_pool_quota: int = 5
    shared_links: list[str] = field(default_factory=list)
    custom_sp_fragments: list[str] = field(default_factory=list)
    model_providers: list[dict] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None, base: "UserConfig | None" = None) -> "UserConfig":
        """Merge camelCase or snake_case `data` over `base` (defaults when None)."""
        merged = (base or cls()).to_dict()
        for key, value in (data or {}).items():
            if value is None:
                continue
            merged[_USER_CONFIG_KEYS.get(key, key)] = value
        return cls(
            sandbox_allocation_strategy=AllocationStrategy(
                merged["sandboxAllocationStrategy"],
            ),
            sandbox_pool_quota=int(merged["sandboxPoolQuota"]),
            shared_links=list(merged["sharedLinks"]),
            custom_sp_fragments=list(merged["customSpFragments"]),
            model_providers=list(merged["modelProviders"]),
        )

    def to_dict(self) -> dict:
        return {
            "sandboxAllocationStrategy": self.sandbox_allocation_strategy.value,
            "sandboxPoolQuota": self.sandbox_pool_quota,
            "sharedLinks": list(self.shared_links),
            "customSpFragments": list(self.custom_sp_fragments),
            "modelProviders": list(self.model_providers),
        }


_USER_CONFIG_KEYS = {
    "sandbox_allocation_strategy": "sandboxAllocationStrategy",
    "sandbox_pool_quota": "sandboxPoolQuota",
    "shared_links": "sharedLinks",
    "custom_sp_fragments": "customSpFragments",
    "model_providers": "modelProviders",
}


@dataclass
class UserConfigInfo:
    user_id: str
    created_at: int
    updated_at: int
    config: UserConfig

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "config": self.config.to_dict(),
        }
