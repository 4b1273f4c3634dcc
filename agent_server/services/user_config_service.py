"""User Config Service — per-user preferences layered over the UserConfigDAO primitives.

Invariants:
    - get_or_create never fails for a new user: defaults are created on first read
    - List edits are idempotent (adding an existing link or removing a missing one
      leaves the list unchanged)
    - Strategy and quota reads fall back to defaults for unknown users
"""

import logging

from agent_server.core.domain_types import AllocationStrategy
from agent_server.core.errors import ValidationError
from agent_server.core.records import UserConfig, UserConfigInfo
from agent_server.core.repository_protocols import UserConfigDAO

logger = logging.getLogger(__name__)


class UserConfigService:
    def __init__(self, dao: UserConfigDAO):
        self.dao = dao

    async def get_user_config(self, user_id: str) -> UserConfigInfo | None:
        return await self.dao.get_user_config(user_id)

    async def create_user_config(
        self, user_id: str, config: dict | None = None,
    ) -> UserConfigInfo:
        _check_config(config)
        return await self.dao.create_user_config(user_id, config)

    async def update_user_config(
        self, user_id: str, updates: dict,
    ) -> UserConfigInfo | None:
        _check_config(updates)
        return await self.dao.update_user_config(user_id, updates)

    async def delete_user_config(self, user_id: str) -> bool:
        return await self.dao.delete_user_config(user_id)

    async def get_or_create_user_config(self, user_id: str) -> UserConfigInfo:
        info = await self.dao.get_user_config(user_id)
        if info is None:
            logger.info(f"Creating default config for user {user_id}", extra={"user_id": user_id})
            info = await self.dao.create_user_config(user_id)
        return info

    async def get_sandbox_allocation_strategy(self, user_id: str) -> AllocationStrategy:
        info = await self.dao.get_user_config(user_id)
        config = info.config if info else UserConfig()
        return config.sandbox_allocation_strategy

    async def get_sandbox_pool_quota(self, user_id: str) -> int:
        info = await self.dao.get_user_config(user_id)
        config = info.config if info else UserConfig()
        return config.sandbox_pool_quota

    async def add_shared_link(self, user_id: str, link: str) -> UserConfigInfo:
        return await self._edit_list(user_id, "shared_links", link, add=True)

    async def remove_shared_link(self, user_id: str, link: str) -> UserConfigInfo:
        return await self._edit_list(user_id, "shared_links", link, add=False)

    async def add_custom_sp_fragment(self, user_id: str, fragment: str) -> UserConfigInfo:
        return await self._edit_list(user_id, "custom_sp_fragments", fragment, add=True)

    async def remove_custom_sp_fragment(
        self, user_id: str, fragment: str,
    ) -> UserConfigInfo:
        return await self._edit_list(user_id, "custom_sp_fragments", fragment, add=False)

    async def update_model_providers(
        self, user_id: str, providers: list[dict],
    ) -> UserConfigInfo:
        await self.get_or_create_user_config(user_id)
        return await self.dao.update_user_config(
            user_id, {"model_providers": providers},
        )

    async def _edit_list(
        self, user_id: str, field_name: str, value: str, add: bool,
    ) -> UserConfigInfo:
        info = await self.get_or_create_user_config(user_id)
        items = list(getattr(info.config, field_name))
        if add and value not in items:
            items.append(value)
        elif not add and value in items:
            items.remove(value)
        else:
            return info
        return await self.dao.update_user_config(user_id, {field_name: items})


def _check_config(config: dict | None) -> None:
    """Reject values UserConfig cannot hold (unknown strategy, non-numeric quota)."""
    try:
        UserConfig.from_dict(config)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid user config: {e}", "config") from e
