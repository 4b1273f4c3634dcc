"""Sandbox Scheduler — allocates, reuses, and releases remote sandboxes per strategy.

Invariants:
    - Default strategy is Session-Exclusive
    - Reuse rules: Shared-Pool takes any active shared sandbox not bound to another
      user; User-Exclusive takes the user's own User-Exclusive sandbox;
      Session-Exclusive takes the session's own sandbox
    - A candidate is reused only after a remote liveness check answers ALIVE; one that
      is gone or unreachable is deactivated and a new sandbox provisioned in its place
    - Reuse touches last_used_at; release deactivates the row before deleting remotely
    - The reconciliation sweep is the only path that deletes allocation rows

Design Decisions:
    - Liveness is reverified on every request (no cached health)
    - Strategy lookup from user config only when the caller asks for it
      (use_user_strategy=True); otherwise the explicit or default strategy wins
"""

import logging

from agent_server.core.domain_types import AllocationStrategy, SandboxLiveness
from agent_server.core.errors import SandboxOperationError
from agent_server.core.records import SandboxAllocation
from agent_server.core.repository_protocols import SandboxAllocationDAO
from agent_server.infrastructure.sandbox_manager import SandboxManager
from agent_server.services.user_config_service import UserConfigService

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = AllocationStrategy.SESSION_EXCLUSIVE


class SandboxScheduler:
    def __init__(
        self,
        manager: SandboxManager,
        allocations: SandboxAllocationDAO,
        user_configs: UserConfigService | None = None,
    ):
        self.manager = manager
        self.allocations = allocations
        self.user_configs = user_configs

    async def get_sandbox_url(
        self,
        user_id: str | None = None,
        session_id: str | None = None,
        strategy: AllocationStrategy | None = None,
        use_user_strategy: bool = False,
    ) -> str:
        if strategy is None and use_user_strategy and user_id and self.user_configs:
            strategy = await self.user_configs.get_sandbox_allocation_strategy(user_id)
        strategy = AllocationStrategy(strategy or DEFAULT_STRATEGY)
        logger.info(
            f"Getting sandbox URL ({strategy.value})",
            extra={"user_id": user_id, "session_id": session_id},
        )

        existing = await self._find_existing(user_id, session_id, strategy)
        if existing is not None:
            await self.allocations.update_last_used(existing.sandbox_id)
            logger.info(
                f"Reusing sandbox {existing.sandbox_id}",
                extra={"sandbox_id": existing.sandbox_id, "session_id": session_id},
            )
            return existing.sandbox_url

        allocation = await self._create_new(user_id, session_id, strategy)
        return allocation.sandbox_url

    async def _find_existing(
        self,
        user_id: str | None,
        session_id: str | None,
        strategy: AllocationStrategy,
    ) -> SandboxAllocation | None:
        candidate = None
        if strategy == AllocationStrategy.SHARED_POOL:
            shared = await self.allocations.get_available_allocations(strategy, user_id)
            candidate = shared[0] if shared else None
        elif strategy == AllocationStrategy.USER_EXCLUSIVE:
            if not user_id:
                return None
            owned = await self.allocations.get_user_allocations(user_id)
            candidate = next(
                (a for a in owned if a.allocation_strategy == strategy), None,
            )
        elif strategy == AllocationStrategy.SESSION_EXCLUSIVE:
            if not session_id:
                return None
            candidate = await self.allocations.get_session_allocation(session_id)

        if candidate is None:
            return None
        liveness = await self._liveness(candidate.sandbox_url)
        if liveness != SandboxLiveness.ALIVE:
            logger.warning(
                f"Sandbox {candidate.sandbox_id} is {liveness.value}, deactivating",
                extra={"sandbox_id": candidate.sandbox_id},
            )
            await self.allocations.deactivate_allocation(candidate.sandbox_id)
            return None
        return candidate

    async def _create_new(
        self,
        user_id: str | None,
        session_id: str | None,
        strategy: AllocationStrategy,
    ) -> SandboxAllocation:
        instance = await self.manager.create_instance(
            user_id=user_id, session_id=session_id,
        )
        allocation = await self.allocations.create_allocation(SandboxAllocation(
            sandbox_id=instance.id,
            sandbox_url=instance.url,
            allocation_strategy=strategy,
            user_id=user_id,
            session_id=session_id,
        ))
        logger.info(
            f"New sandbox allocated ({strategy.value})",
            extra={
                "sandbox_id": instance.id, "user_id": user_id, "session_id": session_id,
            },
        )
        return allocation

    async def check_instance_exist(self, sandbox_url: str | None) -> bool:
        """True only for a URL whose instance answered as alive."""
        return await self._liveness(sandbox_url) == SandboxLiveness.ALIVE

    async def _liveness(self, sandbox_url: str | None) -> SandboxLiveness:
        if not sandbox_url:
            return SandboxLiveness.GONE
        return await self.manager.check_instance_liveness(sandbox_url)

    async def release_sandbox(self, sandbox_id: str) -> None:
        await self.allocations.deactivate_allocation(sandbox_id)
        result = await self.manager.delete_instance(sandbox_id)
        logger.info(
            f"Sandbox released (remote delete success={result.success})",
            extra={"sandbox_id": sandbox_id},
        )

    async def get_user_sandboxes(self, user_id: str) -> list[SandboxAllocation]:
        return await self.allocations.get_user_allocations(user_id)

    async def cleanup_inactive_sandboxes(self) -> int:
        """Delete inactive sandboxes remotely, then their rows. Returns rows removed."""
        removed = 0
        for allocation in await self.allocations.get_inactive_allocations():
            try:
                await self.manager.delete_instance(allocation.sandbox_id)
                await self.allocations.delete_allocation(allocation.sandbox_id)
                removed += 1
                logger.info(
                    "Cleaned up inactive sandbox",
                    extra={"sandbox_id": allocation.sandbox_id},
                )
            except SandboxOperationError as e:
                logger.error(
                    f"Failed to clean up sandbox: {e.message}",
                    extra={"sandbox_id": allocation.sandbox_id},
                )
        return removed
