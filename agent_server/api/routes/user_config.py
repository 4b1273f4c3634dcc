"""User Config — per-user preferences (sandbox strategy, quota, links, providers).

Invariants:
    - GET returns 404 for a user with no stored config (no implicit creation)
    - POST on an existing config is a 409, not an overwrite
    - PUT merges into the stored config and returns the full result
"""

import logging

from fastapi import APIRouter, Depends, status

from agent_server.api.deps import ServerRuntime, get_runtime
from agent_server.core.errors import ConflictError, ResourceNotFoundError
from agent_server.schemas.user_config import UserConfigCreate, UserConfigUpdate

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/users", tags=["user-config"])


@router.get("/{user_id}/config")
async def get_user_config(
    user_id: str, runtime: ServerRuntime = Depends(get_runtime),
):
    info = await runtime.user_configs.get_user_config(user_id)
    if info is None:
        raise ResourceNotFoundError("UserConfig", user_id)
    return {"userConfig": info.to_dict()}


@router.post("/{user_id}/config", status_code=status.HTTP_201_CREATED)
async def create_user_config(
    user_id: str,
    body: UserConfigCreate,
    runtime: ServerRuntime = Depends(get_runtime),
):
    if await runtime.user_configs.get_user_config(user_id) is not None:
        raise ConflictError(
            f"Config for user {user_id} already exists", "USER_CONFIG_EXISTS",
        )
    info = await runtime.user_configs.create_user_config(user_id, body.config)
    return {"userConfig": info.to_dict()}


@router.put("/{user_id}/config")
async def update_user_config(
    user_id: str,
    body: UserConfigUpdate,
    runtime: ServerRuntime = Depends(get_runtime),
):
    info = await runtime.user_configs.update_user_config(user_id, body.config)
    if info is None:
        raise ResourceNotFoundError("UserConfig", user_id)
    return {"userConfig": info.to_dict()}
