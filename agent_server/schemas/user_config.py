"""User Config Schemas — request bodies for per-user preferences.

Invariants:
    - config keys may be camelCase or snake_case; UserConfig.from_dict accepts both
"""

from typing import Any

from pydantic import BaseModel


class UserConfigCreate(BaseModel):
    config: dict[str, Any] | None = None


class UserConfigUpdate(BaseModel):
    config: dict[str, Any]
