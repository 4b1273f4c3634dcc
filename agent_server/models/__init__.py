"""ORM Models — SQLAlchemy declarative models for the persisted tables.

Invariants:
    - All models inherit from Base (db/base.py)
    - Session owns its events; sandbox allocations and user configs stand alone

Design Decisions:
    - One file per table for locality
    - All models imported here so SQLAlchemy resolves string-based relationship()
      references before any query runs (ADR: standard SQLAlchemy pattern)
"""

from agent_server.models.session import Session  # noqa: F401
from agent_server.models.event import Event  # noqa: F401
from agent_server.models.sandbox_allocation import SandboxAllocationRow  # noqa: F401
from agent_server.models.user_config import UserConfigRow  # noqa: F401
