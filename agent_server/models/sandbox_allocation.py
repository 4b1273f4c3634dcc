"""SandboxAllocation ORM — which remote sandbox serves which user or session.

Invariants:
    - sandbox_id is the remote instance name (primary key)
    - Rows are deactivated on release; only the reconciliation sweep deletes them
    - last_used_at is touched on every reuse

Design Decisions:
    - Strategy stored as its hyphenated wire string (shared with other replicas)
    - user_id/session_id nullable: Shared-Pool rows may be unbound
"""

from sqlalchemy import BigInteger, Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from agent_server.core.records import now_ms
from agent_server.db.base import Base


class SandboxAllocationRow(Base):
    """Sandbox allocation row."""
    __tablename__ = "sandbox_allocations"

    sandbox_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    sandbox_url: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True,
    )
    session_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True,
    )
    allocation_strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms,
    )
    last_used_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, index=True,
    )
