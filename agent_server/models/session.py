"""Session ORM — durable record of one agent conversation.

Invariants:
    - id is the caller-visible session id (string primary key, never regenerated)
    - created_at/updated_at are integer milliseconds since the epoch
    - Deleting a session cascades to its events

Design Decisions:
    - JSON column for metadata: open map (agentInfo, modelConfig, sandboxUrl, name, tags)
      stored as-is
    - Column named "metadata" but attribute session_metadata: DeclarativeBase reserves
      the `metadata` attribute
"""

from sqlalchemy import BigInteger, String, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agent_server.core.records import now_ms
from agent_server.db.base import Base


class Session(Base):
    """Session row — one conversation owned by an optional user."""
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms,
    )
    updated_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms, index=True,
    )
    workspace: Mapped[str] = mapped_column(Text, nullable=False, default="")
    user_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True,
    )
    session_metadata: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )

    # Relationships
    events: Mapped[list["Event"]] = relationship(
        "Event", back_populates="session",
        cascade="all, delete-orphan", passive_deletes=True,
    )
