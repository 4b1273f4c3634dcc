"""Event ORM — append-only log of persisted agent events per session.

Invariants:
    - Streaming deltas are never stored (filtered before save)
    - Order within a session is (timestamp, id): the autoincrement id breaks ties
      between events emitted in the same millisecond

Design Decisions:
    - Whole event kept in a JSON column: kinds carry different fields and are replayed
      verbatim into a new agent
    - event_id and type duplicated as columns for lookups without JSON operators
"""

from sqlalchemy import BigInteger, Integer, String, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agent_server.db.base import Base


class Event(Base):
    """One persisted agent event."""
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_session_order", "session_id", "timestamp", "id"),
    )

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True,
    )
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)

    session: Mapped["Session"] = relationship(
        "Session", back_populates="events",
    )
