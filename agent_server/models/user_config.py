"""UserConfig ORM — per-user preferences stored as one JSON document.

Invariants:
    - One row per user_id
    - config always holds the full camelCase document (defaults merged on write)
"""

from sqlalchemy import BigInteger, String, JSON
from sqlalchemy.orm import Mapped, mapped_column

from agent_server.core.records import now_ms
from agent_server.db.base import Base


class UserConfigRow(Base):
    """User configuration row."""
    __tablename__ = "user_configs"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms,
    )
    updated_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms,
    )
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
