"""Initial schema — sessions, events, sandbox_allocations, user_configs.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
        sa.Column("workspace", sa.Text, nullable=False, server_default=""),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=False),
    )
    op.create_index("ix_sessions_updated_at", "sessions", ["updated_at"])
    op.create_index("ix_sessions_user_id", "sessions", ["user_id"])

    op.create_table(
        "events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column(
            "session_id", sa.String(64),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("timestamp", sa.BigInteger, nullable=False),
        sa.Column("data", sa.JSON, nullable=False),
    )
    op.create_index(
        "ix_events_session_order", "events", ["session_id", "timestamp", "id"],
    )

    op.create_table(
        "sandbox_allocations",
        sa.Column("sandbox_id", sa.String(128), primary_key=True),
        sa.Column("sandbox_url", sa.Text, nullable=False),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("session_id", sa.String(64), nullable=True),
        sa.Column("allocation_strategy", sa.String(32), nullable=False),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("last_used_at", sa.BigInteger, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_sandbox_allocations_user_id", "sandbox_allocations", ["user_id"])
    op.create_index(
        "ix_sandbox_allocations_session_id", "sandbox_allocations", ["session_id"],
    )
    op.create_index(
        "ix_sandbox_allocations_is_active", "sandbox_allocations", ["is_active"],
    )

    op.create_table(
        "user_configs",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
        sa.Column("config", sa.JSON, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("user_configs")
    op.drop_table("sandbox_allocations")
    op.drop_table("events")
    op.drop_table("sessions")
