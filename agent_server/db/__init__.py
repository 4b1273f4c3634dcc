"""Database Infrastructure — SQLAlchemy declarative Base shared by the ORM models.

Invariants:
    - Every table model inherits from db.base.Base
    - Engines and sessions live in infrastructure/database.py, not here

Design Decisions:
    - asyncpg driver for PostgreSQL, aiosqlite for local runs and tests
      (ADR: native async, no thread pool overhead)
"""
