"""Storage Factory — picks the DAO backend from settings.

Invariants:
    - Exactly one StorageProvider per process, created in the FastAPI lifespan
    - "sql" reuses the db_manager singleton (infrastructure/database.py)

Design Decisions:
    - Explicit if/else over a plugin registry: two backends, both visible here
"""

import logging

from agent_server.config import Settings
from agent_server.core.repository_protocols import StorageProvider
from agent_server.infrastructure import database
from agent_server.infrastructure.memory_store import MemoryStorageProvider
from agent_server.infrastructure.sql_store import SqlStorageProvider

logger = logging.getLogger(__name__)


def create_storage_provider(settings: Settings) -> StorageProvider:
    if settings.storage_backend == "memory":
        logger.info("Using in-memory storage")
        return MemoryStorageProvider()

    manager = database.init_db(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    logger.info("Using SQL storage")
    return SqlStorageProvider(
        manager, create_tables=settings.database_url.startswith("sqlite"),
    )
