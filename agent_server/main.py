"""Agent Server API — FastAPI application entry point.

Invariants:
    - Routes registered explicitly (no auto-discovery)
    - Global error handlers map AgentServerError → structured JSON responses
    - CORS configured from settings (not hardcoded)
    - Storage, pool monitor, and sandbox client created on startup via lifespan and
      torn down on shutdown; every live session is cleaned up before storage closes

Design Decisions:
    - Lifespan over @app.on_event: FastAPI recommended pattern, cleaner cleanup
      (ADR: FastAPI 0.128)
    - Runtime lives on app.state (api/deps.py), so routes never import singletons
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_server.api.deps import build_runtime
from agent_server.api.error_handlers import register_error_handlers
from agent_server.api.routes import health, queries, sessions, user_config
from agent_server.config import get_settings
from agent_server.infrastructure.observability import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    runtime = await build_runtime(settings)
    app.state.runtime = runtime
    runtime.pool.start()
    logger.info("Agent server started")
    yield
    logger.info("Agent server shutting down")
    await runtime.close()


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(
        title="Agent Server API", version="1.0.0", lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes — explicit registration
    application.include_router(health.router)
    application.include_router(queries.router)
    application.include_router(sessions.router)
    application.include_router(user_config.router)

    register_error_handlers(application)
    return application


app = create_app()
