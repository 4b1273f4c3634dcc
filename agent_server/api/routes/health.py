"""Health & Readiness Probes — liveness and readiness endpoints for container orchestration.

Invariants:
    - GET /health/ always returns 200 if process is up (liveness)
    - GET /health/ready returns 503 if storage is unreachable (readiness)

Design Decisions:
    - Separate liveness/readiness: liveness restarts, readiness removes from the
      load balancer (ADR: production readiness)
    - Readiness asks the StorageProvider, so it works for both sql and memory backends
"""

import logging
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from agent_server.api.deps import ServerRuntime, get_runtime

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("/", status_code=status.HTTP_200_OK)
async def health_check():
    """Basic liveness probe. Returns 200 if the process is up."""
    return {
        "status": "healthy",
        "service": "agent-server",
        "version": "1.0.0",
    }


@router.get("/ready")
async def readiness_check(runtime: ServerRuntime = Depends(get_runtime)):
    """Readiness probe — includes storage connectivity and pool load."""
    storage_ok = await runtime.storage.health_check()
    if not storage_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "reason": "storage_unavailable",
            },
        )
    return {
        "status": "ready",
        "checks": {"storage": "healthy"},
        "pool": runtime.pool.get_memory_stats(),
    }
