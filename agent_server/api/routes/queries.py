"""Queries — run one user turn against a session, blocking or as Server-Sent Events.

Invariants:
    - A session missing from the pool is restored through the factory before use
    - The exclusive slot is claimed before the response starts, so a busy server
      answers 409 instead of an SSE stream that errors immediately
    - Every SSE frame is one agent event: "data: <json>\\n\\n"
    - Abort never restores: a session that is not live has nothing to abort

Design Decisions:
    - StreamingResponse for SSE: the session's event iterator is forwarded as-is,
      including the synthetic system error event on failure
"""

import json
import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, StreamingResponse

from agent_server.api.deps import ServerRuntime, get_live_session, get_runtime
from agent_server.core.errors import SessionNotFoundError
from agent_server.schemas.session import AbortRequest, QueryRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sessions", tags=["queries"])

# ADR: SSE headers prevent proxy/browser buffering of streamed events.
_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}


def _sse_line(event: dict) -> str:
    """Format one event as an SSE data frame."""
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


@router.post("/query")
async def run_query(
    body: QueryRequest, runtime: ServerRuntime = Depends(get_runtime),
):
    """Run a turn to completion and return the final assistant message."""
    session = await get_live_session(body.session_id, runtime)
    result = await session.run_query(body.query, body.environment_input)
    if not result["success"]:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=result,
        )
    return result


@router.post("/query/stream")
async def run_query_stream(
    body: QueryRequest, runtime: ServerRuntime = Depends(get_runtime),
):
    """Run a turn and stream every agent event as SSE."""
    session = await get_live_session(body.session_id, runtime)
    events = await session.run_query_streaming(body.query, body.environment_input)

    async def event_generator():
        async for event in events:
            yield _sse_line(event)

    return StreamingResponse(
        event_generator(), media_type="text/event-stream", headers=_SSE_HEADERS,
    )


@router.post("/abort")
async def abort_query(
    body: AbortRequest, runtime: ServerRuntime = Depends(get_runtime),
):
    session = runtime.pool.get(body.session_id)
    if session is None:
        raise SessionNotFoundError(body.session_id)
    aborted = await session.abort_query()
    logger.info(
        f"Abort requested (aborted={aborted})",
        extra={"session_id": body.session_id},
    )
    return {"success": aborted}
