"""Sessions — CRUD over persisted sessions plus live-session status and model switch.

Invariants:
    - Creating a session persists it and registers the live instance in the pool
    - Deleting a session cleans up the live instance first, then the stored rows
      (events cascade)
    - Model changes are validated against settings.available_models before anything
      is written; a live session swaps its agent in place

Design Decisions:
    - Responses are SessionInfo.to_dict() payloads: same camelCase shape the events use
    - Status never restores a session: asking whether something runs must not load it
"""

import logging

from fastapi import APIRouter, Depends, Query, status

from agent_server.api.deps import ServerRuntime, get_runtime
from agent_server.core.errors import SessionNotFoundError, ValidationError
from agent_server.schemas.session import (
    ModelConfigUpdate, SessionCreate, SessionMetadataUpdate,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_session(
    body: SessionCreate, runtime: ServerRuntime = Depends(get_runtime),
):
    """Create, persist, and start a session."""
    created = await runtime.factory.create_session(
        user_id=body.user_id, require_sandbox=body.require_sandbox,
    )
    await runtime.pool.set(created.session.id, created.session)
    return {"session": created.session_info.to_dict()}


@router.get("")
async def list_sessions(
    user_id: str | None = Query(None),
    runtime: ServerRuntime = Depends(get_runtime),
):
    """List stored sessions, newest activity first."""
    if user_id:
        sessions = await runtime.storage.sessions.get_user_sessions(user_id)
    else:
        sessions = await runtime.storage.sessions.get_all_sessions()
    return {
        "sessions": [
            {**info.to_dict(), "active": runtime.pool.has(info.id)}
            for info in sessions
        ],
    }


@router.get("/{session_id}")
async def get_session(
    session_id: str, runtime: ServerRuntime = Depends(get_runtime),
):
    info = await runtime.storage.sessions.get_session_info(session_id)
    if info is None:
        raise SessionNotFoundError(session_id)
    return {"session": {**info.to_dict(), "active": runtime.pool.has(session_id)}}


@router.patch("/{session_id}")
async def update_session_metadata(
    session_id: str,
    body: SessionMetadataUpdate,
    runtime: ServerRuntime = Depends(get_runtime),
):
    """Shallow-merge metadata into the stored session."""
    info = await runtime.storage.sessions.update_session_info(
        session_id, {"metadata": body.metadata},
    )
    return {"session": info.to_dict()}


@router.delete("/{session_id}")
async def delete_session(
    session_id: str, runtime: ServerRuntime = Depends(get_runtime),
):
    """Stop the live session (if any) and delete it with its events."""
    was_live = await runtime.pool.delete(session_id)
    deleted = await runtime.storage.sessions.delete_session(session_id)
    if not deleted and not was_live:
        raise SessionNotFoundError(session_id)
    logger.info("Session deleted", extra={"session_id": session_id})
    return {"success": True}


@router.get("/{session_id}/events")
async def get_session_events(
    session_id: str,
    offset: int | None = Query(None, ge=0),
    limit: int | None = Query(None, ge=1, le=1000),
    runtime: ServerRuntime = Depends(get_runtime),
):
    """Persisted events in emission order; paginated when offset or limit is given."""
    if not await runtime.storage.sessions.session_exists(session_id):
        raise SessionNotFoundError(session_id)
    events_dao = runtime.storage.events
    if offset is None and limit is None:
        events = await events_dao.get_session_events(session_id)
    else:
        events = await events_dao.get_session_events_paginated(
            session_id, offset or 0, limit or 100,
        )
    total = await events_dao.get_session_event_count(session_id)
    return {"events": events, "total": total}


@router.get("/{session_id}/status")
async def get_session_status(
    session_id: str, runtime: ServerRuntime = Depends(get_runtime),
):
    session = runtime.pool.get(session_id)
    if session is None and not await runtime.storage.sessions.session_exists(session_id):
        raise SessionNotFoundError(session_id)
    return {
        "sessionId": session_id,
        "active": session is not None,
        "isProcessing": session.get_processing_status() if session else False,
        "state": session.state.value if session else None,
        "runningSessionId": runtime.gate.running_session_id,
    }


@router.put("/{session_id}/model")
async def update_model_config(
    session_id: str,
    body: ModelConfigUpdate,
    runtime: ServerRuntime = Depends(get_runtime),
):
    """Switch the session's model; a live session gets a freshly built agent."""
    if body.id not in runtime.settings.available_models:
        raise ValidationError(f"Model {body.id} is not available", "id")
    info = await runtime.storage.sessions.update_session_info(
        session_id,
        {"metadata": {"modelConfig": {"provider": body.provider, "id": body.id}}},
    )
    session = runtime.pool.get(session_id)
    if session is not None:
        await session.update_model_config(info)
    logger.info(
        f"Model changed to {body.provider}/{body.id}",
        extra={"session_id": session_id},
    )
    return {"session": info.to_dict()}
