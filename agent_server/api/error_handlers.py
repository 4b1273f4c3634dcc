"""Error Handlers — map session, query, and sandbox failures onto REST responses.

Invariants:
    - Every error body is {success: false, error: {code, message, details, ...}}, the
      same shape a failed blocking query returns, so clients parse one envelope
    - 404 details name the missing resource (resourceType, resourceId)
    - 409 details carry what the client needs to retry: an EXCLUSIVE_MODE_BUSY body
      names the runningSessionId holding the slot
    - Request validation failures are 400 VALIDATION_ERROR with one entry per field
    - A provider back-off hint becomes a Retry-After header
    - Unhandled exceptions are 500 INTERNAL_ERROR and never leak their message

Design Decisions:
    - Log level follows the status: busy slots and missing sessions are routine traffic
      (info/warning), only 5xx is logged as an error
    - Extracted from main.py so tests can build an app with identical handlers
"""

import logging
import math

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agent_server.core.errors import (
    AgentServerError, ExclusiveModeBusyError, ResourceNotFoundError,
)

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app."""

    @app.exception_handler(AgentServerError)
    async def domain_error_handler(request: Request, exc: AgentServerError):
        _log_domain_error(request, exc)
        headers = None
        if exc.context.retry_after_ms:
            headers = {"Retry-After": str(math.ceil(exc.context.retry_after_ms / 1000))}
        return JSONResponse(
            status_code=exc.http_status, content=exc.to_response(), headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = _validation_fields(exc)
        logger.warning(
            f"Invalid request on {request.url.path}: "
            f"{', '.join(f['field'] for f in fields)}",
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_envelope(
                "VALIDATION_ERROR",
                fields[0]["message"] if len(fields) == 1 else "Invalid request data",
                {"fields": fields},
            ),
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled exception on {request.url.path}: {exc}", exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_envelope("INTERNAL_ERROR", "An unexpected error occurred"),
        )


def _log_domain_error(request: Request, exc: AgentServerError) -> None:
    extra = {
        "error_code": exc.code,
        "path": request.url.path,
        "session_id": exc.context.session_id,
    }
    if isinstance(exc, ExclusiveModeBusyError):
        logger.info(
            f"Exclusive slot held by {exc.running_session_id}, rejecting request",
            extra=extra,
        )
    elif isinstance(exc, ResourceNotFoundError):
        logger.warning(
            f"{exc.resource_type} {exc.resource_id} not found", extra=extra,
        )
    elif exc.http_status < 500:
        logger.warning(f"{exc.code}: {exc.message}", extra=extra)
    else:
        logger.error(f"{exc.__class__.__name__}: {exc.message}", extra=extra)


def _validation_fields(exc: RequestValidationError) -> list[dict]:
    # "body" is the same prefix on every entry
    return [
        {
            "field": ".".join(str(loc) for loc in e["loc"] if loc != "body"),
            "message": e["msg"],
        }
        for e in exc.errors()
    ] or [{"field": "", "message": "Invalid request data"}]


def _envelope(code: str, message: str, details: dict | None = None) -> dict:
    return {
        "success": False,
        "error": {"code": code, "message": message, "details": details},
    }
