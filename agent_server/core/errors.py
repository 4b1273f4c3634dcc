"""Error Hierarchy — typed, categorized exceptions for all agent server failure modes.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - Domain errors (400-level) are recoverable; infrastructure errors (500-level) are critical
    - to_query_error() produces the {code, message, details} payload of a failed query;
      to_response() wraps it as {success: false, error} so REST errors and failed
      queries share one shape
    - to_event() produces a synthetic system event
    - No internal details leaked in user-facing messages

Design Decisions:
    - Single hierarchy with AgentServerError base: FastAPI global handler catches all
      (ADR: uniform error shape)
    - ErrorContext as dataclass: rich observability without coupling to logging framework
    - normalize_agent_error() is the only place foreign exceptions become domain errors,
      so a session boundary never leaks an unhandled exception
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from datetime import datetime, timezone


class ErrorSeverity(str, Enum):
    """Error severity for observability and client handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    VALIDATION = "validation"
    RESOURCE_NOT_FOUND = "resource_not_found"
    DATABASE = "database"
    EXTERNAL_API = "external_api"
    SANDBOX = "sandbox"
    INTERNAL = "internal"
    CONFLICT = "conflict"
    PARSE = "parse"


@dataclass
class ErrorContext:
    """Rich context for error observability and debugging."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str | None = None
    user_id: str | None = None
    sandbox_id: str | None = None
    tool_name: str | None = None
    user_message: str | None = None
    debug_info: dict[str, Any] | None = None
    retry_after_ms: int | None = None


class AgentServerError(Exception):
    """Base exception for all agent server errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
        http_status: int = 500,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.http_status = http_status
        self.details = details

    def to_response(self) -> dict:
        """Convert to the REST error envelope, the same shape a failed query returns."""
        return {
            "success": False,
            "error": {
                **self.to_query_error(),
                "category": self.category.value,
                "sessionId": self.context.session_id,
                "retryAfterMs": self.context.retry_after_ms,
                "timestamp": self.context.timestamp.isoformat(),
            },
        }

    def to_query_error(self) -> dict:
        """Convert to the error payload of a failed (non-streaming) query."""
        return {
            "code": self.code,
            "message": self.context.user_message or self.message,
            "details": self.details,
        }

    def to_event(self) -> dict:
        """Convert to a synthetic `system` event closing a failed stream."""
        return {
            "id": str(uuid.uuid4()),
            "type": "system",
            "timestamp": int(time.time() * 1000),
            "level": "error",
            "message": self.context.user_message or self.message,
            "details": {
                "errorCode": self.code,
                **(self.details or {}),
            },
        }


# ─── Domain Errors (400-level) ──────────────────────────────────

class ValidationError(AgentServerError):
    """Request payload failed a domain-level check."""
    def __init__(self, message: str, field: str, context: ErrorContext | None = None):
        super().__init__(
            message, "VALIDATION_ERROR", ErrorCategory.VALIDATION,
            ErrorSeverity.ERROR, context, 400,
            details={"fields": [{"field": field, "message": message}]},
        )
        self.field = field


class ResourceNotFoundError(AgentServerError):
    """Requested resource does not exist."""
    def __init__(
        self, resource_type: str, resource_id: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            "RESOURCE_NOT_FOUND", ErrorCategory.RESOURCE_NOT_FOUND,
            ErrorSeverity.ERROR, context, 404,
            details={"resourceType": resource_type, "resourceId": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class SessionNotFoundError(ResourceNotFoundError):
    """Session is neither live in the pool nor restorable from storage."""
    def __init__(self, session_id: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext(session_id=session_id)
        super().__init__("Session", session_id, ctx)
        self.code = "SESSION_NOT_FOUND"


class ConflictError(AgentServerError):
    """Write rejected because it would overwrite existing state."""
    def __init__(
        self, message: str, code: str = "CONFLICT", context: ErrorContext | None = None,
    ):
        super().__init__(
            message, code, ErrorCategory.CONFLICT,
            ErrorSeverity.ERROR, context, 409,
        )


class SessionConflictError(ConflictError):
    """A session with this id already exists."""
    def __init__(self, session_id: str, context: ErrorContext | None = None):
        super().__init__(
            f"Session with ID {session_id} already exists",
            "SESSION_ALREADY_EXISTS",
            context or ErrorContext(session_id=session_id),
        )


class ExclusiveModeBusyError(ConflictError):
    """Exclusive mode is on and another session is already running."""
    def __init__(self, running_session_id: str, context: ErrorContext | None = None):
        super().__init__(
            "Server is in exclusive mode and another session is currently running",
            "EXCLUSIVE_MODE_BUSY",
            context,
        )
        self.running_session_id = running_session_id
        self.details = {"runningSessionId": running_session_id}


class ToolCallParseError(AgentServerError):
    """Tool-call markup could not be parsed. Never escapes an engine."""
    def __init__(self, message: str, raw: str, context: ErrorContext | None = None):
        super().__init__(
            message, "TOOL_CALL_PARSE_ERROR", ErrorCategory.PARSE,
            ErrorSeverity.WARNING, context, 422,
        )
        self.raw = raw


# ─── Infrastructure Errors (500-level) ──────────────────────────

class DatabaseError(AgentServerError):
    """Database operation failed."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Database {operation} failed: {message}",
            "DATABASE_ERROR", ErrorCategory.DATABASE,
            ErrorSeverity.CRITICAL, context, 503,
        )
        self.operation = operation


class ProviderAPIError(AgentServerError):
    """Model provider call failed."""
    def __init__(
        self,
        message: str,
        api_error_type: str,
        retry_after_ms: int | None = None,
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.retry_after_ms = retry_after_ms
        super().__init__(
            f"Model provider error ({api_error_type}): {message}",
            "PROVIDER_API_ERROR", ErrorCategory.EXTERNAL_API,
            ErrorSeverity.CRITICAL, ctx, 503,
            details={"apiErrorType": api_error_type},
        )
        self.api_error_type = api_error_type


class SandboxProvisionError(AgentServerError):
    """Remote sandbox could not be created."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(
            f"Sandbox provisioning failed: {message}",
            "SANDBOX_PROVISION_FAILED", ErrorCategory.SANDBOX,
            ErrorSeverity.ERROR, context, 502,
        )


class SandboxOperationError(AgentServerError):
    """Remote sandbox call (delete, refresh, probe) failed."""
    def __init__(
        self, message: str, operation: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"Sandbox {operation} failed: {message}",
            "SANDBOX_OPERATION_FAILED", ErrorCategory.SANDBOX,
            ErrorSeverity.ERROR, context, 502,
        )
        self.operation = operation


class AgentExecutionError(AgentServerError):
    """Agent run failed for a reason that is not otherwise classified."""
    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        context: ErrorContext | None = None,
    ):
        super().__init__(
            message, "AGENT_EXECUTION_ERROR", ErrorCategory.INTERNAL,
            ErrorSeverity.ERROR, context, 500, details,
        )


class AgentLoopExceededError(AgentServerError):
    """Agent exceeded maximum iteration limit."""
    def __init__(self, max_iterations: int, context: ErrorContext | None = None):
        super().__init__(
            f"Agent exceeded maximum iteration limit ({max_iterations})",
            "AGENT_LOOP_EXCEEDED", ErrorCategory.INTERNAL,
            ErrorSeverity.CRITICAL, context, 500,
        )


def normalize_agent_error(
    error: BaseException, context: ErrorContext | None = None,
) -> AgentServerError:
    """Map any exception raised during an agent run onto the hierarchy."""
    if isinstance(error, AgentServerError):
        return error
    return AgentExecutionError(
        str(error) or error.__class__.__name__,
        details={"errorType": error.__class__.__name__},
        context=context,
    )
