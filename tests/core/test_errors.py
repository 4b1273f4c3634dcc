"""Error Hierarchy — verifies envelopes, status codes, and normalization.

Tests:
    - to_response() wraps the query error payload with category and session context
    - Not-found and validation errors describe the resource or field in details
    - to_event() is a system event with level "error"
    - ExclusiveModeBusyError reports the running session
    - normalize_agent_error passes domain errors through and wraps the rest
"""

from agent_server.core.errors import (
    AgentExecutionError, AgentLoopExceededError, ErrorContext,
    ExclusiveModeBusyError, ProviderAPIError, SessionConflictError,
    SessionNotFoundError, ValidationError, normalize_agent_error,
)


def test_session_not_found_response_envelope():
    error = SessionNotFoundError("abc")
    response = error.to_response()
    assert response["success"] is False
    body = response["error"]
    assert error.http_status == 404
    assert body["code"] == "SESSION_NOT_FOUND"
    assert body["category"] == "resource_not_found"
    assert body["sessionId"] == "abc"
    assert body["details"] == {"resourceType": "Session", "resourceId": "abc"}
    assert "abc" in body["message"]


def test_conflicts_are_409():
    assert SessionConflictError("s1").http_status == 409
    busy = ExclusiveModeBusyError("running-1")
    assert busy.http_status == 409
    assert busy.code == "EXCLUSIVE_MODE_BUSY"
    assert busy.to_query_error()["details"] == {"runningSessionId": "running-1"}


def test_to_event_is_a_terminal_system_error():
    event = AgentLoopExceededError(3).to_event()
    assert event["type"] == "system"
    assert event["level"] == "error"
    assert event["details"]["errorCode"] == "AGENT_LOOP_EXCEEDED"
    assert "3" in event["message"]
    assert isinstance(event["timestamp"], int)


def test_provider_error_keeps_retry_after():
    error = ProviderAPIError("slow down", "rate_limit", retry_after_ms=2000)
    assert error.http_status == 503
    assert error.to_response()["error"]["retryAfterMs"] == 2000
    assert error.details == {"apiErrorType": "rate_limit"}


def test_user_message_overrides_query_error_message():
    error = AgentExecutionError(
        "internal detail", context=ErrorContext(user_message="Try again"),
    )
    assert error.to_query_error()["message"] == "Try again"


def test_normalize_passes_domain_errors_through():
    error = SessionNotFoundError("x")
    assert normalize_agent_error(error) is error


def test_normalize_wraps_foreign_exceptions():
    error = normalize_agent_error(ValueError("bad input"))
    assert isinstance(error, AgentExecutionError)
    assert error.code == "AGENT_EXECUTION_ERROR"
    assert error.message == "bad input"
    assert error.details == {"errorType": "ValueError"}


def test_normalize_uses_class_name_for_empty_message():
    error = normalize_agent_error(RuntimeError())
    assert error.message == "RuntimeError"


def test_validation_error_names_the_field():
    error = ValidationError("Model x is not available", "id")
    assert error.http_status == 400
    assert error.to_query_error()["details"] == {
        "fields": [{"field": "id", "message": "Model x is not available"}],
    }
