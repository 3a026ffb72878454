"""Centralized error handling for the API.

This module provides standardized error codes, exception-to-response mapping,
and a global exception handler for FastAPI.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Type

import structlog
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
    HTTP_504_GATEWAY_TIMEOUT,
)

from openflash_server.core.exceptions import (
    DeviceBusyError,
    DeviceNotFoundError,
    DeviceOfflineError,
    DumpNotFoundError,
    ExecutionError,
    InvalidConfigError,
    JobFailedError,
    JobNotFoundError,
    JobStateError,
    JobTimeoutError,
    OrchestratorError,
    QueueFullError,
)
from openflash_server.core.logging import get_request_id
from openflash_server.core.metrics import MetricsCollector

logger = structlog.get_logger(__name__)


class ErrorCode:
    """Standardized error codes for API responses.

    These codes provide machine-readable identifiers for error conditions
    that clients can use to implement error handling logic.
    """

    # Client Errors (4xx)
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_CONFIG = "INVALID_CONFIG"
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    DUMP_NOT_FOUND = "DUMP_NOT_FOUND"
    DEVICE_BUSY = "DEVICE_BUSY"
    DEVICE_OFFLINE = "DEVICE_OFFLINE"
    JOB_STATE_CONFLICT = "JOB_STATE_CONFLICT"
    NOT_FOUND = "NOT_FOUND"

    # Server Errors (5xx)
    JOB_FAILED = "JOB_FAILED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    # Service Unavailable (503) / Timeout (504)
    QUEUE_FULL = "QUEUE_FULL"
    COMPONENT_UNAVAILABLE = "COMPONENT_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"


# Error code to HTTP status code mapping
ERROR_CODE_TO_STATUS: Dict[str, int] = {
    # 400 Bad Request
    ErrorCode.INVALID_REQUEST: HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_CONFIG: HTTP_400_BAD_REQUEST,
    # 404 Not Found
    ErrorCode.DEVICE_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.JOB_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.DUMP_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.NOT_FOUND: HTTP_404_NOT_FOUND,
    # 409 Conflict
    ErrorCode.DEVICE_BUSY: HTTP_409_CONFLICT,
    ErrorCode.DEVICE_OFFLINE: HTTP_409_CONFLICT,
    ErrorCode.JOB_STATE_CONFLICT: HTTP_409_CONFLICT,
    # 500 Internal Server Error
    ErrorCode.JOB_FAILED: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.EXECUTION_FAILED: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.INTERNAL_ERROR: HTTP_500_INTERNAL_SERVER_ERROR,
    # 503 Service Unavailable
    ErrorCode.QUEUE_FULL: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.COMPONENT_UNAVAILABLE: HTTP_503_SERVICE_UNAVAILABLE,
    # 504 Gateway Timeout
    ErrorCode.TIMEOUT: HTTP_504_GATEWAY_TIMEOUT,
}


# User-friendly suggestions for error resolution
ERROR_SUGGESTIONS: Dict[str, str] = {
    ErrorCode.INVALID_REQUEST: (
        "Check the request parameters against the API documentation at /docs"
    ),
    ErrorCode.INVALID_CONFIG: "Sizes and counts must be positive. Check the submitted values",
    ErrorCode.DEVICE_NOT_FOUND: (
        "The device is not registered. Use GET /api/v1/devices to list registered devices"
    ),
    ErrorCode.JOB_NOT_FOUND: (
        "The job ID does not exist or has been evicted from the bounded job history"
    ),
    ErrorCode.DUMP_NOT_FOUND: "The dump ID does not exist",
    ErrorCode.NOT_FOUND: "Check the URL against the API documentation at /docs",
    ErrorCode.DEVICE_BUSY: "The device is running a job. Wait for the job to finish",
    ErrorCode.DEVICE_OFFLINE: (
        "The device is not available. Send a heartbeat with status 'available' first"
    ),
    ErrorCode.JOB_STATE_CONFLICT: (
        "The operation does not apply to the job's current state. "
        "Use GET /api/v1/jobs/{job_id} to check its status"
    ),
    ErrorCode.JOB_FAILED: "The job failed after exhausting its retries. Check the job's error",
    ErrorCode.EXECUTION_FAILED: "The flash operation failed on the device. Check server logs",
    ErrorCode.INTERNAL_ERROR: (
        "An unexpected error occurred. Contact administrator if the issue persists"
    ),
    ErrorCode.QUEUE_FULL: "The job queue or device pool is at capacity. Try again later",
    ErrorCode.COMPONENT_UNAVAILABLE: (
        "A required system component is unavailable. Check /health for status"
    ),
    ErrorCode.TIMEOUT: "The operation exceeded its time budget. Retry with a larger timeout",
}


_STATUS_TO_ERROR_CODE: Dict[int, str] = {
    HTTP_400_BAD_REQUEST: ErrorCode.INVALID_REQUEST,
    HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    HTTP_409_CONFLICT: ErrorCode.JOB_STATE_CONFLICT,
    HTTP_503_SERVICE_UNAVAILABLE: ErrorCode.COMPONENT_UNAVAILABLE,
}


# Exception type to error code mapping
# Order matters: subclasses must come before their base classes
EXCEPTION_TO_ERROR_CODE: Dict[Type[Exception], str] = {
    DeviceNotFoundError: ErrorCode.DEVICE_NOT_FOUND,
    DeviceBusyError: ErrorCode.DEVICE_BUSY,
    DeviceOfflineError: ErrorCode.DEVICE_OFFLINE,
    JobNotFoundError: ErrorCode.JOB_NOT_FOUND,
    DumpNotFoundError: ErrorCode.DUMP_NOT_FOUND,
    JobStateError: ErrorCode.JOB_STATE_CONFLICT,
    JobFailedError: ErrorCode.JOB_FAILED,
    QueueFullError: ErrorCode.QUEUE_FULL,
    InvalidConfigError: ErrorCode.INVALID_CONFIG,
    JobTimeoutError: ErrorCode.TIMEOUT,
    ExecutionError: ErrorCode.EXECUTION_FAILED,
    # OrchestratorError must be last (after its subclasses)
    OrchestratorError: ErrorCode.INTERNAL_ERROR,
}


class APIError(Exception):
    """Structured API error that can be converted to ErrorDetail response.

    This exception class provides a standardized way to raise errors
    that will be converted to consistent error responses by the global
    exception handler.
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        """Initialize an API error.

        Args:
            error_code: Machine-readable error code from ErrorCode class.
            message: Human-readable error message.
            details: Optional additional details about the error.
            suggestion: Optional suggestion for resolution. If not provided,
                        the default suggestion for the error code is used.
        """
        self.error_code = error_code
        self.message = message
        self.details = details
        self.suggestion = suggestion or ERROR_SUGGESTIONS.get(error_code)
        super().__init__(message)


def map_exception_to_api_error(exc: Exception) -> APIError:
    """Map orchestration exceptions to APIError.

    The first matching entry of EXCEPTION_TO_ERROR_CODE wins.
    """
    for exc_type, error_code in EXCEPTION_TO_ERROR_CODE.items():
        if isinstance(exc, exc_type):
            return APIError(error_code, str(exc))
    return APIError(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


def _from_http_exception(exc: HTTPException) -> APIError:
    detail = exc.detail
    if isinstance(detail, dict) and "error_code" in detail:
        return APIError(
            detail["error_code"],
            detail.get("message", str(detail)),
            details=detail.get("details"),
        )
    error_code = _STATUS_TO_ERROR_CODE.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    return APIError(error_code, str(detail) if detail else "An error occurred")


def _resolve(request: Request, exc: Exception) -> Tuple[int, APIError]:
    """Turn any exception into a status code and a structured error, logging it."""
    path = request.url.path

    if isinstance(exc, APIError):
        logger.warning("api_error", error_code=exc.error_code, message=exc.message, path=path)
        return ERROR_CODE_TO_STATUS.get(exc.error_code, HTTP_500_INTERNAL_SERVER_ERROR), exc

    if isinstance(exc, HTTPException):
        api_error = _from_http_exception(exc)
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            error_code=api_error.error_code,
            path=path,
        )
        return exc.status_code, api_error

    if isinstance(exc, OrchestratorError):
        api_error = map_exception_to_api_error(exc)
        logger.warning(
            "orchestrator_error",
            error_code=api_error.error_code,
            error_type=type(exc).__name__,
            message=str(exc),
            path=path,
        )
        status_code = ERROR_CODE_TO_STATUS.get(api_error.error_code, HTTP_500_INTERNAL_SERVER_ERROR)
        return status_code, api_error

    # Internal details stay in the log
    logger.error(
        "unhandled_exception",
        error_type=type(exc).__name__,
        error=str(exc),
        path=path,
        exc_info=True,
    )
    return HTTP_500_INTERNAL_SERVER_ERROR, APIError(
        ErrorCode.INTERNAL_ERROR, "An unexpected error occurred"
    )


def build_error_response(api_error: APIError) -> Dict[str, Any]:
    """Serialize an APIError to the ErrorDetail shape, stamped with time and request id."""
    body: Dict[str, Any] = {
        "error_code": api_error.error_code,
        "message": api_error.message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    optional = {
        "details": api_error.details,
        "request_id": get_request_id(),
        "suggestion": api_error.suggestion,
    }
    body.update({k: v for k, v in optional.items() if v})
    return body


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for FastAPI.

    Every error leaves the API as an ErrorDetail body and is counted in
    errors_total by error code and route template.

    Args:
        request: The FastAPI request object.
        exc: The exception that was raised.

    Returns:
        JSONResponse with ErrorDetail body and appropriate status code.
    """
    status_code, api_error = _resolve(request, exc)

    route = request.scope.get("route")
    MetricsCollector.record_error(
        error_code=api_error.error_code,
        endpoint=route.path if route else "/unmatched",
    )

    return JSONResponse(status_code=status_code, content=build_error_response(api_error))
