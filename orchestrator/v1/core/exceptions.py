import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from orchestrator.config.logging import get_logger

logger = get_logger(__name__)


class OrchestratorException(Exception):
    """Base exception for the job orchestrator."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(OrchestratorException):
    """Raised when input validation fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class NotFoundError(OrchestratorException):
    """Raised when a resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class ConflictError(OrchestratorException):
    """Raised when a request collides with the current state of a job."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class NoopError(ConflictError):
    """Raised when a mutation had nothing to act on (e.g. cancelling a finished job)."""


class BadStateError(OrchestratorException):
    """Raised when a job's status does not allow the requested operation."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)


class UnauthorizedError(OrchestratorException):
    """Raised when authentication fails."""

    def __init__(
        self, message: str = "Unauthorized", details: dict[str, Any] | None = None
    ):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED, details)


class ConfigurationError(OrchestratorException):
    """Raised when the worker endpoint or shared secret is missing."""

    def __init__(
        self,
        message: str = "Job runner not configured",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


class ExecutionError(OrchestratorException):
    """A single row or job execution failed. Recorded as data, never returned to clients."""

    def __init__(
        self,
        message: str,
        row_index: int | None = None,
        external_identifier: str | None = None,
    ):
        self.row_index = row_index
        self.external_identifier = external_identifier
        super().__init__(message)

    def to_record(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "external_identifier": self.external_identifier,
            "message": self.message,
        }


class JobTimeoutError(OrchestratorException):
    """Failure recorded by the reaper for jobs stuck in processing."""

    def __init__(self, timeout_minutes: int):
        self.timeout_minutes = timeout_minutes
        super().__init__(f"Job timed out after {timeout_minutes} minutes")


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


async def orchestrator_exception_handler(
    request: Request, exc: OrchestratorException
) -> JSONResponse:
    """Handle orchestrator specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        # Correlation ID for request tracking
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        from orchestrator.config.logging import add_request_context

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        return response
