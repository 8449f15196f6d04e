"""
Error hierarchy for the voice clone pipeline.

Every error carries a stable code and an HTTP status so the transport layer,
the CLI and the job store can all render it the same way.
"""

import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from voiceclone.core.logging import get_logger

logger = get_logger(__name__)


class VoiceCloneError(Exception):
    """Base exception for all voice clone errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        # Internal message for logging, not exposed to client
        self.internal_message = internal_message or message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(VoiceCloneError):
    """Request validation failed."""

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class EmptyInputError(VoiceCloneError):
    """No recordings were supplied."""

    def __init__(self, message: str = "No audio buffers to combine"):
        super().__init__(
            message=message,
            code="EMPTY_INPUT",
            status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        )


class EncodingError(VoiceCloneError):
    """Buffer data cannot be turned into PCM audio."""

    def __init__(
        self,
        message: str = "Malformed audio buffer",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            code="ENCODING_ERROR",
            status_code=HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class AudioProcessingError(VoiceCloneError):
    """The audio worker failed to complete a request."""

    def __init__(
        self,
        message: str = "Audio processing failed",
        internal_message: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            code="AUDIO_PROCESSING_ERROR",
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            internal_message=internal_message,
        )


class InvalidTransitionError(VoiceCloneError):
    """A job was asked to move along an edge the state graph does not have."""

    def __init__(
        self,
        job_id: str,
        current: str,
        requested: str,
        reason: Optional[str] = None,
    ):
        message = reason or f"Cannot move job from {current} to {requested}"
        super().__init__(
            message=message,
            code="INVALID_TRANSITION",
            status_code=HTTP_409_CONFLICT,
            details={"id": job_id, "from": current, "to": requested},
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class StaleAttemptError(VoiceCloneError):
    """Work from an earlier run tried to write to a job that has since been retried."""

    def __init__(self, job_id: str, attempt: int, current_attempt: int):
        super().__init__(
            message=f"Attempt {attempt} of job {job_id} was superseded by attempt {current_attempt}",
            code="STALE_ATTEMPT",
            status_code=HTTP_409_CONFLICT,
            details={"id": job_id, "attempt": attempt, "current_attempt": current_attempt},
        )
        self.job_id = job_id
        self.attempt = attempt
        self.current_attempt = current_attempt


class NotFoundError(VoiceCloneError):
    """Resource not found."""

    def __init__(
        self,
        resource: str,
        resource_id: str,
    ):
        super().__init__(
            message=f"{resource} not found",
            code="NOT_FOUND",
            status_code=HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id},
        )


class RemoteTrainingError(VoiceCloneError):
    """The external training service failed; the original message is kept."""

    def __init__(
        self,
        message: str,
        service: str = "training",
        status: Optional[int] = None,
    ):
        details: Dict[str, Any] = {"service": service}
        if status is not None:
            details["status"] = status
        super().__init__(
            message=message,
            code="REMOTE_TRAINING_ERROR",
            status_code=HTTP_502_BAD_GATEWAY,
            details=details,
        )


class CircuitBreakerOpenError(VoiceCloneError):
    """Circuit breaker is open."""

    def __init__(self, service: str, retry_after: Optional[float] = None):
        details = {"service": service}
        if retry_after is not None:
            details["retry_after_seconds"] = round(retry_after, 1)
        super().__init__(
            message=f"Service temporarily unavailable: {service}",
            code="CIRCUIT_BREAKER_OPEN",
            status_code=HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


@dataclass
class OperationResult:
    """Structured outcome of a pipeline or job operation."""

    ok: bool
    value: Any = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
            return {"ok": True, "value": value}
        return {
            "ok": False,
            "error": {
                "code": self.error_code,
                "message": self.error_message,
                "details": self.details,
            },
        }


async def capture(operation: Awaitable[Any]) -> OperationResult:
    """Await an operation and fold pipeline errors into an OperationResult."""
    try:
        value = await operation
    except VoiceCloneError as exc:
        return OperationResult(
            ok=False,
            error_code=exc.code,
            error_message=exc.message,
            details=exc.details,
        )
    return OperationResult(ok=True, value=value)


async def error_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global error handler for all exceptions.

    - Logs errors with correlation ID
    - Returns safe error messages
    """
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    if isinstance(exc, VoiceCloneError):
        logger.warning(
            "Request failed",
            extra={
                "correlation_id": correlation_id,
                "error_code": exc.code,
                "error_message": exc.internal_message,
                "path": request.url.path,
                "method": request.method,
            },
        )

        response = JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
        )
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    # Unexpected errors - don't leak internal details
    logger.error(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "error_type": type(exc).__name__,
            "error_message": str(exc),
            "traceback": traceback.format_exc(),
            "path": request.url.path,
            "method": request.method,
        },
    )

    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "correlation_id": correlation_id,
            }
        },
        headers={"X-Correlation-ID": correlation_id},
    )
