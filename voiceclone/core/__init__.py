"""Core infrastructure: config, logging, errors, metrics, tracing and DI."""

from voiceclone.core.dependencies import Container, get_container, set_container
from voiceclone.core.logging import get_logger, log_context, setup_logging
from voiceclone.core.metrics import MetricsCollector, get_metrics
from voiceclone.core.tracing import TracingMiddleware, setup_tracing
from voiceclone.core.errors import (
    VoiceCloneError,
    ValidationError,
    EmptyInputError,
    EncodingError,
    InvalidTransitionError,
    StaleAttemptError,
    NotFoundError,
    RemoteTrainingError,
    OperationResult,
    capture,
    error_handler,
)

__all__ = [
    "Container",
    "get_container",
    "set_container",
    "get_logger",
    "log_context",
    "setup_logging",
    "MetricsCollector",
    "get_metrics",
    "TracingMiddleware",
    "setup_tracing",
    "VoiceCloneError",
    "ValidationError",
    "EmptyInputError",
    "EncodingError",
    "InvalidTransitionError",
    "StaleAttemptError",
    "NotFoundError",
    "RemoteTrainingError",
    "OperationResult",
    "capture",
    "error_handler",
]
