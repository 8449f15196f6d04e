"""
Prometheus metrics for monitoring and alerting.

Metrics include:
- Request latency histograms
- Request counts by endpoint/status
- Audio worker timing and backlog
- Job state transitions
- Remote training call outcomes
"""

import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

REGISTRY = CollectorRegistry()

# =============================================================================
# Request Metrics
# =============================================================================

REQUEST_COUNT = Counter(
    "voiceclone_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

REQUEST_LATENCY = Histogram(
    "voiceclone_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

ACTIVE_REQUESTS = Gauge(
    "voiceclone_active_requests",
    "Number of active requests",
    registry=REGISTRY,
)

# =============================================================================
# Audio Metrics
# =============================================================================

AUDIO_OPERATION_LATENCY = Histogram(
    "voiceclone_audio_operation_seconds",
    "Audio worker operation latency",
    ["operation", "status"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

AUDIO_PENDING_REQUESTS = Gauge(
    "voiceclone_audio_pending_requests",
    "Audio worker requests awaiting a response",
    registry=REGISTRY,
)

COMBINED_AUDIO_DURATION = Histogram(
    "voiceclone_combined_audio_seconds",
    "Duration of combined training assets",
    buckets=[5.0, 10.0, 30.0, 60.0, 300.0, 900.0, 1800.0],
    registry=REGISTRY,
)

QUALITY_SCORE = Histogram(
    "voiceclone_quality_score",
    "Recording quality scores",
    buckets=[10, 25, 40, 55, 70, 85, 100],
    registry=REGISTRY,
)

# =============================================================================
# Job Metrics
# =============================================================================

JOB_TRANSITIONS = Counter(
    "voiceclone_job_transitions_total",
    "Job state transitions",
    ["state"],
    registry=REGISTRY,
)

JOBS_ACTIVE = Gauge(
    "voiceclone_jobs_active",
    "Number of jobs in a non-terminal state",
    registry=REGISTRY,
)

TRAINING_CALLS = Counter(
    "voiceclone_training_calls_total",
    "Remote training calls",
    ["status"],
    registry=REGISTRY,
)

TRAINING_CIRCUIT_OPEN = Gauge(
    "voiceclone_training_circuit_open",
    "1 while the training service circuit is open or probing",
    ["service"],
    registry=REGISTRY,
)

# =============================================================================
# Service Info
# =============================================================================

SERVICE_INFO = Info(
    "voiceclone_service",
    "Service information",
    registry=REGISTRY,
)


class MetricsCollector:
    """Centralized metrics collection."""

    def __init__(self):
        self._registry = REGISTRY

    def set_service_info(self, version: str, environment: str):
        """Set service information."""
        SERVICE_INFO.info({
            "version": version,
            "environment": environment,
        })

    def record_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration: float,
    ):
        """Record HTTP request metrics."""
        REQUEST_COUNT.labels(
            method=method,
            endpoint=endpoint,
            status_code=status_code,
        ).inc()

        REQUEST_LATENCY.labels(
            method=method,
            endpoint=endpoint,
        ).observe(duration)

    def record_audio_operation(self, operation: str, duration: float, success: bool):
        """Record an audio worker round trip."""
        status = "success" if success else "error"
        AUDIO_OPERATION_LATENCY.labels(operation=operation, status=status).observe(duration)

    def set_audio_pending(self, count: int):
        AUDIO_PENDING_REQUESTS.set(count)

    def record_combined_asset(self, duration_seconds: float):
        COMBINED_AUDIO_DURATION.observe(duration_seconds)

    def record_quality_score(self, score: int):
        QUALITY_SCORE.observe(score)

    def record_transition(self, state: str, entered_terminal: bool, created: bool = False):
        """Record a job entering a state and keep the active gauge in step."""
        JOB_TRANSITIONS.labels(state=state).inc()
        if created:
            JOBS_ACTIVE.inc()
        elif entered_terminal:
            JOBS_ACTIVE.dec()

    def record_training_call(self, success: bool):
        TRAINING_CALLS.labels(status="success" if success else "error").inc()

    def set_circuit_state(self, service: str, state: str):
        TRAINING_CIRCUIT_OPEN.labels(service=service).set(0 if state == "closed" else 1)

    def export(self) -> bytes:
        """Export metrics in Prometheus format."""
        return generate_latest(self._registry)

    def content_type(self) -> str:
        """Get Prometheus content type."""
        return CONTENT_TYPE_LATEST


# Global metrics collector
_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        ACTIVE_REQUESTS.inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            duration = time.perf_counter() - start_time

            get_metrics().record_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration=duration,
            )

            return response

        except Exception:
            duration = time.perf_counter() - start_time
            get_metrics().record_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=500,
                duration=duration,
            )
            raise

        finally:
            ACTIVE_REQUESTS.dec()
