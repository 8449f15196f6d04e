"""
OpenTelemetry tracing and correlation IDs.

Spans are exported only when an OTLP endpoint is configured; the correlation
ID middleware is always active so logs can be joined across a request.
"""

import uuid
from functools import wraps
from typing import Callable, Optional

from fastapi import Request, Response
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import extract
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import SpanKind, Status, StatusCode
from starlette.middleware.base import BaseHTTPMiddleware

from voiceclone.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

TRACER_NAME = "voiceclone"


def setup_tracing(
    service_name: str,
    otlp_endpoint: Optional[str] = None,
    environment: str = "development",
) -> None:
    """
    Set up OpenTelemetry tracing.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP collector endpoint (e.g., "http://localhost:4317")
        environment: Deployment environment
    """
    if not otlp_endpoint:
        logger.info("No OTLP endpoint configured. Tracing disabled.")
        return

    resource = Resource.create({
        "service.name": service_name,
        "deployment.environment": environment,
    })

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    trace.set_tracer_provider(provider)

    logger.info(f"OpenTelemetry tracing configured: {otlp_endpoint}")


def get_tracer(name: str = TRACER_NAME):
    """Get a tracer instance."""
    return trace.get_tracer(name)


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request tracing and correlation ID management.

    - Generates or extracts correlation ID
    - Creates request spans
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())

        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        context = extract(request.headers)
        with get_tracer().start_as_current_span(
            f"{request.method} {request.url.path}",
            context=context,
            kind=SpanKind.SERVER,
        ) as span:
            span.set_attribute("http.method", request.method)
            span.set_attribute("http.route", request.url.path)
            span.set_attribute("correlation_id", correlation_id)

            try:
                response = await call_next(request)
            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 400:
                span.set_status(Status(StatusCode.ERROR))

            response.headers["X-Correlation-ID"] = correlation_id
            return response


def trace_external_call(
    service_name: str,
    operation: str,
):
    """
    Decorator to trace external service calls.

    Usage:
        @trace_external_call("training", "train")
        async def train(...):
            ...
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            with get_tracer().start_as_current_span(
                f"{service_name}.{operation}",
                kind=SpanKind.CLIENT,
            ) as span:
                span.set_attribute("external.service", service_name)
                span.set_attribute("external.operation", operation)

                try:
                    result = await func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        return wrapper
    return decorator
