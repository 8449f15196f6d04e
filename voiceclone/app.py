"""
Voice Clone API Application Factory.

Features:
- Dependency injection
- Middleware stack (tracing/correlation ids, metrics, CORS)
- Audio worker and job runner lifecycle
- Health checks
- Error handling
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from voiceclone import __version__
from voiceclone.core.config import Settings, get_settings
from voiceclone.core.dependencies import Container, set_container, setup_container
from voiceclone.core.errors import VoiceCloneError, error_handler
from voiceclone.core.logging import get_logger, setup_logging
from voiceclone.core.metrics import MetricsMiddleware, get_metrics
from voiceclone.core.tracing import TracingMiddleware, setup_tracing

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    testing: bool = False,
    container: Optional[Container] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Optional settings override
        testing: If True, skip tracing export and keep plain-text logs
        container: Optional pre-built container (instances overridden in
            tests are kept, everything else is registered from settings)

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()

    # Setup logging first
    setup_logging(
        level=settings.log_level,
        json_format=not settings.debug and not testing,
        service_name=settings.service_name,
    )

    # Setup tracing if enabled
    if settings.otlp_endpoint and not testing:
        setup_tracing(
            service_name=settings.service_name,
            otlp_endpoint=settings.otlp_endpoint,
            environment=settings.environment,
        )

    app = FastAPI(
        title="Voice Clone API",
        description="Combines captured recordings and tracks voice training jobs",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.testing = testing
    app.state.container = container or Container()

    # Add middleware (order matters - last added = first executed)
    _add_middleware(app, settings)

    _add_routes(app)

    _add_error_handlers(app)

    logger.info(
        "Application created",
        extra={
            "debug": settings.debug,
            "testing": testing,
        },
    )

    return app


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Starts the audio worker, job store and runner before serving and stops
    them in reverse order afterwards.
    """
    settings: Settings = app.state.settings

    logger.info("Starting Voice Clone API")

    container: Container = app.state.container
    setup_container(settings, container)
    set_container(container)

    get_metrics().set_service_info(
        version=__version__,
        environment=settings.environment,
    )

    try:
        await container.initialize_all()
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        await container.shutdown()
        raise

    logger.info("Voice Clone API started successfully")

    yield

    logger.info("Shutting down Voice Clone API")

    # Graceful shutdown with timeout
    try:
        await asyncio.wait_for(
            container.shutdown(),
            timeout=30.0,
        )
        logger.info("Graceful shutdown completed")
    except asyncio.TimeoutError:
        logger.warning("Shutdown timed out, forcing exit")


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    """Add middleware stack to application."""

    # CORS (last in chain = first to process)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Metrics
    app.add_middleware(MetricsMiddleware)

    # Correlation ids and request spans
    app.add_middleware(TracingMiddleware)


def _add_routes(app: FastAPI) -> None:
    """Add API routes to application."""
    from voiceclone.routes import health, jobs

    app.include_router(health.router, tags=["Health"])
    app.include_router(jobs.router, prefix="/v1", tags=["Voice Jobs"])


def _add_error_handlers(app: FastAPI) -> None:
    """Add error handlers to application."""

    @app.exception_handler(VoiceCloneError)
    async def voiceclone_error_handler(request: Request, exc: VoiceCloneError):
        return await error_handler(request, exc)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        return await error_handler(request, exc)
