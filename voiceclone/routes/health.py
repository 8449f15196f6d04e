"""
Health check endpoints.

Provides:
- Liveness probe
- Readiness probe
- Detailed health status
- Prometheus metrics
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from voiceclone import __version__
from voiceclone.core.dependencies import get_container
from voiceclone.core.logging import get_logger
from voiceclone.core.metrics import get_metrics
from voiceclone.services.store import RedisJobStore
from voiceclone.services.training import HttpTrainingClient

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def root(request: Request):
    """Root endpoint with service info."""
    return {
        "service": request.app.state.settings.service_name,
        "version": __version__,
        "docs": "/docs",
    }


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.

    Returns service health status for load balancers and k8s probes.
    """
    container = get_container()

    health_info = {
        "status": "healthy",
        "version": __version__,
        "checks": {},
    }

    # Audio worker thread
    try:
        worker = await container.get("audio_worker")
        health_info["checks"]["audio_worker"] = {
            "status": "healthy" if worker.is_running else "unhealthy",
            "pending_requests": worker.pending_count,
        }
    except Exception as e:
        health_info["checks"]["audio_worker"] = {
            "status": "unhealthy",
            "error": str(e),
        }

    # Job store
    try:
        store = await container.get("job_store")
        if isinstance(store, RedisJobStore):
            await store._redis.ping()
            health_info["checks"]["job_store"] = {"status": "healthy", "backend": "redis"}
        else:
            health_info["checks"]["job_store"] = {"status": "healthy", "backend": "memory"}
    except Exception as e:
        health_info["checks"]["job_store"] = {
            "status": "unhealthy",
            "error": str(e),
        }

    # Remote training circuit; an open circuit degrades but does not fail the service
    training = await container.get("training_client")
    if isinstance(training, HttpTrainingClient):
        circuit = training.breaker.to_dict()
        circuit["status"] = "healthy" if circuit["state"] == "closed" else "degraded"
        health_info["checks"]["training"] = circuit

    # Determine overall status
    statuses = [c.get("status") for c in health_info["checks"].values()]
    if "unhealthy" in statuses:
        health_info["status"] = "unhealthy"
        status_code = 503
    else:
        if "degraded" in statuses:
            health_info["status"] = "degraded"
        status_code = 200

    return JSONResponse(content=health_info, status_code=status_code)


@router.get("/health/live")
async def liveness_probe():
    """Kubernetes liveness probe."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_probe():
    """Kubernetes readiness probe."""
    container = get_container()

    try:
        worker = await container.get("audio_worker")
        if worker.is_running:
            return {"status": "ready"}
        return JSONResponse(
            content={"status": "not_ready", "reason": "audio_worker_stopped"},
            status_code=503,
        )
    except Exception as e:
        return JSONResponse(
            content={"status": "not_ready", "reason": str(e)},
            status_code=503,
        )


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    collector = get_metrics()
    return Response(
        content=collector.export(),
        media_type=collector.content_type(),
    )
