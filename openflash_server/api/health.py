"""Health check endpoints.

- /health: component status (orchestrator, device pool, job queue, scheduler)
- /liveness, /readiness: container health probes
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Literal

import structlog
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from openflash_server import __version__
from openflash_server.api.schemas import (
    ComponentHealth,
    HealthResponse,
    LivenessResponse,
    ReadinessResponse,
)
from openflash_server.services.orchestrator import get_orchestrator
from openflash_server.services.scheduler_worker import get_scheduler_worker

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])

# Track application start time for uptime calculation
_start_time: float = time.time()


def reset_start_time() -> None:
    """Reset the start time (for testing)."""
    global _start_time
    _start_time = time.time()


def _check_device_pool() -> ComponentHealth:
    """Report pool statistics. An empty pool is healthy."""
    try:
        pool = get_orchestrator().device_pool
    except RuntimeError:
        return ComponentHealth(
            status="unhealthy",
            details={"error": "Orchestrator not configured"},
        )

    details: Dict[str, Any] = dict(pool.stats().to_dict())
    details["max_devices"] = pool.max_devices
    return ComponentHealth(status="healthy", details=details)


def _check_job_queue() -> ComponentHealth:
    """Check the queue still accepts jobs."""
    try:
        queue = get_orchestrator().job_queue
    except RuntimeError:
        return ComponentHealth(
            status="unhealthy",
            details={"error": "Orchestrator not configured"},
        )

    stats = queue.stats()
    details: Dict[str, Any] = dict(stats.to_dict())
    details["max_queue_size"] = queue.max_queue_size
    if stats.pending_count >= queue.max_queue_size:
        details["error"] = "Job queue is full"
        return ComponentHealth(status="unhealthy", details=details)
    return ComponentHealth(status="healthy", details=details)


def _check_scheduler() -> ComponentHealth:
    """Check the scheduler worker is running."""
    try:
        worker = get_scheduler_worker()
    except RuntimeError:
        return ComponentHealth(
            status="unhealthy",
            details={"error": "Scheduler worker not configured"},
        )

    details: Dict[str, Any] = {
        "executor": worker.executor.name if worker.executor else "external",
        "active_executions": worker.active_executions,
    }
    if not worker.is_running:
        details["error"] = "Scheduler worker not running"
        return ComponentHealth(status="unhealthy", details=details)
    return ComponentHealth(status="healthy", details=details)


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        200: {"description": "All components healthy"},
        503: {"description": "One or more components unhealthy"},
    },
)
async def health_check() -> JSONResponse:
    """
    Detailed health check endpoint.

    Verifies:
    - Device pool is configured (with pool statistics)
    - Job queue is below capacity (with queue statistics)
    - Scheduler worker is running

    Returns HTTP 200 if all components are healthy,
    HTTP 503 if any component is unhealthy.
    """
    components = {
        "device_pool": _check_device_pool(),
        "job_queue": _check_job_queue(),
        "scheduler": _check_scheduler(),
    }

    all_healthy = all(c.status == "healthy" for c in components.values())
    overall_status: Literal["healthy", "unhealthy"] = "healthy" if all_healthy else "unhealthy"

    response = HealthResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        uptime_seconds=round(time.time() - _start_time, 2),
        components=components,
    )

    status_code = status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE

    logger.info(
        "health_check_completed",
        status=overall_status,
        components={k: v.status for k, v in components.items()},
    )

    return JSONResponse(content=response.model_dump(), status_code=status_code)


@router.get("/liveness", response_model=LivenessResponse)
async def liveness_check() -> LivenessResponse:
    """
    Liveness probe endpoint.

    Returns HTTP 200 if the process is alive.
    """
    return LivenessResponse(status="alive")


@router.get(
    "/readiness",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "Service is ready to accept traffic"},
        503: {"description": "Service is not ready"},
    },
)
async def readiness_check() -> JSONResponse:
    """
    Readiness probe endpoint.

    Ready once the orchestrator is configured and the scheduler worker runs.
    """
    issues = []

    if _check_device_pool().status != "healthy":
        issues.append("Orchestrator not configured")

    if _check_scheduler().status != "healthy":
        issues.append("Scheduler not running")

    if issues:
        response = ReadinessResponse(
            status="not_ready",
            ready=False,
            message="; ".join(issues),
        )
        return JSONResponse(
            content=response.model_dump(),
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return JSONResponse(
        content=ReadinessResponse(status="ready", ready=True).model_dump(),
        status_code=status.HTTP_200_OK,
    )
