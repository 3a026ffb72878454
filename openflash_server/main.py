"""FastAPI application entry point.

This module assembles all components and creates the main application.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from openflash_server import __version__
from openflash_server.api import devices, dumps, health, jobs, metrics, server
from openflash_server.core.config import ConfigService, MonitoringConfig, ServerConfig
from openflash_server.core.errors import APIError, global_exception_handler
from openflash_server.core.exceptions import OrchestratorError
from openflash_server.core.logging import clear_request_id, configure_logging, set_request_id
from openflash_server.core.metrics import MetricsCollector, initialize_metrics
from openflash_server.executors.base import FlashExecutor
from openflash_server.services.device_pool import DevicePool
from openflash_server.services.dump_service import configure_dump_service, get_dump_service
from openflash_server.services.job_queue import JobQueue
from openflash_server.services.orchestrator import configure_orchestrator, get_orchestrator
from openflash_server.services.scheduler_worker import configure_scheduler_worker
from openflash_server.testing.simulated import SimulatedExecutor

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics.

    Records request count and duration for all endpoints,
    using FastAPI route templates to normalize paths.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Process request and record metrics."""
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Fixed label for unmatched routes keeps cardinality bounded
        route = request.scope.get("route")
        endpoint = route.path if route else "/unmatched"

        MetricsCollector.record_request(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
            duration=duration,
        )

        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the logging context and echo it in the response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = set_request_id(request.headers.get(REQUEST_ID_HEADER))
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown."""
    logger.info("Application starting", version=__version__)

    # Initialize metrics with application version
    initialize_metrics(__version__)

    # Load configuration
    config_service = ConfigService()
    config = config_service.load()
    config_service.validate()

    # Configure logging
    configure_logging(config.logging.level, config.logging.format)

    logger.info(
        "Configuration loaded",
        server_port=config.server.port,
        max_devices=config.pool.max_devices,
        max_queue_size=config.queue.max_queue_size,
        executor=config.scheduler.executor,
    )

    # Configure orchestrator with its device pool and job queue
    orchestrator = configure_orchestrator(
        device_pool=DevicePool(max_devices=config.pool.max_devices),
        job_queue=JobQueue(
            max_queue_size=config.queue.max_queue_size,
            max_history_size=config.queue.max_history_size,
        ),
        name=config.server.name,
        version=__version__,
        default_timeout=config.queue.default_timeout,
        default_max_retries=config.queue.default_max_retries,
    )
    logger.info("Orchestrator configured", name=config.server.name)

    # Configure parallel dump service
    configure_dump_service(
        orchestrator=orchestrator,
        chunk_size=config.dump.chunk_size,
        device_count=config.dump.device_count,
        output_dir=config.dump.output_dir,
        max_history_size=config.dump.max_history_size,
    )
    logger.info(
        "Dump service configured",
        chunk_size=config.dump.chunk_size,
        device_count=config.dump.device_count,
    )

    # Executors other than the simulated one report back over the REST callbacks
    executor: Optional[FlashExecutor] = None
    if config.scheduler.executor == "simulated":
        executor = SimulatedExecutor(delay=config.scheduler.simulated_delay)
        logger.warning("Simulated executor enabled, jobs do not touch real devices")

    # Configure and start scheduler worker
    worker = configure_scheduler_worker(
        orchestrator=orchestrator,
        executor=executor,
        tick_interval=config.scheduler.tick_interval,
        timeout_sweep_interval=config.scheduler.timeout_sweep_interval,
    )
    await worker.start()
    logger.info("Scheduler worker started")

    health.reset_start_time()

    logger.info("Application startup complete", version=__version__)

    yield

    # Shutdown
    logger.info("Application shutting down")

    await worker.stop()

    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="OpenFlash Server",
        description="Orchestration of NAND/NOR programmer device fleets",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Default ["*"] for development; override via OPENFLASH_SERVER_CORS_ORIGINS
    server_config = ServerConfig()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    monitoring_config = MonitoringConfig()
    if monitoring_config.metrics_enabled:
        app.add_middleware(MetricsMiddleware)

    app.add_middleware(RequestIDMiddleware)

    # Register global exception handlers
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(APIError, global_exception_handler)
    app.add_exception_handler(OrchestratorError, global_exception_handler)

    # Override dependency injection for routers
    app.dependency_overrides[devices.get_orchestrator] = get_orchestrator
    app.dependency_overrides[jobs.get_orchestrator] = get_orchestrator
    app.dependency_overrides[server.get_orchestrator] = get_orchestrator
    app.dependency_overrides[dumps.get_dump_service] = get_dump_service

    # Register routers
    app.include_router(health.router)
    app.include_router(devices.router)
    app.include_router(jobs.router)
    app.include_router(dumps.router)
    app.include_router(server.router)
    if monitoring_config.metrics_enabled:
        app.include_router(metrics.router)

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = ConfigService().load()
    uvicorn.run(app, host=config.server.host, port=config.server.port)
