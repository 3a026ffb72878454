"""Prometheus metrics endpoint.

- GET /metrics: HTTP, device pool, job queue and scheduler metrics
"""

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["monitoring"])


@router.get(
    "/metrics",
    response_class=Response,
    summary="Prometheus metrics endpoint",
    description="Pool, queue and scheduler metrics in Prometheus text format.",
)
async def metrics() -> Response:
    """Render the default registry in the Prometheus text exposition format.

    Pool and queue gauges are kept current by the services on every state
    change, so nothing is computed at scrape time.
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
