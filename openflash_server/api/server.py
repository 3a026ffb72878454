"""Server information endpoint.

- GET /api/v1/server/info
"""

from typing import Any

from fastapi import APIRouter, Depends

from openflash_server.api.schemas import ServerInfoResponse
from openflash_server.services.orchestrator import Orchestrator

router = APIRouter(prefix="/api/v1", tags=["server"])


# Dependency placeholder (to be configured in main app)
async def get_orchestrator() -> Orchestrator:
    """Get orchestrator instance."""
    raise NotImplementedError("Orchestrator dependency not configured")


@router.get("/server/info", response_model=ServerInfoResponse)
async def server_info(
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """Server name, version, uptime and point-in-time pool and queue statistics."""
    return ServerInfoResponse(**orchestrator.server_info().to_dict())
