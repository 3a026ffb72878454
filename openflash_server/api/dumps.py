"""Parallel dump endpoints.

- POST   /api/v1/dumps
- GET    /api/v1/dumps
- GET    /api/v1/dumps/{dump_id}
- DELETE /api/v1/dumps/{dump_id}
"""

from typing import Any, List

import structlog
from fastapi import APIRouter, Depends, Query, status

from openflash_server.api.schemas import DumpResponse, DumpSubmitRequest
from openflash_server.models.job import JobPriority
from openflash_server.services.dump_service import ParallelDumpService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["dumps"])


# Dependency placeholder (to be configured in main app)
async def get_dump_service() -> ParallelDumpService:
    """Get dump service instance."""
    raise NotImplementedError("Dump service dependency not configured")


@router.post(
    "/dumps",
    response_model=DumpResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={503: {"description": "Job queue is full"}},
)
async def submit_dump(
    request: DumpSubmitRequest,
    dump_service: ParallelDumpService = Depends(get_dump_service),  # noqa: B008
) -> Any:
    """
    Start a parallel dump.

    The address range [0, total_size) is split into chunks that are read
    as separate jobs on different devices, device_count chunks at a time.
    """
    dump = await dump_service.submit_dump(
        total_size=request.total_size,
        name=request.name,
        chunk_size=request.chunk_size,
        device_count=request.device_count,
        output_dir=request.output_dir,
        priority=JobPriority.from_str(request.priority),
        required_interface=request.required_interface,
    )
    return DumpResponse(**dump.to_dict())


@router.get("/dumps", response_model=List[DumpResponse])
async def list_dumps(
    include_chunks: bool = Query(False),
    dump_service: ParallelDumpService = Depends(get_dump_service),  # noqa: B008
) -> Any:
    """List dumps in id order. Chunk details are omitted unless include_chunks is set."""
    return [
        DumpResponse(**d.to_dict(include_chunks=include_chunks))
        for d in dump_service.list_dumps()
    ]


@router.get(
    "/dumps/{dump_id}",
    response_model=DumpResponse,
    responses={404: {"description": "Dump not found"}},
)
async def get_dump(
    dump_id: int,
    dump_service: ParallelDumpService = Depends(get_dump_service),  # noqa: B008
) -> Any:
    """Get dump status, progress and per-chunk state."""
    return DumpResponse(**dump_service.get_dump(dump_id).to_dict())


@router.delete(
    "/dumps/{dump_id}",
    response_model=DumpResponse,
    responses={
        404: {"description": "Dump not found"},
        409: {"description": "Dump already finished"},
    },
)
async def cancel_dump(
    dump_id: int,
    dump_service: ParallelDumpService = Depends(get_dump_service),  # noqa: B008
) -> Any:
    """Cancel a dump and its outstanding chunk jobs."""
    dump = await dump_service.cancel_dump(dump_id)
    return DumpResponse(**dump.to_dict())
