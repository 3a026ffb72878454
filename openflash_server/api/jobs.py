"""Job endpoints.

- POST   /api/v1/jobs
- GET    /api/v1/jobs
- GET    /api/v1/jobs/{job_id}
- DELETE /api/v1/jobs/{job_id}
- GET    /api/v1/jobs/{job_id}/wait
- POST   /api/v1/jobs/{job_id}/progress
- POST   /api/v1/jobs/{job_id}/complete
- POST   /api/v1/jobs/{job_id}/fail

The progress/complete/fail routes are the result callbacks for external
executors.
"""

from typing import Any, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status

from openflash_server.api.schemas import (
    FailRequest,
    JobResponse,
    JobResultSchema,
    JobSubmitRequest,
    JobSubmitResponse,
    ProgressRequest,
)
from openflash_server.models.job import Job, JobPriority, JobResult, parse_job_type
from openflash_server.services.orchestrator import Orchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["jobs"])


# Dependency placeholder (to be configured in main app)
async def get_orchestrator() -> Orchestrator:
    """Get orchestrator instance."""
    raise NotImplementedError("Orchestrator dependency not configured")


def _to_response(job: Job, orchestrator: Orchestrator) -> JobResponse:
    return JobResponse(
        **job.to_dict(),
        queue_position=orchestrator.job_queue.position(job.require_id()),
    )


@router.post(
    "/jobs",
    response_model=JobSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        422: {"description": "Invalid job type or parameters"},
        503: {"description": "Job queue is full"},
    },
)
async def submit_job(
    request: JobSubmitRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """
    Submit a job.

    The job is queued and scheduled on the first available device that
    satisfies its target device, required interface and required tags.
    Higher priorities run first; equal priorities run in submission order.
    """
    job = Job(
        name=request.name,
        job_type=parse_job_type(request.job_type, request.params),
        priority=JobPriority.from_str(request.priority),
        device_id=request.device_id,
        required_interface=request.required_interface,
        required_tags=set(request.required_tags),
        timeout_secs=request.timeout_secs or orchestrator.default_timeout,
        max_retries=(
            request.max_retries
            if request.max_retries is not None
            else orchestrator.default_max_retries
        ),
        client_id=request.client_id,
        callback_url=request.callback_url,
        metadata=dict(request.metadata),
    )
    job_id = await orchestrator.submit_job(job)

    return JobSubmitResponse(
        job_id=job_id,
        status=job.status.state,
        created_at=job.created_at.isoformat(),
        queue_position=orchestrator.job_queue.position(job_id),
    )


@router.get("/jobs", response_model=List[JobResponse])
async def list_jobs(
    status_filter: Optional[str] = Query(None, alias="status", examples=["queued"]),
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """
    List pending, running and retained finished jobs.

    Pending jobs are listed in scheduling order.
    """
    queue = orchestrator.job_queue
    jobs = queue.pending_jobs() + queue.running_jobs() + queue.history()
    if status_filter is not None:
        jobs = [j for j in jobs if j.status.state == status_filter.lower()]
    return [_to_response(j, orchestrator) for j in jobs]


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    responses={404: {"description": "Job not found"}},
)
async def get_job(
    job_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """
    Get job status.

    Includes the queue position while the job is pending, and the last
    device and error for jobs that were retried.
    """
    job = orchestrator.get_job(job_id)
    logger.debug("job_status_retrieved", job_id=job_id, status=job.status.state)
    return _to_response(job, orchestrator)


@router.delete(
    "/jobs/{job_id}",
    response_model=JobResponse,
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Job already finished"},
    },
)
async def cancel_job(
    job_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """Cancel a pending or running job."""
    job = await orchestrator.cancel_job(job_id)
    return _to_response(job, orchestrator)


@router.get(
    "/jobs/{job_id}/wait",
    response_model=JobResponse,
    responses={
        404: {"description": "Job not found"},
        500: {"description": "Job failed or was cancelled"},
        504: {"description": "Job timed out, or the wait did"},
    },
)
async def wait_for_job(
    job_id: int,
    timeout: float = Query(30.0, gt=0, le=3600, description="Seconds to wait"),
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """Block until the job completes and return it."""
    job = await orchestrator.wait_for(job_id, timeout=timeout)
    return _to_response(job, orchestrator)


@router.post(
    "/jobs/{job_id}/progress",
    response_model=JobResponse,
    responses={
        404: {"description": "Job not running"},
        409: {"description": "Job has not started"},
    },
)
async def report_progress(
    job_id: int,
    request: ProgressRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    job = await orchestrator.update_progress(job_id, request.progress)
    return _to_response(job, orchestrator)


@router.post(
    "/jobs/{job_id}/complete",
    response_model=JobResponse,
    responses={404: {"description": "Job not running"}},
)
async def report_complete(
    job_id: int,
    request: Optional[JobResultSchema] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """Report successful completion of a running job."""
    result = JobResult(**request.model_dump()) if request is not None else JobResult()
    job = await orchestrator.complete_job(job_id, result)
    return _to_response(job, orchestrator)


@router.post(
    "/jobs/{job_id}/fail",
    response_model=JobResponse,
    responses={404: {"description": "Job not running"}},
)
async def report_failure(
    job_id: int,
    request: FailRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> Any:
    """
    Report a failed attempt of a running job.

    The job is re-queued while it has retries left (status "queued") and
    fails terminally otherwise (status "failed").
    """
    job = await orchestrator.fail_job(job_id, request.reason)
    return _to_response(job, orchestrator)
