"""Simulated flash executor for test mode.

Stands in for real programmer hardware when
OPENFLASH_SCHEDULER_EXECUTOR=simulated. Jobs take ``delay`` seconds, report
progress in steps and produce a deterministic JobResult.

Failures can be injected per job through metadata:
- ``simulate_failure=always``: every attempt fails
- ``simulate_failure=once``: the first attempt fails, retries succeed
"""

import asyncio
import hashlib
from typing import Callable, List, Optional, Tuple

import structlog

from openflash_server.core.exceptions import ExecutionError
from openflash_server.executors.base import FlashExecutor, ProgressCallback
from openflash_server.models.device import Device
from openflash_server.models.job import Erase, Job, JobResult, Read, Write

logger = structlog.get_logger(__name__)

FailurePredicate = Callable[[Job, Device], Optional[str]]

SIMULATED_CHIP_SIZE = 128 * 1024 * 1024  # 128MB when a payload has no length


class SimulatedExecutor(FlashExecutor):
    """Executor that pretends to run jobs on devices."""

    name = "simulated"

    def __init__(
        self,
        delay: float = 0.05,
        progress_steps: int = 4,
        fail_on: Optional[FailurePredicate] = None,
    ):
        """Initialize simulated executor.

        Args:
            delay: Seconds each job takes.
            progress_steps: Number of progress reports per job.
            fail_on: Optional predicate returning a failure reason for a job.
        """
        self.delay = delay
        self.progress_steps = max(1, progress_steps)
        self.fail_on = fail_on
        self.executed: List[Tuple[int, str]] = []

    async def execute(
        self,
        job: Job,
        device: Device,
        report_progress: ProgressCallback,
    ) -> JobResult:
        self.executed.append((job.require_id(), device.id))
        logger.debug("simulated_execute", job_id=job.id, device_id=device.id, attempt=job.retries)

        step_delay = self.delay / self.progress_steps
        for step in range(1, self.progress_steps + 1):
            await asyncio.sleep(step_delay)
            if step < self.progress_steps:
                await report_progress(100 * step // self.progress_steps)

        reason = self._failure_reason(job, device)
        if reason:
            raise ExecutionError(reason)

        return self._result(job, device)

    def _failure_reason(self, job: Job, device: Device) -> Optional[str]:
        mode = job.metadata.get("simulate_failure")
        if mode == "always":
            return f"Simulated failure on {device.id}"
        if mode == "once" and job.retries == 0:
            return f"Simulated transient failure on {device.id}"
        if self.fail_on is not None:
            return self.fail_on(job, device)
        return None

    def _result(self, job: Job, device: Device) -> JobResult:
        payload = job.job_type
        output_path = None
        length = 0

        if isinstance(payload, Read):
            length = payload.length if payload.length is not None else SIMULATED_CHIP_SIZE
            output_path = payload.output_path
        elif isinstance(payload, Erase):
            length = payload.length if payload.length is not None else SIMULATED_CHIP_SIZE
        elif isinstance(payload, Write):
            length = SIMULATED_CHIP_SIZE

        digest = hashlib.sha256(f"{job.id}:{device.id}:{length}".encode()).hexdigest()
        page_size = 2048
        return JobResult(
            bytes_processed=length,
            pages_processed=length // page_size,
            blocks_processed=length // (page_size * 64),
            output_path=output_path,
            checksum=digest[:16],
            data={"executor": self.name, "device_id": device.id},
        )
