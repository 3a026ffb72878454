"""Scheduler loop tying the device pool and the job queue together.

The orchestrator is the only component that touches both domains. Sequences
that span them (assign a job to a device, finish a job and release its device)
run under the orchestrator lock; each step still goes through the owning
domain's own lock.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from openflash_server import __version__
from openflash_server.core.config import Config
from openflash_server.core.exceptions import (
    DeviceNotFoundError,
    JobFailedError,
    JobTimeoutError,
    OrchestratorError,
)
from openflash_server.core.metrics import MetricsCollector
from openflash_server.models.device import Device, DeviceStatus
from openflash_server.models.job import (
    Cancelled,
    Completed,
    Failed,
    Job,
    JobResult,
    Queued,
    TimedOut,
)
from openflash_server.services.device_pool import DevicePool, PoolStats
from openflash_server.services.job_queue import JobQueue, QueueStats

logger = structlog.get_logger(__name__)


class JobEvent(str, Enum):
    """Job lifecycle events delivered to listeners."""

    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_EVENTS = (JobEvent.COMPLETED, JobEvent.FAILED, JobEvent.CANCELLED, JobEvent.TIMED_OUT)

JobListener = Callable[[JobEvent, Job], Awaitable[None]]


@dataclass
class ServerInfo:
    """Snapshot of the server for status endpoints."""

    name: str
    version: str
    uptime_secs: float
    pool: PoolStats
    queue: QueueStats

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "uptime_secs": round(self.uptime_secs, 3),
            "pool": self.pool.to_dict(),
            "queue": self.queue.to_dict(),
        }


class Orchestrator:
    """Matches pending jobs to available devices and tracks their outcome.

    Features:
    - Atomic "pick job, claim device" with rollback when the claim fails
    - Device release on completion, failure, cancellation and timeout
    - Wakeup signal for the scheduler worker
    - Job event listeners and per-job waiters
    """

    def __init__(
        self,
        device_pool: Optional[DevicePool] = None,
        job_queue: Optional[JobQueue] = None,
        name: str = "OpenFlash Server",
        version: str = __version__,
        default_timeout: int = 3600,
        default_max_retries: int = 3,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            device_pool: Device pool (a default pool if None).
            job_queue: Job queue (a default queue if None).
            name: Server name reported by server_info().
            version: Server version reported by server_info().
            default_timeout: Timeout in seconds for jobs submitted without one.
            default_max_retries: Retry limit for jobs submitted without one.
        """
        self.device_pool = device_pool or DevicePool()
        self.job_queue = job_queue or JobQueue()
        self.name = name
        self.version = version
        self.default_timeout = default_timeout
        self.default_max_retries = default_max_retries

        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._listeners: List[JobListener] = []
        self._waiters: Dict[int, List[asyncio.Future]] = {}
        self._started_at = time.monotonic()

        logger.debug("orchestrator_initialized", name=name, version=version)

    @classmethod
    def from_config(cls, config: Config) -> "Orchestrator":
        """Build an orchestrator and its domains from application config."""
        return cls(
            device_pool=DevicePool(max_devices=config.pool.max_devices),
            job_queue=JobQueue(
                max_queue_size=config.queue.max_queue_size,
                max_history_size=config.queue.max_history_size,
            ),
            name=config.server.name,
            default_timeout=config.queue.default_timeout,
            default_max_retries=config.queue.default_max_retries,
        )

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def register_device(self, device: Device) -> str:
        device_id = await self.device_pool.register(device)
        self.wake()
        return device_id

    async def deregister_device(self, device_id: str) -> Device:
        return await self.device_pool.deregister(device_id)

    async def heartbeat(self, device_id: str, status: Optional[DeviceStatus] = None) -> Device:
        device = await self.device_pool.heartbeat(device_id, status)
        if device.status == DeviceStatus.AVAILABLE:
            self.wake()
        return device

    def get_device(self, device_id: str) -> Device:
        device = self.device_pool.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def list_devices(self) -> List[Device]:
        return self.device_pool.list_all()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def submit_job(self, job: Job) -> int:
        job_id = await self.job_queue.submit(job)
        self.wake()
        return job_id

    def get_job(self, job_id: int) -> Job:
        return self.job_queue.get_or_raise(job_id)

    async def tick(self) -> List[Tuple[int, str]]:
        """Run one scheduling pass.

        Every device that was Available at the start of the pass gets one
        attempt at the highest-priority job it can run. When the device can
        no longer be claimed the job goes back to its pending slot.

        Returns:
            (job_id, device_id) pairs for the assignments made.
        """
        tick_start = time.perf_counter()
        assignments: List[Tuple[int, str]] = []
        started: List[Job] = []
        rollbacks = 0

        async with self._lock:
            for device in self.device_pool.list_available():
                job = await self.job_queue.next_job_for(device)
                if job is None:
                    continue
                job_id = job.require_id()

                try:
                    await self.device_pool.assign(device.id, job_id)
                except OrchestratorError as e:
                    rollbacks += 1
                    logger.warning(
                        "assignment_rolled_back",
                        job_id=job_id,
                        device_id=device.id,
                        error=str(e),
                    )
                    try:
                        await self.job_queue.requeue(job_id)
                    except OrchestratorError as requeue_error:
                        logger.error(
                            "assignment_rollback_failed",
                            job_id=job_id,
                            device_id=device.id,
                            error=str(requeue_error),
                        )
                    continue

                await self.job_queue.start(job_id)
                assignments.append((job_id, device.id))
                started.append(job)

        MetricsCollector.record_tick(time.perf_counter() - tick_start, len(assignments), rollbacks)
        if assignments:
            logger.info("scheduler_tick", assignments=len(assignments), rollbacks=rollbacks)

        for job in started:
            await self._notify(JobEvent.STARTED, job)

        return assignments

    async def update_progress(self, job_id: int, progress: int) -> Job:
        job = await self.job_queue.update_progress(job_id, progress)
        await self._notify(JobEvent.PROGRESS, job)
        return job

    async def complete_job(self, job_id: int, result: Optional[JobResult] = None) -> Job:
        """Complete a running job and release its device.

        Raises:
            JobNotFoundError: If the job is not running.
        """
        async with self._lock:
            job = await self.job_queue.complete(job_id, result)
            bytes_processed = job.result.bytes_processed if job.result else 0
            await self._release_device(job, success=True, bytes_processed=bytes_processed)

        self.wake()
        await self._notify(JobEvent.COMPLETED, job)
        return job

    async def fail_job(self, job_id: int, reason: str) -> Job:
        """Report a failed attempt, release the device and apply retries.

        Returns:
            The job, Queued again when it will be retried, Failed otherwise.

        Raises:
            JobNotFoundError: If the job is not running.
        """
        async with self._lock:
            job = await self.job_queue.fail(job_id, reason)
            await self._release_device(job, success=False)

        self.wake()
        event = JobEvent.RETRYING if isinstance(job.status, Queued) else JobEvent.FAILED
        await self._notify(event, job)
        return job

    async def cancel_job(self, job_id: int) -> Job:
        """Cancel a pending or running job.

        The device of a running job is freed without recording an outcome.
        Stopping work already in progress on the device is up to the executor.

        Raises:
            JobNotFoundError: If the job is unknown.
            JobStateError: If the job already finished.
        """
        async with self._lock:
            job = await self.job_queue.cancel(job_id)
            await self._release_device(job, success=False, record=False)

        self.wake()
        await self._notify(JobEvent.CANCELLED, job)
        return job

    async def sweep_timeouts(self, now: Optional[datetime] = None) -> List[Job]:
        """Time out overdue running jobs and free their devices."""
        async with self._lock:
            expired = await self.job_queue.sweep_timeouts(now)
            for job, _device_id in expired:
                await self._release_device(job, success=False)

        if expired:
            self.wake()
        for job, _device_id in expired:
            await self._notify(JobEvent.TIMED_OUT, job)
        return [job for job, _ in expired]

    async def wait_for(self, job_id: int, timeout: Optional[float] = None) -> Job:
        """Wait until a job reaches a terminal state.

        Args:
            job_id: The job to wait for.
            timeout: Maximum seconds to wait (None waits forever).

        Returns:
            The completed job.

        Raises:
            JobNotFoundError: If the job is unknown.
            JobFailedError: If the job failed terminally or was cancelled.
            JobTimeoutError: If the job timed out or the wait exceeded timeout.
        """
        job = self.job_queue.get_or_raise(job_id)

        if not job.is_finished():
            future: asyncio.Future = asyncio.get_running_loop().create_future()
            self._waiters.setdefault(job_id, []).append(future)
            try:
                await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError as e:
                raise JobTimeoutError(
                    f"Timed out after {timeout}s waiting for job {job_id}"
                ) from e
            finally:
                waiters = self._waiters.get(job_id)
                if waiters and future in waiters:
                    waiters.remove(future)
                    if not waiters:
                        del self._waiters[job_id]

        if isinstance(job.status, Completed):
            return job
        if isinstance(job.status, Failed):
            raise JobFailedError(job_id, job.status.reason, job.status.device_id)
        if isinstance(job.status, Cancelled):
            raise JobFailedError(job_id, "Job cancelled", job.last_device_id)
        if isinstance(job.status, TimedOut):
            raise JobTimeoutError(f"Job {job_id} timed out after {job.timeout_secs}s")
        raise JobFailedError(job_id, f"Unexpected state '{job.status.state}'")

    # ------------------------------------------------------------------
    # Scheduler worker support
    # ------------------------------------------------------------------

    def wake(self) -> None:
        """Ask the scheduler worker to run a tick as soon as possible."""
        self._wakeup.set()

    async def wait_for_work(self, timeout: float) -> bool:
        """Wait for a wakeup or until timeout elapses.

        Returns:
            True if woken, False on timeout.
        """
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._wakeup.clear()
        return True

    def add_listener(self, listener: JobListener) -> None:
        """Subscribe to job events. Listeners run after the state change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: JobListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def server_info(self) -> ServerInfo:
        return ServerInfo(
            name=self.name,
            version=self.version,
            uptime_secs=time.monotonic() - self._started_at,
            pool=self.device_pool.stats(),
            queue=self.job_queue.stats(),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _release_device(
        self,
        job: Job,
        success: bool,
        bytes_processed: int = 0,
        record: bool = True,
    ) -> None:
        # Only free the device while it still holds this job.
        device_id = job.last_device_id
        if device_id is None:
            return
        device = self.device_pool.get(device_id)
        if device is None or device.current_job != job.id:
            return
        await self.device_pool.release(
            device_id,
            success=success,
            bytes_processed=bytes_processed,
            record=record,
        )

    async def _notify(self, event: JobEvent, job: Job) -> None:
        if event in TERMINAL_EVENTS and job.id is not None:
            for future in self._waiters.pop(job.id, []):
                if not future.done():
                    future.set_result(job)

        for listener in list(self._listeners):
            try:
                await listener(event, job)
            except Exception as e:
                logger.error(
                    "job_listener_error",
                    job_event=event.value,
                    job_id=job.id,
                    error=str(e),
                    exc_info=True,
                )


# Global orchestrator instance
_orchestrator: Optional[Orchestrator] = None


def configure_orchestrator(
    device_pool: Optional[DevicePool] = None,
    job_queue: Optional[JobQueue] = None,
    **kwargs: Any,
) -> Orchestrator:
    """Configure and initialize the global orchestrator.

    Args:
        device_pool: Device pool to use.
        job_queue: Job queue to use.
        **kwargs: Further Orchestrator arguments.

    Returns:
        Configured Orchestrator instance.
    """
    global _orchestrator
    _orchestrator = Orchestrator(device_pool=device_pool, job_queue=job_queue, **kwargs)
    return _orchestrator


def get_orchestrator() -> Orchestrator:
    """Get the global orchestrator instance.

    Raises:
        RuntimeError: If the orchestrator is not configured.
    """
    if _orchestrator is None:
        raise RuntimeError("Orchestrator not configured. Call configure_orchestrator() first.")
    return _orchestrator
