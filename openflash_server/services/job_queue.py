"""Job queue with priority ordering, retry policy and bounded history.

Jobs live in exactly one of three places:
- pending: waiting for a device, ordered by descending priority and, within
  a priority, by the order they entered the queue
- running: assigned to or running on a device
- history: terminal jobs, oldest evicted first once max_history_size is hit
"""

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Tuple

import structlog

from openflash_server.core.exceptions import (
    InvalidConfigError,
    JobNotFoundError,
    JobStateError,
    QueueFullError,
)
from openflash_server.core.metrics import MetricsCollector
from openflash_server.models.device import Device
from openflash_server.models.job import (
    Assigned,
    Cancelled,
    Completed,
    Failed,
    Job,
    JobResult,
    JobStatus,
    Queued,
    Running,
    TimedOut,
)

logger = structlog.get_logger(__name__)


@dataclass
class QueueStats:
    """Point-in-time counts of the queue."""

    pending_count: int = 0
    running_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    timed_out_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "pending_count": self.pending_count,
            "running_count": self.running_count,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "cancelled_count": self.cancelled_count,
            "timed_out_count": self.timed_out_count,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue:
    """Owner of the job lifecycle.

    Features:
    - Priority ordering, FIFO within the same priority
    - Capacity-bounded pending list
    - Placement constraints (target device, interface, tags)
    - Transparent retries up to each job's max_retries
    - Bounded FIFO history of terminal jobs
    """

    def __init__(
        self,
        max_queue_size: int = 10000,
        max_history_size: int = 1000,
        id_generator: Optional[Callable[[], int]] = None,
    ) -> None:
        """Initialize the job queue.

        Args:
            max_queue_size: Maximum number of pending jobs.
            max_history_size: Maximum number of terminal jobs kept.
            id_generator: Callable returning fresh job ids. Defaults to a
                counter starting at 1, private to this queue.

        Raises:
            InvalidConfigError: If a size is not positive.
        """
        if max_queue_size <= 0:
            raise InvalidConfigError(f"max_queue_size must be positive, got {max_queue_size}")
        if max_history_size <= 0:
            raise InvalidConfigError(
                f"max_history_size must be positive, got {max_history_size}"
            )

        self.max_queue_size = max_queue_size
        self.max_history_size = max_history_size

        self._next_id = id_generator or itertools.count(1).__next__
        self._next_seq = itertools.count().__next__
        self._pending: List[Job] = []
        self._pending_seq: Dict[int, int] = {}  # job_id -> insertion sequence
        self._running: Dict[int, Job] = {}
        self._history: Deque[Job] = deque()
        self._history_index: Dict[int, Job] = {}
        self._lock = asyncio.Lock()

        logger.debug(
            "job_queue_initialized",
            max_queue_size=max_queue_size,
            max_history_size=max_history_size,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def submit(self, job: Job) -> int:
        """Add a job to the pending list.

        Args:
            job: The job to queue. Its id is assigned here.

        Returns:
            The new job id.

        Raises:
            QueueFullError: If the pending list is at capacity.
        """
        async with self._lock:
            if len(self._pending) >= self.max_queue_size:
                raise QueueFullError(
                    f"Job queue is full (max {self.max_queue_size} jobs). "
                    "Please try again later."
                )

            job.id = self._next_id()
            job.status = Queued()
            job.retries = 0
            self._insert_pending(job)

            logger.info(
                "job_submitted",
                job_id=job.id,
                name=job.name,
                job_type=job.job_type.kind,
                priority=job.priority.name.lower(),
                queue_position=self._position(job.id),
                queue_size=len(self._pending),
            )
            self._update_metrics()

            return job.id

    async def next_job_for(self, device: Device) -> Optional[Job]:
        """Take the highest-priority pending job the device can run.

        The job moves to the running map in state Assigned(device).

        Args:
            device: The device looking for work.

        Returns:
            The assigned job, or None if no pending job matches.
        """
        async with self._lock:
            for idx, job in enumerate(self._pending):
                if job.matches(device):
                    break
            else:
                return None

            del self._pending[idx]
            job.status = Assigned(device_id=device.id)
            job.last_device_id = device.id
            self._running[job.require_id()] = job

            logger.info(
                "job_assigned",
                job_id=job.id,
                device_id=device.id,
                priority=job.priority.name.lower(),
                remaining_queue_size=len(self._pending),
            )
            self._update_metrics()

            return job

    async def requeue(self, job_id: int) -> Job:
        """Put an assigned job back in its pending slot.

        Used to roll back an assignment whose device could not be claimed.
        The retry counter is left alone.

        Raises:
            JobNotFoundError: If the job is not running.
            JobStateError: If the job already started.
        """
        async with self._lock:
            job = self._running_or_raise(job_id)
            if not isinstance(job.status, Assigned):
                raise JobStateError(job_id, job.status.state, "requeue")

            del self._running[job_id]
            job.status = Queued()
            self._insert_pending(job, keep_sequence=True)

            logger.info("job_requeued", job_id=job_id, queue_position=self._position(job_id))
            self._update_metrics()

            return job

    async def start(self, job_id: int) -> Job:
        """Acknowledge that an assigned job started on its device.

        Raises:
            JobNotFoundError: If the job is not running.
            JobStateError: If the job is not in state Assigned.
        """
        async with self._lock:
            job = self._running_or_raise(job_id)
            if not isinstance(job.status, Assigned):
                raise JobStateError(job_id, job.status.state, "start")

            job.status = Running(device_id=job.status.device_id, progress=0)
            job.started_at = _now()

            logger.info("job_started", job_id=job_id, device_id=job.status.device_id)

            return job

    async def update_status(self, job_id: int, status: JobStatus) -> Job:
        """Replace the status of a running job.

        Only Assigned and Running statuses are accepted; terminal transitions
        go through complete(), fail(), cancel() or the timeout sweep. The
        status must name the device that claimed the job.

        Raises:
            JobNotFoundError: If the job is not running.
            JobStateError: If the new status is not Assigned or Running, or
                names another device.
        """
        async with self._lock:
            job = self._running_or_raise(job_id)
            if not isinstance(status, (Assigned, Running)):
                raise JobStateError(job_id, job.status.state, f"set status '{status.state}' on")
            if status.device_id != job.last_device_id:
                operation = f"set device '{status.device_id}' on"
                raise JobStateError(job_id, job.status.state, operation)

            old_state = job.status.state
            if isinstance(status, Running) and job.started_at is None:
                job.started_at = _now()
            job.status = status

            logger.debug(
                "job_status_updated",
                job_id=job_id,
                old_status=old_state,
                new_status=status.state,
            )

            return job

    async def update_progress(self, job_id: int, progress: int) -> Job:
        """Update the progress percentage of a running job.

        Raises:
            JobNotFoundError: If the job is not running.
            JobStateError: If the job has not started yet.
        """
        async with self._lock:
            job = self._running_or_raise(job_id)
            if not isinstance(job.status, Running):
                raise JobStateError(job_id, job.status.state, "update progress of")

            progress = max(0, min(100, progress))
            job.status = Running(device_id=job.status.device_id, progress=progress)

            logger.debug("job_progress_updated", job_id=job_id, progress=job.status.progress)

            return job

    async def complete(self, job_id: int, result: Optional[JobResult] = None) -> Job:
        """Mark a running job as completed and move it to history.

        Raises:
            JobNotFoundError: If the job is not running.
        """
        async with self._lock:
            job = self._running.pop(job_id, None)
            if job is None:
                raise JobNotFoundError(job_id)

            now = _now()
            device_id = job.assigned_device or job.last_device_id or "unknown"
            duration = (now - job.started_at).total_seconds() if job.started_at else 0.0
            job.status = Completed(device_id=device_id, duration=duration)
            job.completed_at = now
            job.result = result or JobResult()
            self._add_to_history(job)

            logger.info(
                "job_completed",
                job_id=job_id,
                device_id=device_id,
                duration=duration,
                bytes_processed=job.result.bytes_processed,
            )
            MetricsCollector.record_job_finished("completed", duration)
            self._update_metrics()

            return job

    async def fail(self, job_id: int, reason: str) -> Job:
        """Record a failed attempt and apply the retry policy.

        If the job has retries left it is re-queued with its retry counter
        incremented; otherwise it becomes terminally Failed.

        Returns:
            The job, either Queued again or Failed.

        Raises:
            JobNotFoundError: If the job is not running.
        """
        async with self._lock:
            job = self._running.pop(job_id, None)
            if job is None:
                raise JobNotFoundError(job_id)

            device_id = job.assigned_device
            job.status = Failed(device_id=device_id, reason=reason)
            job.last_error = reason

            if job.can_retry():
                job.retries += 1
                job.status = Queued()
                job.started_at = None
                self._insert_pending(job)

                logger.warning(
                    "job_retrying",
                    job_id=job_id,
                    device_id=device_id,
                    retries=job.retries,
                    max_retries=job.max_retries,
                    error=reason,
                )
                MetricsCollector.record_job_retry()
            else:
                job.completed_at = _now()
                self._add_to_history(job)

                logger.error(
                    "job_failed",
                    job_id=job_id,
                    device_id=device_id,
                    retries=job.retries,
                    error=reason,
                )
                MetricsCollector.record_job_finished("failed")

            self._update_metrics()

            return job

    async def cancel(self, job_id: int) -> Job:
        """Cancel a pending or running job.

        Raises:
            JobNotFoundError: If the job is unknown.
            JobStateError: If the job already finished.
        """
        async with self._lock:
            job = self._running.pop(job_id, None)
            if job is None:
                job = self._remove_pending(job_id)
            if job is None:
                finished = self._history_index.get(job_id)
                if finished is not None:
                    raise JobStateError(job_id, finished.status.state, "cancel")
                raise JobNotFoundError(job_id)

            old_state = job.status.state
            job.status = Cancelled()
            job.completed_at = _now()
            self._add_to_history(job)

            logger.info("job_cancelled", job_id=job_id, old_status=old_state)
            MetricsCollector.record_job_finished("cancelled")
            self._update_metrics()

            return job

    async def sweep_timeouts(self, now: Optional[datetime] = None) -> List[Tuple[Job, str]]:
        """Time out running jobs that exceeded their budget.

        Args:
            now: Reference time (defaults to the current time).

        Returns:
            (job, device_id) pairs for every job moved to TimedOut.
        """
        now = now or _now()
        expired: List[Tuple[Job, str]] = []

        async with self._lock:
            for job_id, job in list(self._running.items()):
                if job.started_at is None:
                    continue
                elapsed = (now - job.started_at).total_seconds()
                if elapsed <= job.timeout_secs:
                    continue

                device_id = job.assigned_device or ""
                del self._running[job_id]
                job.status = TimedOut()
                job.completed_at = now
                job.last_error = f"Timed out after {job.timeout_secs}s"
                self._add_to_history(job)
                expired.append((job, device_id))

                logger.warning(
                    "job_timed_out",
                    job_id=job_id,
                    device_id=device_id,
                    elapsed=elapsed,
                    timeout_secs=job.timeout_secs,
                )
                MetricsCollector.record_job_finished("timed_out")

            if expired:
                self._update_metrics()

        return expired

    # ------------------------------------------------------------------
    # Internals (lock held)
    # ------------------------------------------------------------------

    def _insert_pending(self, job: Job, keep_sequence: bool = False) -> None:
        job_id = job.require_id()
        if not keep_sequence or job_id not in self._pending_seq:
            self._pending_seq[job_id] = self._next_seq()
        self._pending.append(job)
        # Explicit tie-break on insertion sequence keeps equal priorities FIFO.
        self._pending.sort(key=lambda j: (-j.priority, self._pending_seq[j.require_id()]))

    def _remove_pending(self, job_id: int) -> Optional[Job]:
        for idx, job in enumerate(self._pending):
            if job.id == job_id:
                del self._pending[idx]
                return job
        return None

    def _add_to_history(self, job: Job) -> None:
        job_id = job.require_id()
        self._pending_seq.pop(job_id, None)
        self._history.append(job)
        self._history_index[job_id] = job
        while len(self._history) > self.max_history_size:
            evicted = self._history.popleft()
            self._history_index.pop(evicted.require_id(), None)
            logger.debug("job_evicted_from_history", job_id=evicted.id)

    def _running_or_raise(self, job_id: int) -> Job:
        job = self._running.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _position(self, job_id: int) -> Optional[int]:
        for idx, job in enumerate(self._pending):
            if job.id == job_id:
                return idx + 1
        return None

    def _update_metrics(self) -> None:
        MetricsCollector.update_queue_metrics(
            pending=len(self._pending),
            running=len(self._running),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: int) -> Optional[Job]:
        """Find a job in running, pending or history (in that order)."""
        job = self._running.get(job_id)
        if job is not None:
            return job
        for job in self._pending:
            if job.id == job_id:
                return job
        return self._history_index.get(job_id)

    def get_or_raise(self, job_id: int) -> Job:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def position(self, job_id: int) -> Optional[int]:
        """1-based position in the pending list, or None if not pending."""
        return self._position(job_id)

    def pending_jobs(self) -> List[Job]:
        return list(self._pending)

    def running_jobs(self) -> List[Job]:
        return list(self._running.values())

    def history(self) -> List[Job]:
        return list(self._history)

    def stats(self) -> QueueStats:
        stats = QueueStats(
            pending_count=len(self._pending),
            running_count=len(self._running),
        )
        for job in self._history:
            if isinstance(job.status, Completed):
                stats.completed_count += 1
            elif isinstance(job.status, Failed):
                stats.failed_count += 1
            elif isinstance(job.status, Cancelled):
                stats.cancelled_count += 1
            elif isinstance(job.status, TimedOut):
                stats.timed_out_count += 1
        return stats
