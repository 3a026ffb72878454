"""Parallel dump service: runs a ParallelDumpJob through the orchestrator.

Each chunk becomes a Read job. At most ``device_count`` chunks of one dump
are in flight at a time; the next chunk is submitted as soon as one finishes.
The dump fails as soon as one of its chunks fails terminally.
Finished dumps are kept in a bounded FIFO; the oldest is forgotten once
``max_history_size`` is exceeded.
"""

import asyncio
import itertools
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, List, Optional, Tuple

import structlog

from openflash_server.core.exceptions import (
    DumpNotFoundError,
    InvalidConfigError,
    JobNotFoundError,
    JobStateError,
    QueueFullError,
)
from openflash_server.models.dump import ChunkJob, ChunkStatus, DumpStatus, ParallelDumpJob
from openflash_server.models.job import Job, JobPriority, Read
from openflash_server.services.orchestrator import TERMINAL_EVENTS, JobEvent, Orchestrator

logger = structlog.get_logger(__name__)

_ACTIVE = (DumpStatus.PREPARING, DumpStatus.RUNNING)


class ParallelDumpService:
    """Plans parallel dumps and feeds their chunks to the orchestrator."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        chunk_size: int = 64 * 1024 * 1024,
        device_count: int = 4,
        output_dir: str = "./dumps",
        max_history_size: int = 100,
    ) -> None:
        """Initialize the dump service and subscribe to job events.

        Args:
            orchestrator: Orchestrator that schedules the chunk jobs.
            chunk_size: Default chunk size in bytes.
            device_count: Default number of chunks in flight per dump.
            output_dir: Base directory; each dump writes to its own subdirectory.
            max_history_size: Maximum number of finished dumps kept.

        Raises:
            InvalidConfigError: If max_history_size is not positive.
        """
        if max_history_size <= 0:
            raise InvalidConfigError(
                f"max_history_size must be positive, got {max_history_size}"
            )

        self.orchestrator = orchestrator
        self.chunk_size = chunk_size
        self.device_count = device_count
        self.output_dir = output_dir
        self.max_history_size = max_history_size

        self._dumps: Dict[int, ParallelDumpJob] = {}
        self._chunk_jobs: Dict[int, Tuple[int, int]] = {}  # job_id -> (dump_id, chunk index)
        self._finished: Deque[int] = deque()  # finished dump ids, oldest first
        self._next_id = itertools.count(1).__next__
        self._lock = asyncio.Lock()

        orchestrator.add_listener(self._on_job_event)

        logger.debug(
            "dump_service_initialized",
            chunk_size=chunk_size,
            device_count=device_count,
            output_dir=output_dir,
            max_history_size=max_history_size,
        )

    async def submit_dump(
        self,
        total_size: int,
        name: str = "parallel dump",
        chunk_size: Optional[int] = None,
        device_count: Optional[int] = None,
        output_dir: Optional[str] = None,
        priority: JobPriority = JobPriority.NORMAL,
        required_interface: Optional[str] = None,
    ) -> ParallelDumpJob:
        """Plan a dump and submit its first window of chunks.

        Args:
            total_size: Bytes to read, starting at address 0.
            name: Human-readable dump name.
            chunk_size: Bytes per chunk (service default if None).
            device_count: Chunks in flight at once (service default if None).
            output_dir: Directory for chunk files (a per-dump default if None).
            priority: Priority of every chunk job.
            required_interface: Interface every chunk job requires.

        Returns:
            The dump, RUNNING (or COMPLETED when total_size is 0).

        Raises:
            InvalidConfigError: If a size is not positive.
            QueueFullError: If not even the first chunk could be queued.
        """
        if device_count is not None and device_count <= 0:
            raise InvalidConfigError(f"device_count must be positive, got {device_count}")

        dump_id = self._next_id()
        dump = ParallelDumpJob.plan(
            total_size=total_size,
            chunk_size=self.chunk_size if chunk_size is None else chunk_size,
            output_dir=output_dir or str(Path(self.output_dir) / f"dump_{dump_id:04d}"),
            id=dump_id,
            name=name,
            priority=priority,
            required_interface=required_interface,
            device_count=device_count or self.device_count,
        )
        dump.status = DumpStatus.RUNNING
        dump.started_at = datetime.now(timezone.utc)

        async with self._lock:
            self._dumps[dump_id] = dump

        logger.info(
            "dump_submitted",
            dump_id=dump_id,
            name=name,
            total_size=total_size,
            chunk_size=dump.chunk_size,
            chunk_count=dump.chunk_count,
            device_count=dump.device_count,
        )

        if dump.is_complete():
            self._finish(dump)
            return dump

        await self._fill_window(dump)
        if dump.in_flight() == 0 and dump.status == DumpStatus.RUNNING:
            async with self._lock:
                del self._dumps[dump_id]
            raise QueueFullError("Job queue is full, could not start dump. Please try again later.")

        return dump

    def get_dump(self, dump_id: int) -> ParallelDumpJob:
        dump = self._dumps.get(dump_id)
        if dump is None:
            raise DumpNotFoundError(dump_id)
        return dump

    def list_dumps(self) -> List[ParallelDumpJob]:
        return [self._dumps[k] for k in sorted(self._dumps)]

    async def cancel_dump(self, dump_id: int) -> ParallelDumpJob:
        """Cancel a dump and every chunk job still outstanding.

        Raises:
            DumpNotFoundError: If the dump is unknown.
            JobStateError: If the dump already finished.
        """
        dump = self.get_dump(dump_id)
        if dump.status not in _ACTIVE:
            raise JobStateError(dump_id, dump.status.value, "cancel dump")

        dump.status = DumpStatus.CANCELLED
        dump.completed_at = datetime.now(timezone.utc)
        await self._cancel_outstanding(dump, "Dump cancelled")
        self._retire(dump)

        logger.info("dump_cancelled", dump_id=dump_id, completed_chunks=dump.completed_chunks())

        return dump

    async def _fill_window(self, dump: ParallelDumpJob) -> None:
        dump_id = dump.require_id()
        async with self._lock:
            while dump.status == DumpStatus.RUNNING and dump.in_flight() < dump.device_count:
                chunk = await dump.claim_next()
                if chunk is None:
                    return

                job = self._chunk_job(dump, chunk)
                try:
                    job_id = await self.orchestrator.submit_job(job)
                except QueueFullError:
                    await dump.unclaim(chunk)
                    logger.warning(
                        "dump_chunk_deferred_queue_full",
                        dump_id=dump.id,
                        chunk_index=chunk.index,
                    )
                    return

                chunk.job_id = job_id
                self._chunk_jobs[job_id] = (dump_id, chunk.index)

                logger.debug(
                    "dump_chunk_submitted",
                    dump_id=dump.id,
                    chunk_index=chunk.index,
                    job_id=job_id,
                )

    def _chunk_job(self, dump: ParallelDumpJob, chunk: ChunkJob) -> Job:
        return Job(
            name=f"{dump.name} chunk {chunk.index}",
            job_type=Read(
                output_path=chunk.output_file,
                start_address=chunk.start_address,
                length=chunk.length,
            ),
            priority=dump.priority,
            required_interface=dump.required_interface,
            timeout_secs=self.orchestrator.default_timeout,
            max_retries=self.orchestrator.default_max_retries,
            metadata={"dump_id": str(dump.id), "chunk_index": str(chunk.index)},
        )

    async def _on_job_event(self, event: JobEvent, job: Job) -> None:
        if job.id is None:
            return
        ref = self._chunk_jobs.get(job.id)
        if ref is None:
            # Queue space freed by another job may unblock deferred chunks.
            if event in TERMINAL_EVENTS:
                await self._refill_all()
            return

        dump_id, index = ref
        dump = self._dumps.get(dump_id)
        if dump is None:
            return
        chunk = dump.get_chunk(index)

        if event == JobEvent.STARTED:
            chunk.status = ChunkStatus.RUNNING
            chunk.device_id = job.assigned_device
        elif event == JobEvent.RETRYING:
            chunk.status = ChunkStatus.ASSIGNED
            chunk.device_id = None
        elif event == JobEvent.COMPLETED:
            del self._chunk_jobs[job.id]
            chunk.status = ChunkStatus.COMPLETED
            if job.result is not None:
                chunk.checksum = job.result.checksum
            logger.debug(
                "dump_chunk_completed",
                dump_id=dump_id,
                chunk_index=index,
                progress=dump.progress(),
            )
            if dump.is_complete():
                self._finish(dump)
        elif event in (JobEvent.FAILED, JobEvent.CANCELLED, JobEvent.TIMED_OUT):
            del self._chunk_jobs[job.id]
            chunk.status = ChunkStatus.FAILED
            chunk.error = job.error or job.last_error or event.value
            if dump.status == DumpStatus.RUNNING:
                await self._fail(dump, f"Chunk {index} {event.value}: {chunk.error}")

        if event in TERMINAL_EVENTS:
            await self._refill_all()

    async def _refill_all(self) -> None:
        for dump in list(self._dumps.values()):
            if dump.status == DumpStatus.RUNNING and dump.next_pending() is not None:
                await self._fill_window(dump)

    def _finish(self, dump: ParallelDumpJob) -> None:
        dump.status = DumpStatus.COMPLETED
        dump.completed_at = datetime.now(timezone.utc)
        logger.info(
            "dump_completed",
            dump_id=dump.id,
            chunk_count=dump.chunk_count,
            bytes_completed=dump.bytes_completed(),
        )
        self._retire(dump)

    async def _fail(self, dump: ParallelDumpJob, reason: str) -> None:
        dump.status = DumpStatus.FAILED
        dump.error = reason
        dump.completed_at = datetime.now(timezone.utc)
        logger.error("dump_failed", dump_id=dump.id, error=reason)
        await self._cancel_outstanding(dump, "Dump failed")
        self._retire(dump)

    def _retire(self, dump: ParallelDumpJob) -> None:
        self._finished.append(dump.require_id())
        while len(self._finished) > self.max_history_size:
            evicted_id = self._finished.popleft()
            self._dumps.pop(evicted_id, None)
            stale = [jid for jid, (did, _) in self._chunk_jobs.items() if did == evicted_id]
            for job_id in stale:
                del self._chunk_jobs[job_id]
            logger.debug("dump_evicted_from_history", dump_id=evicted_id)

    async def _cancel_outstanding(self, dump: ParallelDumpJob, reason: str) -> None:
        for chunk in dump.chunks:
            if chunk.status == ChunkStatus.PENDING:
                chunk.status = ChunkStatus.FAILED
                chunk.error = reason
            elif chunk.job_id is not None and chunk.status in (
                ChunkStatus.ASSIGNED,
                ChunkStatus.RUNNING,
            ):
                try:
                    await self.orchestrator.cancel_job(chunk.job_id)
                except (JobNotFoundError, JobStateError) as e:
                    # Finished in the meantime.
                    logger.debug(
                        "dump_chunk_cancel_skipped",
                        dump_id=dump.id,
                        chunk_index=chunk.index,
                        job_id=chunk.job_id,
                        error=str(e),
                    )


# Global dump service instance
_dump_service: Optional[ParallelDumpService] = None


def configure_dump_service(
    orchestrator: Orchestrator,
    chunk_size: int = 64 * 1024 * 1024,
    device_count: int = 4,
    output_dir: str = "./dumps",
    max_history_size: int = 100,
) -> ParallelDumpService:
    """Configure and initialize the global dump service."""
    global _dump_service
    _dump_service = ParallelDumpService(
        orchestrator=orchestrator,
        chunk_size=chunk_size,
        device_count=device_count,
        output_dir=output_dir,
        max_history_size=max_history_size,
    )
    return _dump_service


def get_dump_service() -> ParallelDumpService:
    """Get the global dump service instance.

    Raises:
        RuntimeError: If the dump service is not configured.
    """
    if _dump_service is None:
        raise RuntimeError("Dump service not configured. Call configure_dump_service() first.")
    return _dump_service
