"""Parallel dump planning.

A large read is split into fixed-size address ranges (chunks) that can be
scheduled on different devices at the same time. Chunks are named by their
zero-padded index so that output files merge back in order.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from openflash_server.core.exceptions import InvalidConfigError, OrchestratorError
from openflash_server.models.job import JobPriority


class ChunkStatus(str, Enum):
    """Status of one chunk. Mirrors the job lifecycle."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DumpStatus(str, Enum):
    """Aggregate status of a parallel dump."""

    PREPARING = "preparing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ChunkJob:
    """One address-range slice of a parallel dump."""

    index: int
    start_address: int
    length: int
    output_file: str
    device_id: Optional[str] = None
    job_id: Optional[int] = None
    status: ChunkStatus = ChunkStatus.PENDING
    error: Optional[str] = None  # set when FAILED
    checksum: Optional[str] = None

    @property
    def end_address(self) -> int:
        return self.start_address + self.length

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "start_address": self.start_address,
            "length": self.length,
            "output_file": self.output_file,
            "device_id": self.device_id,
            "job_id": self.job_id,
            "status": self.status.value,
            "error": self.error,
            "checksum": self.checksum,
        }


def chunk_output_file(output_dir: str, index: int) -> str:
    return str(Path(output_dir) / f"chunk_{index:04d}.bin")


@dataclass
class ParallelDumpJob:
    """A large read decomposed into independently schedulable chunks.

    The dump owns its chunk list; it never touches device state. Use
    ``claim_next()`` when several coroutines may hand out chunks, so each
    chunk is claimed exactly once.
    """

    total_size: int
    chunk_size: int
    output_dir: str
    chunks: List[ChunkJob]
    id: Optional[int] = None
    name: str = "parallel dump"
    priority: JobPriority = JobPriority.NORMAL
    required_interface: Optional[str] = None
    device_count: int = 4  # chunks in flight at once
    status: DumpStatus = DumpStatus.PREPARING
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    _claim_lock: asyncio.Lock = field(
        default_factory=asyncio.Lock, init=False, repr=False, compare=False
    )

    @classmethod
    def plan(
        cls,
        total_size: int,
        chunk_size: int,
        output_dir: str,
        **kwargs: Any,
    ) -> "ParallelDumpJob":
        """Split ``[0, total_size)`` into consecutive chunks.

        Args:
            total_size: Number of bytes to dump.
            chunk_size: Maximum bytes per chunk.
            output_dir: Directory the chunk output files are named under.
            **kwargs: Extra ParallelDumpJob fields (id, name).

        Returns:
            The planned dump, all chunks PENDING.

        Raises:
            InvalidConfigError: If chunk_size is not positive or total_size
                is negative.
        """
        if chunk_size <= 0:
            raise InvalidConfigError(f"chunk_size must be positive, got {chunk_size}")
        if total_size < 0:
            raise InvalidConfigError(f"total_size must not be negative, got {total_size}")

        chunk_count = -(-total_size // chunk_size)  # ceil
        chunks = []
        for index in range(chunk_count):
            start = index * chunk_size
            chunks.append(
                ChunkJob(
                    index=index,
                    start_address=start,
                    length=min(chunk_size, total_size - start),
                    output_file=chunk_output_file(output_dir, index),
                )
            )

        return cls(
            total_size=total_size,
            chunk_size=chunk_size,
            output_dir=output_dir,
            chunks=chunks,
            **kwargs,
        )

    def require_id(self) -> int:
        if self.id is None:
            raise OrchestratorError(f"Dump '{self.name}' has no id")
        return self.id

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def completed_chunks(self) -> int:
        return sum(1 for c in self.chunks if c.status == ChunkStatus.COMPLETED)

    def progress(self) -> int:
        """Percentage of completed chunks, rounded down. Empty dumps are 100."""
        if not self.chunks:
            return 100
        return (100 * self.completed_chunks()) // len(self.chunks)

    def bytes_completed(self) -> int:
        return sum(c.length for c in self.chunks if c.status == ChunkStatus.COMPLETED)

    def is_complete(self) -> bool:
        return all(c.status == ChunkStatus.COMPLETED for c in self.chunks)

    def next_pending(self) -> Optional[ChunkJob]:
        """First PENDING chunk in index order, without claiming it."""
        for chunk in self.chunks:
            if chunk.status == ChunkStatus.PENDING:
                return chunk
        return None

    async def claim_next(self) -> Optional[ChunkJob]:
        """Claim the first PENDING chunk by moving it to ASSIGNED.

        Returns:
            The claimed chunk, or None if no chunk is pending.
        """
        async with self._claim_lock:
            chunk = self.next_pending()
            if chunk is not None:
                chunk.status = ChunkStatus.ASSIGNED
            return chunk

    async def unclaim(self, chunk: ChunkJob) -> None:
        """Return a claimed chunk that could not be submitted."""
        async with self._claim_lock:
            chunk.status = ChunkStatus.PENDING
            chunk.job_id = None
            chunk.device_id = None

    def in_flight(self) -> int:
        """Chunks claimed but not finished."""
        active = (ChunkStatus.ASSIGNED, ChunkStatus.RUNNING)
        return sum(1 for c in self.chunks if c.status in active)

    def get_chunk(self, index: int) -> ChunkJob:
        return self.chunks[index]

    def to_dict(self, include_chunks: bool = True) -> Dict[str, Any]:
        """Convert dump to dictionary for API responses."""
        data: Dict[str, Any] = {
            "dump_id": self.id,
            "name": self.name,
            "priority": self.priority.name.lower(),
            "required_interface": self.required_interface,
            "device_count": self.device_count,
            "status": self.status.value,
            "total_size": self.total_size,
            "chunk_size": self.chunk_size,
            "output_dir": self.output_dir,
            "chunk_count": self.chunk_count,
            "completed_chunks": self.completed_chunks(),
            "progress": self.progress(),
            "bytes_completed": self.bytes_completed(),
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if include_chunks:
            data["chunks"] = [c.to_dict() for c in self.chunks]
        return data
