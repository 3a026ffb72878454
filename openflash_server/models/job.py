"""Job data models for scheduled flash work.

State transitions:
- Queued -> Assigned(device): scheduler picked a device for the job
- Assigned -> Running(device, 0): executor acknowledged start
- Running -> Running(device, p): progress update
- Running -> Completed(device, duration): success
- Assigned | Running -> Failed(device, reason): reported failure
- Failed -> Queued: retry, while retries < max_retries
- Running -> TimedOut: timeout sweep
- any non-terminal state -> Cancelled
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, ClassVar, Dict, List, Optional, Set, Type, Union

from openflash_server.core.exceptions import OrchestratorError


class JobPriority(IntEnum):
    """Job priority, totally ordered (higher value is scheduled first)."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def from_str(cls, value: str) -> "JobPriority":
        try:
            return cls[value.strip().upper()]
        except KeyError as e:
            valid = ", ".join(p.name.lower() for p in cls)
            raise ValueError(f"Invalid priority '{value}'. Valid options: {valid}") from e


# ---------------------------------------------------------------------------
# Status variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Queued:
    state: ClassVar[str] = "queued"


@dataclass(frozen=True)
class Assigned:
    device_id: str
    state: ClassVar[str] = "assigned"


@dataclass(frozen=True)
class Running:
    device_id: str
    progress: int = 0
    state: ClassVar[str] = "running"


@dataclass(frozen=True)
class Completed:
    device_id: str
    duration: float  # seconds
    state: ClassVar[str] = "completed"


@dataclass(frozen=True)
class Failed:
    device_id: Optional[str]
    reason: str
    state: ClassVar[str] = "failed"


@dataclass(frozen=True)
class Cancelled:
    state: ClassVar[str] = "cancelled"


@dataclass(frozen=True)
class TimedOut:
    state: ClassVar[str] = "timed_out"


JobStatus = Union[Queued, Assigned, Running, Completed, Failed, Cancelled, TimedOut]

TERMINAL_STATUSES = (Completed, Failed, Cancelled, TimedOut)


# ---------------------------------------------------------------------------
# Payload variants (opaque to the scheduler)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Read:
    """Read/dump a chip range."""

    output_path: str
    start_address: int = 0
    length: Optional[int] = None
    include_oob: bool = False
    kind: ClassVar[str] = "read"


@dataclass(frozen=True)
class Write:
    """Program a chip from an image."""

    input_path: str
    start_address: int = 0
    verify: bool = True
    kind: ClassVar[str] = "write"


@dataclass(frozen=True)
class Erase:
    start_address: int = 0
    length: Optional[int] = None
    kind: ClassVar[str] = "erase"


@dataclass(frozen=True)
class Verify:
    file_path: str
    kind: ClassVar[str] = "verify"


@dataclass(frozen=True)
class Analyze:
    input_path: str
    output_path: str
    deep_scan: bool = False
    kind: ClassVar[str] = "analyze"


@dataclass(frozen=True)
class Clone:
    """Chip-to-chip copy."""

    source_device: str
    target_device: str
    kind: ClassVar[str] = "clone"


@dataclass(frozen=True)
class Custom:
    command: str
    params: Dict[str, str] = field(default_factory=dict)
    kind: ClassVar[str] = "custom"


JobType = Union[Read, Write, Erase, Verify, Analyze, Clone, Custom]

_JOB_TYPES: Dict[str, Type[Any]] = {
    cls.kind: cls for cls in (Read, Write, Erase, Verify, Analyze, Clone, Custom)
}


def parse_job_type(kind: str, params: Optional[Dict[str, Any]] = None) -> JobType:
    """Build a payload variant from its name and parameters.

    Args:
        kind: Payload name (read, write, erase, verify, analyze, clone, custom).
        params: Keyword parameters for the variant.

    Returns:
        The payload instance.

    Raises:
        ValueError: If the kind is unknown or the parameters don't fit it.
    """
    cls = _JOB_TYPES.get(kind.strip().lower())
    if cls is None:
        raise ValueError(
            f"Invalid job type '{kind}'. Valid options: {', '.join(sorted(_JOB_TYPES))}"
        )
    try:
        return cls(**(params or {}))
    except TypeError as e:
        raise ValueError(f"Invalid parameters for job type '{cls.kind}': {e}") from e


def job_type_to_dict(job_type: JobType) -> Dict[str, Any]:
    data = dataclasses.asdict(job_type)
    data["kind"] = job_type.kind
    return data


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


@dataclass
class JobResult:
    """Outcome reported by the executor for a completed job."""

    bytes_processed: int = 0
    pages_processed: int = 0
    blocks_processed: int = 0
    ecc_corrections: int = 0
    bad_blocks: List[int] = field(default_factory=list)
    output_path: Optional[str] = None
    checksum: Optional[str] = None
    data: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class Job:
    """One unit of scheduled flash work.

    ``id`` is assigned by the JobQueue on submission. ``last_device_id`` and
    ``last_error`` survive retries so callers can see where and why the most
    recent attempt failed.
    """

    name: str
    job_type: JobType
    priority: JobPriority = JobPriority.NORMAL
    id: Optional[int] = None
    status: JobStatus = field(default_factory=Queued)
    device_id: Optional[str] = None  # target device (None = any)
    required_interface: Optional[str] = None
    required_tags: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    timeout_secs: int = 3600
    retries: int = 0
    max_retries: int = 3
    result: Optional[JobResult] = None
    client_id: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    last_device_id: Optional[str] = None
    last_error: Optional[str] = None

    def require_id(self) -> int:
        """Return the queue-assigned id.

        Raises:
            OrchestratorError: If the job was never submitted to a queue.
        """
        if self.id is None:
            raise OrchestratorError(f"Job '{self.name}' has not been submitted")
        return self.id

    def is_pending(self) -> bool:
        """Check if the job is waiting (queued or assigned but not started)."""
        return isinstance(self.status, (Queued, Assigned))

    def is_running(self) -> bool:
        return isinstance(self.status, Running)

    def is_finished(self) -> bool:
        """Check if the job is in a terminal state."""
        return isinstance(self.status, TERMINAL_STATUSES)

    def can_retry(self) -> bool:
        return self.retries < self.max_retries

    @property
    def assigned_device(self) -> Optional[str]:
        """Device named by the current status, if any."""
        return getattr(self.status, "device_id", None)

    @property
    def progress(self) -> Optional[int]:
        if isinstance(self.status, Running):
            return self.status.progress
        if isinstance(self.status, Completed):
            return 100
        return None

    @property
    def error(self) -> Optional[str]:
        if isinstance(self.status, Failed):
            return self.status.reason
        if isinstance(self.status, TimedOut):
            return "Job timed out"
        return None

    def matches(self, device: Any) -> bool:
        """Check the job's placement constraints against a device.

        Args:
            device: A Device (anything with id, capabilities and tags).

        Returns:
            True if the device satisfies target, interface and tag constraints.
        """
        if self.device_id is not None and self.device_id != device.id:
            return False
        if self.required_interface is not None and not device.capabilities.supports(
            self.required_interface
        ):
            return False
        return self.required_tags.issubset(device.tags)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for API responses."""
        return {
            "job_id": self.id,
            "name": self.name,
            "job_type": job_type_to_dict(self.job_type),
            "priority": self.priority.name.lower(),
            "status": self.status.state,
            "progress": self.progress,
            "device_id": self.assigned_device or self.last_device_id,
            "target_device_id": self.device_id,
            "required_interface": self.required_interface,
            "required_tags": sorted(self.required_tags),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "timeout_secs": self.timeout_secs,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error or self.last_error,
            "client_id": self.client_id,
            "callback_url": self.callback_url,
            "metadata": dict(self.metadata),
        }
