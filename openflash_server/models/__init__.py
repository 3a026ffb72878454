"""Data models for the application."""

from openflash_server.models.device import (
    Device,
    DeviceCapabilities,
    DevicePlatform,
    DeviceStatus,
)
from openflash_server.models.dump import ChunkJob, ChunkStatus, DumpStatus, ParallelDumpJob
from openflash_server.models.job import (
    Analyze,
    Assigned,
    Cancelled,
    Clone,
    Completed,
    Custom,
    Erase,
    Failed,
    Job,
    JobPriority,
    JobResult,
    JobStatus,
    JobType,
    Queued,
    Read,
    Running,
    TimedOut,
    Verify,
    Write,
    parse_job_type,
)

__all__ = [
    # Devices
    "Device",
    "DeviceCapabilities",
    "DevicePlatform",
    "DeviceStatus",
    # Jobs
    "Job",
    "JobPriority",
    "JobResult",
    "JobStatus",
    "Queued",
    "Assigned",
    "Running",
    "Completed",
    "Failed",
    "Cancelled",
    "TimedOut",
    "JobType",
    "Read",
    "Write",
    "Erase",
    "Verify",
    "Analyze",
    "Clone",
    "Custom",
    "parse_job_type",
    # Parallel dumps
    "ChunkJob",
    "ChunkStatus",
    "DumpStatus",
    "ParallelDumpJob",
]
