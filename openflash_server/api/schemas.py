"""Request and response schemas for API endpoints.

This module provides Pydantic models for API request validation
and response serialization with OpenAPI examples.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from openflash_server.models.job import JobPriority, parse_job_type


def _validate_priority(v: str) -> str:
    return JobPriority.from_str(v).name.lower()


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceCapabilitiesSchema(BaseModel):
    """Capabilities a device reports on registration."""

    interfaces: List[str] = Field(
        default_factory=lambda: ["parallel_nand", "spi_nand"],
        examples=[["parallel_nand", "spi_nand", "spi_nor"]],
    )
    max_speed: int = Field(1_000_000, description="Max throughput in bytes/sec", gt=0)
    has_wifi: bool = False
    has_bluetooth: bool = False
    parallel_ops: bool = False
    max_concurrent: int = Field(1, gt=0)


class DeviceRegisterRequest(BaseModel):
    """Request body for device registration."""

    id: str = Field(..., min_length=1, examples=["rp2040-01"])
    name: str = Field(..., min_length=1, examples=["Bench programmer 1"])
    uri: str = Field(..., description="Connection endpoint", examples=["serial:///dev/ttyACM0"])
    platform: str = Field("unknown", examples=["rp2040", "stm32f103", "esp32-s3"])
    firmware_version: str = Field("2.0.0", examples=["2.0.0"])
    status: Literal["available", "offline", "error", "maintenance", "reserved"] = Field(
        "offline",
        description="Initial status. Devices start offline until a heartbeat says otherwise.",
    )
    capabilities: DeviceCapabilitiesSchema = Field(default_factory=DeviceCapabilitiesSchema)
    tags: List[str] = Field(default_factory=list, examples=[["lab-a", "tsop48"]])
    metadata: Dict[str, str] = Field(default_factory=dict)


class HeartbeatRequest(BaseModel):
    """Request body for device heartbeats."""

    status: Optional[Literal["available", "offline", "error", "maintenance", "reserved"]] = Field(
        None, description="New status (omit to only refresh last_seen)", examples=["available"]
    )


class DeviceResponse(BaseModel):
    """Device record."""

    id: str = Field(..., examples=["rp2040-01"])
    name: str = Field(..., examples=["Bench programmer 1"])
    uri: str = Field(..., examples=["serial:///dev/ttyACM0"])
    platform: str = Field(..., examples=["rp2040"])
    firmware_version: str = Field(..., examples=["2.0.0"])
    status: str = Field(..., examples=["available", "busy", "offline"])
    current_job: Optional[int] = Field(None, examples=[42])
    capabilities: DeviceCapabilitiesSchema
    last_seen: Optional[str] = Field(None, examples=["2025-12-25T10:30:00+00:00"])
    jobs_completed: int = Field(..., examples=[12])
    bytes_processed: int = Field(..., examples=[1073741824])
    error_count: int = Field(..., examples=[0])
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)


class DeviceListResponse(BaseModel):
    devices: List[DeviceResponse]
    total: int


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobSubmitRequest(BaseModel):
    """Request body for job submission."""

    name: str = Field(..., min_length=1, examples=["Dump TSOP48 chip"])
    job_type: str = Field(
        ...,
        description="Payload kind",
        examples=["read", "write", "erase", "verify", "analyze", "clone", "custom"],
    )
    params: Dict[str, Any] = Field(
        default_factory=dict,
        description="Payload parameters for the job type",
        examples=[{"output_path": "/dumps/chip.bin", "include_oob": True}],
    )
    priority: str = Field("normal", examples=["low", "normal", "high", "critical"])
    device_id: Optional[str] = Field(None, description="Run on this device only")
    required_interface: Optional[str] = Field(None, examples=["spi_nand"])
    required_tags: List[str] = Field(default_factory=list)
    timeout_secs: Optional[int] = Field(None, gt=0, description="Defaults to server config")
    max_retries: Optional[int] = Field(None, ge=0, description="Defaults to server config")
    client_id: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: str) -> str:
        return _validate_priority(v)

    @model_validator(mode="after")
    def validate_payload(self) -> "JobSubmitRequest":
        """Reject unknown job types and parameters that don't fit them."""
        parse_job_type(self.job_type, self.params)
        return self


class JobResultSchema(BaseModel):
    """Outcome of a completed job."""

    bytes_processed: int = Field(0, ge=0, examples=[134217728])
    pages_processed: int = Field(0, ge=0)
    blocks_processed: int = Field(0, ge=0)
    ecc_corrections: int = Field(0, ge=0)
    bad_blocks: List[int] = Field(default_factory=list)
    output_path: Optional[str] = None
    checksum: Optional[str] = Field(None, examples=["9f86d081884c7d65"])
    data: Dict[str, str] = Field(default_factory=dict)


class ProgressRequest(BaseModel):
    progress: int = Field(..., ge=0, le=100, examples=[50])


class FailRequest(BaseModel):
    reason: str = Field(..., min_length=1, examples=["ECC error at page 1024"])


class JobResponse(BaseModel):
    """Job record."""

    job_id: int = Field(..., examples=[42])
    name: str = Field(..., examples=["Dump TSOP48 chip"])
    job_type: Dict[str, Any]
    priority: str = Field(..., examples=["normal"])
    status: str = Field(
        ...,
        examples=["queued", "assigned", "running", "completed", "failed", "cancelled", "timed_out"],
    )
    progress: Optional[int] = Field(None, description="Progress percentage (0-100)", examples=[75])
    device_id: Optional[str] = Field(None, description="Current or last device")
    target_device_id: Optional[str] = None
    required_interface: Optional[str] = None
    required_tags: List[str] = Field(default_factory=list)
    created_at: str = Field(..., examples=["2025-12-25T10:30:00+00:00"])
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    timeout_secs: int = Field(..., examples=[3600])
    retries: int = Field(..., examples=[0])
    max_retries: int = Field(..., examples=[3])
    result: Optional[JobResultSchema] = None
    error: Optional[str] = Field(None, examples=["ECC error at page 1024"])
    client_id: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    queue_position: Optional[int] = Field(None, examples=[3])


class JobSubmitResponse(BaseModel):
    """Response for job submission (HTTP 202)."""

    job_id: int = Field(..., examples=[42])
    status: str = Field(..., examples=["queued"])
    created_at: str = Field(..., examples=["2025-12-25T10:30:00+00:00"])
    queue_position: Optional[int] = Field(None, examples=[3])
    message: str = Field("Job queued", examples=["Job queued"])


# ---------------------------------------------------------------------------
# Parallel dumps
# ---------------------------------------------------------------------------


class DumpSubmitRequest(BaseModel):
    """Request body for a parallel dump."""

    name: str = Field("parallel dump", min_length=1)
    total_size: int = Field(..., ge=0, description="Bytes to read", examples=[268435456])
    chunk_size: Optional[int] = Field(None, gt=0, description="Defaults to server config")
    device_count: Optional[int] = Field(
        None, gt=0, description="Chunks in flight at once (defaults to server config)"
    )
    output_dir: Optional[str] = None
    priority: str = Field("normal", examples=["normal", "high"])
    required_interface: Optional[str] = Field(None, examples=["parallel_nand"])

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: str) -> str:
        return _validate_priority(v)


class ChunkResponse(BaseModel):
    index: int
    start_address: int
    length: int
    output_file: str = Field(..., examples=["./dumps/dump_0001/chunk_0000.bin"])
    device_id: Optional[str] = None
    job_id: Optional[int] = None
    status: str = Field(..., examples=["pending", "assigned", "running", "completed", "failed"])
    error: Optional[str] = None
    checksum: Optional[str] = None


class DumpResponse(BaseModel):
    """Parallel dump record."""

    dump_id: int = Field(..., examples=[1])
    name: str
    priority: str
    required_interface: Optional[str] = None
    device_count: int
    status: str = Field(..., examples=["running", "completed", "failed", "cancelled"])
    total_size: int
    chunk_size: int
    output_dir: str
    chunk_count: int
    completed_chunks: int
    progress: int = Field(..., description="Completed chunks percentage (0-100)")
    bytes_completed: int
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    chunks: List[ChunkResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Server / health
# ---------------------------------------------------------------------------


class PoolStatsResponse(BaseModel):
    total_devices: int
    available_devices: int
    busy_devices: int
    offline_devices: int
    error_devices: int
    total_jobs_completed: int
    total_bytes_processed: int


class QueueStatsResponse(BaseModel):
    pending_count: int
    running_count: int
    completed_count: int
    failed_count: int
    cancelled_count: int
    timed_out_count: int


class ServerInfoResponse(BaseModel):
    """Server name, version, uptime and pool/queue statistics."""

    name: str = Field(..., examples=["OpenFlash Server"])
    version: str = Field(..., examples=["2.0.0"])
    uptime_secs: float = Field(..., examples=[3600.5])
    pool: PoolStatsResponse
    queue: QueueStatsResponse


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    status: Literal["healthy", "unhealthy"] = Field(..., examples=["healthy"])
    details: Optional[Dict[str, Any]] = Field(default=None, examples=[{"total_devices": 4}])


class HealthResponse(BaseModel):
    """Detailed health check response."""

    status: Literal["healthy", "unhealthy"] = Field(..., examples=["healthy"])
    timestamp: str = Field(..., examples=["2025-12-25T10:30:00Z"])
    version: str = Field(..., examples=["2.0.0"])
    uptime_seconds: float = Field(..., examples=[3600.5])
    components: Dict[str, ComponentHealth]


class LivenessResponse(BaseModel):
    """Simple liveness check response for container orchestration."""

    status: Literal["alive"] = Field(..., examples=["alive"])


class ReadinessResponse(BaseModel):
    """Readiness check response for load balancer integration."""

    status: Literal["ready", "not_ready"] = Field(..., examples=["ready"])
    ready: bool = Field(..., examples=[True])
    message: Optional[str] = Field(default=None, examples=["Scheduler worker not running"])


class ErrorDetail(BaseModel):
    """Structured error response.

    All API errors follow this format with machine-readable error codes
    and optional suggestions for resolution.
    """

    error_code: str = Field(
        ...,
        description="Machine-readable error code",
        examples=["JOB_NOT_FOUND", "DEVICE_BUSY", "QUEUE_FULL"],
    )
    message: str = Field(
        ...,
        description="Human-readable error message",
        examples=["Job not found: 42"],
    )
    details: Optional[str] = Field(None, description="Additional error context")
    timestamp: str = Field(..., examples=["2025-12-25T10:30:00Z"])
    request_id: Optional[str] = Field(
        None,
        description="Request ID for tracing",
        examples=["req_550e8400e29b"],
    )
    suggestion: Optional[str] = Field(
        None,
        description="Suggested action to resolve the error",
        examples=["Use GET /api/v1/devices to list registered devices"],
    )
