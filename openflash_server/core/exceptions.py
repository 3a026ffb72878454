"""Orchestration engine exceptions."""

from typing import Optional


class OrchestratorError(Exception):
    """Base exception for orchestration errors."""

    pass


class DeviceNotFoundError(OrchestratorError):
    """Raised when a device id is not in the pool."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device not found: {device_id}")


class DeviceBusyError(OrchestratorError):
    """Raised when a device is already running a job."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device busy: {device_id}")


class DeviceOfflineError(OrchestratorError):
    """Raised when a device is not in a state that can take work."""

    def __init__(self, device_id: str, status: Optional[str] = None):
        self.device_id = device_id
        self.status = status
        detail = f" (status: {status})" if status else ""
        super().__init__(f"Device offline: {device_id}{detail}")


class JobNotFoundError(OrchestratorError):
    """Raised when a job is not found."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class DumpNotFoundError(OrchestratorError):
    """Raised when a parallel dump id is unknown."""

    def __init__(self, dump_id: int):
        self.dump_id = dump_id
        super().__init__(f"Dump not found: {dump_id}")


class JobStateError(OrchestratorError):
    """Raised when an operation does not apply to the job's current state."""

    def __init__(self, job_id: int, state: str, operation: str):
        self.job_id = job_id
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} job {job_id} in state '{state}'")


class JobFailedError(OrchestratorError):
    """Raised to callers waiting on a job that failed terminally."""

    def __init__(self, job_id: int, reason: str, device_id: Optional[str] = None):
        self.job_id = job_id
        self.reason = reason
        self.device_id = device_id
        super().__init__(f"Job {job_id} failed: {reason}")


class QueueFullError(OrchestratorError):
    """Raised when a capacity-bounded collection is full."""

    pass


class InvalidConfigError(OrchestratorError):
    """Raised for construction-time misconfiguration."""

    pass


class JobTimeoutError(OrchestratorError):
    """Raised when a job or an operation exceeded its time budget."""

    pass


class ExecutionError(OrchestratorError):
    """Raised by an executor when the flash operation itself failed."""

    pass
