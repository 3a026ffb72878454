"""Abstract base class for flash executors."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from openflash_server.models.device import Device
from openflash_server.models.job import Job, JobResult

ProgressCallback = Callable[[int], Awaitable[None]]


class FlashExecutor(ABC):
    """Runs a job's payload on a physical programmer device.

    The orchestrator never talks to devices itself; the scheduler worker hands
    every assignment to an executor and reports the outcome back.
    """

    name: str = "executor"

    @abstractmethod
    async def execute(
        self,
        job: Job,
        device: Device,
        report_progress: ProgressCallback,
    ) -> JobResult:
        """
        Execute a job on a device.

        Args:
            job: The job, already Running on the device
            device: The device the job was assigned to
            report_progress: Coroutine to call with progress percentages (0-100)

        Returns:
            JobResult describing the work done

        Raises:
            ExecutionError: If the flash operation failed
        """
        pass
