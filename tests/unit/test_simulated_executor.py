"""Tests for the simulated executor."""

from typing import List, Optional

import pytest

from openflash_server.core.exceptions import ExecutionError
from openflash_server.models.device import Device
from openflash_server.models.job import Custom, Erase, Job, Read
from openflash_server.testing.simulated import SIMULATED_CHIP_SIZE, SimulatedExecutor


def make_job(job_type=None, job_id: int = 1, **kwargs) -> Job:
    job = Job(name="sim", job_type=job_type or Read(output_path="/tmp/out.bin"), **kwargs)
    job.id = job_id
    return job


@pytest.fixture
def device() -> Device:
    return Device(id="d1", name="bench", uri="serial:///dev/ttyACM0")


class TestSimulatedExecutor:
    """Tests for SimulatedExecutor."""

    @pytest.mark.asyncio
    async def test_reports_progress_and_result(self, device: Device) -> None:
        """Test progress steps and the result of a sized read."""
        executor = SimulatedExecutor(delay=0.01, progress_steps=4)
        reported: List[int] = []

        async def report(progress: int) -> None:
            reported.append(progress)

        job = make_job(Read(output_path="/tmp/out.bin", length=8192))
        result = await executor.execute(job, device, report)

        assert reported == [25, 50, 75]
        assert result.bytes_processed == 8192
        assert result.pages_processed == 4
        assert result.output_path == "/tmp/out.bin"
        assert len(result.checksum) == 16
        assert result.data == {"executor": "simulated", "device_id": "d1"}
        assert executor.executed == [(1, "d1")]

    @pytest.mark.asyncio
    async def test_checksum_is_deterministic(self, device: Device) -> None:
        """Test the same job on the same device yields the same checksum."""
        executor = SimulatedExecutor(delay=0)

        async def report(progress: int) -> None:
            pass

        first = await executor.execute(make_job(), device, report)
        second = await executor.execute(make_job(), device, report)

        assert first.checksum == second.checksum

    @pytest.mark.asyncio
    async def test_unsized_payloads_use_chip_size(self, device: Device) -> None:
        """Test erase without length covers the whole simulated chip."""
        executor = SimulatedExecutor(delay=0)

        async def report(progress: int) -> None:
            pass

        erase = await executor.execute(make_job(Erase()), device, report)
        custom = await executor.execute(make_job(Custom(command="id")), device, report)

        assert erase.bytes_processed == SIMULATED_CHIP_SIZE
        assert custom.bytes_processed == 0

    @pytest.mark.asyncio
    async def test_always_failure(self, device: Device) -> None:
        """Test simulate_failure=always fails every attempt."""
        executor = SimulatedExecutor(delay=0)

        async def report(progress: int) -> None:
            pass

        job = make_job(metadata={"simulate_failure": "always"})
        job.retries = 2

        with pytest.raises(ExecutionError, match="Simulated failure on d1"):
            await executor.execute(job, device, report)

    @pytest.mark.asyncio
    async def test_once_failure_only_on_first_attempt(self, device: Device) -> None:
        """Test simulate_failure=once fails only the first attempt."""
        executor = SimulatedExecutor(delay=0)

        async def report(progress: int) -> None:
            pass

        job = make_job(metadata={"simulate_failure": "once"})
        with pytest.raises(ExecutionError):
            await executor.execute(job, device, report)

        job.retries = 1
        result = await executor.execute(job, device, report)
        assert result.checksum is not None

    @pytest.mark.asyncio
    async def test_failure_predicate(self, device: Device) -> None:
        """Test the fail_on predicate can fail jobs."""

        def fail_on(job: Job, dev: Device) -> Optional[str]:
            return "worn out" if dev.id == "d1" else None

        executor = SimulatedExecutor(delay=0, fail_on=fail_on)

        async def report(progress: int) -> None:
            pass

        with pytest.raises(ExecutionError, match="worn out"):
            await executor.execute(make_job(), device, report)
