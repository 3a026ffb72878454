"""Scheduler worker driving the orchestrator in the background.

The worker runs ``tick()`` whenever the orchestrator is woken (job submitted,
device registered or released) and at least every ``tick_interval`` seconds,
and runs the timeout sweep every ``timeout_sweep_interval`` seconds. With an
executor configured, every assignment is handed to it as a separate task and
the outcome is reported back to the orchestrator.
"""

import asyncio
import contextlib
import time
from typing import Dict, Optional

import structlog

from openflash_server.core.exceptions import ExecutionError, JobNotFoundError, JobStateError
from openflash_server.executors.base import FlashExecutor
from openflash_server.models.job import Job
from openflash_server.services.orchestrator import JobEvent, Orchestrator

logger = structlog.get_logger(__name__)


class SchedulerWorker:
    """Background task that schedules jobs and dispatches them to an executor.

    Without an executor the worker only schedules; results then arrive
    through the REST callbacks (complete/fail/progress).
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        executor: Optional[FlashExecutor] = None,
        tick_interval: float = 1.0,
        timeout_sweep_interval: float = 5.0,
    ) -> None:
        """Initialize the scheduler worker.

        Args:
            orchestrator: Orchestrator to drive.
            executor: Executor for assigned jobs (None for external executors).
            tick_interval: Maximum seconds between ticks.
            timeout_sweep_interval: Seconds between timeout sweeps.
        """
        self.orchestrator = orchestrator
        self.executor = executor
        self.tick_interval = tick_interval
        self.timeout_sweep_interval = timeout_sweep_interval
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._executions: Dict[int, asyncio.Task] = {}

        orchestrator.add_listener(self._on_job_event)

        logger.debug(
            "scheduler_worker_initialized",
            executor=executor.name if executor else None,
            tick_interval=tick_interval,
            timeout_sweep_interval=timeout_sweep_interval,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_executions(self) -> int:
        return len(self._executions)

    async def start(self) -> None:
        """Start the scheduler loop in the background."""
        if self._running:
            logger.warning("scheduler_worker_already_running")
            return

        self._running = True
        self._worker_task = asyncio.create_task(self._run())

        logger.info("scheduler_worker_started")

    async def stop(self) -> None:
        """Stop the scheduler loop and cancel executions in progress."""
        if not self._running:
            return

        self._running = False

        if self._worker_task:
            self._worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker_task
            self._worker_task = None

        tasks = list(self._executions.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._executions.clear()

        logger.info("scheduler_worker_stopped", cancelled_executions=len(tasks))

    async def _run(self) -> None:
        """Main scheduler loop."""
        logger.info("scheduler_worker_loop_started")
        last_sweep = time.monotonic()

        while self._running:
            try:
                for job_id, device_id in await self.orchestrator.tick():
                    self._dispatch(job_id, device_id)

                if time.monotonic() - last_sweep >= self.timeout_sweep_interval:
                    await self.orchestrator.sweep_timeouts()
                    last_sweep = time.monotonic()

                await self.orchestrator.wait_for_work(self.tick_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "scheduler_worker_loop_error",
                    error=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(self.tick_interval)

    def _dispatch(self, job_id: int, device_id: str) -> None:
        if self.executor is None:
            logger.debug("job_awaiting_external_executor", job_id=job_id, device_id=device_id)
            return

        task = asyncio.create_task(self._execute(self.executor, job_id, device_id))
        self._executions[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._executions.pop(jid, None))

    async def _execute(self, executor: FlashExecutor, job_id: int, device_id: str) -> None:
        """Run one assignment on the executor and report the outcome.

        Args:
            executor: The executor to run the job on.
            job_id: The assigned job.
            device_id: The device it runs on.
        """
        job = self.orchestrator.job_queue.get(job_id)
        device = self.orchestrator.device_pool.get(device_id)
        if job is None or device is None:
            logger.error("assignment_vanished", job_id=job_id, device_id=device_id)
            return

        logger.info(
            "job_execution_started",
            job_id=job_id,
            device_id=device_id,
            job_type=job.job_type.kind,
            attempt=job.retries + 1,
        )

        async def report_progress(progress: int) -> None:
            await self.orchestrator.update_progress(job_id, progress)

        try:
            result = await executor.execute(job, device, report_progress)
        except (JobNotFoundError, JobStateError) as e:
            # Cancelled or timed out while executing.
            logger.info("job_execution_abandoned", job_id=job_id, reason=str(e))
            return
        except ExecutionError as e:
            await self._report_failure(job_id, str(e))
            return
        except Exception as e:
            logger.error(
                "job_execution_unexpected_error",
                job_id=job_id,
                device_id=device_id,
                error=str(e),
                exc_info=True,
            )
            await self._report_failure(job_id, f"Unexpected error: {str(e)}")
            return

        try:
            await self.orchestrator.complete_job(job_id, result)
        except JobNotFoundError:
            logger.warning("job_result_discarded", job_id=job_id, device_id=device_id)

    async def _report_failure(self, job_id: int, reason: str) -> None:
        try:
            await self.orchestrator.fail_job(job_id, reason)
        except JobNotFoundError:
            logger.warning("job_failure_discarded", job_id=job_id, reason=reason)

    async def _on_job_event(self, event: JobEvent, job: Job) -> None:
        # Best-effort stop of executions whose job was cancelled or timed out.
        if event not in (JobEvent.CANCELLED, JobEvent.TIMED_OUT) or job.id is None:
            return
        task = self._executions.get(job.id)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            logger.info("job_execution_cancelled", job_id=job.id, job_event=event.value)


# Global scheduler worker instance
_scheduler_worker: Optional[SchedulerWorker] = None


def configure_scheduler_worker(
    orchestrator: Orchestrator,
    executor: Optional[FlashExecutor] = None,
    tick_interval: float = 1.0,
    timeout_sweep_interval: float = 5.0,
) -> SchedulerWorker:
    """Configure and initialize the global scheduler worker.

    Args:
        orchestrator: Orchestrator to drive.
        executor: Executor for assigned jobs.
        tick_interval: Maximum seconds between ticks.
        timeout_sweep_interval: Seconds between timeout sweeps.

    Returns:
        Configured SchedulerWorker instance.
    """
    global _scheduler_worker
    _scheduler_worker = SchedulerWorker(
        orchestrator=orchestrator,
        executor=executor,
        tick_interval=tick_interval,
        timeout_sweep_interval=timeout_sweep_interval,
    )
    return _scheduler_worker


def get_scheduler_worker() -> SchedulerWorker:
    """Get the global scheduler worker instance.

    Raises:
        RuntimeError: If the scheduler worker is not configured.
    """
    if _scheduler_worker is None:
        raise RuntimeError(
            "Scheduler worker not configured. Call configure_scheduler_worker() first."
        )
    return _scheduler_worker


async def start_scheduler_worker() -> None:
    """Start the global scheduler worker."""
    worker = get_scheduler_worker()
    await worker.start()


async def stop_scheduler_worker() -> None:
    """Stop the global scheduler worker."""
    worker = get_scheduler_worker()
    await worker.stop()
