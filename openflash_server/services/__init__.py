"""Service layer implementations."""

from openflash_server.services.device_pool import DevicePool, PoolStats
from openflash_server.services.dump_service import (
    ParallelDumpService,
    configure_dump_service,
    get_dump_service,
)
from openflash_server.services.job_queue import JobQueue, QueueStats
from openflash_server.services.orchestrator import (
    JobEvent,
    Orchestrator,
    ServerInfo,
    configure_orchestrator,
    get_orchestrator,
)
from openflash_server.services.scheduler_worker import (
    SchedulerWorker,
    configure_scheduler_worker,
    get_scheduler_worker,
    start_scheduler_worker,
    stop_scheduler_worker,
)

__all__ = [
    # Device pool
    "DevicePool",
    "PoolStats",
    # Job queue
    "JobQueue",
    "QueueStats",
    # Orchestrator
    "JobEvent",
    "Orchestrator",
    "ServerInfo",
    "configure_orchestrator",
    "get_orchestrator",
    # Parallel dumps
    "ParallelDumpService",
    "configure_dump_service",
    "get_dump_service",
    # Scheduler worker
    "SchedulerWorker",
    "configure_scheduler_worker",
    "get_scheduler_worker",
    "start_scheduler_worker",
    "stop_scheduler_worker",
]
