"""Prometheus metrics collection for the orchestration engine.

This module defines and manages Prometheus metrics for monitoring
the device pool, the job queue, scheduling activity and HTTP traffic.
"""

from typing import Mapping

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("openflash_server", "OpenFlash server application information")

# HTTP request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

# Device pool metrics
pool_devices = Gauge(
    "openflash_pool_devices",
    "Number of devices in the pool by status",
    ["status"],
)

# Job queue metrics
queue_pending_jobs = Gauge(
    "openflash_queue_pending_jobs",
    "Number of jobs waiting for a device",
)

queue_running_jobs = Gauge(
    "openflash_queue_running_jobs",
    "Number of jobs assigned to or running on a device",
)

jobs_finished_total = Counter(
    "openflash_jobs_finished_total",
    "Jobs that reached a terminal state, by outcome",
    ["outcome"],
)

job_retries_total = Counter(
    "openflash_job_retries_total",
    "Failed jobs re-queued for another attempt",
)

job_duration_seconds = Histogram(
    "openflash_job_duration_seconds",
    "Duration of completed jobs in seconds",
    buckets=[1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 1800.0, 3600.0],
)

# Scheduler metrics
scheduler_assignments_total = Counter(
    "openflash_scheduler_assignments_total",
    "Jobs assigned to devices by the scheduler",
)

scheduler_rollbacks_total = Counter(
    "openflash_scheduler_rollbacks_total",
    "Assignments rolled back because the device could not be claimed",
)

scheduler_tick_duration_seconds = Histogram(
    "openflash_scheduler_tick_duration_seconds",
    "Duration of one scheduler tick in seconds",
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5],
)

# Error metrics
errors_total = Counter(
    "errors_total",
    "Total errors by error code and endpoint",
    ["error_code", "endpoint"],
)


class MetricsCollector:
    """Centralized metrics collection and update helper.

    Provides static methods for recording various metrics throughout
    the application in a consistent manner.
    """

    @staticmethod
    def record_request(
        method: str,
        endpoint: str,
        status: int,
        duration: float,
    ) -> None:
        """Record HTTP request metrics.

        Args:
            method: HTTP method (GET, POST, etc.).
            endpoint: Normalized endpoint path.
            status: HTTP response status code.
            duration: Request duration in seconds.
        """
        http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        http_request_duration_seconds.labels(
            method=method,
            endpoint=endpoint,
        ).observe(duration)

    @staticmethod
    def update_pool_metrics(counts_by_status: Mapping[str, int]) -> None:
        """Update device pool gauges.

        Args:
            counts_by_status: Device count per status value.
        """
        for status, count in counts_by_status.items():
            pool_devices.labels(status=status).set(count)

    @staticmethod
    def update_queue_metrics(pending: int, running: int) -> None:
        """Update job queue gauges.

        Args:
            pending: Jobs waiting for a device.
            running: Jobs assigned or running.
        """
        queue_pending_jobs.set(pending)
        queue_running_jobs.set(running)

    @staticmethod
    def record_job_finished(outcome: str, duration: float = 0.0) -> None:
        """Record a job reaching a terminal state.

        Args:
            outcome: Terminal state name (completed, failed, cancelled, timed_out).
            duration: Run time in seconds, observed for completed jobs only.
        """
        jobs_finished_total.labels(outcome=outcome).inc()
        if outcome == "completed":
            job_duration_seconds.observe(duration)

    @staticmethod
    def record_job_retry() -> None:
        job_retries_total.inc()

    @staticmethod
    def record_tick(duration: float, assignments: int, rollbacks: int) -> None:
        """Record one scheduler tick.

        Args:
            duration: Tick duration in seconds.
            assignments: Successful assignments made in the tick.
            rollbacks: Assignments rolled back in the tick.
        """
        scheduler_tick_duration_seconds.observe(duration)
        if assignments:
            scheduler_assignments_total.inc(assignments)
        if rollbacks:
            scheduler_rollbacks_total.inc(rollbacks)

    @staticmethod
    def record_error(error_code: str, endpoint: str) -> None:
        """Record an error occurrence.

        Args:
            error_code: Error code from ErrorCode class.
            endpoint: Endpoint where the error occurred.
        """
        errors_total.labels(error_code=error_code, endpoint=endpoint).inc()


def initialize_metrics(version: str) -> None:
    """Initialize application metrics with version information.

    Should be called during application startup.

    Args:
        version: Application version string.
    """
    app_info.info({"version": version})
