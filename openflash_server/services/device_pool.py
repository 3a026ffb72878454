"""Device pool: registry of programmer devices and their live status.

The pool is the only place device status changes. Mutating operations are
coroutines serialised by one asyncio lock; queries are plain methods and
always see a fully applied update.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import structlog

from openflash_server.core.exceptions import (
    DeviceBusyError,
    DeviceNotFoundError,
    DeviceOfflineError,
    InvalidConfigError,
    QueueFullError,
)
from openflash_server.core.metrics import MetricsCollector
from openflash_server.models.device import Device, DevicePlatform, DeviceStatus

logger = structlog.get_logger(__name__)


@dataclass
class PoolStats:
    """Point-in-time aggregate of the pool."""

    total_devices: int = 0
    available_devices: int = 0
    busy_devices: int = 0
    offline_devices: int = 0
    error_devices: int = 0
    total_jobs_completed: int = 0
    total_bytes_processed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_devices": self.total_devices,
            "available_devices": self.available_devices,
            "busy_devices": self.busy_devices,
            "offline_devices": self.offline_devices,
            "error_devices": self.error_devices,
            "total_jobs_completed": self.total_jobs_completed,
            "total_bytes_processed": self.total_bytes_processed,
        }


class DevicePool:
    """Registry of devices, their status and lifetime counters."""

    def __init__(self, max_devices: int = 100) -> None:
        """Initialize the device pool.

        Args:
            max_devices: Maximum number of registered devices.

        Raises:
            InvalidConfigError: If max_devices is not positive.
        """
        if max_devices <= 0:
            raise InvalidConfigError(f"max_devices must be positive, got {max_devices}")

        self.max_devices = max_devices
        self._devices: Dict[str, Device] = {}
        self._lock = asyncio.Lock()

        logger.debug("device_pool_initialized", max_devices=max_devices)

    async def register(self, device: Device) -> str:
        """Add a device to the pool.

        Ids are not deduplicated: registering an existing id replaces the
        previous record.

        Args:
            device: The device to register.

        Returns:
            The device id.

        Raises:
            QueueFullError: If the pool is at capacity.
        """
        async with self._lock:
            if len(self._devices) >= self.max_devices:
                raise QueueFullError(f"Device pool is full (max {self.max_devices} devices)")

            device.current_job = None
            if device.status == DeviceStatus.BUSY:
                device.status = DeviceStatus.AVAILABLE
            device.touch()
            self._devices[device.id] = device

            logger.info(
                "device_registered",
                device_id=device.id,
                platform=device.platform.value,
                status=device.status.value,
                interfaces=device.capabilities.interfaces,
                pool_size=len(self._devices),
            )
            self._update_metrics()

            return device.id

    async def deregister(self, device_id: str) -> Device:
        """Remove a device from the pool.

        A device removed mid-job keeps its job reference; releasing it later
        is a no-op.

        Raises:
            DeviceNotFoundError: If the device is not registered.
        """
        async with self._lock:
            device = self._devices.pop(device_id, None)
            if device is None:
                raise DeviceNotFoundError(device_id)

            logger.info(
                "device_deregistered",
                device_id=device_id,
                current_job=device.current_job,
                pool_size=len(self._devices),
            )
            self._update_metrics()

            return device

    async def heartbeat(self, device_id: str, status: Optional[DeviceStatus] = None) -> Device:
        """Record a device heartbeat, optionally reporting a new status.

        Args:
            device_id: The device's id.
            status: New status; BUSY is reserved for assign().

        Returns:
            The updated device.

        Raises:
            DeviceNotFoundError: If the device is not registered.
            DeviceBusyError: If a status change is requested for a busy device.
            ValueError: If BUSY is requested.
        """
        if status == DeviceStatus.BUSY:
            raise ValueError("Device status BUSY can only be set by job assignment")

        async with self._lock:
            device = self._get_or_raise(device_id)
            device.touch()

            if status is not None and status != device.status:
                if device.status == DeviceStatus.BUSY:
                    raise DeviceBusyError(device_id)
                old_status = device.status
                device.status = status
                logger.info(
                    "device_status_changed",
                    device_id=device_id,
                    old_status=old_status.value,
                    new_status=status.value,
                )
                self._update_metrics()

            return device

    async def assign(self, device_id: str, job_id: int) -> Device:
        """Mark a device busy with a job.

        Raises:
            DeviceNotFoundError: If the device is not registered.
            DeviceBusyError: If the device already runs a job.
            DeviceOfflineError: If the device is not available for work.
        """
        async with self._lock:
            device = self._get_or_raise(device_id)

            if device.status == DeviceStatus.BUSY:
                raise DeviceBusyError(device_id)
            if device.status != DeviceStatus.AVAILABLE:
                raise DeviceOfflineError(device_id, device.status.value)

            device.status = DeviceStatus.BUSY
            device.current_job = job_id

            logger.debug("device_assigned", device_id=device_id, job_id=job_id)
            self._update_metrics()

            return device

    async def release(
        self,
        device_id: str,
        success: bool,
        bytes_processed: int = 0,
        record: bool = True,
    ) -> Optional[Device]:
        """Release a device from its job.

        Args:
            device_id: The device's id.
            success: Whether the job succeeded.
            bytes_processed: Bytes handled by the job (counted on success).
            record: Update the lifetime counters. Cancellation releases
                without recording an outcome.

        Returns:
            The released device, or None if it was removed meanwhile.
        """
        async with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                logger.debug("release_of_removed_device", device_id=device_id)
                return None

            job_id = device.current_job
            device.status = DeviceStatus.AVAILABLE
            device.current_job = None
            if record:
                if success:
                    device.jobs_completed += 1
                    device.bytes_processed += bytes_processed
                else:
                    device.error_count += 1

            logger.debug(
                "device_released",
                device_id=device_id,
                job_id=job_id,
                success=success,
                recorded=record,
                error_count=device.error_count,
            )
            self._update_metrics()

            return device

    def _get_or_raise(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def _update_metrics(self) -> None:
        """Update Prometheus pool gauges.

        Must be called with lock held.
        """
        counts = {status.value: 0 for status in DeviceStatus}
        for device in self._devices.values():
            counts[device.status.value] += 1
        MetricsCollector.update_pool_metrics(counts)

    def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def list_all(self) -> List[Device]:
        return sorted(self._devices.values(), key=lambda d: d.id)

    def list_available(self) -> List[Device]:
        return [d for d in self.list_all() if d.is_available()]

    def list_by_tag(self, tag: str) -> List[Device]:
        return [d for d in self.list_all() if tag in d.tags]

    def list_by_platform(self, platform: Union[DevicePlatform, str]) -> List[Device]:
        if isinstance(platform, str):
            platform = DevicePlatform.from_str(platform)
        return [d for d in self.list_all() if d.platform == platform]

    def find_best(self, required_interface: Optional[str] = None) -> Optional[Device]:
        """Pick the available device with the fewest errors.

        Ties go to the lowest device id.

        Args:
            required_interface: Interface the device must support (optional).

        Returns:
            The best device, or None if no available device qualifies.
        """
        candidates = [
            d
            for d in self._devices.values()
            if d.is_available()
            and (required_interface is None or d.capabilities.supports(required_interface))
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda d: (d.error_count, d.id))

    def stats(self) -> PoolStats:
        """Compute pool statistics from the current device records."""
        stats = PoolStats(total_devices=len(self._devices))
        for device in self._devices.values():
            if device.status == DeviceStatus.AVAILABLE:
                stats.available_devices += 1
            elif device.status == DeviceStatus.BUSY:
                stats.busy_devices += 1
            elif device.status == DeviceStatus.OFFLINE:
                stats.offline_devices += 1
            elif device.status == DeviceStatus.ERROR:
                stats.error_devices += 1
            stats.total_jobs_completed += device.jobs_completed
            stats.total_bytes_processed += device.bytes_processed
        return stats

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: Any) -> bool:
        return device_id in self._devices
