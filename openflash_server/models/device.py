"""Device data models for the programmer pool.

A device is an opaque endpoint (USB-serial, TCP or WebSocket) backed by one of
the OpenFlash firmware targets. The orchestration engine only cares about what
the device can do (its capabilities and tags) and whether it is free.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class DeviceStatus(str, Enum):
    """Status of a device in the pool.

    Only the pool's assign/release operations move a device into or out of
    BUSY. Heartbeats may switch between the other states.
    """

    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"
    ERROR = "error"
    MAINTENANCE = "maintenance"
    RESERVED = "reserved"


class DevicePlatform(str, Enum):
    """Firmware platform a device runs on."""

    RP2040 = "rp2040"
    RP2350 = "rp2350"
    STM32F1 = "stm32f1"
    STM32F4 = "stm32f4"
    ESP32 = "esp32"
    ESP32S3 = "esp32s3"
    ARDUINO_GIGA = "arduino_giga"
    RASPBERRY_PI = "raspberry_pi"
    ORANGE_PI = "orange_pi"
    BANANA_PI = "banana_pi"
    UNKNOWN = "unknown"

    @classmethod
    def from_str(cls, value: str) -> "DevicePlatform":
        """Parse a platform name, accepting common part-number aliases.

        Unrecognised names map to UNKNOWN rather than raising, since
        platform is informational only.
        """
        normalized = value.strip().lower().replace("-", "_")
        alias = _PLATFORM_ALIASES.get(normalized)
        if alias is not None:
            return alias
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN


_PLATFORM_ALIASES: Dict[str, DevicePlatform] = {
    "stm32f103": DevicePlatform.STM32F1,
    "stm32f401": DevicePlatform.STM32F4,
    "stm32f411": DevicePlatform.STM32F4,
    "stm32f446": DevicePlatform.STM32F4,
    "esp32_s3": DevicePlatform.ESP32S3,
    "giga": DevicePlatform.ARDUINO_GIGA,
    "rpi": DevicePlatform.RASPBERRY_PI,
}


@dataclass
class DeviceCapabilities:
    """What a programmer can do."""

    interfaces: List[str] = field(default_factory=lambda: ["parallel_nand", "spi_nand"])
    max_speed: int = 1_000_000  # bytes/sec
    has_wifi: bool = False
    has_bluetooth: bool = False
    parallel_ops: bool = False
    max_concurrent: int = 1

    def supports(self, interface: str) -> bool:
        return interface in self.interfaces

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interfaces": list(self.interfaces),
            "max_speed": self.max_speed,
            "has_wifi": self.has_wifi,
            "has_bluetooth": self.has_bluetooth,
            "parallel_ops": self.parallel_ops,
            "max_concurrent": self.max_concurrent,
        }


@dataclass
class Device:
    """A programmer registered in the pool.

    Invariant: ``current_job`` is set if and only if ``status`` is BUSY.
    """

    id: str
    name: str
    uri: str  # serial://, tcp://, ws://
    platform: DevicePlatform = DevicePlatform.UNKNOWN
    firmware_version: str = "2.0.0"
    status: DeviceStatus = DeviceStatus.OFFLINE
    capabilities: DeviceCapabilities = field(default_factory=DeviceCapabilities)
    current_job: Optional[int] = None
    last_seen: Optional[datetime] = None
    jobs_completed: int = 0
    bytes_processed: int = 0
    error_count: int = 0
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)

    def is_available(self) -> bool:
        """Check if the device can take a job right now."""
        return self.status == DeviceStatus.AVAILABLE

    def touch(self) -> None:
        """Refresh the last-seen timestamp."""
        self.last_seen = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert device to dictionary for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "uri": self.uri,
            "platform": self.platform.value,
            "firmware_version": self.firmware_version,
            "status": self.status.value,
            "current_job": self.current_job,
            "capabilities": self.capabilities.to_dict(),
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "jobs_completed": self.jobs_completed,
            "bytes_processed": self.bytes_processed,
            "error_count": self.error_count,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
        }
