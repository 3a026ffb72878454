"""Configuration management with YAML and environment variable support"""

import os
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from openflash_server.core.exceptions import InvalidConfigError


class BaseConfigSection(BaseSettings):
    """Base class for all config sections with correct environment variable precedence.

    Environment variables take priority over init kwargs (YAML data), which
    take priority over defaults.
    """

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings source priority: env vars > init kwargs > defaults."""
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


def _require_positive(name: str, v: float) -> float:
    if v <= 0:
        raise ValueError(f"{name} must be greater than 0")
    return v


class ServerConfig(BaseConfigSection):
    """Server configuration"""

    name: str = "OpenFlash Server"
    host: str = "0.0.0.0"  # nosec B104 - containerized deployment binds all interfaces
    port: int = 8080
    cors_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(env_prefix="OPENFLASH_SERVER_")


class PoolConfig(BaseConfigSection):
    """Device pool configuration"""

    max_devices: int = 100

    model_config = SettingsConfigDict(env_prefix="OPENFLASH_POOL_")

    @field_validator("max_devices")
    @classmethod
    def validate_max_devices(cls, v: int) -> int:
        return int(_require_positive("max_devices", v))


class QueueConfig(BaseConfigSection):
    """Job queue configuration"""

    max_queue_size: int = 10000
    max_history_size: int = 1000
    default_timeout: int = 3600  # seconds
    default_max_retries: int = 3

    model_config = SettingsConfigDict(env_prefix="OPENFLASH_QUEUE_")

    @field_validator("max_queue_size", "max_history_size", "default_timeout")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        return int(_require_positive("value", v))

    @field_validator("default_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("default_max_retries must not be negative")
        return v


class SchedulerConfig(BaseConfigSection):
    """Scheduler loop configuration"""

    tick_interval: float = 1.0  # seconds between ticks when not woken
    timeout_sweep_interval: float = 5.0
    executor: Literal["external", "simulated"] = "external"
    simulated_delay: float = 0.05  # seconds per simulated job

    model_config = SettingsConfigDict(env_prefix="OPENFLASH_SCHEDULER_")

    @field_validator("tick_interval", "timeout_sweep_interval")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        return _require_positive("interval", v)


class DumpConfig(BaseConfigSection):
    """Parallel dump configuration"""

    chunk_size: int = 64 * 1024 * 1024  # 64MB
    device_count: int = 4  # chunks in flight per dump
    output_dir: str = "./dumps"
    max_history_size: int = 100  # finished dumps kept

    model_config = SettingsConfigDict(env_prefix="OPENFLASH_DUMP_")

    @field_validator("chunk_size", "device_count", "max_history_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        return int(_require_positive("value", v))


class LoggingConfig(BaseConfigSection):
    """Logging configuration"""

    level: str = "INFO"
    format: str = "json"

    model_config = SettingsConfigDict(env_prefix="OPENFLASH_LOGGING_")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return v_upper


class MonitoringConfig(BaseConfigSection):
    """Monitoring configuration"""

    metrics_enabled: bool = True

    model_config = SettingsConfigDict(env_prefix="OPENFLASH_MONITORING_")


class Config(BaseSettings):
    """Main application configuration"""

    server: ServerConfig = Field(default_factory=ServerConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    dump: DumpConfig = Field(default_factory=DumpConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="OPENFLASH_")


class ConfigService:
    """Service for loading and managing configuration"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.environ.get("OPENFLASH_CONFIG", "config.yaml")
        self._config: Optional[Config] = None

    def load(self) -> Config:
        """Load configuration from YAML file with environment variable overrides."""
        config_data: Dict[str, Any] = {}

        if os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f)
                if yaml_data:
                    config_data = yaml_data

        self._config = Config(
            server=ServerConfig(**config_data.get("server", {})),
            pool=PoolConfig(**config_data.get("pool", {})),
            queue=QueueConfig(**config_data.get("queue", {})),
            scheduler=SchedulerConfig(**config_data.get("scheduler", {})),
            dump=DumpConfig(**config_data.get("dump", {})),
            logging=LoggingConfig(**config_data.get("logging", {})),
            monitoring=MonitoringConfig(**config_data.get("monitoring", {})),
        )

        return self._config

    def validate(self) -> bool:
        """Validate cross-field constraints of the loaded configuration.

        Raises:
            InvalidConfigError: If the configuration is not usable.
        """
        if self._config is None:
            raise InvalidConfigError("Configuration not loaded. Call load() first.")

        scheduler = self._config.scheduler
        if scheduler.timeout_sweep_interval < scheduler.tick_interval:
            raise InvalidConfigError(
                "scheduler.timeout_sweep_interval must not be shorter than "
                "scheduler.tick_interval"
            )
        if self._config.dump.device_count > self._config.pool.max_devices:
            raise InvalidConfigError("dump.device_count cannot exceed pool.max_devices")

        return True

    @property
    def config(self) -> Config:
        """Get the loaded configuration"""
        if self._config is None:
            raise InvalidConfigError("Configuration not loaded. Call load() first.")
        return self._config
