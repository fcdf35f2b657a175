"""
Configuration management for apporchestra.

Loads and validates config.yaml from the apporchestra home directory.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_apporchestra_home() -> Path:
    """Return the apporchestra home directory ($APPORCHESTRA_HOME or ~/.apporchestra)."""
    home = os.environ.get("APPORCHESTRA_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".apporchestra"


@dataclass
class ExecutorConfig:
    """Per-application worker pool sizing."""

    core_pool_size: int = 4
    max_pool_size: int = 64
    keep_alive_seconds: float = 60.0


@dataclass
class SensorBusConfig:
    """Sensor notification delivery settings."""

    delivery_workers: int = 4
    buffer_size: int = 64


@dataclass
class LifecycleConfig:
    """Phase budgets and polling parameters (seconds)."""

    readiness_timeout: float = 120.0
    readiness_initial_delay: float = 1.0
    readiness_max_delay: float = 30.0
    stop_timeout: float = 30.0
    obtain_timeout: Optional[float] = 300.0
    describe_timeout: Optional[float] = 60.0
    install_timeout: Optional[float] = None
    customize_timeout: Optional[float] = None
    launch_timeout: Optional[float] = None
    transient_retry_initial_delay: float = 1.0
    transient_retry_max_delay: float = 30.0

    def phase_timeout(self, phase: str) -> Optional[float]:
        """Get the total budget for a driver phase, if any."""
        return getattr(self, f"{phase}_timeout", None)


@dataclass
class LoggingConfig:
    """Logging output settings."""

    level: str = "INFO"
    format: str = "pretty"
    console: bool = True
    file: Optional[str] = None


@dataclass
class ApporchestraConfig:
    """Complete apporchestra configuration."""

    state_dir: Optional[str] = None
    locations_file: Optional[str] = None
    base_dir: str = "/tmp/apporchestra"
    env_file: Optional[str] = None
    monitor_interval: float = 30.0
    task_history_size: int = 100
    force_delete_timeout: float = 60.0
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    sensors: SensorBusConfig = field(default_factory=SensorBusConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApporchestraConfig":
        """
        Build a config from a parsed YAML mapping.

        Raises:
            ConfigError: If a section is malformed or has unknown keys
        """
        sections = {
            "executor": ExecutorConfig,
            "sensors": SensorBusConfig,
            "lifecycle": LifecycleConfig,
            "logging": LoggingConfig,
        }
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                raise ConfigError(f"Unknown configuration key: {key}")
            if key in sections:
                if not isinstance(value, dict):
                    raise ConfigError(f"Section '{key}' must be a mapping")
                try:
                    kwargs[key] = sections[key](**value)
                except TypeError as e:
                    raise ConfigError(f"Section '{key}': {e}")
            else:
                kwargs[key] = value
        return cls(**kwargs)

    def get_state_dir(self) -> Path:
        """Get the persisted state root (defaults to <home>/state)."""
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return get_apporchestra_home() / "state"

    def get_locations_file(self) -> Path:
        """Get the locations YAML file (defaults to <home>/locations.yaml)."""
        if self.locations_file:
            return Path(self.locations_file).expanduser()
        return get_apporchestra_home() / "locations.yaml"

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path, if file logging is enabled."""
        if not self.logging.file:
            return None
        return Path(self.logging.file).expanduser()

    def validate(self) -> None:
        """Validate entire configuration."""
        ex = self.executor
        if ex.core_pool_size < 1 or ex.max_pool_size < 1:
            raise ConfigError("executor pool sizes must be positive")
        if ex.core_pool_size > ex.max_pool_size:
            raise ConfigError(
                f"executor.core_pool_size ({ex.core_pool_size}) exceeds "
                f"max_pool_size ({ex.max_pool_size})"
            )
        if ex.keep_alive_seconds < 0:
            raise ConfigError("executor.keep_alive_seconds must not be negative")

        if self.sensors.buffer_size < 1:
            raise ConfigError("sensors.buffer_size must be positive")
        if self.sensors.delivery_workers < 1:
            raise ConfigError("sensors.delivery_workers must be positive")

        for f in fields(self.lifecycle):
            value = getattr(self.lifecycle, f.name)
            if value is not None and value < 0:
                raise ConfigError(f"lifecycle.{f.name} must not be negative")

        if self.monitor_interval < 0:
            raise ConfigError("monitor_interval must not be negative")
        if self.task_history_size < 1:
            raise ConfigError("task_history_size must be positive")
        if self.logging.format not in ("structured", "pretty"):
            raise ConfigError(f"Unknown logging format: {self.logging.format}")


def _apply_env_overrides(config: ApporchestraConfig) -> None:
    """Apply APPORCHESTRA_* environment overrides."""
    level = os.environ.get("APPORCHESTRA_LOG_LEVEL")
    if level:
        config.logging.level = level
    state_dir = os.environ.get("APPORCHESTRA_STATE_DIR")
    if state_dir:
        config.state_dir = state_dir


def load_config(config_path: Optional[Path] = None) -> ApporchestraConfig:
    """
    Load apporchestra configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $APPORCHESTRA_CONFIG,
            then <home>/config.yaml. A missing default file yields defaults.

    Returns:
        Validated ApporchestraConfig instance

    Raises:
        ConfigError: If config is invalid, empty, or an explicit path is missing
    """
    explicit = config_path is not None or "APPORCHESTRA_CONFIG" in os.environ
    if config_path is None:
        env_path = os.environ.get("APPORCHESTRA_CONFIG")
        config_path = Path(env_path) if env_path else get_apporchestra_home() / "config.yaml"

    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")
        if not data:
            raise ConfigError("Configuration file is empty")
        if not isinstance(data, dict):
            raise ConfigError("Configuration file must contain a mapping")
        config = ApporchestraConfig.from_dict(data)
    elif explicit:
        raise ConfigError(f"Configuration file not found: {config_path}")
    else:
        config = ApporchestraConfig()

    if config.env_file:
        load_dotenv(Path(config.env_file).expanduser())
    _apply_env_overrides(config)

    config.validate()
    return config
