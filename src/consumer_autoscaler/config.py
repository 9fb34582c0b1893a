"""
Configuration for the consumer autoscaler operator.

This module provides:
- Environment-based configuration (config/base.yaml + config/<env>.yaml)
- Deep merging of configuration layers
- ${VAR} and ${VAR:-default} environment variable expansion
- Typed, validated configuration sections
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import yaml

from .resilience.retry import BackoffConfig, BackoffStrategyType

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_DIR_ENV = "CONSUMER_AUTOSCALER_CONFIG_DIR"
ENVIRONMENT_ENV = "CONSUMER_AUTOSCALER_ENV"


class Environment(Enum):
    """Supported environment types."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class ConfigurationError(Exception):
    """Base configuration error."""


class ValidationError(ConfigurationError):
    """Configuration validation error."""


def _as_bool(value: Any) -> bool:
    # expanded environment variables arrive as strings
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}")


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number, got {value!r}")


@dataclass
class BaseConfigSection(ABC):
    """Base class for configuration sections."""

    @classmethod
    @abstractmethod
    def from_dict(cls: type[T], data: dict[str, Any]) -> T:
        """Create instance from dictionary."""

    def validate(self) -> None:
        """Validate configuration section."""


@dataclass
class KubernetesConfigSection(BaseConfigSection):
    """Cluster access and watch scope."""

    # Empty namespace watches every namespace
    namespace: str = ""
    kubeconfig_path: str | None = None
    # None tries in-cluster credentials first, then the local kubeconfig
    in_cluster: bool | None = None
    install_crd: bool = False
    watch_timeout_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KubernetesConfigSection":
        in_cluster = data.get("in_cluster")
        if in_cluster in ("", "auto"):
            in_cluster = None
        return cls(
            namespace=data.get("namespace") or "",
            kubeconfig_path=data.get("kubeconfig_path") or None,
            in_cluster=None if in_cluster is None else _as_bool(in_cluster),
            install_crd=_as_bool(data.get("install_crd", False)),
            watch_timeout_seconds=_as_int(data.get("watch_timeout_seconds", 300), "kubernetes.watch_timeout_seconds"),
        )

    def validate(self) -> None:
        if self.watch_timeout_seconds <= 0:
            raise ValidationError("Watch timeout must be positive")


@dataclass
class ReconcilerConfigSection(BaseConfigSection):
    """Worker pool, deadlines and the lag metric names."""

    workers: int = 2
    cycle_timeout_seconds: float = 30.0
    resync_interval_seconds: float = 300.0
    metric_name: str = "kafka_consumergroup_lag_sum"
    source_metric: str = "kafka_consumergroup_lag"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReconcilerConfigSection":
        return cls(
            workers=_as_int(data.get("workers", 2), "reconciler.workers"),
            cycle_timeout_seconds=_as_float(
                data.get("cycle_timeout_seconds", 30.0), "reconciler.cycle_timeout_seconds"
            ),
            resync_interval_seconds=_as_float(
                data.get("resync_interval_seconds", 300.0), "reconciler.resync_interval_seconds"
            ),
            metric_name=data.get("metric_name", "kafka_consumergroup_lag_sum"),
            source_metric=data.get("source_metric", "kafka_consumergroup_lag"),
        )

    def validate(self) -> None:
        if self.workers <= 0:
            raise ValidationError("Reconciler workers must be positive")
        if self.cycle_timeout_seconds <= 0:
            raise ValidationError("Cycle timeout must be positive")
        if self.resync_interval_seconds <= 0:
            raise ValidationError("Resync interval must be positive")
        if not self.metric_name or not self.source_metric:
            raise ValidationError("Metric names must not be empty")


@dataclass
class BackoffConfigSection(BaseConfigSection):
    """Retry spacing for transient reconcile failures."""

    strategy: str = "exponential"
    base_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 300.0
    jitter: bool = True
    jitter_factor: float = 0.1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackoffConfigSection":
        return cls(
            strategy=data.get("strategy", "exponential"),
            base_delay_seconds=_as_float(data.get("base_delay_seconds", 1.0), "backoff.base_delay_seconds"),
            backoff_multiplier=_as_float(data.get("backoff_multiplier", 2.0), "backoff.backoff_multiplier"),
            max_delay_seconds=_as_float(data.get("max_delay_seconds", 300.0), "backoff.max_delay_seconds"),
            jitter=_as_bool(data.get("jitter", True)),
            jitter_factor=_as_float(data.get("jitter_factor", 0.1), "backoff.jitter_factor"),
        )

    def validate(self) -> None:
        valid_strategies = [strategy.value for strategy in BackoffStrategyType]
        if self.strategy not in valid_strategies:
            raise ValidationError(f"Invalid backoff strategy: {self.strategy}")
        if self.base_delay_seconds <= 0:
            raise ValidationError("Backoff base delay must be positive")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValidationError("Backoff max delay must be at least the base delay")
        if self.backoff_multiplier < 1:
            raise ValidationError("Backoff multiplier must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValidationError("Jitter factor must be between 0 and 1")

    def to_backoff_config(self) -> BackoffConfig:
        return BackoffConfig(
            base_delay=self.base_delay_seconds,
            max_delay=self.max_delay_seconds,
            strategy=BackoffStrategyType(self.strategy),
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter,
            jitter_factor=self.jitter_factor,
        )


@dataclass
class LoggingConfigSection(BaseConfigSection):
    """Logging configuration section."""

    level: str = "INFO"
    format: str = "json"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoggingConfigSection":
        return cls(level=data.get("level", "INFO"), format=data.get("format", "json"))

    def validate(self) -> None:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.level.upper() not in valid_levels:
            raise ValidationError(f"Invalid log level: {self.level}")
        if self.format not in ("json", "text"):
            raise ValidationError(f"Invalid log format: {self.format}")


@dataclass
class MonitoringConfigSection(BaseConfigSection):
    """Monitoring configuration section."""

    enabled: bool = True
    metrics_port: int = 9090

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MonitoringConfigSection":
        return cls(
            enabled=_as_bool(data.get("enabled", True)),
            metrics_port=_as_int(data.get("metrics_port", 9090), "monitoring.metrics_port"),
        )

    def validate(self) -> None:
        if self.metrics_port <= 0 or self.metrics_port > 65535:
            raise ValidationError(f"Invalid metrics port: {self.metrics_port}")


class OperatorConfig:
    """Operator configuration with validation and environment support."""

    def __init__(
        self,
        environment: str | Environment = Environment.DEVELOPMENT,
        config_path: Path | None = None,
        overrides: dict[str, Any] | None = None,
    ):
        self.environment = Environment(environment) if isinstance(environment, str) else environment
        self.config_path = config_path or Path("config")

        self._raw_config: dict[str, Any] = {}
        self._kubernetes: KubernetesConfigSection | None = None
        self._reconciler: ReconcilerConfigSection | None = None
        self._backoff: BackoffConfigSection | None = None
        self._logging: LoggingConfigSection | None = None
        self._monitoring: MonitoringConfigSection | None = None

        self._load_configuration(overrides or {})

    def _load_configuration(self, overrides: dict[str, Any]) -> None:
        """Load and merge configuration from multiple sources."""
        base_config = self._load_yaml_file(self.config_path / "base.yaml")
        env_config = self._load_yaml_file(self.config_path / f"{self.environment.value}.yaml")

        # overrides > environment > base
        merged = self._merge_configs(base_config, env_config, overrides)
        self._raw_config = self._expand_env_vars(merged)

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML file; a missing file is an empty layer."""
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as file:
                data = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing YAML file {path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error reading file {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Top level of {path} must be a mapping")
        return data

    def _merge_configs(self, *configs: dict[str, Any]) -> dict[str, Any]:
        """Merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            if config:
                result = self._deep_merge(result, config)
        return result

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _expand_env_vars(self, obj: Any) -> Any:
        """Recursively expand environment variables in configuration."""
        if isinstance(obj, dict):
            return {key: self._expand_env_vars(value) for key, value in obj.items()}
        if isinstance(obj, list):
            return [self._expand_env_vars(item) for item in obj]
        if isinstance(obj, str):
            return self._expand_env_var_string(obj)
        return obj

    def _expand_env_var_string(self, value: str) -> str:
        """Expand environment variables in a string using ${VAR:-default} syntax."""
        pattern = r"\$\{([^}]+)\}"

        def replace_var(match):
            var_expr = match.group(1)
            if ":-" in var_expr:
                var_name, default_value = var_expr.split(":-", 1)
                return os.environ.get(var_name, default_value)
            return os.environ.get(var_expr, "")

        return re.sub(pattern, replace_var, value)

    def _section(self, name: str) -> dict[str, Any]:
        data = self._raw_config.get(name) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"Configuration section '{name}' must be a mapping")
        return data

    @property
    def kubernetes(self) -> KubernetesConfigSection:
        """Get Kubernetes configuration."""
        if not self._kubernetes:
            self._kubernetes = KubernetesConfigSection.from_dict(self._section("kubernetes"))
            self._kubernetes.validate()
        return self._kubernetes

    @property
    def reconciler(self) -> ReconcilerConfigSection:
        """Get reconciler configuration."""
        if not self._reconciler:
            self._reconciler = ReconcilerConfigSection.from_dict(self._section("reconciler"))
            self._reconciler.validate()
        return self._reconciler

    @property
    def backoff(self) -> BackoffConfigSection:
        """Get backoff configuration."""
        if not self._backoff:
            self._backoff = BackoffConfigSection.from_dict(self._section("backoff"))
            self._backoff.validate()
        return self._backoff

    @property
    def logging(self) -> LoggingConfigSection:
        """Get logging configuration."""
        if not self._logging:
            self._logging = LoggingConfigSection.from_dict(self._section("logging"))
            self._logging.validate()
        return self._logging

    @property
    def monitoring(self) -> MonitoringConfigSection:
        """Get monitoring configuration."""
        if not self._monitoring:
            self._monitoring = MonitoringConfigSection.from_dict(self._section("monitoring"))
            self._monitoring.validate()
        return self._monitoring

    def validate(self) -> None:
        """Build and validate every section."""
        for section in (self.kubernetes, self.reconciler, self.backoff, self.logging, self.monitoring):
            section.validate()

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dotted key."""
        value: Any = self._raw_config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def to_dict(self) -> dict[str, Any]:
        """Export configuration as dictionary."""
        return self._raw_config.copy()


def get_environment() -> Environment:
    """Get current environment from environment variable."""
    env_name = os.environ.get(ENVIRONMENT_ENV, "development").lower()
    try:
        return Environment(env_name)
    except ValueError:
        logger.warning("Invalid environment %s, defaulting to development", env_name)
        return Environment.DEVELOPMENT


def load_operator_config(
    environment: str | Environment | None = None,
    config_path: Path | None = None,
) -> OperatorConfig:
    """Create the operator configuration from the environment."""
    if environment is None:
        environment = get_environment()
    if config_path is None:
        config_path = Path(os.environ.get(CONFIG_DIR_ENV, "config"))
    return OperatorConfig(environment, config_path)
