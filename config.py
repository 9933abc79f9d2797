"""
Kernel - Configuration

Configuration for the orchestration kernel and its observability stack.
Uses environment variables with sensible defaults; a ``.env`` file in the
working directory is loaded first.

Configuration objects are plain values handed to constructors by the
composition root (see ``core.bootstrap``); nothing here is a process-wide
singleton.
"""
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from dotenv import load_dotenv

from observability.logging import LoggingConfig
from observability.metrics import MetricsConfig
from observability.tracing import TracingConfig

# Load environment variables from .env file
load_dotenv()


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class EventBusConfig:
    """Event bus configuration."""
    history_size: int = field(default_factory=lambda: int(os.getenv("KERNEL_EVENT_HISTORY_SIZE", "100")))


@dataclass
class HealthMonitorConfig:
    """Health monitor configuration."""
    enabled: bool = field(default_factory=lambda: _env_bool("KERNEL_HEALTH_ENABLED", "true"))
    interval_seconds: float = field(default_factory=lambda: float(os.getenv("KERNEL_HEALTH_INTERVAL", "60")))
    memory_threshold_mb: float = field(default_factory=lambda: float(os.getenv("KERNEL_MEMORY_THRESHOLD_MB", "512")))
    # Errors per minute
    error_rate_threshold: float = field(default_factory=lambda: float(os.getenv("KERNEL_ERROR_RATE_THRESHOLD", "10")))
    error_window_seconds: float = field(default_factory=lambda: float(os.getenv("KERNEL_ERROR_WINDOW", "60")))
    auto_recovery: bool = field(default_factory=lambda: _env_bool("KERNEL_AUTO_RECOVERY", "true"))
    # Grace period for an in-flight check when the monitor stops
    stop_timeout_seconds: float = field(default_factory=lambda: float(os.getenv("KERNEL_HEALTH_STOP_TIMEOUT", "5")))

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.error_window_seconds <= 0:
            raise ValueError("error_window_seconds must be positive")
        if self.stop_timeout_seconds < 0:
            raise ValueError("stop_timeout_seconds must be >= 0")


@dataclass
class LifecycleConfig:
    """Lifecycle manager configuration."""
    start_health_monitor: bool = field(default_factory=lambda: _env_bool("KERNEL_START_HEALTH_MONITOR", "true"))
    # Phase (by value) in which the registry starts every service
    services_phase: str = field(default_factory=lambda: os.getenv("KERNEL_SERVICES_PHASE", "registering_providers"))
    fail_on_service_error: bool = field(default_factory=lambda: _env_bool("KERNEL_FAIL_ON_SERVICE_ERROR", "false"))
    persist_state: bool = field(default_factory=lambda: _env_bool("KERNEL_PERSIST_STATE", "true"))


@dataclass
class KernelConfig:
    """Main configuration class combining all sub-configs."""
    environment: Environment = field(default_factory=lambda: Environment(os.getenv("ENVIRONMENT", "development")))
    app_name: str = field(default_factory=lambda: os.getenv("KERNEL_APP_NAME", "orchestration-kernel"))
    app_version: str = field(default_factory=lambda: os.getenv("KERNEL_APP_VERSION", "1.0.0"))

    # Sub-configurations
    event_bus: EventBusConfig = field(default_factory=EventBusConfig)
    health: HealthMonitorConfig = field(default_factory=HealthMonitorConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tracing: TracingConfig = field(default_factory=TracingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_environment(cls, override: bool = False) -> "KernelConfig":
        """Re-read ``.env`` and the environment into a fresh config."""
        load_dotenv(override=override)
        return cls()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "environment": self.environment.value,
            "app_name": self.app_name,
            "app_version": self.app_version,
            "event_bus": {
                "history_size": self.event_bus.history_size,
            },
            "health": {
                "enabled": self.health.enabled,
                "interval_seconds": self.health.interval_seconds,
                "memory_threshold_mb": self.health.memory_threshold_mb,
                "error_rate_threshold": self.health.error_rate_threshold,
                "error_window_seconds": self.health.error_window_seconds,
                "auto_recovery": self.health.auto_recovery,
                "stop_timeout_seconds": self.health.stop_timeout_seconds,
            },
            "lifecycle": {
                "start_health_monitor": self.lifecycle.start_health_monitor,
                "services_phase": self.lifecycle.services_phase,
                "fail_on_service_error": self.lifecycle.fail_on_service_error,
                "persist_state": self.lifecycle.persist_state,
            },
            "observability": {
                "log_level": self.logging.level,
                "tracing_enabled": self.tracing.enabled,
                "metrics_enabled": self.metrics.enabled,
                "otlp_endpoint": self.tracing.otlp_endpoint,
            },
        }
