"""
Kernel - Orchestration Module

The moving parts of the kernel:
- event_bus: typed publish/subscribe with bounded history
- service_registry: dependency-ordered service start/stop, health and metrics
- lifecycle: phased activation and deactivation
- health_monitor: periodic health checks with automatic recovery

Usage:
    from orchestration import EventBus, ServiceRegistry, ServiceMetadata

    bus = EventBus()
    registry = ServiceRegistry(bus)
    registry.register(ServiceMetadata("db"), database)
    await registry.start_all()
"""

from orchestration.event_bus import (
    EventBus,
    KernelEvent,
    KernelEvents,
)
from orchestration.health_monitor import (
    HealthCheckResult,
    HealthMetrics,
    HealthMonitor,
    ProviderStatistics,
)
from orchestration.lifecycle import (
    ACTIVATION_SEQUENCE,
    LifecycleManager,
    LifecyclePhase,
    LifecycleStatus,
    PhaseContext,
)
from orchestration.service_registry import (
    BulkOperationResult,
    IHealthCheckable,
    IMetricsProvider,
    IRestartable,
    IService,
    ServiceMetadata,
    ServiceMetrics,
    ServiceRegistration,
    ServiceRegistry,
)

__all__ = [
    # Event bus
    "EventBus",
    "KernelEvent",
    "KernelEvents",
    # Service registry
    "IService",
    "IRestartable",
    "IHealthCheckable",
    "IMetricsProvider",
    "ServiceMetadata",
    "ServiceMetrics",
    "ServiceRegistration",
    "ServiceRegistry",
    "BulkOperationResult",
    # Lifecycle
    "LifecycleManager",
    "LifecyclePhase",
    "LifecycleStatus",
    "PhaseContext",
    "ACTIVATION_SEQUENCE",
    # Health
    "HealthMonitor",
    "HealthCheckResult",
    "HealthMetrics",
    "ProviderStatistics",
]
