"""
Kernel - Core Module

Foundational pieces shared by every other kernel package:
- Unified error handling (``core.errors``)
- State/health enums, container keys and subscriptions (``core.types``)
- The composition root (``core.bootstrap``, imported explicitly)

Usage:
    from core import KernelError, ServiceState, HealthStatus
    from core.bootstrap import bootstrap

    async with bootstrap(configure=register_services) as kernel:
        await kernel.wait_for_shutdown()
"""

from core.errors import (
    ActivationInProgressError,
    CircularDependencyError,
    DependencyNotRunningError,
    DuplicateServiceError,
    ErrorContext,
    ErrorSeverity,
    EventTimeoutError,
    HealthCheckError,
    KernelError,
    LifecyclePhaseError,
    MissingDependencyError,
    RecoveryFailedError,
    ServiceNotFoundError,
    ServiceOperationError,
)
from core.types import (
    HealthStatus,
    ServiceKeys,
    ServiceState,
    Subscription,
    maybe_await,
)

__all__ = [
    # Errors
    "KernelError",
    "ErrorContext",
    "ErrorSeverity",
    "ServiceNotFoundError",
    "MissingDependencyError",
    "DuplicateServiceError",
    "CircularDependencyError",
    "DependencyNotRunningError",
    "ServiceOperationError",
    "HealthCheckError",
    "LifecyclePhaseError",
    "ActivationInProgressError",
    "RecoveryFailedError",
    "EventTimeoutError",
    # Types
    "ServiceState",
    "HealthStatus",
    "ServiceKeys",
    "Subscription",
    "maybe_await",
]
