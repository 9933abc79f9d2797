"""
Kernel - Shared Type Definitions

State and health enumerations, well-known container keys and small helpers
used across the container, event bus, service registry, lifecycle manager
and health monitor.

Usage:
    from core.types import ServiceState, HealthStatus, ServiceKeys

    if registry.get_state("indexer") is ServiceState.RUNNING:
        ...
"""
from __future__ import annotations

import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

T = TypeVar("T")

# Generic callable types
MaybeAwaitable = Union[T, Awaitable[T]]
DisposeCallback = Callable[[], Any]


# =============================================================================
# ENUMS
# =============================================================================


class ServiceState(Enum):
    """
    Service lifecycle states.

    STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED, with FAILED
    reachable from any transitional state when the service raises.
    """

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class HealthStatus(Enum):
    """Health classification reported by a service probe."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: Any) -> "HealthStatus":
        """Normalize a probe return value into a HealthStatus."""
        if isinstance(value, HealthStatus):
            return value
        if isinstance(value, bool):
            return cls.HEALTHY if value else cls.UNHEALTHY
        if isinstance(value, str):
            try:
                return cls(value.lower())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN


class ServiceKeys:
    """Container keys under which the composition root seeds kernel components."""

    EVENT_BUS = "EventBus"
    SERVICE_REGISTRY = "ServiceRegistry"
    HEALTH_MONITOR = "HealthMonitor"
    LIFECYCLE_MANAGER = "LifecycleManager"
    CONFIG = "KernelConfig"


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================


class Subscription:
    """
    Handle returned by every subscribe-style call.

    Calling ``dispose()`` (or the handle itself) detaches the listener.
    Disposing twice is a no-op.
    """

    __slots__ = ("_dispose", "_disposed")

    def __init__(self, dispose: DisposeCallback):
        self._dispose: Optional[DisposeCallback] = dispose
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        callback, self._dispose = self._dispose, None
        if callback is not None:
            callback()

    def __call__(self) -> None:
        self.dispose()


# =============================================================================
# ASYNC HELPERS
# =============================================================================


async def maybe_await(value: MaybeAwaitable[T]) -> T:
    """Await ``value`` when it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value  # type: ignore[return-value]


__all__ = [
    "ServiceState",
    "HealthStatus",
    "ServiceKeys",
    "Subscription",
    "MaybeAwaitable",
    "DisposeCallback",
    "maybe_await",
]
