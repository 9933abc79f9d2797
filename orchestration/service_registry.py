"""
Kernel - Service Registry

Registers long-lived services with declared dependencies and drives each one
through the STOPPED -> STARTING -> RUNNING -> STOPPING state machine.

Features:
- Capability protocols: start/stop required, restart/health/metrics optional
- Dependency-respecting start/stop order (three-color DFS, cycle detection)
- Per-service serialization of state transitions
- Health derivation that never upgrades a failed service to HEALTHY
- Per-service metrics (counts, timestamps, accumulated uptime)
- State change notifications through listeners and the event bus

Usage:
    registry = ServiceRegistry(event_bus)
    registry.register(ServiceMetadata("db"), database)
    registry.register(ServiceMetadata("indexer", dependencies=("db",)), indexer)

    result = await registry.start_all()   # db, then indexer
    await registry.stop_all()             # indexer, then db
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

from core.errors import (
    CircularDependencyError,
    DependencyNotRunningError,
    DuplicateServiceError,
    HealthCheckError,
    KernelError,
    MissingDependencyError,
    ServiceNotFoundError,
    ServiceOperationError,
)
from core.types import HealthStatus, MaybeAwaitable, ServiceState, Subscription, maybe_await
from observability.metrics import timed_service_operation
from observability.tracing import create_span
from orchestration.event_bus import EventBus, KernelEvents

logger = logging.getLogger("kernel.registry")

StateChangeListener = Callable[[str, ServiceState, ServiceState], Any]

# DFS colors
_WHITE, _GRAY, _BLACK = 0, 1, 2


# =============================================================================
# SERVICE CONTRACT
# =============================================================================


@runtime_checkable
class IService(Protocol):
    """Minimum contract: a service can be started and stopped."""

    def start(self) -> MaybeAwaitable[None]: ...

    def stop(self) -> MaybeAwaitable[None]: ...


@runtime_checkable
class IRestartable(Protocol):
    """Service with a native restart cheaper than stop + start."""

    def restart(self) -> MaybeAwaitable[None]: ...


@runtime_checkable
class IHealthCheckable(Protocol):
    """Service that can classify its own health."""

    def health_check(self) -> MaybeAwaitable[Union[HealthStatus, bool, str]]: ...


@runtime_checkable
class IMetricsProvider(Protocol):
    """Service that exposes custom metrics."""

    def get_metrics(self) -> Mapping[str, Any]: ...


# =============================================================================
# DATA MODEL
# =============================================================================


@dataclass(frozen=True)
class ServiceMetadata:
    """Identity and declared dependencies of a service."""

    name: str
    version: str = "0.0.0"
    dependencies: Tuple[str, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Service name must not be empty")
        object.__setattr__(self, "dependencies", tuple(self.dependencies))


@dataclass
class ServiceMetrics:
    """Counters and timestamps for one registration."""

    start_count: int = 0
    stop_count: int = 0
    restart_count: int = 0
    error_count: int = 0
    last_start_time: Optional[datetime] = None
    last_stop_time: Optional[datetime] = None
    last_error_time: Optional[datetime] = None
    last_error: Optional[str] = None
    uptime_ms: float = 0.0
    custom: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "start_count": self.start_count,
            "stop_count": self.stop_count,
            "restart_count": self.restart_count,
            "error_count": self.error_count,
            "last_start_time": iso(self.last_start_time),
            "last_stop_time": iso(self.last_stop_time),
            "last_error_time": iso(self.last_error_time),
            "last_error": self.last_error,
            "uptime_ms": round(self.uptime_ms, 3),
            "custom": dict(self.custom),
        }


@dataclass(eq=False)
class ServiceRegistration:
    """
    A registered service plus the mutable state the registry owns.

    Capabilities are resolved once at registration time.
    """

    metadata: ServiceMetadata
    service: Any
    state: ServiceState = ServiceState.STOPPED
    health: HealthStatus = HealthStatus.UNKNOWN
    metrics: ServiceMetrics = field(default_factory=ServiceMetrics)
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    supports_restart: bool = False
    supports_health_check: bool = False
    supports_metrics: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    running_since: Optional[float] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def dependencies(self) -> Tuple[str, ...]:
        return self.metadata.dependencies

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.metadata.version,
            "description": self.metadata.description,
            "dependencies": list(self.dependencies),
            "state": self.state.value,
            "health": self.health.value,
            "registered_at": self.registered_at.isoformat(),
            "capabilities": {
                "restart": self.supports_restart,
                "health_check": self.supports_health_check,
                "metrics": self.supports_metrics,
            },
            "metrics": self.metrics.to_dict(),
        }


@dataclass
class BulkOperationResult:
    """Outcome of start_all / stop_all."""

    operation: str
    order: List[str]
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, KernelError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "order": list(self.order),
            "succeeded": list(self.succeeded),
            "failed": {name: str(error) for name, error in self.failed.items()},
        }


# =============================================================================
# REGISTRY
# =============================================================================


class ServiceRegistry:
    """
    Owns every service registration and drives its state machine.

    Operations against one service are serialized by a per-registration
    ``asyncio.Lock``; ``start_all``/``stop_all`` walk services sequentially
    in dependency order.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._services: Dict[str, ServiceRegistration] = {}
        self._event_bus = event_bus
        self._clock = clock
        self._state_listeners: List[StateChangeListener] = []

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(
        self,
        metadata: Union[ServiceMetadata, str],
        service: Any,
    ) -> ServiceRegistration:
        """
        Add a STOPPED registration.

        Raises:
            DuplicateServiceError: the name is already registered
            TypeError: ``service`` lacks start()/stop()
        """
        if isinstance(metadata, str):
            metadata = ServiceMetadata(metadata)
        if metadata.name in self._services:
            raise DuplicateServiceError(metadata.name)
        if not isinstance(service, IService):
            raise TypeError(
                f"Service '{metadata.name}' must implement start() and stop()"
            )

        registration = ServiceRegistration(
            metadata=metadata,
            service=service,
            supports_restart=isinstance(service, IRestartable),
            supports_health_check=isinstance(service, IHealthCheckable),
            supports_metrics=isinstance(service, IMetricsProvider),
        )
        self._services[metadata.name] = registration

        logger.debug(
            f"Registered service: {metadata.name} v{metadata.version} "
            f"(deps={list(metadata.dependencies)})"
        )
        self._emit(KernelEvents.SERVICE_REGISTERED, {
            "name": metadata.name,
            "dependencies": list(metadata.dependencies),
        })
        return registration

    async def unregister(self, name: str) -> None:
        """Stop the service if it is running, then remove it."""
        registration = self._get(name)
        try:
            await self.stop(name)
        except KernelError as e:
            logger.warning(f"Service '{name}' failed to stop during unregister: {e}")
        finally:
            self._services.pop(name, None)

        dependents = [
            other.name for other in self._services.values()
            if name in other.dependencies
        ]
        if dependents:
            logger.warning(f"Unregistered '{name}' is still a dependency of {dependents}")

        logger.debug(f"Unregistered service: {registration.name}")
        self._emit(KernelEvents.SERVICE_UNREGISTERED, {"name": name})

    def _get(self, name: str) -> ServiceRegistration:
        registration = self._services.get(name)
        if registration is None:
            raise ServiceNotFoundError(name)
        return registration

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    async def start(self, name: str) -> None:
        """
        Start one service.

        No-op if it is already RUNNING.

        Raises:
            ServiceNotFoundError: unknown name
            MissingDependencyError: a declared dependency is not registered
            DependencyNotRunningError: a declared dependency is not RUNNING
            ServiceOperationError: the service's own start() raised
        """
        registration = self._get(name)
        async with registration.lock:
            await self._start_locked(registration)

    async def stop(self, name: str) -> None:
        """
        Stop one service. No-op unless it is RUNNING.

        Raises:
            ServiceNotFoundError: unknown name
            ServiceOperationError: the service's own stop() raised
        """
        registration = self._get(name)
        async with registration.lock:
            await self._stop_locked(registration)

    async def restart(self, name: str) -> None:
        """
        Restart one service.

        Uses the service's native restart() when it has one, otherwise stop()
        followed by start(). Either way ``restart_count`` grows by one and the
        dependencies must be RUNNING.
        """
        registration = self._get(name)
        async with registration.lock:
            if registration.supports_restart:
                await self._native_restart_locked(registration)
            else:
                await self._stop_locked(registration)
                await self._start_locked(registration)
                registration.metrics.restart_count += 1

        logger.info(f"Service restarted: {name}")
        self._emit(KernelEvents.SERVICE_RESTARTED, {
            "name": name,
            "restart_count": registration.metrics.restart_count,
            "native": registration.supports_restart,
        })

    async def _start_locked(self, registration: ServiceRegistration) -> None:
        name = registration.name
        if registration.state is ServiceState.RUNNING:
            return

        self._check_dependencies(registration)
        self._set_state(registration, ServiceState.STARTING)

        with create_span(
            "service.start",
            attributes={"service.name": name},
            tracer_name="kernel.registry",
        ), timed_service_operation(name, "start") as op:
            try:
                await maybe_await(registration.service.start())
            except Exception as exc:
                op["status"] = "error"
                self._record_failure(registration, "start", exc)
                raise ServiceOperationError(name, "start", cause=exc) from exc
            except asyncio.CancelledError as exc:
                op["status"] = "cancelled"
                self._record_failure(registration, "start", exc)
                raise
            op["status"] = "ok"

        metrics = registration.metrics
        metrics.start_count += 1
        metrics.last_start_time = datetime.now(timezone.utc)
        registration.running_since = self._clock()
        self._set_state(registration, ServiceState.RUNNING)

        logger.info(f"Service started: {name}")
        self._emit(KernelEvents.SERVICE_STARTED, {"name": name})
        await self._probe(registration)

    async def _stop_locked(self, registration: ServiceRegistration) -> None:
        name = registration.name
        if registration.state is not ServiceState.RUNNING:
            return

        self._set_state(registration, ServiceState.STOPPING)
        self._accumulate_uptime(registration)

        with create_span(
            "service.stop",
            attributes={"service.name": name},
            tracer_name="kernel.registry",
        ), timed_service_operation(name, "stop") as op:
            try:
                await maybe_await(registration.service.stop())
            except Exception as exc:
                op["status"] = "error"
                self._record_failure(registration, "stop", exc)
                raise ServiceOperationError(name, "stop", cause=exc) from exc
            except asyncio.CancelledError as exc:
                op["status"] = "cancelled"
                self._record_failure(registration, "stop", exc)
                raise
            op["status"] = "ok"

        registration.metrics.stop_count += 1
        registration.metrics.last_stop_time = datetime.now(timezone.utc)
        self._set_state(registration, ServiceState.STOPPED)
        self._update_health(registration, HealthStatus.UNKNOWN)

        logger.info(f"Service stopped: {name}")
        self._emit(KernelEvents.SERVICE_STOPPED, {"name": name})

    async def _native_restart_locked(self, registration: ServiceRegistration) -> None:
        name = registration.name
        self._check_dependencies(registration)

        if registration.state is ServiceState.RUNNING:
            self._set_state(registration, ServiceState.STOPPING)
            self._accumulate_uptime(registration)
        else:
            self._set_state(registration, ServiceState.STARTING)

        with create_span(
            "service.restart",
            attributes={"service.name": name},
            tracer_name="kernel.registry",
        ), timed_service_operation(name, "restart") as op:
            try:
                await maybe_await(registration.service.restart())
            except Exception as exc:
                op["status"] = "error"
                self._record_failure(registration, "restart", exc)
                raise ServiceOperationError(name, "restart", cause=exc) from exc
            except asyncio.CancelledError as exc:
                op["status"] = "cancelled"
                self._record_failure(registration, "restart", exc)
                raise
            op["status"] = "ok"

        metrics = registration.metrics
        metrics.restart_count += 1
        metrics.last_start_time = datetime.now(timezone.utc)
        registration.running_since = self._clock()
        self._set_state(registration, ServiceState.RUNNING)
        await self._probe(registration)

    def _check_dependencies(self, registration: ServiceRegistration) -> None:
        for dependency in registration.dependencies:
            other = self._services.get(dependency)
            if other is None:
                raise MissingDependencyError(registration.name, dependency)
            if other.state is not ServiceState.RUNNING:
                raise DependencyNotRunningError(
                    registration.name, dependency, other.state.value
                )

    def _accumulate_uptime(self, registration: ServiceRegistration) -> None:
        if registration.running_since is not None:
            elapsed = self._clock() - registration.running_since
            registration.metrics.uptime_ms += max(elapsed, 0.0) * 1000
            registration.running_since = None

    def _record_failure(
        self,
        registration: ServiceRegistration,
        operation: str,
        exc: BaseException,
    ) -> None:
        error = str(exc) or type(exc).__name__
        metrics = registration.metrics
        metrics.error_count += 1
        metrics.last_error_time = datetime.now(timezone.utc)
        metrics.last_error = error
        registration.running_since = None

        self._set_state(registration, ServiceState.FAILED)
        self._update_health(registration, HealthStatus.UNHEALTHY)

        logger.error(f"Service '{registration.name}' failed to {operation}: {error}")
        self._emit(KernelEvents.SERVICE_FAILED, {
            "name": registration.name,
            "operation": operation,
            "error": error,
        })

    def _set_state(self, registration: ServiceRegistration, state: ServiceState) -> None:
        previous = registration.state
        if previous is state:
            return
        registration.state = state

        for listener in list(self._state_listeners):
            try:
                listener(registration.name, previous, state)
            except Exception as e:
                logger.error(f"State change listener raised for '{registration.name}': {e}")

        self._emit(KernelEvents.SERVICE_STATE_CHANGED, {
            "name": registration.name,
            "previous": previous.value,
            "current": state.value,
        })

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def check_health(self, name: str) -> HealthStatus:
        """
        Classify the health of one service. Never raises for a probe failure.

        A FAILED service is UNHEALTHY without probing. Otherwise the service's
        own health_check() decides; without one, RUNNING is HEALTHY and every
        other state is UNHEALTHY.
        """
        return await self._probe(self._get(name))

    async def _probe(self, registration: ServiceRegistration) -> HealthStatus:
        if registration.state is ServiceState.FAILED:
            status = HealthStatus.UNHEALTHY
        elif registration.supports_health_check:
            try:
                status = HealthStatus.coerce(
                    await maybe_await(registration.service.health_check())
                )
            except Exception as exc:
                error = HealthCheckError(registration.name, cause=exc)
                logger.warning(str(error))
                status = HealthStatus.UNHEALTHY
        elif registration.state is ServiceState.RUNNING:
            status = HealthStatus.HEALTHY
        else:
            status = HealthStatus.UNHEALTHY

        self._update_health(registration, status)
        return status

    def _update_health(self, registration: ServiceRegistration, status: HealthStatus) -> None:
        previous = registration.health
        registration.health = status
        if previous is not status:
            self._emit(KernelEvents.SERVICE_HEALTH_CHANGED, {
                "name": registration.name,
                "previous": previous.value,
                "current": status.value,
            })

    # -------------------------------------------------------------------------
    # Bulk operations
    # -------------------------------------------------------------------------

    def get_execution_order(self) -> List[str]:
        """
        Dependency-respecting start order: every service after its dependencies.

        Raises:
            MissingDependencyError: a declared dependency is not registered
            CircularDependencyError: the dependency graph has a cycle
        """
        names = list(self._services)
        index = {name: i for i, name in enumerate(names)}

        # Edges point from a service to its dependencies
        adjacency: List[List[int]] = []
        for name in names:
            edges = []
            for dependency in self._services[name].dependencies:
                if dependency not in index:
                    raise MissingDependencyError(name, dependency)
                edges.append(index[dependency])
            adjacency.append(edges)

        color = [_WHITE] * len(names)
        order: List[str] = []

        for root in range(len(names)):
            if color[root] != _WHITE:
                continue
            color[root] = _GRAY
            stack: List[List[int]] = [[root, 0]]

            while stack:
                frame = stack[-1]
                node, edge = frame
                if edge < len(adjacency[node]):
                    frame[1] += 1
                    dependency = adjacency[node][edge]
                    if color[dependency] == _GRAY:
                        path = [names[n] for n, _ in stack]
                        cycle = path[path.index(names[dependency]):] + [names[dependency]]
                        raise CircularDependencyError(names[dependency], cycle=cycle)
                    if color[dependency] == _WHITE:
                        color[dependency] = _GRAY
                        stack.append([dependency, 0])
                else:
                    stack.pop()
                    color[node] = _BLACK
                    order.append(names[node])

        return order

    async def start_all(self, fail_fast: bool = False) -> BulkOperationResult:
        """
        Start every service in dependency order, one at a time.

        The order is computed before anything is touched, so a cycle or a
        missing dependency leaves every service as it was. Individual start
        failures are logged and collected; with ``fail_fast`` the first one
        is raised instead.
        """
        order = self.get_execution_order()
        result = BulkOperationResult("start", order)
        logger.info(f"Starting {len(order)} services: {order}")

        for name in order:
            try:
                await self.start(name)
            except (ServiceOperationError, DependencyNotRunningError) as e:
                logger.error(f"Failed to start '{name}': {e}")
                result.failed[name] = e
                if fail_fast:
                    raise
            else:
                result.succeeded.append(name)

        return result

    async def stop_all(self, fail_fast: bool = False) -> BulkOperationResult:
        """Stop every service in reverse dependency order, one at a time."""
        order = list(reversed(self.get_execution_order()))
        result = BulkOperationResult("stop", order)
        logger.info(f"Stopping {len(order)} services: {order}")

        for name in order:
            try:
                await self.stop(name)
            except ServiceOperationError as e:
                logger.error(f"Failed to stop '{name}': {e}")
                result.failed[name] = e
                if fail_fast:
                    raise
            else:
                result.succeeded.append(name)

        return result

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def get_state(self, name: str) -> ServiceState:
        return self._get(name).state

    def get_health(self, name: str) -> HealthStatus:
        """Last health classification recorded for ``name``."""
        return self._get(name).health

    def get_metrics(self, name: str) -> ServiceMetrics:
        """
        Snapshot of a service's metrics, with uptime including the current
        run and the service's own custom metrics merged in.
        """
        registration = self._get(name)
        snapshot = replace(registration.metrics, custom={})
        if registration.running_since is not None:
            snapshot.uptime_ms += max(self._clock() - registration.running_since, 0.0) * 1000
        if registration.supports_metrics:
            try:
                custom = registration.service.get_metrics()
            except Exception as e:
                logger.warning(f"get_metrics() raised for '{name}': {e}")
            else:
                if isinstance(custom, Mapping):
                    snapshot.custom = dict(custom)
        return snapshot

    def get_registration(self, name: str) -> Optional[ServiceRegistration]:
        return self._services.get(name)

    def get_service_names(self) -> List[str]:
        return list(self._services)

    def get_all_services(self) -> List[ServiceRegistration]:
        return list(self._services.values())

    def get_services_in_state(self, *states: ServiceState) -> List[str]:
        return [name for name, reg in self._services.items() if reg.state in states]

    def on_state_change(self, listener: StateChangeListener) -> Subscription:
        """Call ``listener(name, previous, current)`` on every state transition."""
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return Subscription(remove)

    def to_dict(self) -> Dict[str, Any]:
        return {name: reg.to_dict() for name, reg in self._services.items()}

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def __len__(self) -> int:
        return len(self._services)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def dispose(self) -> None:
        """Stop every service, then clear the registry."""
        try:
            await self.stop_all()
        except (CircularDependencyError, MissingDependencyError) as e:
            # No valid order; stop in reverse registration order instead
            logger.warning(f"Stopping services without dependency order: {e}")
            for name in reversed(list(self._services)):
                try:
                    await self.stop(name)
                except ServiceOperationError as stop_error:
                    logger.error(f"Failed to stop '{name}': {stop_error}")

        self._services.clear()
        self._state_listeners.clear()
        logger.debug("Service registry disposed")

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, payload, source="service_registry")


__all__ = [
    "IService",
    "IRestartable",
    "IHealthCheckable",
    "IMetricsProvider",
    "ServiceMetadata",
    "ServiceMetrics",
    "ServiceRegistration",
    "BulkOperationResult",
    "ServiceRegistry",
    "StateChangeListener",
]
