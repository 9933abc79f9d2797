"""
Kernel - Dependency Injection Container

Provides a lightweight IoC container mapping string keys to factories with
a lifetime policy.

Features:
- Singleton, Scoped, and Transient lifetimes
- Factory functions receiving the container
- Pre-built instances registered as resolved singletons
- Declared dependencies resolved before the factory runs
- Child containers (forks) with independent caches
- Idempotent disposal of every cached instance
"""

from __future__ import annotations

import inspect
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Type,
    TypeVar,
    cast,
)

from core.errors import CircularDependencyError, ServiceNotFoundError

T = TypeVar("T")

Factory = Callable[["Container"], Any]

logger = logging.getLogger("kernel.container")


class ServiceLifetime(Enum):
    """Service lifetime options."""

    SINGLETON = "singleton"  # One instance per container
    SCOPED = "scoped"        # One instance per fork
    TRANSIENT = "transient"  # New instance every time


@dataclass
class ServiceDescriptor:
    """Describes how a service should be created and managed."""

    name: str
    factory: Optional[Factory] = None
    instance: Any = None
    lifetime: ServiceLifetime = ServiceLifetime.SINGLETON
    dependencies: List[str] = field(default_factory=list)
    owned: bool = True

    def __post_init__(self) -> None:
        if self.factory is None and self.instance is None:
            raise ValueError(f"Service '{self.name}' needs a factory or an instance")

    @property
    def is_instance(self) -> bool:
        return self.factory is None


class Container:
    """
    Dependency Injection Container.

    Manages service registration, resolution, and disposal. Construction is
    lazy: a factory runs on the first ``resolve`` of its name, never at
    registration time.

    Usage:
        container = Container()

        # Register services
        container.register_instance("EventBus", EventBus())
        container.register_singleton(
            "ServiceRegistry",
            lambda c: ServiceRegistry(c.resolve("EventBus")),
            dependencies=["EventBus"],
        )
        container.register_transient("Request", lambda c: Request())

        # Resolve services
        registry = container.resolve("ServiceRegistry")
    """

    def __init__(self) -> None:
        self._descriptors: Dict[str, ServiceDescriptor] = {}
        self._singletons: Dict[str, Any] = {}
        self._scoped: Dict[str, Any] = {}
        # Names in creation order, used to dispose LIFO
        self._creation_order: List[str] = []
        self._lock = threading.RLock()
        self._initializing: List[str] = []
        self._disposed = False

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(
        self,
        name: str,
        factory: Factory,
        lifetime: ServiceLifetime = ServiceLifetime.SINGLETON,
        dependencies: Optional[Sequence[str]] = None,
    ) -> "Container":
        """Register a factory under ``name`` with the given lifetime."""
        with self._lock:
            self._drop_cached(name)
            self._descriptors[name] = ServiceDescriptor(
                name=name,
                factory=factory,
                lifetime=lifetime,
                dependencies=list(dependencies or []),
            )
            self._disposed = False
        logger.debug(f"Registered {lifetime.value} service: {name}")
        return self

    def register_singleton(
        self,
        name: str,
        factory: Factory,
        dependencies: Optional[Sequence[str]] = None,
    ) -> "Container":
        """Register a singleton service."""
        return self.register(name, factory, ServiceLifetime.SINGLETON, dependencies)

    def register_scoped(
        self,
        name: str,
        factory: Factory,
        dependencies: Optional[Sequence[str]] = None,
    ) -> "Container":
        """Register a scoped service."""
        return self.register(name, factory, ServiceLifetime.SCOPED, dependencies)

    def register_transient(
        self,
        name: str,
        factory: Factory,
        dependencies: Optional[Sequence[str]] = None,
    ) -> "Container":
        """Register a transient service."""
        return self.register(name, factory, ServiceLifetime.TRANSIENT, dependencies)

    def register_instance(
        self,
        name: str,
        instance: Any,
        owned: bool = True,
    ) -> "Container":
        """
        Register an existing instance as an already-resolved singleton.

        ``owned=False`` keeps the instance out of ``dispose()``; use it for
        objects whose lifetime the host manages (e.g. an event bus that must
        outlive the container).
        """
        if instance is None:
            raise ValueError(f"Cannot register None as instance of '{name}'")
        with self._lock:
            self._drop_cached(name)
            self._descriptors[name] = ServiceDescriptor(
                name=name,
                instance=instance,
                lifetime=ServiceLifetime.SINGLETON,
                owned=owned,
            )
            self._singletons[name] = instance
            self._creation_order.append(name)
            self._disposed = False
        return self

    def _drop_cached(self, name: str) -> None:
        """Forget any cached instance of ``name`` (re-registration overwrites)."""
        if name in self._singletons or name in self._scoped:
            self._singletons.pop(name, None)
            self._scoped.pop(name, None)
            self._creation_order = [n for n in self._creation_order if n != name]

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def _get_descriptor(self, name: str) -> ServiceDescriptor:
        """Get service descriptor or raise error."""
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise ServiceNotFoundError(name)
        return descriptor

    def _create_instance(self, descriptor: ServiceDescriptor) -> Any:
        """Create a service instance, resolving declared dependencies first."""
        if descriptor.is_instance:
            return descriptor.instance

        name = descriptor.name
        with self._lock:
            # Detect circular dependencies across every lifetime
            if name in self._initializing:
                raise CircularDependencyError(
                    name, cycle=[*self._initializing[self._initializing.index(name):], name]
                )
            self._initializing.append(name)
            try:
                for dependency in descriptor.dependencies:
                    self.resolve(dependency)
                return cast(Factory, descriptor.factory)(self)
            finally:
                self._initializing.pop()

    def _resolve_cached(self, descriptor: ServiceDescriptor, cache: Dict[str, Any]) -> Any:
        name = descriptor.name
        with self._lock:
            if name not in cache:
                cache[name] = self._create_instance(descriptor)
                self._creation_order.append(name)
            return cache[name]

    def resolve(self, name: str, expected_type: Optional[Type[T]] = None) -> Any:
        """
        Resolve a service instance.

        Raises:
            ServiceNotFoundError: ``name`` is not registered
            CircularDependencyError: factories resolve each other recursively
            TypeError: ``expected_type`` is given and the instance is not one
        """
        descriptor = self._get_descriptor(name)

        if descriptor.lifetime == ServiceLifetime.SINGLETON:
            instance = self._resolve_cached(descriptor, self._singletons)
        elif descriptor.lifetime == ServiceLifetime.SCOPED:
            instance = self._resolve_cached(descriptor, self._scoped)
        else:  # TRANSIENT
            instance = self._create_instance(descriptor)

        if expected_type is not None and not isinstance(instance, expected_type):
            raise TypeError(
                f"Service '{name}' resolved to {type(instance).__name__}, "
                f"expected {expected_type.__name__}"
            )
        return instance

    def try_resolve(self, name: str) -> Optional[Any]:
        """Resolve ``name`` or return None when it is not registered."""
        if name not in self._descriptors:
            return None
        return self.resolve(name)

    def resolve_many(self, *names: str) -> List[Any]:
        """Resolve several services, in order."""
        return [self.resolve(name) for name in names]

    def has(self, name: str) -> bool:
        """Check if a service is registered."""
        return name in self._descriptors

    def is_resolved(self, name: str) -> bool:
        """Check whether a cached instance exists for ``name``."""
        return name in self._singletons or name in self._scoped

    def get_registered_names(self) -> List[str]:
        return list(self._descriptors)

    def get_lifetime(self, name: str) -> ServiceLifetime:
        return self._get_descriptor(name).lifetime

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    # -------------------------------------------------------------------------
    # Forks
    # -------------------------------------------------------------------------

    def create_child(self) -> "Container":
        """
        Fork this container.

        The child gets a copy of every registration and nothing else: it
        builds its own singleton and scoped instances. Pre-built instances
        are carried over but stay owned by the parent, so disposing the child
        never disposes them.
        """
        child = Container()
        with self._lock:
            for name, descriptor in self._descriptors.items():
                if descriptor.is_instance:
                    child.register_instance(name, descriptor.instance, owned=False)
                else:
                    child.register(
                        name,
                        descriptor.factory,  # type: ignore[arg-type]
                        descriptor.lifetime,
                        descriptor.dependencies,
                    )
        return child

    # -------------------------------------------------------------------------
    # Disposal
    # -------------------------------------------------------------------------

    def _owned_instances(self) -> Iterable[tuple]:
        """Cached instances this container owns, most recently created first."""
        seen = set()
        for name in reversed(self._creation_order):
            if name in seen:
                continue
            seen.add(name)
            descriptor = self._descriptors.get(name)
            if descriptor is not None and not descriptor.owned:
                continue
            if name in self._scoped:
                yield name, self._scoped[name]
            elif name in self._singletons:
                yield name, self._singletons[name]

    def _reset(self) -> None:
        self._descriptors.clear()
        self._singletons.clear()
        self._scoped.clear()
        self._creation_order.clear()
        self._initializing.clear()
        self._disposed = True

    def dispose(self) -> None:
        """
        Dispose every cached instance that exposes ``dispose()`` (or
        ``close()``), then clear all registrations.

        Calling dispose twice is a no-op. Instances whose dispose is a
        coroutine need ``dispose_async()``.
        """
        if self._disposed:
            return
        with self._lock:
            for name, instance in list(self._owned_instances()):
                try:
                    result = _call_disposer(instance)
                    if inspect.iscoroutine(result):
                        result.close()
                        logger.warning(
                            f"Service '{name}' has an async dispose; use dispose_async()"
                        )
                except Exception as e:
                    logger.error(f"Error disposing service '{name}': {e}")
            self._reset()
        logger.debug("Container disposed")

    async def dispose_async(self) -> None:
        """Dispose all cached instances, awaiting async disposers."""
        if self._disposed:
            return
        for name, instance in list(self._owned_instances()):
            try:
                result = _call_disposer(instance)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error disposing service '{name}': {e}")
        with self._lock:
            self._reset()
        logger.debug("Container disposed")

    @property
    def is_disposed(self) -> bool:
        return self._disposed


def _call_disposer(instance: Any) -> Any:
    """Invoke the instance's dispose() or close(), whichever exists."""
    if hasattr(instance, "dispose"):
        return instance.dispose()
    if hasattr(instance, "close"):
        return instance.close()
    return None
