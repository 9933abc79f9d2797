"""
Kernel - Composition Root

Builds the kernel from one configuration object and owns the wiring between
its components. There are no process-wide instances: each call to
``create_kernel`` produces an independent kernel, and "resetting" means
building a new one.

Seeding (runs at the start of every activation):
    KernelConfig      -> the config (host-owned)
    EventBus          -> the kernel's event bus (host-owned, outlives the container)
    ServiceRegistry   -> singleton, depends on EventBus
    HealthMonitor     -> singleton, depends on ServiceRegistry and EventBus
    LifecycleManager  -> the lifecycle manager (host-owned)
    ...then the host's own ``configure(container)`` callback

Usage:
    async def register_services(container):
        registry = container.resolve(ServiceKeys.SERVICE_REGISTRY)
        registry.register(ServiceMetadata("db"), Database())

    async with bootstrap(configure=register_services) as kernel:
        await kernel.wait_for_shutdown()
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, MutableMapping, Optional

from config import KernelConfig
from core.types import MaybeAwaitable, ServiceKeys, maybe_await
from di.container import Container
from observability import (
    setup_logging,
    setup_metrics,
    setup_tracing,
    shutdown_metrics,
    shutdown_tracing,
)
from orchestration.event_bus import EventBus
from orchestration.health_monitor import HealthMonitor, ProviderStatsSource
from orchestration.lifecycle import LifecycleManager, ReloadCallback
from orchestration.service_registry import ServiceRegistry

logger = logging.getLogger("kernel.bootstrap")

HostConfigure = Callable[[Container], MaybeAwaitable[None]]


@dataclass
class Kernel:
    """Handle on one assembled kernel."""

    config: KernelConfig
    container: Container
    event_bus: EventBus
    lifecycle: LifecycleManager
    _shutdown_requested: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def registry(self) -> ServiceRegistry:
        return self.container.resolve(ServiceKeys.SERVICE_REGISTRY)

    @property
    def health_monitor(self) -> HealthMonitor:
        return self.container.resolve(ServiceKeys.HEALTH_MONITOR)

    @property
    def is_ready(self) -> bool:
        return self.lifecycle.is_ready

    async def activate(self, host_context: Any = None) -> None:
        await self.lifecycle.activate(host_context)

    async def deactivate(self) -> None:
        await self.lifecycle.deactivate()

    def request_shutdown(self) -> None:
        """Request graceful shutdown (called by signal handlers)."""
        self._shutdown_requested.set()

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        await self._shutdown_requested.wait()


def create_kernel(
    config: Optional[KernelConfig] = None,
    configure: Optional[HostConfigure] = None,
    *,
    provider_stats: Optional[ProviderStatsSource] = None,
    on_reload_requested: Optional[ReloadCallback] = None,
    state_store: Optional[MutableMapping[str, Any]] = None,
) -> Kernel:
    """
    Assemble an event bus, container and lifecycle manager.

    Nothing is started: services are registered and started during
    ``activate()``, when the container is seeded.
    """
    config = config or KernelConfig()
    container = Container()
    event_bus = EventBus(history_size=config.event_bus.history_size)

    async def seed(target: Container) -> None:
        target.register_instance(ServiceKeys.CONFIG, config, owned=False)
        target.register_instance(ServiceKeys.EVENT_BUS, event_bus, owned=False)
        target.register_instance(ServiceKeys.LIFECYCLE_MANAGER, lifecycle, owned=False)
        target.register_singleton(
            ServiceKeys.SERVICE_REGISTRY,
            lambda c: ServiceRegistry(c.resolve(ServiceKeys.EVENT_BUS)),
            dependencies=[ServiceKeys.EVENT_BUS],
        )
        target.register_singleton(
            ServiceKeys.HEALTH_MONITOR,
            lambda c: HealthMonitor(
                c.resolve(ServiceKeys.SERVICE_REGISTRY),
                c.resolve(ServiceKeys.EVENT_BUS),
                config.health,
                provider_stats=provider_stats,
            ),
            dependencies=[ServiceKeys.SERVICE_REGISTRY, ServiceKeys.EVENT_BUS],
        )
        if configure is not None:
            await maybe_await(configure(target))

    lifecycle = LifecycleManager(
        container,
        event_bus=event_bus,
        configure=seed,
        config=config.lifecycle,
        on_reload_requested=on_reload_requested,
        state_store=state_store,
    )

    logger.debug(f"Kernel created (environment={config.environment.value})")
    return Kernel(
        config=config,
        container=container,
        event_bus=event_bus,
        lifecycle=lifecycle,
    )


@asynccontextmanager
async def bootstrap(
    config: Optional[KernelConfig] = None,
    configure: Optional[HostConfigure] = None,
    *,
    host_context: Any = None,
    setup_signals: bool = True,
    configure_logging: bool = True,
    enable_telemetry: bool = False,
    **kernel_options: Any,
) -> AsyncIterator[Kernel]:
    """
    Activate a kernel on entry and deactivate it on exit.

    Args:
        config: Kernel configuration (read from the environment if omitted)
        configure: Host callback that registers services into the container
        host_context: Opaque handle forwarded to phase handlers
        setup_signals: Install SIGTERM/SIGINT handlers that request shutdown
        configure_logging: Run ``setup_logging`` with ``config.logging``
        enable_telemetry: Set up OTLP tracing and metrics export

    Yields:
        The activated Kernel
    """
    config = config or KernelConfig()

    if configure_logging:
        setup_logging(config.logging)
    if enable_telemetry:
        setup_tracing(config.tracing)
        setup_metrics(config.metrics)

    kernel = create_kernel(config, configure, **kernel_options)

    # Set up signal handlers for graceful shutdown
    installed = []
    if setup_signals and sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, kernel.request_shutdown)
            installed.append(sig)

    try:
        await kernel.activate(host_context)
        yield kernel
    finally:
        await kernel.deactivate()
        if installed:
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)
        if enable_telemetry:
            shutdown_tracing()
            shutdown_metrics()


__all__ = [
    "Kernel",
    "create_kernel",
    "bootstrap",
]
