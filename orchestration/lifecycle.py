"""
Kernel - Lifecycle Manager

Drives process activation through a fixed, strictly ordered sequence of
phases and runs the mirrored deactivation path.

Activation:
    INITIALIZING -> DETECTING_ENVIRONMENT -> LOADING_CONFIG -> INDEXING ->
    REGISTERING_PROVIDERS -> STARTING_WATCHERS -> INITIALIZING_AUXILIARY -> READY

Deactivation:
    DEACTIVATING -> DEACTIVATED

Every transition is appended to the phase history. A handler that raises
attaches its error to the entry just recorded, aborts the remaining phases
and leaves the manager not ready for that attempt.

Usage:
    manager = LifecycleManager(container, event_bus=bus, configure=seed)
    manager.add_phase_handler(LifecyclePhase.LOADING_CONFIG, load_settings)

    await manager.activate(host_context)
    assert manager.is_ready
    await manager.deactivate()
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    MutableMapping,
    Optional,
    Tuple,
)

from config import LifecycleConfig
from core.errors import (
    ActivationInProgressError,
    KernelError,
    LifecyclePhaseError,
    RecoveryFailedError,
)
from core.types import MaybeAwaitable, ServiceKeys, Subscription, maybe_await
from di.container import Container
from observability.logging import bind_context
from observability.metrics import record_recovery_attempt, timed_phase
from observability.tracing import create_span
from orchestration.event_bus import EventBus, KernelEvents

logger = logging.getLogger("kernel.lifecycle")

STATE_STORE_KEY = "kernel.lifecycle"


class LifecyclePhase(Enum):
    """Process lifecycle phases, in the order they are entered."""

    INITIALIZING = "initializing"
    DETECTING_ENVIRONMENT = "detecting_environment"
    LOADING_CONFIG = "loading_config"
    INDEXING = "indexing"
    REGISTERING_PROVIDERS = "registering_providers"
    STARTING_WATCHERS = "starting_watchers"
    INITIALIZING_AUXILIARY = "initializing_auxiliary"
    READY = "ready"
    DEACTIVATING = "deactivating"
    DEACTIVATED = "deactivated"


ACTIVATION_SEQUENCE: Tuple[LifecyclePhase, ...] = (
    LifecyclePhase.INITIALIZING,
    LifecyclePhase.DETECTING_ENVIRONMENT,
    LifecyclePhase.LOADING_CONFIG,
    LifecyclePhase.INDEXING,
    LifecyclePhase.REGISTERING_PROVIDERS,
    LifecyclePhase.STARTING_WATCHERS,
    LifecyclePhase.INITIALIZING_AUXILIARY,
    LifecyclePhase.READY,
)


@dataclass(frozen=True)
class LifecycleStatus:
    """Immutable record of one phase transition."""

    phase: LifecyclePhase
    timestamp: datetime
    attempt: int
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "timestamp": self.timestamp.isoformat(),
            "attempt": self.attempt,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class PhaseContext:
    """What a phase handler gets to work with."""

    phase: LifecyclePhase
    container: Container
    host_context: Any = None
    event_bus: Optional[EventBus] = None
    attempt: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)

    def resolve(self, name: str) -> Any:
        return self.container.resolve(name)


PhaseHandler = Callable[[PhaseContext], MaybeAwaitable[None]]
ConfigureCallback = Callable[[Container], MaybeAwaitable[None]]
ReloadCallback = Callable[[BaseException], MaybeAwaitable[None]]


class LifecycleManager:
    """
    Phased activation/deactivation state machine.

    Built-in work per phase:
    - INITIALIZING: the ``configure`` callback seeds the container
    - ``config.services_phase``: the service registry starts every service
    - READY: the ready flag is set, ``lifecycle:activated`` is emitted and the
      health monitor is started

    Handlers added with ``add_phase_handler`` run after the built-in work of
    their phase, in the order they were added.
    """

    def __init__(
        self,
        container: Container,
        *,
        event_bus: Optional[EventBus] = None,
        configure: Optional[ConfigureCallback] = None,
        config: Optional[LifecycleConfig] = None,
        on_reload_requested: Optional[ReloadCallback] = None,
        state_store: Optional[MutableMapping[str, Any]] = None,
    ):
        self._container = container
        self._event_bus = event_bus
        self._configure = configure
        self._config = config or LifecycleConfig()
        self._services_phase = LifecyclePhase(self._config.services_phase)
        self._on_reload_requested = on_reload_requested
        self._state_store = state_store

        self._handlers: Dict[LifecyclePhase, List[PhaseHandler]] = {
            phase: [] for phase in ACTIVATION_SEQUENCE
        }
        self._disposables: List[Any] = []
        self._history: List[LifecycleStatus] = []
        self._phase = LifecyclePhase.INITIALIZING
        self._ready = False
        self._attempt = 0
        self._host_context: Any = None
        self._activated_at: Optional[float] = None
        self._transitioning = False
        self._recovering = False
        self._services_snapshot: Dict[str, Any] = {}

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def add_phase_handler(self, phase: LifecyclePhase, handler: PhaseHandler) -> Subscription:
        """Run ``handler`` every time ``phase`` is entered during activation."""
        if phase not in self._handlers:
            raise ValueError(f"Handlers can only be added to activation phases, not {phase.value}")
        handlers = self._handlers[phase]
        handlers.append(handler)

        def remove() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return Subscription(remove)

    def register_disposable(self, disposable: Any) -> Any:
        """
        Dispose ``disposable`` at the next deactivation (last registered,
        first disposed). Accepts objects with dispose()/close() or plain
        callables.
        """
        self._disposables.append(disposable)
        return disposable

    # -------------------------------------------------------------------------
    # Activation
    # -------------------------------------------------------------------------

    async def activate(self, host_context: Any = None) -> None:
        """
        Run every activation phase in order.

        Raises:
            ActivationInProgressError: another activate/deactivate is running
            LifecyclePhaseError: a phase failed; later phases did not run
        """
        if self._transitioning:
            raise ActivationInProgressError("Activation or deactivation already in progress")
        if self._ready:
            logger.warning("activate() called while already active; ignoring")
            return

        self._transitioning = True
        self._attempt += 1
        self._ready = False
        self._host_context = host_context
        bind_context(lifecycle_attempt=self._attempt)
        started = time.perf_counter()
        logger.info(f"Activating (attempt {self._attempt})...")

        try:
            for phase in ACTIVATION_SEQUENCE:
                await self._run_phase(phase)
        except LifecyclePhaseError:
            self._ready = False
            raise
        finally:
            self._transitioning = False

        self._activated_at = time.monotonic()
        logger.info(
            f"Activation complete (attempt {self._attempt}, "
            f"duration={(time.perf_counter() - started) * 1000:.0f}ms)"
        )

    async def _run_phase(self, phase: LifecyclePhase) -> None:
        self._enter(phase)
        self._emit(KernelEvents.PHASE_STARTED, {"phase": phase.value, "attempt": self._attempt})

        context = PhaseContext(
            phase=phase,
            container=self._container,
            host_context=self._host_context,
            event_bus=self._event_bus,
            attempt=self._attempt,
        )
        started = time.perf_counter()

        with create_span(
            "lifecycle.phase",
            attributes={"phase.name": phase.value, "lifecycle.attempt": self._attempt},
            tracer_name="kernel.lifecycle",
        ), timed_phase(phase.value) as timing:
            try:
                await self._run_builtin(phase)
                for handler in list(self._handlers[phase]):
                    await maybe_await(handler(context))
            except Exception as exc:
                timing["status"] = "error"
                self._attach_error(exc)
                logger.error(f"Lifecycle phase '{phase.value}' failed: {exc}")
                self._emit(KernelEvents.PHASE_FAILED, {
                    "phase": phase.value,
                    "attempt": self._attempt,
                    "error": str(exc),
                })
                raise LifecyclePhaseError(phase, cause=exc) from exc
            timing["status"] = "ok"

        duration_ms = (time.perf_counter() - started) * 1000
        logger.debug(f"Lifecycle phase '{phase.value}' completed ({duration_ms:.0f}ms)")
        self._emit(KernelEvents.PHASE_COMPLETED, {
            "phase": phase.value,
            "attempt": self._attempt,
            "duration_ms": duration_ms,
        })

    async def _run_builtin(self, phase: LifecyclePhase) -> None:
        if phase is LifecyclePhase.INITIALIZING and self._configure is not None:
            await maybe_await(self._configure(self._container))

        if phase is self._services_phase:
            await self._start_services()

        if phase is LifecyclePhase.READY:
            self._ready = True
            self._emit(KernelEvents.LIFECYCLE_ACTIVATED, {"attempt": self._attempt})
            if self._config.start_health_monitor and self._container.has(ServiceKeys.HEALTH_MONITOR):
                monitor = self._container.resolve(ServiceKeys.HEALTH_MONITOR)
                await monitor.start()

    async def _start_services(self) -> None:
        if not self._container.has(ServiceKeys.SERVICE_REGISTRY):
            logger.debug("No service registry registered; skipping service startup")
            return

        registry = self._container.resolve(ServiceKeys.SERVICE_REGISTRY)
        result = await registry.start_all()
        if result.failed:
            logger.warning(f"Services failed to start: {sorted(result.failed)}")
            if self._config.fail_on_service_error:
                raise next(iter(result.failed.values()))

    def _enter(self, phase: LifecyclePhase) -> None:
        self._phase = phase
        self._history.append(LifecycleStatus(
            phase=phase,
            timestamp=datetime.now(timezone.utc),
            attempt=self._attempt,
        ))
        logger.debug(f"Entered lifecycle phase: {phase.value}")

    def _attach_error(self, exc: BaseException) -> None:
        if self._history:
            self._history[-1] = replace(
                self._history[-1],
                error=str(exc),
                error_type=type(exc).__name__,
            )

    # -------------------------------------------------------------------------
    # Deactivation
    # -------------------------------------------------------------------------

    async def deactivate(self) -> None:
        """
        Stop health checks and services, dispose one-off disposables and the
        container, then mark DEACTIVATED.

        Safe to call without a completed activate(); a second call is a no-op.
        """
        if self._transitioning:
            raise ActivationInProgressError("Activation or deactivation already in progress")
        if self._phase is LifecyclePhase.DEACTIVATED:
            return

        self._transitioning = True
        self._ready = False
        self._activated_at = None
        logger.info("Deactivating...")

        try:
            self._enter(LifecyclePhase.DEACTIVATING)
            self._emit(KernelEvents.LIFECYCLE_DEACTIVATING, {"attempt": self._attempt})

            await self._stop_health_monitor()
            await self._stop_services()
            await self._dispose_disposables()

            try:
                await self._container.dispose_async()
            except Exception as e:
                logger.error(f"Error disposing container: {e}")

            self._enter(LifecyclePhase.DEACTIVATED)
            self._emit(KernelEvents.LIFECYCLE_DEACTIVATED, {"attempt": self._attempt})
            self._persist_report()
        finally:
            self._transitioning = False

        logger.info("Deactivation complete")

    async def _stop_health_monitor(self) -> None:
        # Only a monitor that was actually built needs stopping
        if not self._container.is_resolved(ServiceKeys.HEALTH_MONITOR):
            return
        try:
            await self._container.resolve(ServiceKeys.HEALTH_MONITOR).stop()
        except Exception as e:
            logger.error(f"Error stopping health monitor: {e}")

    async def _stop_services(self) -> None:
        if not self._container.is_resolved(ServiceKeys.SERVICE_REGISTRY):
            return
        registry = self._container.resolve(ServiceKeys.SERVICE_REGISTRY)
        try:
            result = await registry.stop_all()
            if result.failed:
                logger.warning(f"Services failed to stop: {sorted(result.failed)}")
        except KernelError as e:
            logger.error(f"Error stopping services: {e}")
        self._services_snapshot = registry.to_dict()

    async def _dispose_disposables(self) -> None:
        while self._disposables:
            disposable = self._disposables.pop()
            try:
                if hasattr(disposable, "dispose"):
                    result = disposable.dispose()
                elif hasattr(disposable, "close"):
                    result = disposable.close()
                else:
                    result = disposable()
                await maybe_await(result)
            except Exception as e:
                logger.error(f"Error disposing {disposable!r}: {e}")

    # -------------------------------------------------------------------------
    # Restart / recovery
    # -------------------------------------------------------------------------

    async def restart(self) -> None:
        """Full deactivate followed by a fresh activate with the same host context."""
        host_context = self._host_context
        await self.deactivate()
        await self.activate(host_context)

    async def recover_from_error(self, error: BaseException) -> None:
        """
        Try one restart after ``error``.

        If the restart fails too, ask the host for a reload and raise
        RecoveryFailedError instead of retrying.
        """
        if self._recovering:
            logger.warning(f"Recovery already in progress; ignoring error: {error}")
            return

        self._recovering = True
        logger.warning(f"Attempting recovery from error: {error}")
        self._emit(KernelEvents.RECOVERY_ATTEMPT, {"target": "lifecycle", "error": str(error)})

        try:
            await self.restart()
        except Exception as exc:
            record_recovery_attempt("lifecycle", succeeded=False)
            logger.critical(f"Recovery failed, reload required: {exc}")
            self._emit(KernelEvents.RECOVERY_FAILED, {"target": "lifecycle", "error": str(exc)})
            self._emit(KernelEvents.RELOAD_REQUESTED, {"reason": str(exc)})
            await self._request_reload(exc)
            raise RecoveryFailedError(cause=exc) from exc
        else:
            record_recovery_attempt("lifecycle", succeeded=True)
            logger.info("Recovery succeeded")
            self._emit(KernelEvents.RECOVERY_SUCCEEDED, {"target": "lifecycle"})
        finally:
            self._recovering = False

    async def _request_reload(self, exc: BaseException) -> None:
        if self._on_reload_requested is None:
            return
        try:
            await maybe_await(self._on_reload_requested(exc))
        except Exception as e:
            logger.error(f"Reload callback raised: {e}")

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def current_phase(self) -> LifecyclePhase:
        return self._phase

    @property
    def history(self) -> Tuple[LifecycleStatus, ...]:
        return tuple(self._history)

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def host_context(self) -> Any:
        return self._host_context

    @property
    def container(self) -> Container:
        return self._container

    @property
    def uptime_seconds(self) -> float:
        if self._activated_at is None:
            return 0.0
        return time.monotonic() - self._activated_at

    def get_failed_phase(self) -> Optional[LifecycleStatus]:
        """Most recent history entry carrying an error, if any."""
        for status in reversed(self._history):
            if status.error is not None:
                return status
        return None

    def get_lifecycle_report(self) -> Dict[str, Any]:
        """Diagnostic snapshot: phase, readiness, history and service metrics."""
        services = self._services_snapshot
        if self._container.is_resolved(ServiceKeys.SERVICE_REGISTRY):
            services = self._container.resolve(ServiceKeys.SERVICE_REGISTRY).to_dict()

        return {
            "phase": self._phase.value,
            "ready": self._ready,
            "attempt": self._attempt,
            "uptime_seconds": self.uptime_seconds,
            "history": [status.to_dict() for status in self._history],
            "total_transitions": len(self._history),
            "failed_transitions": sum(1 for s in self._history if s.error is not None),
            "services": services,
        }

    def _persist_report(self) -> None:
        if self._state_store is None or not self._config.persist_state:
            return
        try:
            self._state_store[STATE_STORE_KEY] = self.get_lifecycle_report()
        except Exception as e:
            logger.warning(f"Could not persist lifecycle report: {e}")

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, payload, source="lifecycle_manager")


__all__ = [
    "LifecyclePhase",
    "LifecycleStatus",
    "PhaseContext",
    "PhaseHandler",
    "LifecycleManager",
    "ACTIVATION_SEQUENCE",
    "STATE_STORE_KEY",
]
