"""
Kernel - Health Monitor

Periodic control loop that aggregates service health, provider statistics
and process metrics into a single verdict, and restarts unhealthy services.

Checks per tick:
- ``service:<name>``: passes only when the service reports HEALTHY
- ``providers``: passes when no external provider has failed
- ``memory``: resident set size does not exceed the configured threshold
- ``error_rate``: error events per minute do not exceed the threshold

Overall health is the AND of all checks. A periodic tick that finds a check
still in flight is skipped.

Usage:
    monitor = HealthMonitor(registry, event_bus, HealthMonitorConfig(interval_seconds=30))
    await monitor.start()
    ...
    await monitor.stop()
"""
from __future__ import annotations

import asyncio
import gc
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

import psutil

from config import HealthMonitorConfig
from core.errors import KernelError
from core.types import HealthStatus, MaybeAwaitable, Subscription, maybe_await
from observability.logging import HealthLogger, get_logger
from observability.metrics import record_health_check, record_recovery_attempt
from observability.tracing import span_decorator
from orchestration.event_bus import EventBus, KernelEvent, KernelEvents
from orchestration.service_registry import ServiceRegistry

logger = get_logger("kernel.health")

SERVICE_CHECK_PREFIX = "service:"
BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class ProviderStatistics:
    """Counts reported by the external provider subsystem."""

    total: int = 0
    active: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "active": self.active, "failed": self.failed}


ProviderStatsSource = Callable[[], MaybeAwaitable[ProviderStatistics]]


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one health check; built fresh on every tick."""

    healthy: bool
    checks: Mapping[str, bool]
    errors: Tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: float = 0.0

    @property
    def failed_checks(self) -> List[str]:
        return [name for name, passed in self.checks.items() if not passed]

    @property
    def failed_services(self) -> List[str]:
        return [
            name[len(SERVICE_CHECK_PREFIX):]
            for name in self.failed_checks
            if name.startswith(SERVICE_CHECK_PREFIX)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checks": dict(self.checks),
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass(frozen=True)
class HealthMetrics:
    """Process-level metrics, read live on every call."""

    memory_usage: float
    cpu_usage: float
    error_rate: float
    last_health_check_time: Optional[datetime]
    uptime_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_usage_mb": round(self.memory_usage, 2),
            "cpu_usage_percent": self.cpu_usage,
            "error_rate_per_minute": round(self.error_rate, 3),
            "last_health_check_time": (
                self.last_health_check_time.isoformat() if self.last_health_check_time else None
            ),
            "uptime_ms": round(self.uptime_ms, 3),
        }


class HealthMonitor:
    """
    Periodic health checker with automatic recovery.

    Error events (``service:failed`` and ``error:*``) seen on the event bus
    feed the error-rate check. ``dispose()`` only stops the timer and those
    subscriptions; it never stops services.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        event_bus: Optional[EventBus] = None,
        config: Optional[HealthMonitorConfig] = None,
        *,
        provider_stats: Optional[ProviderStatsSource] = None,
        gc_hook: Optional[Callable[[], Any]] = gc.collect,
        process: Optional[psutil.Process] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._event_bus = event_bus
        self._config = config or HealthMonitorConfig()
        self._provider_stats = provider_stats
        self._gc_hook = gc_hook
        self._process = process
        self._clock = clock

        self._check_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._started_at: Optional[float] = None

        self._last_result: Optional[HealthCheckResult] = None
        self._last_provider_stats: Optional[ProviderStatistics] = None
        self._error_times: Deque[float] = deque()
        self._check_count = 0
        self._skipped_ticks = 0
        self._recovery_attempts = 0
        self._recovery_successes = 0
        self._recovery_failures = 0

        self._log = HealthLogger()
        self._subscriptions: List[Subscription] = []
        if event_bus is not None:
            self._subscriptions.append(
                event_bus.on_type(KernelEvents.SERVICE_FAILED, self._on_error_event)
            )
            self._subscriptions.append(
                event_bus.on_type(f"{KernelEvents.ERROR_PREFIX}*", self._on_error_event)
            )

    # -------------------------------------------------------------------------
    # Timer
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Run one check now, then one every ``interval_seconds``."""
        if self.is_running:
            return
        if not self._config.enabled:
            logger.info("Health monitor disabled by configuration")
            return

        self._started_at = self._clock()
        self._stop_event.clear()
        await self.perform_health_check()
        self._task = asyncio.create_task(self._run(), name="kernel-health-monitor")
        logger.info("Health monitor started", interval_seconds=self._config.interval_seconds)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._config.interval_seconds,
                )
                # Stop requested
                break
            except asyncio.TimeoutError:
                await self._tick()

    async def _tick(self) -> None:
        if self._check_lock.locked():
            self._skipped_ticks += 1
            self._log.tick_skipped()
            return
        try:
            await self.perform_health_check()
        except Exception as e:
            logger.error("Health check tick raised", error=str(e))

    async def stop(self) -> None:
        """
        Stop the periodic timer.

        A check in flight (and any restart it started) is allowed to finish
        within ``stop_timeout_seconds``; only then is the timer cancelled.
        """
        task, self._task = self._task, None
        self._stop_event.set()
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._config.stop_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "In-flight health check did not finish; cancelling",
                timeout_seconds=self._config.stop_timeout_seconds,
            )
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Health monitor stopped")

    async def dispose(self) -> None:
        await self.stop()
        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions.clear()

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    @span_decorator("health.check", attributes={"component": "health_monitor"})
    async def perform_health_check(self) -> HealthCheckResult:
        """
        Run every check once and, when unhealthy and auto recovery is on,
        attempt recovery. Waits for an in-flight check to finish first.
        """
        async with self._check_lock:
            started = time.perf_counter()
            checks, errors = await self._run_checks()
            result = HealthCheckResult(
                healthy=all(checks.values()),
                checks=checks,
                errors=tuple(errors),
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            self._last_result = result
            self._check_count += 1

            record_health_check(result.healthy)
            self._log.check_completed(result.healthy, result.failed_checks, result.duration_ms / 1000)
            self._emit(KernelEvents.HEALTH_CHECK, result.to_dict())

            if not result.healthy:
                self._emit(KernelEvents.HEALTH_DEGRADED, {
                    "failed_checks": result.failed_checks,
                    "errors": list(result.errors),
                })
                if self._config.auto_recovery:
                    await self.attempt_recovery(result)

            return result

    async def _run_checks(self) -> Tuple[Dict[str, bool], List[str]]:
        checks: Dict[str, bool] = {}
        errors: List[str] = []

        for name in self._registry.get_service_names():
            try:
                status = await self._registry.check_health(name)
            except KernelError as e:
                # Unregistered between listing and probing
                logger.debug("Service vanished during health check", service=name, error=str(e))
                continue
            passed = status is HealthStatus.HEALTHY
            checks[f"{SERVICE_CHECK_PREFIX}{name}"] = passed
            if not passed:
                errors.append(f"Service '{name}' is {status.value}")

        if self._provider_stats is not None:
            try:
                stats = await maybe_await(self._provider_stats())
            except Exception as e:
                self._log.probe_failed("providers", str(e))
                checks["providers"] = False
                errors.append(f"Provider statistics unavailable: {e}")
            else:
                self._last_provider_stats = stats
                checks["providers"] = stats.failed == 0
                if stats.failed:
                    errors.append(f"{stats.failed} of {stats.total} providers failed")

        try:
            memory_mb = self._memory_mb()
        except psutil.Error as e:
            self._log.probe_failed("memory", str(e))
            checks["memory"] = False
            errors.append(f"Memory usage unavailable: {e}")
        else:
            checks["memory"] = memory_mb <= self._config.memory_threshold_mb
            if not checks["memory"]:
                errors.append(
                    f"Memory usage {memory_mb:.1f}MB exceeds "
                    f"{self._config.memory_threshold_mb:.0f}MB"
                )

        error_rate = self._error_rate()
        checks["error_rate"] = error_rate <= self._config.error_rate_threshold
        if not checks["error_rate"]:
            errors.append(
                f"Error rate {error_rate:.1f}/min exceeds "
                f"{self._config.error_rate_threshold:.1f}/min"
            )

        return checks, errors

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def attempt_recovery(self, result: HealthCheckResult) -> Dict[str, bool]:
        """
        Restart every service whose check failed, one at a time.

        A failed restart is logged and does not stop attempts on the others.
        If the memory check failed, request garbage collection as well.

        Returns:
            Mapping of service name to whether its restart succeeded
        """
        targets = self._recovery_order(result.failed_services)
        outcomes: Dict[str, bool] = {}
        if targets:
            self._log.recovery_started(targets)

        for name in targets:
            self._recovery_attempts += 1
            self._emit(KernelEvents.RECOVERY_ATTEMPT, {"target": name})
            try:
                await self._registry.restart(name)
            except Exception as e:
                outcomes[name] = False
                self._recovery_failures += 1
                self._log.recovery_result(name, succeeded=False, error=str(e))
                self._emit(KernelEvents.RECOVERY_FAILED, {"target": name, "error": str(e)})
            else:
                outcomes[name] = True
                self._recovery_successes += 1
                self._log.recovery_result(name, succeeded=True)
                self._emit(KernelEvents.RECOVERY_SUCCEEDED, {"target": name})
            record_recovery_attempt(name, outcomes[name])

        if not result.checks.get("memory", True):
            self._request_gc()

        return outcomes

    def _recovery_order(self, targets: List[str]) -> List[str]:
        """Dependencies first, so a dependent is restarted after what it needs."""
        try:
            order = self._registry.get_execution_order()
        except KernelError as e:
            logger.warning("No dependency order for recovery; using check order", error=str(e))
            return targets
        position = {name: i for i, name in enumerate(order)}
        return sorted(targets, key=lambda name: position.get(name, len(order)))

    def _request_gc(self) -> None:
        self._emit(KernelEvents.GC_REQUESTED, {"threshold_mb": self._config.memory_threshold_mb})
        if self._gc_hook is None:
            return
        try:
            self._gc_hook()
        except Exception as e:
            logger.warning("Garbage collection hook raised", error=str(e))

    # -------------------------------------------------------------------------
    # Process metrics
    # -------------------------------------------------------------------------

    def _get_process(self) -> psutil.Process:
        if self._process is None:
            self._process = psutil.Process()
        return self._process

    def _memory_mb(self) -> float:
        return self._get_process().memory_info().rss / BYTES_PER_MB

    def _on_error_event(self, event: KernelEvent) -> None:
        self.record_error()

    def record_error(self) -> None:
        """Count one error towards the error-rate check."""
        self._error_times.append(self._clock())

    def _error_rate(self) -> float:
        """Errors per minute over the configured window."""
        window = self._config.error_window_seconds
        cutoff = self._clock() - window
        while self._error_times and self._error_times[0] < cutoff:
            self._error_times.popleft()
        return len(self._error_times) * 60.0 / window

    def get_metrics(self) -> HealthMetrics:
        process = self._get_process()
        try:
            memory_mb = process.memory_info().rss / BYTES_PER_MB
            cpu = process.cpu_percent(interval=None)
        except psutil.Error as e:
            logger.warning("Process metrics unavailable", error=str(e))
            memory_mb, cpu = 0.0, 0.0

        uptime_ms = 0.0
        if self._started_at is not None:
            uptime_ms = (self._clock() - self._started_at) * 1000

        return HealthMetrics(
            memory_usage=memory_mb,
            cpu_usage=cpu,
            error_rate=self._error_rate(),
            last_health_check_time=self._last_result.timestamp if self._last_result else None,
            uptime_ms=uptime_ms,
        )

    @property
    def last_result(self) -> Optional[HealthCheckResult]:
        return self._last_result

    def get_dashboard_data(self) -> Dict[str, Any]:
        """Read-only snapshot for external reporting."""
        services = {
            registration.name: {
                "state": registration.state.value,
                "health": registration.health.value,
                "metrics": self._registry.get_metrics(registration.name).to_dict(),
            }
            for registration in self._registry.get_all_services()
        }
        return {
            "metrics": self.get_metrics().to_dict(),
            "services": services,
            "providers": (
                self._last_provider_stats.to_dict() if self._last_provider_stats else None
            ),
            "last_result": self._last_result.to_dict() if self._last_result else None,
            "monitor": {
                "running": self.is_running,
                "interval_seconds": self._config.interval_seconds,
                "check_count": self._check_count,
                "skipped_ticks": self._skipped_ticks,
            },
            "recovery": {
                "enabled": self._config.auto_recovery,
                "attempts": self._recovery_attempts,
                "successes": self._recovery_successes,
                "failures": self._recovery_failures,
            },
        }

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, payload, source="health_monitor")


__all__ = [
    "HealthMonitor",
    "HealthCheckResult",
    "HealthMetrics",
    "ProviderStatistics",
    "ProviderStatsSource",
]
