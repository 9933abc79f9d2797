"""
Kernel - Test Configuration

Pytest fixtures and service doubles shared by all tests.
"""
import asyncio
from typing import Any, Callable, List, Optional, Tuple

import pytest

from config import HealthMonitorConfig, LifecycleConfig
from core.types import HealthStatus
from di.container import Container
from orchestration.event_bus import EventBus
from orchestration.service_registry import ServiceRegistry

CallLog = List[Tuple[str, str]]


# =============================================================================
# SERVICE DOUBLES
# =============================================================================


class RecordingService:
    """Async service that records every call into a shared log."""

    def __init__(
        self,
        name: str,
        log: CallLog,
        *,
        fail_start: bool = False,
        fail_stop: bool = False,
    ):
        self.name = name
        self.log = log
        self.fail_start = fail_start
        self.fail_stop = fail_stop

    async def start(self) -> None:
        self.log.append(("start", self.name))
        if self.fail_start:
            raise RuntimeError(f"{self.name} refused to start")

    async def stop(self) -> None:
        self.log.append(("stop", self.name))
        if self.fail_stop:
            raise RuntimeError(f"{self.name} refused to stop")


class RestartableService(RecordingService):
    """Service with a native restart."""

    def __init__(self, name: str, log: CallLog, *, fail_restart: bool = False, **kwargs: Any):
        super().__init__(name, log, **kwargs)
        self.fail_restart = fail_restart

    async def restart(self) -> None:
        self.log.append(("restart", self.name))
        if self.fail_restart:
            raise RuntimeError(f"{self.name} refused to restart")


class ProbedService(RecordingService):
    """Service with its own health check; ``health`` may be an exception to raise."""

    def __init__(self, name: str, log: CallLog, *, health: Any = HealthStatus.HEALTHY, **kwargs: Any):
        super().__init__(name, log, **kwargs)
        self.health = health
        self.probes = 0

    def health_check(self) -> HealthStatus:
        self.probes += 1
        if isinstance(self.health, Exception):
            raise self.health
        return self.health


class MetricsService(RecordingService):
    """Service exposing custom metrics."""

    def get_metrics(self):
        return {"queue_depth": 3}


class SyncService:
    """Service whose start/stop are plain functions."""

    def __init__(self, name: str, log: CallLog):
        self.name = name
        self.log = log

    def start(self) -> None:
        self.log.append(("start", self.name))

    def stop(self) -> None:
        self.log.append(("stop", self.name))


class GatedService(RestartableService):
    """Service whose operations block until ``gate`` is set; set it to let them through."""

    def __init__(self, name: str, log: CallLog, *, open_gate: bool = False, **kwargs: Any):
        super().__init__(name, log, **kwargs)
        self.gate = asyncio.Event()
        if open_gate:
            self.gate.set()

    async def start(self) -> None:
        await super().start()
        await self.gate.wait()

    async def stop(self) -> None:
        await super().stop()
        await self.gate.wait()

    async def restart(self) -> None:
        await super().restart()
        await self.gate.wait()


class Disposable:
    """Records dispose() calls into a shared log."""

    def __init__(self, name: str, log: CallLog, *, fail: bool = False):
        self.name = name
        self.log = log
        self.fail = fail

    def dispose(self) -> None:
        self.log.append(("dispose", self.name))
        if self.fail:
            raise RuntimeError(f"{self.name} refused to dispose")


_KINDS = {
    "basic": RecordingService,
    "restartable": RestartableService,
    "probed": ProbedService,
    "metrics": MetricsService,
    "gated": GatedService,
}


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def call_log() -> CallLog:
    """Shared, ordered log of service calls."""
    return []


@pytest.fixture
def make_service(call_log) -> Callable[..., Any]:
    """Factory for service doubles writing to ``call_log``."""

    def factory(name: str, kind: str = "basic", **kwargs: Any):
        return _KINDS[kind](name, call_log, **kwargs)

    return factory


@pytest.fixture
def make_disposable(call_log) -> Callable[..., Disposable]:
    def factory(name: str, **kwargs: Any) -> Disposable:
        return Disposable(name, call_log, **kwargs)

    return factory


@pytest.fixture
def sync_service(call_log) -> SyncService:
    return SyncService("sync", call_log)


@pytest.fixture
def event_bus():
    """Event bus with a small history."""
    bus = EventBus(history_size=200)
    yield bus
    bus.dispose()


@pytest.fixture
def registry(event_bus) -> ServiceRegistry:
    return ServiceRegistry(event_bus)


@pytest.fixture
def container():
    c = Container()
    yield c
    c.dispose()


@pytest.fixture
def health_config() -> HealthMonitorConfig:
    """Health config with process thresholds that never trip."""
    return HealthMonitorConfig(
        enabled=True,
        interval_seconds=3600,
        memory_threshold_mb=1e9,
        error_rate_threshold=1e6,
        error_window_seconds=60,
        auto_recovery=True,
        stop_timeout_seconds=5,
    )


@pytest.fixture
def lifecycle_config() -> LifecycleConfig:
    return LifecycleConfig(
        start_health_monitor=False,
        services_phase="registering_providers",
        fail_on_service_error=False,
        persist_state=True,
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def event_types(bus: EventBus, prefix: Optional[str] = None) -> List[str]:
    """Types of recorded events, optionally filtered by prefix."""
    return [
        e.type for e in bus.get_history()
        if prefix is None or e.type.startswith(prefix)
    ]


@pytest.fixture
def history_types(event_bus) -> Callable[..., List[str]]:
    return lambda prefix=None: event_types(event_bus, prefix)
