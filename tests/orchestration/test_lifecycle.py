"""
Tests for orchestration/lifecycle.py - Lifecycle manager.

Tests cover:
- Ordered activation phases and phase handlers
- Phase failure semantics and history
- Service startup during activation
- Deactivation (services, disposables, container)
- Restart and error recovery
- Lifecycle report and persisted state
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from config import LifecycleConfig
from core.errors import (
    ActivationInProgressError,
    LifecyclePhaseError,
    RecoveryFailedError,
    ServiceOperationError,
)
from core.types import ServiceKeys, ServiceState
from di.container import Container
from orchestration.event_bus import KernelEvents
from orchestration.health_monitor import HealthMonitor
from orchestration.lifecycle import (
    ACTIVATION_SEQUENCE,
    STATE_STORE_KEY,
    LifecycleManager,
    LifecyclePhase,
)
from orchestration.service_registry import ServiceMetadata, ServiceRegistry


@pytest.fixture
def services():
    """Services to register on every activation: name -> (service, dependencies)."""
    return {}


@pytest.fixture
def seed(event_bus, services):
    """Container seeding callback mirroring the composition root."""

    def configure(container: Container) -> None:
        container.register_instance(ServiceKeys.EVENT_BUS, event_bus, owned=False)
        container.register_singleton(
            ServiceKeys.SERVICE_REGISTRY,
            lambda c: ServiceRegistry(c.resolve(ServiceKeys.EVENT_BUS)),
            dependencies=[ServiceKeys.EVENT_BUS],
        )
        registry = container.resolve(ServiceKeys.SERVICE_REGISTRY)
        for name, (service, deps) in services.items():
            registry.register(ServiceMetadata(name, dependencies=deps), service)

    return configure


@pytest.fixture
def make_manager(container, event_bus, seed, lifecycle_config):
    def factory(**kwargs):
        kwargs.setdefault("config", lifecycle_config)
        return LifecycleManager(container, event_bus=event_bus, configure=seed, **kwargs)

    return factory


@pytest.fixture
def manager(make_manager):
    return make_manager()


def phases(manager):
    return [status.phase for status in manager.history]


# =============================================================================
# Activation
# =============================================================================


class TestActivation:
    """Tests for activate()."""

    @pytest.mark.asyncio
    async def test_phases_run_in_order(self, manager):
        await manager.activate()

        assert phases(manager) == list(ACTIVATION_SEQUENCE)
        assert manager.current_phase is LifecyclePhase.READY
        assert manager.is_ready
        assert manager.attempt == 1

    @pytest.mark.asyncio
    async def test_phase_events(self, manager, history_types):
        await manager.activate()

        started = history_types("lifecycle:phaseStarted")
        completed = history_types("lifecycle:phaseCompleted")
        assert len(started) == len(ACTIVATION_SEQUENCE)
        assert len(completed) == len(ACTIVATION_SEQUENCE)
        assert KernelEvents.LIFECYCLE_ACTIVATED in history_types()

    @pytest.mark.asyncio
    async def test_handlers_receive_context(self, manager):
        seen = []
        host = object()
        manager.add_phase_handler(
            LifecyclePhase.DETECTING_ENVIRONMENT,
            lambda ctx: seen.append((ctx.phase, ctx.host_context, ctx.attempt)),
        )

        await manager.activate(host)

        assert seen == [(LifecyclePhase.DETECTING_ENVIRONMENT, host, 1)]
        assert manager.host_context is host

    @pytest.mark.asyncio
    async def test_handlers_run_in_registration_order(self, manager):
        order = []

        async def second(ctx):
            order.append("second")

        manager.add_phase_handler(LifecyclePhase.INDEXING, lambda ctx: order.append("first"))
        manager.add_phase_handler(LifecyclePhase.INDEXING, second)

        await manager.activate()

        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_handler_subscription_removes_handler(self, manager):
        handler = MagicMock()
        manager.add_phase_handler(LifecyclePhase.INDEXING, handler).dispose()

        await manager.activate()

        handler.assert_not_called()

    def test_handlers_only_for_activation_phases(self, manager):
        with pytest.raises(ValueError):
            manager.add_phase_handler(LifecyclePhase.DEACTIVATING, MagicMock())

    @pytest.mark.asyncio
    async def test_handler_can_resolve_from_container(self, manager):
        resolved = []
        manager.add_phase_handler(
            LifecyclePhase.LOADING_CONFIG,
            lambda ctx: resolved.append(ctx.resolve(ServiceKeys.SERVICE_REGISTRY)),
        )

        await manager.activate()

        assert isinstance(resolved[0], ServiceRegistry)

    @pytest.mark.asyncio
    async def test_activate_when_ready_is_ignored(self, manager):
        await manager.activate()
        await manager.activate()

        assert manager.attempt == 1
        assert len(manager.history) == len(ACTIVATION_SEQUENCE)

    @pytest.mark.asyncio
    async def test_concurrent_activation_rejected(self, manager):
        release = asyncio.Event()

        async def blocking(ctx):
            await release.wait()

        manager.add_phase_handler(LifecyclePhase.INDEXING, blocking)
        task = asyncio.create_task(manager.activate())
        await asyncio.sleep(0.01)

        with pytest.raises(ActivationInProgressError):
            await manager.activate()
        with pytest.raises(ActivationInProgressError):
            await manager.deactivate()

        release.set()
        await task
        assert manager.is_ready


class TestPhaseFailure:
    """Tests for a handler that raises."""

    @pytest.mark.asyncio
    async def test_loading_config_failure_stops_activation(self, manager):
        """A LOADING_CONFIG failure leaves the manager there, not ready, with later handlers unrun."""
        later = MagicMock()
        manager.add_phase_handler(
            LifecyclePhase.LOADING_CONFIG,
            MagicMock(side_effect=RuntimeError("bad settings")),
        )
        for phase in ACTIVATION_SEQUENCE[3:]:
            manager.add_phase_handler(phase, later)

        with pytest.raises(LifecyclePhaseError) as exc_info:
            await manager.activate()

        assert exc_info.value.phase is LifecyclePhase.LOADING_CONFIG
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert manager.current_phase is LifecyclePhase.LOADING_CONFIG
        assert not manager.is_ready
        later.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_recorded_in_history(self, manager, history_types):
        manager.add_phase_handler(
            LifecyclePhase.LOADING_CONFIG,
            MagicMock(side_effect=RuntimeError("bad settings")),
        )

        with pytest.raises(LifecyclePhaseError):
            await manager.activate()

        failed = manager.get_failed_phase()
        assert failed.phase is LifecyclePhase.LOADING_CONFIG
        assert failed.error == "bad settings"
        assert failed.error_type == "RuntimeError"
        assert phases(manager)[-1] is LifecyclePhase.LOADING_CONFIG
        assert KernelEvents.PHASE_FAILED in history_types()
        assert KernelEvents.LIFECYCLE_ACTIVATED not in history_types()

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, manager):
        calls = []

        def flaky(ctx):
            calls.append(ctx.attempt)
            if ctx.attempt == 1:
                raise RuntimeError("first attempt fails")

        manager.add_phase_handler(LifecyclePhase.INDEXING, flaky)

        with pytest.raises(LifecyclePhaseError):
            await manager.activate()
        await manager.activate()

        assert calls == [1, 2]
        assert manager.is_ready
        assert manager.attempt == 2
        assert [s.attempt for s in manager.history].count(2) == len(ACTIVATION_SEQUENCE)

    @pytest.mark.asyncio
    async def test_configure_failure_fails_initializing(self, container, event_bus, lifecycle_config):
        manager = LifecycleManager(
            container,
            event_bus=event_bus,
            configure=MagicMock(side_effect=RuntimeError("seed failed")),
            config=lifecycle_config,
        )

        with pytest.raises(LifecyclePhaseError):
            await manager.activate()

        assert manager.current_phase is LifecyclePhase.INITIALIZING


# =============================================================================
# Services during activation
# =============================================================================


class TestServiceStartup:
    """Tests for the services phase."""

    @pytest.mark.asyncio
    async def test_services_started_in_services_phase(self, manager, container, services, make_service):
        services["A"] = (make_service("A"), ())
        services["B"] = (make_service("B"), ("A",))
        states = {}

        def snapshot(ctx):
            registry = ctx.resolve(ServiceKeys.SERVICE_REGISTRY)
            states[ctx.phase] = registry.get_state("B")

        manager.add_phase_handler(LifecyclePhase.INDEXING, snapshot)
        manager.add_phase_handler(LifecyclePhase.REGISTERING_PROVIDERS, snapshot)

        await manager.activate()

        assert states[LifecyclePhase.INDEXING] is ServiceState.STOPPED
        assert states[LifecyclePhase.REGISTERING_PROVIDERS] is ServiceState.RUNNING

    @pytest.mark.asyncio
    async def test_service_failure_does_not_abort_by_default(self, manager, container, services, make_service):
        services["bad"] = (make_service("bad", fail_start=True), ())
        services["good"] = (make_service("good"), ())

        await manager.activate()

        registry = container.resolve(ServiceKeys.SERVICE_REGISTRY)
        assert manager.is_ready
        assert registry.get_state("bad") is ServiceState.FAILED
        assert registry.get_state("good") is ServiceState.RUNNING

    @pytest.mark.asyncio
    async def test_service_failure_aborts_when_configured(self, make_manager, services, make_service):
        services["bad"] = (make_service("bad", fail_start=True), ())
        manager = make_manager(config=LifecycleConfig(
            start_health_monitor=False,
            services_phase="registering_providers",
            fail_on_service_error=True,
            persist_state=False,
        ))

        with pytest.raises(LifecyclePhaseError) as exc_info:
            await manager.activate()

        assert exc_info.value.phase is LifecyclePhase.REGISTERING_PROVIDERS
        assert isinstance(exc_info.value.cause, ServiceOperationError)
        assert not manager.is_ready

    @pytest.mark.asyncio
    async def test_services_phase_configurable(self, make_manager, services, make_service, call_log):
        services["A"] = (make_service("A"), ())
        manager = make_manager(config=LifecycleConfig(
            start_health_monitor=False,
            services_phase="starting_watchers",
            fail_on_service_error=False,
            persist_state=False,
        ))
        seen = []
        manager.add_phase_handler(LifecyclePhase.REGISTERING_PROVIDERS, lambda ctx: seen.append(list(call_log)))

        await manager.activate()

        assert seen == [[]]
        assert call_log == [("start", "A")]

    def test_invalid_services_phase_rejected(self, container):
        with pytest.raises(ValueError):
            LifecycleManager(container, config=LifecycleConfig(services_phase="bogus"))

    @pytest.mark.asyncio
    async def test_health_monitor_started_when_ready(self, container, event_bus, seed, health_config):
        process = MagicMock()
        process.memory_info.return_value.rss = 10 * 1024 * 1024

        def configure(c):
            seed(c)
            c.register_singleton(
                ServiceKeys.HEALTH_MONITOR,
                lambda c: HealthMonitor(
                    c.resolve(ServiceKeys.SERVICE_REGISTRY),
                    c.resolve(ServiceKeys.EVENT_BUS),
                    health_config,
                    process=process,
                ),
            )

        manager = LifecycleManager(
            container,
            event_bus=event_bus,
            configure=configure,
            config=LifecycleConfig(start_health_monitor=True, persist_state=False),
        )

        await manager.activate()
        monitor = container.resolve(ServiceKeys.HEALTH_MONITOR)
        assert monitor.is_running
        assert monitor.last_result is not None

        await manager.deactivate()
        assert not monitor.is_running


# =============================================================================
# Deactivation
# =============================================================================


class TestDeactivation:
    """Tests for deactivate()."""

    @pytest.mark.asyncio
    async def test_deactivate_stops_services_in_reverse_order(self, manager, services, make_service, call_log):
        services["A"] = (make_service("A"), ())
        services["B"] = (make_service("B"), ("A",))
        await manager.activate()

        await manager.deactivate()

        assert [entry for entry in call_log if entry[0] == "stop"] == [("stop", "B"), ("stop", "A")]
        assert manager.current_phase is LifecyclePhase.DEACTIVATED
        assert not manager.is_ready
        assert phases(manager)[-2:] == [LifecyclePhase.DEACTIVATING, LifecyclePhase.DEACTIVATED]

    @pytest.mark.asyncio
    async def test_deactivate_disposes_container(self, manager, container):
        await manager.activate()

        await manager.deactivate()

        assert container.is_disposed
        assert len(container) == 0

    @pytest.mark.asyncio
    async def test_event_bus_survives_deactivation(self, manager, event_bus, history_types):
        await manager.activate()
        await manager.deactivate()

        assert not event_bus.is_disposed
        assert history_types()[-1] == KernelEvents.LIFECYCLE_DEACTIVATED
        assert KernelEvents.LIFECYCLE_DEACTIVATING in history_types()

    @pytest.mark.asyncio
    async def test_disposables_run_lifo(self, manager, make_disposable, call_log):
        calls = []
        manager.register_disposable(make_disposable("first"))
        manager.register_disposable(lambda: calls.append("callable"))
        manager.register_disposable(make_disposable("last"))
        await manager.activate()

        await manager.deactivate()

        assert call_log == [("dispose", "last"), ("dispose", "first")]
        assert calls == ["callable"]

    @pytest.mark.asyncio
    async def test_disposable_error_does_not_stop_others(self, manager, make_disposable, call_log):
        manager.register_disposable(make_disposable("first"))
        manager.register_disposable(make_disposable("broken", fail=True))
        await manager.activate()

        await manager.deactivate()

        assert call_log == [("dispose", "broken"), ("dispose", "first")]
        assert manager.current_phase is LifecyclePhase.DEACTIVATED

    @pytest.mark.asyncio
    async def test_deactivate_twice_is_noop(self, manager, history_types):
        await manager.activate()
        await manager.deactivate()
        count = len(manager.history)

        await manager.deactivate()

        assert len(manager.history) == count
        assert history_types().count(KernelEvents.LIFECYCLE_DEACTIVATED) == 1

    @pytest.mark.asyncio
    async def test_deactivate_without_activate(self, manager):
        await manager.deactivate()

        assert manager.current_phase is LifecyclePhase.DEACTIVATED

    @pytest.mark.asyncio
    async def test_deactivate_with_stop_failure_completes(self, manager, services, make_service):
        services["A"] = (make_service("A", fail_stop=True), ())
        await manager.activate()

        await manager.deactivate()

        assert manager.current_phase is LifecyclePhase.DEACTIVATED
        report = manager.get_lifecycle_report()
        assert report["services"]["A"]["state"] == "failed"


# =============================================================================
# Restart / recovery
# =============================================================================


class TestRecovery:
    """Tests for restart() and recover_from_error()."""

    @pytest.mark.asyncio
    async def test_restart_reactivates_with_same_host_context(self, manager, services, make_service, call_log):
        services["A"] = (make_service("A"), ())
        host = {"workspace": "/tmp/ws"}
        seen = []
        manager.add_phase_handler(LifecyclePhase.READY, lambda ctx: seen.append(ctx.host_context))
        await manager.activate(host)

        await manager.restart()

        assert manager.is_ready
        assert manager.attempt == 2
        assert seen == [host, host]
        assert call_log == [("start", "A"), ("stop", "A"), ("start", "A")]

    @pytest.mark.asyncio
    async def test_recover_success(self, manager, history_types):
        await manager.activate()

        await manager.recover_from_error(RuntimeError("watcher died"))

        assert manager.is_ready
        assert KernelEvents.RECOVERY_ATTEMPT in history_types()
        assert KernelEvents.RECOVERY_SUCCEEDED in history_types()

    @pytest.mark.asyncio
    async def test_recover_failure_requests_reload(self, make_manager, history_types):
        reload = MagicMock()
        manager = make_manager(on_reload_requested=reload)

        def fail_after_first(ctx):
            if ctx.attempt > 1:
                raise RuntimeError("still broken")

        manager.add_phase_handler(LifecyclePhase.INDEXING, fail_after_first)
        await manager.activate()

        with pytest.raises(RecoveryFailedError) as exc_info:
            await manager.recover_from_error(RuntimeError("watcher died"))

        assert isinstance(exc_info.value.cause, LifecyclePhaseError)
        reload.assert_called_once()
        assert isinstance(reload.call_args.args[0], LifecyclePhaseError)
        assert not manager.is_ready
        assert KernelEvents.RECOVERY_FAILED in history_types()
        assert KernelEvents.RELOAD_REQUESTED in history_types()

    @pytest.mark.asyncio
    async def test_recover_failure_with_async_reload_callback(self, make_manager):
        reloads = []

        async def reload(exc):
            reloads.append(exc)

        manager = make_manager(on_reload_requested=reload)
        manager.add_phase_handler(
            LifecyclePhase.INDEXING,
            MagicMock(side_effect=[None, RuntimeError("still broken")]),
        )
        await manager.activate()

        with pytest.raises(RecoveryFailedError):
            await manager.recover_from_error(RuntimeError("boom"))

        assert len(reloads) == 1


# =============================================================================
# Reporting
# =============================================================================


class TestReport:
    """Tests for get_lifecycle_report() and persisted state."""

    @pytest.mark.asyncio
    async def test_report_while_active(self, manager, services, make_service):
        services["A"] = (make_service("A"), ())
        await manager.activate()

        report = manager.get_lifecycle_report()

        assert report["phase"] == "ready"
        assert report["ready"] is True
        assert report["attempt"] == 1
        assert report["total_transitions"] == len(ACTIVATION_SEQUENCE)
        assert report["failed_transitions"] == 0
        assert report["services"]["A"]["state"] == "running"
        assert report["uptime_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_report_persisted_on_deactivate(self, make_manager, services, make_service):
        services["A"] = (make_service("A"), ())
        store = {}
        manager = make_manager(state_store=store)
        await manager.activate()

        await manager.deactivate()

        report = store[STATE_STORE_KEY]
        assert report["phase"] == "deactivated"
        assert report["services"]["A"]["state"] == "stopped"
        assert report["services"]["A"]["metrics"]["stop_count"] == 1
        assert report["history"][-1]["phase"] == "deactivated"

    @pytest.mark.asyncio
    async def test_report_not_persisted_when_disabled(self, make_manager):
        store = {}
        manager = make_manager(
            state_store=store,
            config=LifecycleConfig(start_health_monitor=False, persist_state=False),
        )
        await manager.activate()

        await manager.deactivate()

        assert store == {}

    def test_uptime_zero_before_activation(self, manager):
        assert manager.uptime_seconds == 0.0
        assert manager.get_failed_phase() is None
