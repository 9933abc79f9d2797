"""
Tests for core/errors.py and core/types.py - Error hierarchy and shared types.

Covers:
- Error codes, severities and context
- Subclass relationships with builtin exceptions
- HealthStatus coercion
- Subscription handles
"""
import pytest

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
from core.types import HealthStatus, Subscription, maybe_await


class TestKernelError:
    """Tests for the base error."""

    def test_str_includes_code_and_cause(self):
        error = KernelError(
            "Something broke",
            context=ErrorContext(operation="start", component="registry"),
            cause=ValueError("root cause"),
        )

        text = str(error)

        assert "[KERNEL_ERROR] Something broke" in text
        assert "component: registry" in text
        assert "root cause" in text

    def test_to_dict(self):
        error = KernelError("Something broke", suggestions=["Try again"])

        data = error.to_dict()

        assert data["error_code"] == "KERNEL_ERROR"
        assert data["severity"] == "error"
        assert data["suggestions"] == ["Try again"]
        assert data["context"] is None

    def test_with_context_creates_context(self):
        error = KernelError("x").with_context(service="db")

        assert error.context.metadata == {"service": "db"}

    def test_error_context_from_current_span(self):
        context = ErrorContext.from_current_span("activate", "lifecycle_manager", phase_name="ready")

        assert context.phase_name == "ready"
        assert context.trace_id is None


class TestHierarchy:
    """Tests for the concrete error types."""

    def test_service_not_found_is_key_error(self):
        error = ServiceNotFoundError("db")

        assert isinstance(error, KeyError)
        assert error.severity is ErrorSeverity.CRITICAL
        assert "db" in error.message

    def test_missing_dependency(self):
        error = MissingDependencyError("indexer", "db")

        assert isinstance(error, ServiceNotFoundError)
        assert error.dependent == "indexer"
        assert error.dependency == "db"
        assert error.suggestions

    def test_duplicate_is_value_error(self):
        assert isinstance(DuplicateServiceError("db"), ValueError)

    def test_circular_dependency_cycle(self):
        error = CircularDependencyError("a", cycle=["a", "b", "a"])

        assert error.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in error.message

    def test_circular_dependency_without_cycle(self):
        assert CircularDependencyError("a").cycle == ["a"]

    def test_dependency_not_running(self):
        error = DependencyNotRunningError("indexer", "db", "failed")

        assert error.recoverable
        assert "(state: failed)" in error.message

    def test_service_operation_error_context(self):
        cause = RuntimeError("port in use")
        error = ServiceOperationError("web", "start", cause=cause)

        assert error.cause is cause
        assert error.context.service_name == "web"
        assert error.context.operation == "start"

    def test_lifecycle_phase_error_names_phase(self):
        error = LifecyclePhaseError("loading_config", cause=RuntimeError("bad"))

        assert error.context.phase_name == "loading_config"
        assert "loading_config" in error.message

    def test_health_check_error_is_warning(self):
        assert HealthCheckError("db").severity is ErrorSeverity.WARNING

    def test_recovery_failed_is_fatal(self):
        error = RecoveryFailedError()

        assert error.severity is ErrorSeverity.FATAL
        assert error.suggestions == ["Reload the host process to recover"]

    def test_event_timeout_is_timeout_error(self):
        error = EventTimeoutError("lifecycle:activated", 5.0)

        assert isinstance(error, TimeoutError)
        assert error.timeout_seconds == 5.0

    def test_activation_in_progress(self):
        assert ActivationInProgressError("busy").error_code == "ACTIVATION_IN_PROGRESS"


class TestHealthStatus:
    """Tests for HealthStatus.coerce."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (HealthStatus.DEGRADED, HealthStatus.DEGRADED),
            (True, HealthStatus.HEALTHY),
            (False, HealthStatus.UNHEALTHY),
            ("healthy", HealthStatus.HEALTHY),
            ("UNHEALTHY", HealthStatus.UNHEALTHY),
            ("sideways", HealthStatus.UNKNOWN),
            (None, HealthStatus.UNKNOWN),
        ],
    )
    def test_coerce(self, value, expected):
        assert HealthStatus.coerce(value) is expected


class TestSubscription:
    """Tests for Subscription handles."""

    def test_dispose_runs_once(self):
        calls = []
        subscription = Subscription(lambda: calls.append(1))

        subscription.dispose()
        subscription()

        assert calls == [1]
        assert subscription.disposed

    @pytest.mark.asyncio
    async def test_maybe_await(self):
        async def value():
            return 2

        assert await maybe_await(1) == 1
        assert await maybe_await(value()) == 2
