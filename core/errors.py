"""
Kernel - Unified Error Handling

Provides the error hierarchy for the orchestration kernel so that every
failure carries enough context to diagnose which service, phase or probe
went wrong.

Features:
- Hierarchical exception classes with context preservation
- Error severity levels for prioritized handling
- Structured error context for debugging
- OpenTelemetry integration for error tracing

Propagation rules:
- ServiceNotFoundError / CircularDependencyError are configuration errors and
  always fatal to the calling operation.
- DependencyNotRunningError and ServiceOperationError are local to a single
  service operation.
- LifecyclePhaseError aborts the whole activation attempt.
- HealthCheckError is never raised out of a health check; it is converted
  into an UNHEALTHY status and logged.
"""
from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode


class ErrorSeverity(Enum):
    """Error severity levels for prioritized handling."""

    DEBUG = "debug"      # Non-critical, informational
    INFO = "info"        # Minor issue, operation continues
    WARNING = "warning"  # Potential problem, degraded operation
    ERROR = "error"      # Significant failure, operation failed
    CRITICAL = "critical"  # Kernel-level failure, requires immediate attention
    FATAL = "fatal"      # Unrecoverable, host reload required


@dataclass
class ErrorContext:
    """Structured context for error debugging and tracing."""

    operation: str
    component: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    service_name: Optional[str] = None
    phase_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for serialization."""
        return {
            "operation": self.operation,
            "component": self.component,
            "timestamp": self.timestamp.isoformat(),
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "service_name": self.service_name,
            "phase_name": self.phase_name,
            "metadata": self.metadata,
            "stack_trace": self.stack_trace,
        }

    @classmethod
    def from_current_span(
        cls,
        operation: str,
        component: str,
        **kwargs: Any
    ) -> "ErrorContext":
        """Create context from current OpenTelemetry span."""
        span = trace.get_current_span()
        trace_id = None
        span_id = None

        if span and span.is_recording():
            ctx = span.get_span_context()
            if ctx.is_valid:
                trace_id = format(ctx.trace_id, "032x")
                span_id = format(ctx.span_id, "016x")

        return cls(
            operation=operation,
            component=component,
            trace_id=trace_id,
            span_id=span_id,
            stack_trace=traceback.format_exc(),
            **kwargs
        )


class KernelError(Exception):
    """
    Base exception for all kernel errors.

    Provides:
    - Structured error context
    - Severity level
    - Chained exception support
    - OpenTelemetry span recording
    """

    default_severity: ErrorSeverity = ErrorSeverity.ERROR
    error_code: str = "KERNEL_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        severity: Optional[ErrorSeverity] = None,
        cause: Optional[BaseException] = None,
        recoverable: bool = False,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context
        self.severity = severity or self.default_severity
        self.cause = cause
        self.recoverable = recoverable
        self.suggestions = suggestions or []
        self.timestamp = datetime.now(timezone.utc)

        self._record_to_span()

    def _record_to_span(self) -> None:
        """Record exception to current OpenTelemetry span."""
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_status(Status(StatusCode.ERROR, self.message))
            span.record_exception(self)
            span.set_attribute("error.code", self.error_code)
            span.set_attribute("error.severity", self.severity.value)
            span.set_attribute("error.recoverable", self.recoverable)
            if self.context:
                span.set_attribute("error.component", self.context.component)
                span.set_attribute("error.operation", self.context.operation)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for diagnostics and persistence."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "suggestions": self.suggestions,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context.to_dict() if self.context else None,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.context:
            parts.append(f" (component: {self.context.component})")
        if self.cause:
            parts.append(f" [caused by: {self.cause}]")
        return "".join(parts)

    def with_context(self, **kwargs: Any) -> "KernelError":
        """Add additional context to the error."""
        if self.context:
            self.context.metadata.update(kwargs)
        else:
            self.context = ErrorContext(
                operation="unknown",
                component="unknown",
                metadata=kwargs
            )
        return self


# =============================================================================
# REGISTRATION / RESOLUTION ERRORS
# =============================================================================


class ServiceNotFoundError(KernelError, KeyError):
    """A name was resolved or operated on without being registered."""

    error_code = "SERVICE_NOT_FOUND"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, service_name: str, message: Optional[str] = None, **kwargs: Any):
        super().__init__(message or f"Service '{service_name}' is not registered", **kwargs)
        self.service_name = service_name


class MissingDependencyError(ServiceNotFoundError):
    """A registered service declares a dependency that was never registered."""

    error_code = "MISSING_DEPENDENCY"

    def __init__(self, service_name: str, dependency: str, **kwargs: Any):
        super().__init__(
            dependency,
            message=f"Service '{service_name}' depends on unregistered service '{dependency}'",
            suggestions=[f"Register '{dependency}' before starting '{service_name}'"],
            **kwargs,
        )
        self.dependent = service_name
        self.dependency = dependency


class DuplicateServiceError(KernelError, ValueError):
    """A service name was registered twice."""

    error_code = "DUPLICATE_SERVICE"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, service_name: str, **kwargs: Any):
        super().__init__(f"Service '{service_name}' is already registered", **kwargs)
        self.service_name = service_name


class CircularDependencyError(KernelError):
    """The declared dependency graph contains a cycle."""

    error_code = "CIRCULAR_DEPENDENCY"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, service_name: str, cycle: Optional[Sequence[str]] = None, **kwargs: Any):
        path = list(cycle) if cycle else [service_name]
        super().__init__(
            f"Circular dependency detected involving '{service_name}': {' -> '.join(path)}",
            **kwargs,
        )
        self.service_name = service_name
        self.cycle = path


# =============================================================================
# SERVICE OPERATION ERRORS
# =============================================================================


class DependencyNotRunningError(KernelError):
    """A service was started before one of its dependencies reached RUNNING."""

    error_code = "DEPENDENCY_NOT_RUNNING"

    def __init__(
        self,
        service_name: str,
        dependency: str,
        dependency_state: Optional[str] = None,
        **kwargs: Any,
    ):
        state = f" (state: {dependency_state})" if dependency_state else ""
        super().__init__(
            f"Cannot start '{service_name}': dependency '{dependency}' is not running{state}",
            recoverable=True,
            **kwargs,
        )
        self.service_name = service_name
        self.dependency = dependency
        self.dependency_state = dependency_state


class ServiceOperationError(KernelError):
    """Wraps an exception raised by a service's own start/stop/restart."""

    error_code = "SERVICE_OPERATION_ERROR"

    def __init__(
        self,
        service_name: str,
        operation: str,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ):
        super().__init__(
            f"Service '{service_name}' failed to {operation}",
            cause=cause,
            recoverable=True,
            context=ErrorContext(
                operation=operation,
                component="service_registry",
                service_name=service_name,
            ),
            **kwargs,
        )
        self.service_name = service_name
        self.operation = operation


class HealthCheckError(KernelError):
    """A health probe raised; always downgraded to an UNHEALTHY result."""

    error_code = "HEALTH_CHECK_ERROR"
    default_severity = ErrorSeverity.WARNING

    def __init__(self, service_name: str, cause: Optional[BaseException] = None, **kwargs: Any):
        super().__init__(
            f"Health check for '{service_name}' raised",
            cause=cause,
            recoverable=True,
            **kwargs,
        )
        self.service_name = service_name


# =============================================================================
# LIFECYCLE ERRORS
# =============================================================================


class LifecyclePhaseError(KernelError):
    """A phase handler raised; no later phase of the attempt runs."""

    error_code = "LIFECYCLE_PHASE_ERROR"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, phase: Any, cause: Optional[BaseException] = None, **kwargs: Any):
        phase_name = getattr(phase, "value", str(phase))
        super().__init__(
            f"Lifecycle phase '{phase_name}' failed",
            cause=cause,
            context=ErrorContext(
                operation="activate",
                component="lifecycle_manager",
                phase_name=phase_name,
            ),
            **kwargs,
        )
        self.phase = phase


class ActivationInProgressError(KernelError):
    """activate()/deactivate() was called while another transition is running."""

    error_code = "ACTIVATION_IN_PROGRESS"
    default_severity = ErrorSeverity.WARNING


class RecoveryFailedError(KernelError):
    """Automatic recovery failed; the host must reload the process."""

    error_code = "RECOVERY_FAILED"
    default_severity = ErrorSeverity.FATAL

    def __init__(
        self,
        message: str = "Automatic recovery failed",
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("suggestions", ["Reload the host process to recover"])
        super().__init__(message, cause=cause, **kwargs)


# =============================================================================
# EVENT BUS ERRORS
# =============================================================================


class EventTimeoutError(KernelError, TimeoutError):
    """wait_for() did not observe the requested event in time."""

    error_code = "EVENT_TIMEOUT"
    default_severity = ErrorSeverity.WARNING

    def __init__(self, event_type: str, timeout_seconds: Optional[float] = None, **kwargs: Any):
        super().__init__(
            f"Timed out after {timeout_seconds}s waiting for event '{event_type}'",
            recoverable=True,
            **kwargs,
        )
        self.event_type = event_type
        self.timeout_seconds = timeout_seconds


__all__ = [
    "ErrorSeverity",
    "ErrorContext",
    "KernelError",
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
]
