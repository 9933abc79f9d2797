"""
Kernel - Observability Package

Distributed tracing, metrics, and logging for the orchestration kernel.

Components:
- tracing: OpenTelemetry spans around service operations and lifecycle phases
- metrics: Kernel counters and histograms
- logging: Structlog integration with trace context propagation

Usage:
    from observability import setup_observability

    # Initialize at host startup
    setup_observability(service_name="orchestration-kernel")
"""
from .logging import (
    HealthLogger,
    LoggingConfig,
    bind_context,
    get_logger,
    setup_logging,
    shutdown_logging,
    unbind_context,
)
from .metrics import (
    KernelMetrics,
    MetricsConfig,
    get_kernel_metrics,
    get_meter,
    record_health_check,
    record_phase_duration,
    record_recovery_attempt,
    record_service_operation,
    setup_metrics,
    shutdown_metrics,
    timed_phase,
    timed_service_operation,
    use_kernel_metrics,
)
from .tracing import (
    TracingConfig,
    create_span,
    get_tracer,
    setup_tracing,
    shutdown_tracing,
    span_decorator,
)

__all__ = [
    # Tracing
    "setup_tracing",
    "get_tracer",
    "create_span",
    "span_decorator",
    "TracingConfig",
    "shutdown_tracing",
    # Metrics
    "setup_metrics",
    "get_meter",
    "get_kernel_metrics",
    "MetricsConfig",
    "KernelMetrics",
    "record_service_operation",
    "record_phase_duration",
    "record_health_check",
    "record_recovery_attempt",
    "timed_service_operation",
    "timed_phase",
    "shutdown_metrics",
    "use_kernel_metrics",
    # Logging
    "setup_logging",
    "get_logger",
    "LoggingConfig",
    "HealthLogger",
    "shutdown_logging",
    "bind_context",
    "unbind_context",
    # Combined setup
    "setup_observability",
    "shutdown_observability",
]


def setup_observability(
    service_name: str = "orchestration-kernel",
    otlp_endpoint: str = "http://localhost:4317",
    enabled: bool = True,
    sample_rate: float = 1.0,
    log_level: str = "INFO",
    environment: str = "development",
) -> None:
    """
    Initialize all observability components.

    This sets up:
    - OpenTelemetry distributed tracing with OTLP export
    - Kernel metrics
    - Structlog with trace context integration
    """
    if not enabled:
        return

    setup_tracing(TracingConfig(
        service_name=service_name,
        otlp_endpoint=otlp_endpoint,
        enabled=enabled,
        sample_rate=sample_rate,
        environment=environment,
    ))

    setup_metrics(MetricsConfig(
        service_name=service_name,
        otlp_endpoint=otlp_endpoint,
        enabled=enabled,
        environment=environment,
    ))

    setup_logging(LoggingConfig(
        service_name=service_name,
        level=log_level,
        enable_trace_context=True,
        environment=environment,
    ))


def shutdown_observability() -> None:
    """
    Flush and shutdown all observability components.

    Call this during host shutdown so telemetry reaches the collector.
    """
    shutdown_tracing()
    shutdown_metrics()
    shutdown_logging()
