"""
Kernel - OpenTelemetry Metrics

Counters and histograms describing service operations, lifecycle phases,
health checks and recovery attempts.

Key Metrics:
- kernel_service_operations_total: start/stop/restart calls by service and status
- kernel_service_operation_duration_seconds: latency of those calls
- kernel_phase_duration_seconds: duration of each lifecycle phase
- kernel_health_checks_total: health check runs by outcome
- kernel_recovery_attempts_total: automatic recovery attempts by outcome

Recording helpers are no-ops until ``setup_metrics`` has been called, so the
kernel can be embedded without an exporter.

Usage:
    from observability.metrics import setup_metrics, timed_service_operation

    setup_metrics(MetricsConfig(service_name="orchestration-kernel"))

    with timed_service_operation("indexer", "start") as ctx:
        await service.start()
        ctx["status"] = "ok"
"""
from __future__ import annotations

import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.metrics import Meter
from opentelemetry.sdk.metrics import MeterProvider as SDKMeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION

# Global state
_meter_provider: Optional[SDKMeterProvider] = None
_initialized: bool = False

# Global metrics instance
_kernel_metrics: Optional["KernelMetrics"] = None


@dataclass
class MetricsConfig:
    """Configuration for OpenTelemetry metrics."""

    service_name: str = "orchestration-kernel"
    service_version: str = "1.0.0"
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
    )
    enabled: bool = field(
        default_factory=lambda: os.getenv("OTEL_METRICS_ENABLED", "true").lower() == "true"
    )
    environment: str = field(
        default_factory=lambda: os.getenv("ENVIRONMENT", "development")
    )
    console_export: bool = field(
        default_factory=lambda: os.getenv("OTEL_CONSOLE_EXPORT", "false").lower() == "true"
    )
    export_interval_millis: int = 60000  # 1 minute
    export_timeout_millis: int = 30000

    # Histogram bucket boundaries
    duration_buckets: List[float] = field(
        default_factory=lambda: [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
    )


class KernelMetrics:
    """
    Central metrics collector for the orchestration kernel.

    Holds every instrument the kernel records, with convenience methods that
    attach the standard attributes.
    """

    def __init__(self, meter: Meter, config: MetricsConfig):
        self.meter = meter
        self.config = config

        # Service metrics
        self.service_operations = meter.create_counter(
            name="kernel_service_operations_total",
            description="Total service start/stop/restart operations",
            unit="1",
        )

        self.service_operation_duration = meter.create_histogram(
            name="kernel_service_operation_duration_seconds",
            description="Duration of service start/stop/restart operations",
            unit="s",
        )

        # Lifecycle metrics
        self.phase_duration = meter.create_histogram(
            name="kernel_phase_duration_seconds",
            description="Duration of lifecycle phase execution",
            unit="s",
        )

        # Health metrics
        self.health_checks = meter.create_counter(
            name="kernel_health_checks_total",
            description="Total health checks performed",
            unit="1",
        )

        self.recovery_attempts = meter.create_counter(
            name="kernel_recovery_attempts_total",
            description="Total automatic recovery attempts",
            unit="1",
        )

    def record_service_operation(
        self,
        service_name: str,
        operation: str,
        duration: float,
        status: str,
    ) -> None:
        attributes = {"service": service_name, "operation": operation, "status": status}
        self.service_operations.add(1, attributes)
        self.service_operation_duration.record(duration, attributes)

    def record_phase(self, phase_name: str, duration: float, status: str) -> None:
        self.phase_duration.record(duration, {"phase": phase_name, "status": status})

    def record_health_check(self, healthy: bool) -> None:
        self.health_checks.add(1, {"healthy": healthy})

    def record_recovery(self, target: str, succeeded: bool) -> None:
        self.recovery_attempts.add(1, {"target": target, "succeeded": succeeded})


def setup_metrics(config: Optional[MetricsConfig] = None) -> Optional[SDKMeterProvider]:
    """
    Configure OpenTelemetry metrics with OTLP export.

    Returns:
        The configured meter provider, or None when metrics are disabled
    """
    global _meter_provider, _kernel_metrics, _initialized

    if _initialized:
        return _meter_provider

    config = config or MetricsConfig()

    if not config.enabled:
        _initialized = True
        return None

    resource = Resource.create({
        SERVICE_NAME: config.service_name,
        SERVICE_VERSION: config.service_version,
        "deployment.environment": config.environment,
    })

    readers = [
        PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint, insecure=True),
            export_interval_millis=config.export_interval_millis,
            export_timeout_millis=config.export_timeout_millis,
        )
    ]

    # Console exporter for debugging
    if config.console_export:
        readers.append(
            PeriodicExportingMetricReader(
                ConsoleMetricExporter(),
                export_interval_millis=config.export_interval_millis,
            )
        )

    _meter_provider = SDKMeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(_meter_provider)

    meter = _meter_provider.get_meter(config.service_name, config.service_version)
    _kernel_metrics = KernelMetrics(meter, config)

    _initialized = True
    return _meter_provider


def get_meter(name: str, version: str = "1.0.0") -> Meter:
    """Get a meter from the configured provider (or the global no-op one)."""
    if _meter_provider is not None:
        return _meter_provider.get_meter(name, version)
    return metrics.get_meter(name, version)


def get_kernel_metrics() -> Optional[KernelMetrics]:
    """Get the global KernelMetrics instance, if metrics are set up."""
    return _kernel_metrics


def use_kernel_metrics(instance: Optional[KernelMetrics]) -> None:
    """Install a KernelMetrics built on a caller-supplied meter (tests, embedding hosts)."""
    global _kernel_metrics
    _kernel_metrics = instance


def shutdown_metrics() -> None:
    """Gracefully shutdown metrics collection."""
    global _meter_provider, _kernel_metrics, _initialized

    if _meter_provider is not None:
        _meter_provider.shutdown()

    _meter_provider = None
    _kernel_metrics = None
    _initialized = False


# Convenience functions for direct metric recording
def record_service_operation(
    service_name: str,
    operation: str,
    duration: float,
    status: str,
) -> None:
    """Record a service start/stop/restart."""
    m = get_kernel_metrics()
    if m:
        m.record_service_operation(service_name, operation, duration, status)


def record_phase_duration(phase_name: str, duration: float, status: str) -> None:
    """Record lifecycle phase duration."""
    m = get_kernel_metrics()
    if m:
        m.record_phase(phase_name, duration, status)


def record_health_check(healthy: bool) -> None:
    """Record one health check outcome."""
    m = get_kernel_metrics()
    if m:
        m.record_health_check(healthy)


def record_recovery_attempt(target: str, succeeded: bool) -> None:
    """Record one automatic recovery attempt."""
    m = get_kernel_metrics()
    if m:
        m.record_recovery(target, succeeded)


# Timing context managers
@contextmanager
def timed_service_operation(service_name: str, operation: str) -> Iterator[Dict[str, str]]:
    """
    Context manager for timing a service operation.

    Example:
        >>> with timed_service_operation("indexer", "start") as ctx:
        ...     await service.start()
        ...     ctx["status"] = "ok"
    """
    context = {"status": "unknown"}
    start = time.perf_counter()
    try:
        yield context
    except Exception:
        context["status"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start
        record_service_operation(service_name, operation, duration, context["status"])


@contextmanager
def timed_phase(phase_name: str) -> Iterator[Dict[str, str]]:
    """Context manager for timing a lifecycle phase."""
    context = {"status": "unknown"}
    start = time.perf_counter()
    try:
        yield context
    except Exception:
        context["status"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start
        record_phase_duration(phase_name, duration, context["status"])
