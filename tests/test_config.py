"""
Tests for config.py - Kernel configuration.

Covers:
- Environment variable defaults
- Validation
- Serialization
"""
import pytest

from config import (
    Environment,
    EventBusConfig,
    HealthMonitorConfig,
    KernelConfig,
    LifecycleConfig,
)


class TestDefaults:
    """Tests for environment-driven defaults."""

    def test_health_defaults(self, monkeypatch):
        for name in ("KERNEL_HEALTH_INTERVAL", "KERNEL_MEMORY_THRESHOLD_MB", "KERNEL_ERROR_RATE_THRESHOLD"):
            monkeypatch.delenv(name, raising=False)

        config = HealthMonitorConfig()

        assert config.interval_seconds == 60
        assert config.memory_threshold_mb == 512
        assert config.error_rate_threshold == 10

    def test_health_from_environment(self, monkeypatch):
        monkeypatch.setenv("KERNEL_HEALTH_INTERVAL", "15")
        monkeypatch.setenv("KERNEL_AUTO_RECOVERY", "false")

        config = HealthMonitorConfig()

        assert config.interval_seconds == 15
        assert config.auto_recovery is False

    def test_event_bus_history_from_environment(self, monkeypatch):
        monkeypatch.setenv("KERNEL_EVENT_HISTORY_SIZE", "7")

        assert EventBusConfig().history_size == 7

    def test_lifecycle_defaults(self, monkeypatch):
        monkeypatch.delenv("KERNEL_SERVICES_PHASE", raising=False)
        monkeypatch.delenv("KERNEL_FAIL_ON_SERVICE_ERROR", raising=False)

        config = LifecycleConfig()

        assert config.services_phase == "registering_providers"
        assert config.fail_on_service_error is False

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")

        config = KernelConfig()

        assert config.environment is Environment.PRODUCTION
        assert config.is_production
        assert not config.is_development

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("KERNEL_APP_NAME", "host-app")

        assert KernelConfig.from_environment().app_name == "host-app"


class TestValidation:
    """Tests for config validation."""

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            HealthMonitorConfig(interval_seconds=0)

    def test_error_window_must_be_positive(self):
        with pytest.raises(ValueError):
            HealthMonitorConfig(error_window_seconds=-1)

    def test_stop_timeout_must_not_be_negative(self):
        with pytest.raises(ValueError):
            HealthMonitorConfig(stop_timeout_seconds=-0.5)


class TestSerialization:
    """Tests for to_dict."""

    def test_to_dict(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "testing")

        data = KernelConfig(health=HealthMonitorConfig(interval_seconds=30)).to_dict()

        assert data["environment"] == "testing"
        assert data["health"]["interval_seconds"] == 30
        assert set(data) == {"environment", "app_name", "app_version", "event_bus", "health", "lifecycle", "observability"}
