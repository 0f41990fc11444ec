"""Unit tests for configuration system."""

import pytest
from pydantic import ValidationError

from strangler.config.base import (
    CircuitBreakerSettings,
    Config,
    ExitSettings,
    PollerSettings,
    ReconciliationSettings,
    RetrySettings,
    get_config,
    reset_config,
)


class TestSubSettings:
    """Tests for component settings models."""

    def test_retry_defaults(self) -> None:
        """Test default retry budget."""
        settings = RetrySettings()
        assert settings.max_retries == 3
        assert settings.initial_backoff_seconds == 1.0
        assert settings.max_backoff_seconds == 30.0
        assert settings.timeout_seconds == 120.0

    def test_retry_accepts_out_of_range(self) -> None:
        """Test retry values are left for the retry client to sanitize."""
        settings = RetrySettings(max_retries=-1, timeout_seconds=0)
        assert settings.max_retries == -1

    def test_poller_defaults(self) -> None:
        """Test default polling cadence."""
        settings = PollerSettings()
        assert settings.poll_interval_seconds == 5.0
        assert settings.timeout_seconds == 300.0

    def test_poller_validation(self) -> None:
        """Test polling intervals must be positive."""
        with pytest.raises(ValidationError):
            PollerSettings(poll_interval_seconds=0)

    def test_reconciliation_defaults(self) -> None:
        """Test default reconciliation thresholds."""
        settings = ReconciliationSettings()
        assert settings.phantom_grace_minutes == 15.0
        assert settings.stale_phantom_hours == 24.0
        assert settings.positions_fetch_timeout_seconds == 8.0
        assert settings.underlying == "SPY"

    def test_circuit_breaker_validation(self) -> None:
        """Test failure ratio bounds."""
        with pytest.raises(ValidationError):
            CircuitBreakerSettings(failure_ratio=1.5)
        with pytest.raises(ValidationError):
            CircuitBreakerSettings(max_requests=0)

    def test_exit_validation(self) -> None:
        """Test exit pricing bounds."""
        assert ExitSettings().stop_loss_pct == 2.5
        with pytest.raises(ValidationError):
            ExitSettings(stop_loss_pct=1.0)
        with pytest.raises(ValidationError):
            ExitSettings(tick_size=0)


class TestConfig:
    """Tests for main configuration."""

    def test_defaults(self) -> None:
        """Test configuration without environment overrides."""
        config = Config()
        assert config.retry.max_retries == 3
        assert config.poller.call_timeout_seconds == 5.0
        assert config.reconciliation.underlying == "SPY"
        assert config.circuit_breaker.failure_ratio == 0.6
        assert config.exit.tick_size == 0.01

    def test_environment_overrides(self, monkeypatch) -> None:
        """Test settings load from environment variables."""
        monkeypatch.setenv("RETRY_TIMEOUT_SECONDS", "45")
        monkeypatch.setenv("ORDER_POLL_INTERVAL_SECONDS", "2.5")
        monkeypatch.setenv("PHANTOM_GRACE_MINUTES", "5")
        monkeypatch.setenv("BREAKER_FAILURE_RATIO", "0.8")

        config = Config()

        assert config.retry.timeout_seconds == 45.0
        assert config.poller.poll_interval_seconds == 2.5
        assert config.reconciliation.phantom_grace_minutes == 5.0
        assert config.circuit_breaker.failure_ratio == 0.8

    def test_underlying_normalized(self, monkeypatch) -> None:
        """Test underlying is upper-cased and blank disables the filter."""
        monkeypatch.setenv("RECONCILE_UNDERLYING", " qqq ")
        assert Config().reconciliation.underlying == "QQQ"

        monkeypatch.setenv("RECONCILE_UNDERLYING", "")
        assert Config().reconciliation.underlying is None

    def test_log_level_validation(self, monkeypatch) -> None:
        """Test log level is upper-cased and validated."""
        assert Config(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            Config(log_level="verbose")

    def test_invalid_component_value_rejected(self, monkeypatch) -> None:
        """Test component validation applies to environment values."""
        monkeypatch.setenv("ORDER_POLL_TIMEOUT_SECONDS", "-1")
        with pytest.raises(ValidationError):
            Config().poller


class TestConfigSingleton:
    """Tests for get_config/reset_config."""

    def test_singleton(self) -> None:
        """Test get_config returns the cached instance."""
        assert get_config() is get_config()

    def test_reset(self, monkeypatch) -> None:
        """Test reset_config reloads from the environment."""
        first = get_config()
        monkeypatch.setenv("RETRY_MAX_RETRIES", "9")
        assert get_config().retry.max_retries == 3

        reset_config()

        assert get_config() is not first
        assert get_config().retry.max_retries == 9
