"""Base configuration with Pydantic validation.

This module provides the core configuration system for the strangle
resilience core: retry budgets for closing orders, order polling cadence,
reconciliation thresholds, broker circuit breaking, and logging.
"""

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetrySettings(BaseModel):
    """Retry and backoff budget for closing orders.

    Values are not range-checked here; the retry client replaces invalid
    values with its defaults.
    """

    max_retries: int = Field(default=3, description="Retries after the first attempt")
    initial_backoff_seconds: float = Field(default=1.0, description="Wait before the second attempt")
    max_backoff_seconds: float = Field(default=30.0, description="Upper bound for a single backoff wait")
    timeout_seconds: float = Field(default=120.0, description="Total time budget for one close operation")


class PollerSettings(BaseModel):
    """Order status polling configuration."""

    poll_interval_seconds: float = Field(
        default=5.0, gt=0.0, description="Seconds between order status checks"
    )
    timeout_seconds: float = Field(
        default=300.0, gt=0.0, description="Give up polling after this many seconds"
    )
    call_timeout_seconds: float = Field(
        default=5.0, gt=0.0, description="Deadline for one order status call"
    )


class ReconciliationSettings(BaseModel):
    """Ledger/broker reconciliation thresholds."""

    phantom_grace_minutes: float = Field(
        default=15.0,
        gt=0.0,
        description="Zero-quantity records younger than this are left alone",
    )
    stale_phantom_hours: float = Field(
        default=24.0,
        gt=0.0,
        description="Zero-quantity records older than this are always deleted",
    )
    positions_fetch_timeout_seconds: float = Field(
        default=8.0, gt=0.0, description="Deadline for fetching broker positions"
    )
    underlying: str | None = Field(
        default="SPY",
        description="Only recover orphaned strangles on this underlying (None = any)",
    )


class CircuitBreakerSettings(BaseModel):
    """Broker circuit breaker policy."""

    max_requests: int = Field(default=3, ge=1, description="Probes allowed while half-open")
    interval_seconds: float = Field(
        default=60.0, gt=0.0, description="Window after which closed-state counts reset"
    )
    timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Open duration before half-opening"
    )
    min_requests: int = Field(
        default=3, ge=1, description="Requests in the window before the breaker may trip"
    )
    failure_ratio: float = Field(
        default=0.6, gt=0.0, le=1.0, description="Failure ratio that trips the breaker"
    )


class ExitSettings(BaseModel):
    """Close order pricing."""

    profit_target: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Fraction of credit captured at the profit target"
    )
    stop_loss_pct: float = Field(
        default=2.5, gt=1.0, description="Stop loss as a multiple of the net credit"
    )
    tick_size: float = Field(default=0.01, gt=0.0, description="Minimum price increment")


class Config(BaseSettings):
    """Main application configuration with validation.

    Loads configuration from environment variables (and a ``.env`` file) and
    provides validated settings for all components.

    Example:
        >>> config = Config()
        >>> config.retry.max_retries
        3
        >>> config.reconciliation.underlying
        'SPY'
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Closing order retries
    retry_max_retries: int = Field(default=3)
    retry_initial_backoff_seconds: float = Field(default=1.0)
    retry_max_backoff_seconds: float = Field(default=30.0)
    retry_timeout_seconds: float = Field(default=120.0)

    # Order polling
    order_poll_interval_seconds: float = Field(default=5.0)
    order_poll_timeout_seconds: float = Field(default=300.0)
    order_call_timeout_seconds: float = Field(default=5.0)

    # Reconciliation
    phantom_grace_minutes: float = Field(default=15.0)
    stale_phantom_hours: float = Field(default=24.0)
    positions_fetch_timeout_seconds: float = Field(default=8.0)
    reconcile_underlying: str | None = Field(
        default="SPY", description="Underlying handled by orphan recovery"
    )

    # Broker circuit breaker
    breaker_max_requests: int = Field(default=3)
    breaker_interval_seconds: float = Field(default=60.0)
    breaker_timeout_seconds: float = Field(default=30.0)
    breaker_min_requests: int = Field(default=3)
    breaker_failure_ratio: float = Field(default=0.6)

    # Exit pricing
    exit_profit_target: float = Field(default=0.5)
    exit_stop_loss_pct: float = Field(default=2.5)
    tick_size: float = Field(default=0.01)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/strangler.log", description="Log file path")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the accepted values."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("reconcile_underlying")
    @classmethod
    def normalize_underlying(cls, v: str | None) -> str | None:
        """Upper-case the underlying; empty means no filter."""
        if v is None or not v.strip():
            return None
        return v.strip().upper()

    @property
    def retry(self) -> RetrySettings:
        """Get retry configuration."""
        return RetrySettings(
            max_retries=self.retry_max_retries,
            initial_backoff_seconds=self.retry_initial_backoff_seconds,
            max_backoff_seconds=self.retry_max_backoff_seconds,
            timeout_seconds=self.retry_timeout_seconds,
        )

    @property
    def poller(self) -> PollerSettings:
        """Get order poller configuration."""
        return PollerSettings(
            poll_interval_seconds=self.order_poll_interval_seconds,
            timeout_seconds=self.order_poll_timeout_seconds,
            call_timeout_seconds=self.order_call_timeout_seconds,
        )

    @property
    def reconciliation(self) -> ReconciliationSettings:
        """Get reconciliation configuration."""
        return ReconciliationSettings(
            phantom_grace_minutes=self.phantom_grace_minutes,
            stale_phantom_hours=self.stale_phantom_hours,
            positions_fetch_timeout_seconds=self.positions_fetch_timeout_seconds,
            underlying=self.reconcile_underlying,
        )

    @property
    def exit(self) -> ExitSettings:
        """Get close order pricing configuration."""
        return ExitSettings(
            profit_target=self.exit_profit_target,
            stop_loss_pct=self.exit_stop_loss_pct,
            tick_size=self.tick_size,
        )

    @property
    def circuit_breaker(self) -> CircuitBreakerSettings:
        """Get broker circuit breaker configuration."""
        return CircuitBreakerSettings(
            max_requests=self.breaker_max_requests,
            interval_seconds=self.breaker_interval_seconds,
            timeout_seconds=self.breaker_timeout_seconds,
            min_requests=self.breaker_min_requests,
            failure_ratio=self.breaker_failure_ratio,
        )


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get or create the global configuration instance.

    Returns:
        Config: The global configuration object
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Reset the global configuration instance.

    Useful for testing when you need to reload configuration.
    """
    global _config
    _config = None
