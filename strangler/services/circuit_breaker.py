"""Circuit breaker for broker calls.

Prevents hammering a failing broker. The breaker counts requests and
failures in a rolling interval while closed, opens once enough requests
have failed at a high enough ratio, fails fast while open, and lets a
limited number of probe calls through after the open timeout.

CircuitBreakerBroker wraps any Broker so every call goes through one shared
breaker.
"""

import asyncio
import time
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from strangler.config.base import CircuitBreakerSettings, get_config
from strangler.services.broker import Broker, OrderResponse, PositionItem

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the breaker is open."""

    pass


class CircuitBreaker:
    """Ratio-based circuit breaker for async calls.

    Example:
        >>> breaker = CircuitBreaker("broker")
        >>> positions = await breaker.call(broker.get_positions)
    """

    def __init__(
        self,
        name: str = "broker",
        settings: CircuitBreakerSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the breaker.

        Args:
            name: Label used in log lines
            settings: Breaker policy (from the global config when None)
            clock: Monotonic clock, injectable for tests
        """
        self.name = name
        self.settings = settings or get_config().circuit_breaker
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.requests = 0
        self.failures = 0
        self.half_open_requests = 0
        self.opened_at: float | None = None
        self._window_started = clock()

    def _reset_counts(self) -> None:
        self.requests = 0
        self.failures = 0
        self.half_open_requests = 0
        self._window_started = self._clock()

    def _set_state(self, new_state: CircuitState) -> None:
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        self._reset_counts()
        if new_state == CircuitState.OPEN:
            self.opened_at = self._clock()
        logger.warning(
            f"Circuit breaker '{self.name}' state changed: {old_state.value} -> {new_state.value}"
        )

    def current_state(self) -> CircuitState:
        """Current state, applying interval and open-timeout expiry."""
        now = self._clock()
        if self.state == CircuitState.CLOSED:
            if now - self._window_started >= self.settings.interval_seconds:
                self._reset_counts()
        elif self.state == CircuitState.OPEN:
            if self.opened_at is not None and now - self.opened_at >= self.settings.timeout_seconds:
                self._set_state(CircuitState.HALF_OPEN)
        return self.state

    def _before_call(self) -> None:
        state = self.current_state()
        if state == CircuitState.OPEN:
            raise CircuitOpenError(f"circuit breaker is open ({self.name})")
        if state == CircuitState.HALF_OPEN:
            if self.half_open_requests >= self.settings.max_requests:
                raise CircuitOpenError(
                    f"circuit breaker is open ({self.name}): too many half-open probes"
                )
            self.half_open_requests += 1
        self.requests += 1

    def record_success(self) -> None:
        """Record a successful call."""
        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit breaker '{self.name}' probe succeeded")
            self._set_state(CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Record a failed call and trip the breaker when the ratio is reached."""
        if self.state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN)
            return
        self.failures += 1
        if self.requests >= self.settings.min_requests:
            ratio = self.failures / self.requests
            if ratio >= self.settings.failure_ratio:
                logger.error(
                    f"Circuit breaker '{self.name}' opening: "
                    f"{self.failures}/{self.requests} failures ({ratio:.0%})"
                )
                self._set_state(CircuitState.OPEN)

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Call an async function through the breaker.

        Raises:
            CircuitOpenError: If the breaker is open
        """
        self._before_call()
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def get_state_info(self) -> dict[str, Any]:
        """Snapshot for diagnostics."""
        return {
            "name": self.name,
            "state": self.current_state().value,
            "requests": self.requests,
            "failures": self.failures,
        }


class CircuitBreakerBroker:
    """Broker that forwards every call through a CircuitBreaker."""

    def __init__(
        self,
        broker: Broker,
        settings: CircuitBreakerSettings | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.broker = broker
        self.breaker = breaker or CircuitBreaker("broker", settings)

    async def get_positions(self) -> list[PositionItem]:
        return await self.breaker.call(self.broker.get_positions)

    async def close_strangle_position(
        self,
        symbol: str,
        put_strike: float,
        call_strike: float,
        expiration: date,
        quantity: int,
        max_debit: float,
        client_order_id: str,
    ) -> OrderResponse:
        return await self.breaker.call(
            self.broker.close_strangle_position,
            symbol,
            put_strike,
            call_strike,
            expiration,
            quantity,
            max_debit,
            client_order_id,
        )

    async def get_order_status(self, order_id: str) -> OrderResponse | None:
        return await self.breaker.call(self.broker.get_order_status, order_id)

    async def get_market_calendar(self, month: int, year: int) -> dict[str, Any]:
        return await self.breaker.call(self.broker.get_market_calendar, month, year)
