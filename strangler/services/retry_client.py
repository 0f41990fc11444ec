"""Retry client for closing strangle positions.

Closing orders go out over a flaky network. RetryClient places one close
order under an overall deadline, retrying transient failures (timeouts,
resets, 5xx, rate limits) with exponential backoff and jitter, and giving up
immediately on anything else. One client order id is generated per close and
reused on every attempt so the broker can drop duplicates.
"""

import asyncio
import random
import re
import time
from dataclasses import dataclass

from loguru import logger

from strangler.config.base import RetrySettings, get_config
from strangler.models.position import Position
from strangler.services.broker import Broker, OrderResponse
from strangler.utils.position_key import short_id

BACKOFF_MULTIPLIER = 1.5

TRANSIENT_ERROR_PATTERNS = (
    "timeout",
    "i/o timeout",
    "connection refused",
    "connection reset",
    "temporary failure",
    "temporarily unavailable",
    "server error",
    "rate limit",
    "network",
    "dns",
    "tcp",
    "no such host",
    "deadline exceeded",
    "tls handshake",
    "broken pipe",
    "eof",
)

# 429 Too Many Requests, 502 Bad Gateway, 503 Service Unavailable,
# 504 Gateway Timeout, 408 Request Timeout; not inside longer numbers
TRANSIENT_STATUS_CODES = re.compile(r"(?<!\d)(?:429|502|503|504|408)(?!\d)")


class RetryException(Exception):
    """Base class for close-with-retry failures."""

    pass


class RetryExhaustedError(RetryException):
    """Raised when a close fails permanently or runs out of attempts."""

    pass


class RetryTimeoutError(RetryException):
    """Raised when the overall close deadline passes."""

    pass


class CloseCancelledError(RetryException):
    """Raised when the caller cancels the close."""

    pass


def is_transient_error(err: BaseException | None) -> bool:
    """Classify an error as transient (worth retrying).

    Timeout and connection exceptions are transient by type; anything else
    is transient only if its message mentions a known transient condition.

    Example:
        >>> is_transient_error(Exception("503 Service Unavailable"))
        True
        >>> is_transient_error(ValueError("invalid strike"))
        False
    """
    if err is None:
        return False
    if isinstance(err, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = str(err).lower()
    if TRANSIENT_STATUS_CODES.search(message):
        return True
    return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)


@dataclass
class RetryConfig:
    """Retry budget in seconds.

    Use sanitized() before relying on the values: invalid fields fall back
    to the defaults.
    """

    max_retries: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    timeout: float = 120.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryConfig":
        return cls(
            max_retries=settings.max_retries,
            initial_backoff=settings.initial_backoff_seconds,
            max_backoff=settings.max_backoff_seconds,
            timeout=settings.timeout_seconds,
        )

    def sanitized(self) -> "RetryConfig":
        """Copy with invalid fields replaced by defaults."""
        defaults = RetryConfig()
        max_retries = self.max_retries if self.max_retries >= 0 else defaults.max_retries
        initial = self.initial_backoff if self.initial_backoff > 0 else defaults.initial_backoff
        maximum = self.max_backoff if self.max_backoff > 0 else defaults.max_backoff
        timeout = self.timeout if self.timeout > 0 else defaults.timeout
        if maximum < initial:
            maximum = initial
        return RetryConfig(
            max_retries=max_retries,
            initial_backoff=initial,
            max_backoff=maximum,
            timeout=timeout,
        )


@dataclass
class RetryAttempt:
    """One close attempt.

    Attributes:
        attempt: 1-based attempt number
        elapsed: Seconds since the close started when the attempt finished
        error: Failure, or None on success
        transient: Whether the failure was classified as transient
    """

    attempt: int
    elapsed: float
    error: BaseException | None = None
    transient: bool = False


class RetryClient:
    """Place close orders with retry, backoff and an overall deadline.

    Example:
        >>> client = RetryClient(broker, RetryConfig(max_retries=3))
        >>> order = await client.close_position_with_retry(position, max_debit=1.25)
    """

    def __init__(
        self,
        broker: Broker,
        config: RetryConfig | None = None,
        rng: random.Random | None = None,
    ):
        """Initialize the retry client.

        Args:
            broker: Broker used to place close orders
            config: Retry budget (from the global config when None)
            rng: Source of backoff jitter
        """
        if config is None:
            config = RetryConfig.from_settings(get_config().retry)
        self.broker = broker
        self.config = config.sanitized()
        self._rng = rng or random.Random()
        self.last_attempts: list[RetryAttempt] = []

    def calculate_next_backoff(self, current: float) -> float:
        """Grow the backoff by 1.5x, cap it, then add jitter in [0, backoff/4)."""
        backoff = min(current * BACKOFF_MULTIPLIER, self.config.max_backoff)
        jitter = self._rng.random() * (backoff / 4)
        return backoff + jitter

    @staticmethod
    def make_client_order_id(position: Position) -> str:
        """close-{id}-{YYYYMMDD}-{unix seconds}"""
        return f"close-{position.id}-{position.expiration.strftime('%Y%m%d')}-{int(time.time())}"

    async def close_position_with_retry(
        self,
        position: Position,
        max_debit: float,
        cancel_event: asyncio.Event | None = None,
    ) -> OrderResponse:
        """Place a close order for a position, retrying transient failures.

        Args:
            position: Position to close
            max_debit: Highest debit per share to pay (must be positive)
            cancel_event: Set to abandon the close (in-flight call and backoff)

        Returns:
            Broker acknowledgement of the close order

        Raises:
            ValueError: If position is None or max_debit is not positive
            CloseCancelledError: If cancel_event is set
            RetryTimeoutError: If the overall deadline passes
            RetryExhaustedError: On a permanent failure or after the last attempt
        """
        if position is None:
            raise ValueError("position is required")
        if max_debit is None or max_debit <= 0:
            raise ValueError(f"max_debit must be positive, got {max_debit}")

        cfg = self.config
        pid = short_id(position.id)
        client_order_id = self.make_client_order_id(position)
        total_attempts = cfg.max_retries + 1
        start = time.monotonic()
        deadline = start + cfg.timeout
        backoff = cfg.initial_backoff
        attempts: list[RetryAttempt] = []
        self.last_attempts = attempts
        last_error: BaseException | None = None

        for attempt in range(1, total_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise CloseCancelledError(f"close of position {pid} cancelled")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RetryTimeoutError(f"timed out after {cfg.timeout:g}s") from last_error

            logger.info(f"Close attempt {attempt}/{total_attempts} for position {pid}")
            try:
                order = await self._call_once(
                    position, max_debit, client_order_id, remaining, cancel_event
                )
            except CloseCancelledError:
                raise
            except Exception as e:
                last_error = e
                transient = is_transient_error(e)
                attempts.append(
                    RetryAttempt(attempt, time.monotonic() - start, e, transient)
                )
                logger.warning(f"Close attempt {attempt} for position {pid} failed: {e}")

                if not transient:
                    raise RetryExhaustedError(
                        f"permanent error closing position {pid}: {e}"
                    ) from e
                if attempt == total_attempts:
                    break

                wait = backoff
                if deadline - time.monotonic() < wait:
                    raise RetryTimeoutError("timed out during backoff") from e
                logger.info(f"Transient error, retrying position {pid} in {wait:.2f}s")
                await self._sleep(wait, cancel_event, pid)
                backoff = self.calculate_next_backoff(backoff)
                continue

            attempts.append(RetryAttempt(attempt, time.monotonic() - start))
            logger.info(
                f"Close order {getattr(order, 'id', None)} placed for position {pid} on attempt {attempt}"
            )
            return order

        raise RetryExhaustedError(
            f"failed to close position after {total_attempts} attempts: {last_error}"
        ) from last_error

    async def _call_once(
        self,
        position: Position,
        max_debit: float,
        client_order_id: str,
        remaining: float,
        cancel_event: asyncio.Event | None,
    ) -> OrderResponse:
        call = self.broker.close_strangle_position(
            position.symbol,
            position.put_strike,
            position.call_strike,
            position.expiration,
            position.quantity,
            max_debit,
            client_order_id,
        )
        if cancel_event is None:
            return await asyncio.wait_for(call, timeout=remaining)

        call_task = asyncio.ensure_future(call)
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call_task, cancel_task},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            call_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if call_task in done:
            return call_task.result()
        call_task.cancel()
        if cancel_task in done:
            raise CloseCancelledError(
                f"close of position {short_id(position.id)} cancelled during call"
            )
        raise asyncio.TimeoutError(f"close call timeout after {remaining:.2f}s")

    @staticmethod
    async def _sleep(wait: float, cancel_event: asyncio.Event | None, pid: str) -> None:
        if cancel_event is None:
            await asyncio.sleep(wait)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=wait)
        except asyncio.TimeoutError:
            return
        raise CloseCancelledError(f"close of position {pid} cancelled during backoff")
