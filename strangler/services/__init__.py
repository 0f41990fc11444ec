"""Broker/ledger capabilities, reconciliation, retries and order polling."""

from strangler.services.broker import Broker, BrokerError, OrderResponse, PositionItem
from strangler.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerBroker,
    CircuitOpenError,
)
from strangler.services.ledger import (
    InMemoryLedger,
    Ledger,
    LedgerError,
    PositionNotFoundError,
)
from strangler.services.market_calendar import MarketCalendarCache
from strangler.services.order_poller import OrderStatusError, OrderStatusPoller
from strangler.services.position_reconciliation import (
    PositionReconciler,
    ReconciliationReport,
)
from strangler.services.retry_client import (
    CloseCancelledError,
    RetryClient,
    RetryConfig,
    RetryExhaustedError,
    RetryTimeoutError,
    is_transient_error,
)

__all__ = [
    "Broker",
    "BrokerError",
    "OrderResponse",
    "PositionItem",
    "CircuitBreaker",
    "CircuitBreakerBroker",
    "CircuitOpenError",
    "InMemoryLedger",
    "Ledger",
    "LedgerError",
    "PositionNotFoundError",
    "MarketCalendarCache",
    "OrderStatusError",
    "OrderStatusPoller",
    "PositionReconciler",
    "ReconciliationReport",
    "CloseCancelledError",
    "RetryClient",
    "RetryConfig",
    "RetryExhaustedError",
    "RetryTimeoutError",
    "is_transient_error",
]
