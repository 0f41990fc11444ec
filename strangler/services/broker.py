"""Broker capability consumed by the resilience core.

The wire transport lives outside this package. Anything that satisfies the
Broker protocol (a live client, a paper client, a test double) can be passed
to the reconciler, retry client, poller and exit manager.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol, runtime_checkable

ORDER_STATUS_FILLED = "filled"
ORDER_STATUS_CANCELED = "canceled"
ORDER_STATUS_CANCELLED = "cancelled"
ORDER_STATUS_REJECTED = "rejected"
ORDER_STATUS_EXPIRED = "expired"

FAILED_ORDER_STATUSES = frozenset(
    {ORDER_STATUS_CANCELED, ORDER_STATUS_CANCELLED, ORDER_STATUS_REJECTED, ORDER_STATUS_EXPIRED}
)
TERMINAL_ORDER_STATUSES = FAILED_ORDER_STATUSES | {ORDER_STATUS_FILLED}


class BrokerError(Exception):
    """Raised by broker implementations for failed calls."""

    pass


@dataclass
class PositionItem:
    """One option leg as reported by the broker.

    Attributes:
        symbol: Option symbol in wire format (TICKER + YYMMDD + C/P + strike x1000)
        quantity: Signed contract count (negative = short)
        cost_basis: Total cost basis in dollars (negative for credit received)
    """

    symbol: str
    quantity: float
    cost_basis: float = 0.0


@dataclass
class OrderResponse:
    """Order placement acknowledgement or status snapshot.

    Attributes:
        id: Broker order id
        status: Broker status string (filled, pending, canceled, ...)
        quantity: Requested quantity
        exec_quantity: Executed quantity
        remaining_quantity: Quantity still working
    """

    id: str
    status: str = ""
    quantity: float = 0.0
    exec_quantity: float = 0.0
    remaining_quantity: float = 0.0

    @property
    def normalized_status(self) -> str:
        return (self.status or "").strip().lower()

    def is_terminal(self) -> bool:
        return self.normalized_status in TERMINAL_ORDER_STATUSES


@runtime_checkable
class Broker(Protocol):
    """Async broker interface."""

    async def get_positions(self) -> list[PositionItem]:
        ...

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
        ...

    async def get_order_status(self, order_id: str) -> OrderResponse | None:
        ...

    async def get_market_calendar(self, month: int, year: int) -> dict[str, Any]:
        ...
