"""Ledger record for a short strangle position."""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from strangler.models.state_machine import (
    PositionState,
    StateMachine,
)
from strangler.utils.calc import profit_percent
from strangler.utils.position_key import normalize_expiration, strangle_key
from strangler.utils.timezone import ensure_utc, us_trading_date, utc_now


@dataclass
class Adjustment:
    """One adjustment applied to a position.

    Attributes:
        date: When the adjustment was made
        type: roll_put, roll_call, straddle, inverted
        old_strike: Strike before the adjustment
        new_strike: Strike after the adjustment
        credit: Credit (positive) or debit (negative) per share
        description: Free-form note
    """

    date: datetime
    type: str
    old_strike: float = 0.0
    new_strike: float = 0.0
    credit: float = 0.0
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat() if self.date else None,
            "type": self.type,
            "old_strike": self.old_strike,
            "new_strike": self.new_strike,
            "credit": self.credit,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Adjustment":
        return cls(
            date=datetime.fromisoformat(data["date"]) if data.get("date") else None,
            type=data.get("type", ""),
            old_strike=data.get("old_strike", 0.0),
            new_strike=data.get("new_strike", 0.0),
            credit=data.get("credit", 0.0),
            description=data.get("description", ""),
        )


@dataclass
class Position:
    """A short strangle tracked in the local ledger.

    Timestamps are ``None`` when unset. Order references are external id
    strings, empty when unset.

    Attributes:
        id: Opaque identifier (uuid4 string)
        symbol: Underlying ticker
        put_strike: Short put strike
        call_strike: Short call strike
        expiration: Expiration date
        quantity: Signed contract count (negative = short); 0 for phantoms
        credit_received: Net credit per share at entry
        entry_order_id: Broker id of the entry order
        exit_order_id: Broker id of the pending exit order
        exit_reason: Why the exit order was placed
        entry_date: When the position was filled or recovered
        last_checked: Last time reconciliation confirmed it at the broker
        exit_date: When the position was closed
        current_pnl: Last computed dollar P&L
        final_pnl: P&L recorded at close
        close_reason: Reason recorded at close
        entry_spot: Underlying price at entry (0 when unknown)
        entry_iv: Implied volatility at entry (0 when unknown)
        dte: Days to expiration at last refresh
        adjustments: Ordered adjustment history
        state_machine: Lifecycle guard
    """

    id: str
    symbol: str
    put_strike: float
    call_strike: float
    expiration: date
    quantity: int = 0
    credit_received: float = 0.0
    entry_order_id: str = ""
    exit_order_id: str = ""
    exit_reason: str = ""
    entry_date: datetime | None = None
    last_checked: datetime | None = None
    exit_date: datetime | None = None
    current_pnl: float = 0.0
    final_pnl: float | None = None
    close_reason: str = ""
    entry_spot: float = 0.0
    entry_iv: float = 0.0
    dte: int = 0
    adjustments: list[Adjustment] = field(default_factory=list)
    state_machine: StateMachine = field(default_factory=StateMachine)

    @classmethod
    def new(
        cls,
        symbol: str,
        put_strike: float,
        call_strike: float,
        expiration: date,
        quantity: int,
        position_id: str | None = None,
    ) -> "Position":
        """Create an Idle position with a fresh id."""
        return cls(
            id=position_id or str(uuid.uuid4()),
            symbol=symbol,
            put_strike=put_strike,
            call_strike=call_strike,
            expiration=expiration,
            quantity=quantity,
        )

    @property
    def key(self) -> str:
        """Canonical strangle key (symbol/strikes/expiration)."""
        return strangle_key(self.symbol, self.put_strike, self.call_strike, self.expiration)

    @property
    def expiration_iso(self) -> str:
        return normalize_expiration(self.expiration)

    def get_current_state(self) -> PositionState:
        return self.state_machine.current_state

    def is_closed(self) -> bool:
        return self.get_current_state() == PositionState.CLOSED

    def is_phantom(self) -> bool:
        """Zero quantity and zero credit: submitted but never confirmed."""
        return self.quantity == 0 and self.credit_received == 0

    def transition_state(self, to: PositionState, condition: str) -> None:
        """Transition the embedded state machine and apply side effects.

        Entering Open stamps the entry date if unset; entering Closed stamps
        the exit date if unset.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        self.state_machine.transition(to, condition)
        now = utc_now()
        if to == PositionState.OPEN and self.entry_date is None:
            self.entry_date = now
        elif to == PositionState.CLOSED and self.exit_date is None:
            self.exit_date = now

    def mark_closed(self, final_pnl: float, reason: str) -> bool:
        """Record a close. Returns False if already closed."""
        if not self.state_machine.force_close():
            return False
        self.final_pnl = final_pnl
        self.close_reason = reason
        if self.exit_date is None:
            self.exit_date = utc_now()
        return True

    def calculate_dte(self) -> int:
        """Whole days until expiration, clamped at 0."""
        return max((self.expiration - us_trading_date()).days, 0)

    def get_net_credit(self) -> float:
        """Entry credit plus adjustment credits/debits."""
        return self.credit_received + sum(adj.credit for adj in self.adjustments)

    def get_total_credit(self) -> float:
        """Alias of get_net_credit."""
        return self.get_net_credit()

    def profit_percent(self) -> float:
        return profit_percent(self.current_pnl, self.get_net_credit(), self.quantity)

    def copy(self) -> "Position":
        """Deep copy, including the state machine and adjustments."""
        return Position.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""

        def _ts(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "symbol": self.symbol,
            "put_strike": self.put_strike,
            "call_strike": self.call_strike,
            "expiration": self.expiration_iso,
            "quantity": self.quantity,
            "credit_received": self.credit_received,
            "entry_order_id": self.entry_order_id,
            "exit_order_id": self.exit_order_id,
            "exit_reason": self.exit_reason,
            "entry_date": _ts(self.entry_date),
            "last_checked": _ts(self.last_checked),
            "exit_date": _ts(self.exit_date),
            "current_pnl": self.current_pnl,
            "final_pnl": self.final_pnl,
            "close_reason": self.close_reason,
            "entry_spot": self.entry_spot,
            "entry_iv": self.entry_iv,
            "dte": self.dte,
            "adjustments": [adj.to_dict() for adj in self.adjustments],
            "state_machine": self.state_machine.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        """Create from dictionary (JSON deserialization)."""

        def _ts(value: str | None) -> datetime | None:
            return ensure_utc(datetime.fromisoformat(value)) if value else None

        state_data = data.get("state_machine")
        if state_data:
            state_machine = StateMachine.from_dict(state_data)
        else:
            state_machine = StateMachine(PositionState(data.get("state", PositionState.IDLE.value)))

        return cls(
            id=data["id"],
            symbol=data["symbol"],
            put_strike=data["put_strike"],
            call_strike=data["call_strike"],
            expiration=date.fromisoformat(data["expiration"]),
            quantity=data.get("quantity", 0),
            credit_received=data.get("credit_received", 0.0),
            entry_order_id=data.get("entry_order_id", ""),
            exit_order_id=data.get("exit_order_id", ""),
            exit_reason=data.get("exit_reason", ""),
            entry_date=_ts(data.get("entry_date")),
            last_checked=_ts(data.get("last_checked")),
            exit_date=_ts(data.get("exit_date")),
            current_pnl=data.get("current_pnl", 0.0),
            final_pnl=data.get("final_pnl"),
            close_reason=data.get("close_reason", ""),
            entry_spot=data.get("entry_spot", 0.0),
            entry_iv=data.get("entry_iv", 0.0),
            dte=data.get("dte", 0),
            adjustments=[Adjustment.from_dict(a) for a in data.get("adjustments", [])],
            state_machine=state_machine,
        )
