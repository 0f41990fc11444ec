"""Local position ledger.

The Ledger protocol is what the reconciler, poller and exit manager write
through. InMemoryLedger is the bundled implementation: thread-safe, stores
deep copies so callers never share mutable state with it, and keeps closed
positions in a history with running trade statistics.
"""

import threading
from dataclasses import asdict, dataclass
from typing import Protocol, runtime_checkable

from loguru import logger

from strangler.config.logging import log_position_event
from strangler.models.position import Adjustment, Position
from strangler.utils.position_key import short_id


class LedgerError(Exception):
    """Raised when a ledger operation fails."""

    pass


class PositionNotFoundError(LedgerError):
    """Raised when no position exists for an id."""

    pass


@runtime_checkable
class Ledger(Protocol):
    """Synchronous position store with per-record atomicity."""

    def get_current_positions(self) -> list[Position]:
        ...

    def get_position_by_id(self, position_id: str) -> Position | None:
        ...

    def add_position(self, position: Position) -> None:
        ...

    def update_position(self, position: Position) -> None:
        ...

    def close_position_by_id(self, position_id: str, final_pnl: float, reason: str) -> None:
        ...

    def delete_position(self, position_id: str) -> None:
        ...


@dataclass
class TradeStatistics:
    """Running statistics over closed positions.

    Attributes:
        total_trades: Positions closed
        winning_trades: Closed with positive P&L
        losing_trades: Closed with negative P&L
        breakeven_trades: Closed with exactly zero P&L
        win_rate: Winners over decided (non-breakeven) trades
        total_pnl: Sum of final P&L
        average_win: Mean winning P&L
        average_loss: Mean losing P&L magnitude (positive)
        max_single_trade_loss: Worst single P&L (negative, 0 if none)
        current_streak: Positive for consecutive wins, negative for losses
    """

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    breakeven_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    max_single_trade_loss: float = 0.0
    current_streak: int = 0

    def record(self, pnl: float) -> None:
        """Fold one closed trade into the statistics."""
        self.total_trades += 1
        self.total_pnl += pnl

        if pnl > 0:
            self.winning_trades += 1
            self.current_streak = self.current_streak + 1 if self.current_streak >= 0 else 1
            self.average_win += (pnl - self.average_win) / self.winning_trades
        elif pnl < 0:
            self.losing_trades += 1
            self.current_streak = self.current_streak - 1 if self.current_streak <= 0 else -1
            self.average_loss += (-pnl - self.average_loss) / self.losing_trades
            self.max_single_trade_loss = min(self.max_single_trade_loss, pnl)
        else:
            # Breakeven leaves win/loss counts and the streak alone
            self.breakeven_trades += 1

        decided = self.winning_trades + self.losing_trades
        if decided:
            self.win_rate = self.winning_trades / decided

    def to_dict(self) -> dict:
        return asdict(self)


class InMemoryLedger:
    """Thread-safe in-memory Ledger.

    At most one non-closed record may carry a given strangle key; adding a
    second raises LedgerError.

    Example:
        >>> ledger = InMemoryLedger()
        >>> ledger.add_position(position)
        >>> ledger.close_position_by_id(position.id, 125.0, "manual_close")
        >>> ledger.get_statistics().total_pnl
        125.0
    """

    def __init__(self, positions: list[Position] | None = None):
        self._lock = threading.Lock()
        self._positions: dict[str, Position] = {}
        self._history: list[Position] = []
        self._daily_pnl: dict[str, float] = {}
        self._statistics = TradeStatistics()
        for position in positions or []:
            self.add_position(position)

    def get_current_positions(self) -> list[Position]:
        """All non-closed positions (copies)."""
        with self._lock:
            return [p.copy() for p in self._positions.values()]

    def get_position_by_id(self, position_id: str) -> Position | None:
        """Open or closed position by id (copy), or None."""
        with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                position = next((p for p in self._history if p.id == position_id), None)
            return position.copy() if position else None

    def add_position(self, position: Position) -> None:
        """Store a new position.

        Raises:
            LedgerError: If the id exists or another open record has the same key
        """
        if position is None:
            raise LedgerError("cannot add None position")
        with self._lock:
            if position.id in self._positions:
                raise LedgerError(f"position {short_id(position.id)} already exists")
            key = position.key
            for existing in self._positions.values():
                if existing.key == key:
                    raise LedgerError(
                        f"open position {short_id(existing.id)} already tracks {key}"
                    )
            self._positions[position.id] = position.copy()
        logger.debug(f"Ledger added position {short_id(position.id)} ({position.key})")

    def update_position(self, position: Position) -> None:
        """Replace a stored open position.

        Raises:
            PositionNotFoundError: If no open position has this id
        """
        with self._lock:
            if position.id not in self._positions:
                raise PositionNotFoundError(f"position {short_id(position.id)} not found")
            self._positions[position.id] = position.copy()

    def close_position_by_id(self, position_id: str, final_pnl: float, reason: str) -> None:
        """Close a position and move it to history.

        Closing an already closed position is a no-op.

        Raises:
            PositionNotFoundError: If the id is unknown
        """
        with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                if any(p.id == position_id for p in self._history):
                    logger.info(f"Position {short_id(position_id)} already closed, ignoring close")
                    return
                raise PositionNotFoundError(f"position {short_id(position_id)} not found")

            position.mark_closed(final_pnl, reason)
            position.current_pnl = final_pnl
            del self._positions[position_id]
            self._history.append(position)
            self._statistics.record(final_pnl)
            day = position.exit_date.date().isoformat()
            self._daily_pnl[day] = self._daily_pnl.get(day, 0.0) + final_pnl

        log_position_event(
            f"Closed {position.key} P&L ${final_pnl:.2f} ({reason})",
            position_id=position_id,
            pnl=final_pnl,
            reason=reason,
        )

    def delete_position(self, position_id: str) -> None:
        """Remove an open position without recording a trade.

        Raises:
            PositionNotFoundError: If no open position has this id
        """
        with self._lock:
            if self._positions.pop(position_id, None) is None:
                raise PositionNotFoundError(f"position {short_id(position_id)} not found")
        logger.debug(f"Ledger deleted position {short_id(position_id)}")

    def add_adjustment(self, position_id: str, adjustment: Adjustment) -> None:
        """Append an adjustment to an open position's history.

        Raises:
            PositionNotFoundError: If no open position has this id
        """
        with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                raise PositionNotFoundError(f"position {short_id(position_id)} not found")
            position.adjustments.append(adjustment)

    def get_history(self) -> list[Position]:
        """Closed positions in close order (copies)."""
        with self._lock:
            return [p.copy() for p in self._history]

    def get_statistics(self) -> TradeStatistics:
        with self._lock:
            return TradeStatistics(**self._statistics.to_dict())

    def get_daily_pnl(self, day: str) -> float:
        """Realized P&L for a YYYY-MM-DD close date."""
        with self._lock:
            return self._daily_pnl.get(day, 0.0)
