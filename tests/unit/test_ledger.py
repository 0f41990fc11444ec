"""Unit tests for the in-memory ledger and trade statistics."""

import pytest

from strangler.models.position import Adjustment
from strangler.models.state_machine import PositionState
from strangler.services.ledger import (
    InMemoryLedger,
    Ledger,
    LedgerError,
    PositionNotFoundError,
    TradeStatistics,
)
from strangler.utils.timezone import utc_now


class TestInMemoryLedger:
    """Tests for InMemoryLedger CRUD operations."""

    def test_satisfies_protocol(self, ledger):
        assert isinstance(ledger, Ledger)

    def test_add_and_get(self, ledger, position_factory):
        position = position_factory()
        ledger.add_position(position)

        stored = ledger.get_position_by_id(position.id)
        assert stored is not None
        assert stored.key == position.key
        assert [p.id for p in ledger.get_current_positions()] == [position.id]

    def test_stores_copies(self, ledger, position_factory):
        position = position_factory()
        ledger.add_position(position)

        position.quantity = 99
        fetched = ledger.get_current_positions()[0]
        fetched.quantity = 42

        assert ledger.get_position_by_id(position.id).quantity == 2

    def test_add_none_rejected(self, ledger):
        with pytest.raises(LedgerError):
            ledger.add_position(None)

    def test_duplicate_id_rejected(self, ledger, position_factory):
        position = position_factory()
        ledger.add_position(position)
        with pytest.raises(LedgerError, match="already exists"):
            ledger.add_position(position)

    def test_duplicate_open_key_rejected(self, ledger, position_factory):
        ledger.add_position(position_factory())
        with pytest.raises(LedgerError, match="already tracks"):
            ledger.add_position(position_factory())

    def test_same_key_allowed_after_close(self, ledger, position_factory):
        first = position_factory()
        ledger.add_position(first)
        ledger.close_position_by_id(first.id, 0.0, "manual_close")

        ledger.add_position(position_factory())
        assert len(ledger.get_current_positions()) == 1

    def test_update(self, ledger, position_factory):
        position = position_factory()
        ledger.add_position(position)
        position.current_pnl = 75.0
        ledger.update_position(position)
        assert ledger.get_position_by_id(position.id).current_pnl == 75.0

    def test_update_unknown(self, ledger, position_factory):
        with pytest.raises(PositionNotFoundError):
            ledger.update_position(position_factory())

    def test_delete(self, ledger, position_factory):
        position = position_factory(quantity=0, credit=0.0)
        ledger.add_position(position)
        ledger.delete_position(position.id)
        assert ledger.get_current_positions() == []
        assert ledger.get_history() == []
        assert ledger.get_statistics().total_trades == 0

    def test_delete_unknown(self, ledger):
        with pytest.raises(PositionNotFoundError):
            ledger.delete_position("missing")

    def test_initial_positions(self, position_factory):
        ledger = InMemoryLedger([position_factory(), position_factory(put_strike=555.0)])
        assert len(ledger.get_current_positions()) == 2


class TestClosePosition:
    """Tests for close_position_by_id."""

    def test_close_moves_to_history(self, ledger, position_factory):
        position = position_factory(state=PositionState.SECOND_DOWN)
        ledger.add_position(position)

        ledger.close_position_by_id(position.id, 125.0, "manual_close")

        assert ledger.get_current_positions() == []
        closed = ledger.get_position_by_id(position.id)
        assert closed.is_closed()
        assert closed.final_pnl == 125.0
        assert closed.current_pnl == 125.0
        assert closed.close_reason == "manual_close"
        assert [p.id for p in ledger.get_history()] == [position.id]

    def test_close_is_idempotent(self, ledger, position_factory):
        position = position_factory()
        ledger.add_position(position)
        ledger.close_position_by_id(position.id, 125.0, "manual_close")
        ledger.close_position_by_id(position.id, 999.0, "again")

        assert ledger.get_position_by_id(position.id).final_pnl == 125.0
        assert ledger.get_statistics().total_trades == 1

    def test_close_unknown(self, ledger):
        with pytest.raises(PositionNotFoundError):
            ledger.close_position_by_id("missing", 0.0, "manual_close")

    def test_close_from_submitted(self, ledger, position_factory):
        position = position_factory(state=PositionState.SUBMITTED)
        ledger.add_position(position)
        ledger.close_position_by_id(position.id, 0.0, "order_timeout")
        assert ledger.get_position_by_id(position.id).is_closed()

    def test_daily_pnl(self, ledger, position_factory):
        first = position_factory()
        second = position_factory(put_strike=550.0)
        ledger.add_position(first)
        ledger.add_position(second)
        ledger.close_position_by_id(first.id, 100.0, "profit_target")
        ledger.close_position_by_id(second.id, -40.0, "stop_loss")

        day = ledger.get_position_by_id(first.id).exit_date.date().isoformat()
        assert ledger.get_daily_pnl(day) == pytest.approx(60.0)
        assert ledger.get_daily_pnl("1999-01-01") == 0.0

    def test_add_adjustment(self, ledger, position_factory):
        position = position_factory(credit=3.5)
        ledger.add_position(position)
        ledger.add_adjustment(position.id, Adjustment(date=utc_now(), type="roll_put", credit=0.5))
        assert ledger.get_position_by_id(position.id).get_net_credit() == pytest.approx(4.0)

    def test_add_adjustment_unknown(self, ledger):
        with pytest.raises(PositionNotFoundError):
            ledger.add_adjustment("missing", Adjustment(date=utc_now(), type="roll_put"))


class TestTradeStatistics:
    """Tests for TradeStatistics aggregation."""

    def test_win_loss_counts(self):
        stats = TradeStatistics()
        for pnl in (100.0, 200.0, -150.0, 0.0):
            stats.record(pnl)

        assert stats.total_trades == 4
        assert stats.winning_trades == 2
        assert stats.losing_trades == 1
        assert stats.breakeven_trades == 1
        assert stats.win_rate == pytest.approx(2 / 3)
        assert stats.total_pnl == pytest.approx(150.0)
        assert stats.average_win == pytest.approx(150.0)
        assert stats.average_loss == pytest.approx(150.0)
        assert stats.max_single_trade_loss == pytest.approx(-150.0)

    def test_streak(self):
        stats = TradeStatistics()
        for pnl in (10.0, 20.0, 30.0):
            stats.record(pnl)
        assert stats.current_streak == 3

        stats.record(-5.0)
        stats.record(-5.0)
        assert stats.current_streak == -2

        stats.record(0.0)
        assert stats.current_streak == -2

    def test_statistics_are_snapshots(self, ledger, position_factory):
        position = position_factory()
        ledger.add_position(position)
        snapshot = ledger.get_statistics()
        ledger.close_position_by_id(position.id, 50.0, "profit_target")

        assert snapshot.total_trades == 0
        assert ledger.get_statistics().total_trades == 1
