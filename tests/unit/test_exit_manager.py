"""Unit tests for ExitManager.

Tests the close readiness guard, max debit pricing per exit reason, and the
place-record-poll sequence of execute_exit.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from strangler.config.base import ExitSettings
from strangler.execution.exit_manager import ExitManager, ExitReason
from strangler.models.position import Adjustment
from strangler.models.state_machine import PositionState
from strangler.services.broker import OrderResponse
from strangler.services.order_poller import OrderStatusError
from strangler.services.retry_client import RetryClient, RetryConfig
from strangler.utils.timezone import utc_now


@pytest.fixture
def poller():
    poller = Mock()
    poller.is_order_terminal = AsyncMock(return_value=False)
    return poller


@pytest.fixture
def manager(broker, poller, ledger):
    retry_client = RetryClient(
        broker, RetryConfig(max_retries=1, initial_backoff=0.01, max_backoff=0.01, timeout=5.0)
    )
    return ExitManager(retry_client, poller, ledger, settings=ExitSettings())


@pytest.fixture
def stored(ledger, position_factory):
    def _stored(**kwargs):
        position = position_factory(**kwargs)
        ledger.add_position(position)
        return position

    return _stored


class TestReadiness:
    """Tests for is_position_ready_for_exit."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "state",
        [PositionState.OPEN, PositionState.FIRST_DOWN, PositionState.FOURTH_DOWN],
    )
    async def test_active_states_ready(self, manager, position_factory, state):
        assert await manager.is_position_ready_for_exit(position_factory(state=state))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "state",
        [PositionState.CLOSED, PositionState.SUBMITTED, PositionState.ROLLING, PositionState.ERROR],
    )
    async def test_other_states_not_ready(self, manager, position_factory, state):
        assert not await manager.is_position_ready_for_exit(position_factory(state=state))

    @pytest.mark.asyncio
    async def test_adjusting_without_exit_order(self, manager, position_factory):
        position = position_factory(state=PositionState.ADJUSTING)
        assert await manager.is_position_ready_for_exit(position)

    @pytest.mark.asyncio
    async def test_adjusting_with_blank_exit_order(self, manager, poller, position_factory):
        position = position_factory(state=PositionState.ADJUSTING, exit_order_id="   ")
        assert await manager.is_position_ready_for_exit(position)
        poller.is_order_terminal.assert_not_called()

    @pytest.mark.asyncio
    async def test_adjusting_with_alphanumeric_order_id(
        self, manager, poller, ledger, stored
    ):
        poller.is_order_terminal.return_value = True
        position = stored(state=PositionState.ADJUSTING, exit_order_id=" ord-7f3a ")

        assert await manager.is_position_ready_for_exit(position)

        poller.is_order_terminal.assert_awaited_once_with("ord-7f3a")
        assert ledger.get_position_by_id(position.id).exit_order_id == ""

    @pytest.mark.asyncio
    async def test_adjusting_with_working_exit_order(self, manager, poller, position_factory):
        position = position_factory(state=PositionState.ADJUSTING, exit_order_id="1001")
        assert not await manager.is_position_ready_for_exit(position)
        poller.is_order_terminal.assert_awaited_once_with("1001")

    @pytest.mark.asyncio
    async def test_adjusting_with_terminal_exit_order(self, manager, poller, ledger, stored):
        poller.is_order_terminal.return_value = True
        position = stored(
            state=PositionState.ADJUSTING, exit_order_id="1001", exit_reason="stop_loss"
        )

        assert await manager.is_position_ready_for_exit(position)

        assert position.exit_order_id == ""
        saved = ledger.get_position_by_id(position.id)
        assert saved.exit_order_id == ""
        assert saved.exit_reason == ""

    @pytest.mark.asyncio
    async def test_adjusting_status_check_fails(self, manager, poller, position_factory):
        poller.is_order_terminal.side_effect = OrderStatusError("timeout")
        position = position_factory(state=PositionState.ADJUSTING, exit_order_id="1001")
        assert not await manager.is_position_ready_for_exit(position)


class TestMaxDebit:
    """Tests for calculate_max_debit."""

    def test_profit_target(self, manager, position_factory):
        position = position_factory(credit=3.5)
        assert manager.calculate_max_debit(position, ExitReason.PROFIT_TARGET) == pytest.approx(1.75)

    def test_time_without_value_uses_profit_target(self, manager, position_factory):
        position = position_factory(credit=3.5)
        assert manager.calculate_max_debit(position, "time") == pytest.approx(1.75)

    def test_time_with_current_value(self, manager, position_factory):
        position = position_factory(credit=3.5, quantity=2)
        assert manager.calculate_max_debit(position, ExitReason.TIME, -300.0) == pytest.approx(1.5)

    def test_stop_loss_multiple_of_credit(self, manager, position_factory):
        position = position_factory(credit=3.5)
        assert manager.calculate_max_debit(position, ExitReason.STOP_LOSS) == pytest.approx(8.75)

    def test_stop_loss_with_current_value(self, manager, position_factory):
        position = position_factory(credit=3.5, quantity=-2)
        assert manager.calculate_max_debit(position, ExitReason.STOP_LOSS, 1000.0) == pytest.approx(5.0)

    def test_manual_uses_full_credit(self, manager, position_factory):
        position = position_factory(credit=3.5)
        assert manager.calculate_max_debit(position, ExitReason.MANUAL) == pytest.approx(3.5)

    def test_includes_adjustment_credit(self, manager, position_factory):
        position = position_factory(credit=3.0)
        position.adjustments.append(Adjustment(date=utc_now(), type="roll_put", credit=1.0))
        assert manager.calculate_max_debit(position, ExitReason.PROFIT_TARGET) == pytest.approx(2.0)

    def test_full_profit_target_falls_back(self, broker, poller, ledger, position_factory):
        manager = ExitManager(
            RetryClient(broker), poller, ledger, settings=ExitSettings(profit_target=1.0)
        )
        position = position_factory(credit=3.5)
        assert manager.calculate_max_debit(position, ExitReason.PROFIT_TARGET) == pytest.approx(0.035)

    def test_unknown_reason_rejected(self, manager, position_factory):
        with pytest.raises(ValueError):
            manager.calculate_max_debit(position_factory(), "vibes")


class TestExecuteExit:
    """Tests for execute_exit."""

    @pytest.mark.asyncio
    async def test_places_records_and_polls(self, manager, broker, poller, ledger, stored):
        position = stored(state=PositionState.FIRST_DOWN, credit=3.5)

        order = await manager.execute_exit(position, ExitReason.PROFIT_TARGET)

        assert order.id == "1001"
        assert broker.close_strangle_position.await_args.args[5] == pytest.approx(1.75)
        saved = ledger.get_position_by_id(position.id)
        assert saved.exit_order_id == "1001"
        assert saved.exit_reason == "profit_target"
        poller.start.assert_called_once_with(position.id, "1001", is_entry_order=False)

    @pytest.mark.asyncio
    async def test_explicit_max_debit_rounded_up(self, manager, broker, stored):
        position = stored()
        await manager.execute_exit(position, ExitReason.MANUAL, max_debit=1.234)
        assert broker.close_strangle_position.await_args.args[5] == pytest.approx(1.24)

    @pytest.mark.asyncio
    async def test_zero_credit_uses_one_tick(self, manager, broker, stored):
        position = stored(credit=0.0)
        await manager.execute_exit(position, ExitReason.PROFIT_TARGET)
        assert broker.close_strangle_position.await_args.args[5] == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_not_ready_places_nothing(self, manager, broker, poller, position_factory):
        position = position_factory(state=PositionState.CLOSED)

        assert await manager.execute_exit(position, ExitReason.MANUAL) is None

        broker.close_strangle_position.assert_not_called()
        poller.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_failure_returns_none(self, manager, broker, poller, ledger, stored):
        broker.close_strangle_position.side_effect = Exception("insufficient buying power")
        position = stored()

        assert await manager.execute_exit(position, ExitReason.STOP_LOSS) is None

        assert ledger.get_position_by_id(position.id).exit_order_id == ""
        poller.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_order_without_id_returns_none(self, manager, broker, poller, stored):
        broker.close_strangle_position.return_value = OrderResponse(id="")
        position = stored()

        assert await manager.execute_exit(position, ExitReason.MANUAL) is None
        poller.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_ledger_failure_still_polls(self, broker, poller, position_factory):
        failing_ledger = Mock()
        failing_ledger.update_position.side_effect = Exception("disk full")
        manager = ExitManager(
            RetryClient(broker, RetryConfig(timeout=5.0)), poller, failing_ledger, ExitSettings()
        )
        position = position_factory()

        order = await manager.execute_exit(position, ExitReason.MANUAL)

        assert order.id == "1001"
        assert position.exit_order_id == "1001"
        poller.start.assert_called_once()
