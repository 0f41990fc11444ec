"""Exit execution for strangle positions.

ExitManager is the only path for closing a position at the broker. It
checks the position may start a close, prices the close order, places it
through the RetryClient, records the exit order on the position and hands
the order to the OrderStatusPoller.
"""

import math
from enum import Enum

from loguru import logger

from strangler.config.base import ExitSettings, get_config
from strangler.models.position import Position
from strangler.models.state_machine import MANAGEMENT_STATES, PositionState
from strangler.services.broker import OrderResponse
from strangler.services.ledger import Ledger
from strangler.services.order_poller import OrderStatusError, OrderStatusPoller
from strangler.services.retry_client import RetryClient, RetryException
from strangler.utils.calc import CONTRACT_MULTIPLIER, ceil_to_tick
from strangler.utils.position_key import short_id


class ExitReason(str, Enum):
    """Why a position is being closed."""

    PROFIT_TARGET = "profit_target"
    TIME = "time"
    STOP_LOSS = "stop_loss"
    MANUAL = "manual"
    ESCALATE = "escalate"
    ERROR = "error"


class ExitManager:
    """Place and track close orders.

    Example:
        >>> manager = ExitManager(retry_client, poller, ledger)
        >>> order = await manager.execute_exit(position, ExitReason.PROFIT_TARGET)
    """

    def __init__(
        self,
        retry_client: RetryClient,
        poller: OrderStatusPoller,
        ledger: Ledger,
        settings: ExitSettings | None = None,
    ):
        self.retry_client = retry_client
        self.poller = poller
        self.ledger = ledger
        self.settings = settings or get_config().exit

    async def is_position_ready_for_exit(self, position: Position) -> bool:
        """Decide whether a close attempt may start.

        Open and management-tier positions may close. An Adjusting position
        may close again only if it has no exit order, or its exit order is
        already terminal (the stale order is then cleared and persisted).
        """
        pid = short_id(position.id)
        state = position.get_current_state()

        if state == PositionState.CLOSED:
            logger.info(f"Position {pid} is already closed, skipping duplicate close attempt")
            return False

        if state == PositionState.OPEN or state in MANAGEMENT_STATES:
            return True

        if state != PositionState.ADJUSTING:
            logger.info(f"Position {pid} is in state {state.value}, not eligible for close")
            return False

        order_id = (position.exit_order_id or "").strip()
        if not order_id:
            logger.info(f"Position {pid} adjusting with no active exit order, allowing re-attempt")
            return True

        try:
            terminal = await self.poller.is_order_terminal(order_id)
        except OrderStatusError as e:
            logger.warning(f"Failed to check exit order {order_id} for position {pid}: {e}, blocking")
            return False

        if not terminal:
            logger.info(
                f"Position {pid} adjusting with active exit order {order_id}, blocking duplicate"
            )
            return False

        logger.info(f"Prior exit order {order_id} for position {pid} is terminal, allowing re-attempt")
        position.exit_order_id = ""
        position.exit_reason = ""
        try:
            self.ledger.update_position(position)
        except Exception as e:
            logger.warning(f"Failed to clear terminal exit order for position {pid}: {e}")
        return True

    def calculate_max_debit(
        self, position: Position, reason: ExitReason | str, current_value: float | None = None
    ) -> float:
        """Highest debit per share to pay for the close.

        Args:
            position: Position being closed
            reason: Exit reason
            current_value: Current dollar value of the position, when known

        Returns:
            Debit per share (not yet rounded to the tick)
        """
        reason = ExitReason(reason)
        abs_credit = abs(position.get_net_credit())
        pt = self.settings.profit_target
        known_value = current_value is not None and position.quantity != 0

        if reason == ExitReason.PROFIT_TARGET or (reason == ExitReason.TIME and not known_value):
            debit = abs_credit * (1.0 - pt)
            return debit if debit > 0 else abs_credit * 0.01
        if reason in (ExitReason.TIME, ExitReason.STOP_LOSS) and known_value:
            return abs(current_value / (position.quantity * CONTRACT_MULTIPLIER))
        if reason == ExitReason.STOP_LOSS:
            debit = abs_credit * self.settings.stop_loss_pct
            return debit if debit > 0 else abs_credit * 2.0
        return abs_credit

    async def execute_exit(
        self,
        position: Position,
        reason: ExitReason | str,
        max_debit: float | None = None,
        current_value: float | None = None,
    ) -> OrderResponse | None:
        """Close a position at the broker.

        Args:
            position: Position to close
            reason: Exit reason, stored on the position for the poller
            max_debit: Limit debit per share (priced from reason when None)
            current_value: Current dollar value, used when pricing

        Returns:
            The placed close order, or None if nothing was placed
        """
        reason = ExitReason(reason)
        pid = short_id(position.id)
        logger.info(f"Executing exit for position {pid}: {reason.value}")

        if not await self.is_position_ready_for_exit(position):
            return None

        logger.info(
            f"Closing position: {position.symbol} {position.expiration_iso} "
            f"put {position.put_strike:g} / call {position.call_strike:g} "
            f"(state: {position.get_current_state().value})"
        )

        tick = self.settings.tick_size
        if max_debit is None:
            max_debit = self.calculate_max_debit(position, reason, current_value)
        if max_debit is None or math.isnan(max_debit) or max_debit <= 0:
            logger.warning(f"Max debit {max_debit} invalid for position {pid}, using one tick")
            max_debit = tick
        max_debit = ceil_to_tick(max(max_debit, tick), tick)

        try:
            order = await self.retry_client.close_position_with_retry(position, max_debit)
        except (RetryException, ValueError) as e:
            logger.error(f"Failed to place close order for position {pid}: {e}")
            return None

        if order is None or not order.id:
            logger.error(f"Close order for position {pid} returned no order id")
            return None

        position.exit_order_id = str(order.id)
        position.exit_reason = reason.value
        try:
            self.ledger.update_position(position)
        except Exception as e:
            logger.error(f"Failed to record exit order {order.id} on position {pid}: {e}")

        logger.info(f"Close order placed for position {pid}: order_id={order.id}, max_debit=${max_debit:.2f}")
        self.poller.start(position.id, str(order.id), is_entry_order=False)
        return order
