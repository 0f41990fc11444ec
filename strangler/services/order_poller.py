"""Order status polling.

After an entry or exit order is placed, OrderStatusPoller watches it in a
background task until the broker reports a terminal status or the polling
window runs out, then drives the position's state through the ledger:

- entry filled: Submitted -> Open
- exit filled: position closed with the exit reason mapped to a close condition
- entry canceled/rejected/expired: Submitted -> Error
- exit canceled/rejected/expired: exit order cleared, position stays active
- timeout: the broker's legs are checked first, since a timed-out entry may
  still have filled
"""

import asyncio
import time
from enum import Enum

from loguru import logger

from strangler.config.base import PollerSettings, get_config
from strangler.config.logging import log_position_event
from strangler.models.position import Position
from strangler.models.state_machine import (
    CONDITION_EMERGENCY_EXIT,
    CONDITION_EXIT_CONDITIONS,
    CONDITION_FORCE_CLOSE,
    CONDITION_HARD_STOP,
    CONDITION_ORDER_FAILED,
    CONDITION_ORDER_FILLED,
    CONDITION_ORDER_TIMEOUT,
    InvalidTransitionError,
    PositionState,
)
from strangler.services.broker import (
    FAILED_ORDER_STATUSES,
    ORDER_STATUS_FILLED,
    Broker,
    OrderResponse,
)
from strangler.services.ledger import Ledger
from strangler.services.position_reconciliation import is_position_open_in_broker
from strangler.utils.calc import fallback_close_pnl
from strangler.utils.position_key import short_id

FILL_EPSILON = 1e-6

# Exit reason recorded at placement -> close condition
EXIT_REASON_CONDITIONS = {
    "profit_target": CONDITION_EXIT_CONDITIONS,
    "time": CONDITION_EXIT_CONDITIONS,
    "manual": CONDITION_EXIT_CONDITIONS,
    "escalate": CONDITION_EMERGENCY_EXIT,
    "stop_loss": CONDITION_HARD_STOP,
    "error": CONDITION_HARD_STOP,
}

# State at exit timeout -> close condition
TIMEOUT_STATE_CONDITIONS = {
    PositionState.ADJUSTING: CONDITION_HARD_STOP,
    PositionState.ROLLING: CONDITION_FORCE_CLOSE,
    PositionState.FIRST_DOWN: CONDITION_EXIT_CONDITIONS,
    PositionState.SECOND_DOWN: CONDITION_EXIT_CONDITIONS,
    PositionState.THIRD_DOWN: CONDITION_HARD_STOP,
    PositionState.FOURTH_DOWN: CONDITION_EMERGENCY_EXIT,
    PositionState.ERROR: CONDITION_FORCE_CLOSE,
}


class OrderStatusError(Exception):
    """Raised when an order's status cannot be determined."""

    pass


class PollOutcome(str, Enum):
    """How a polling task ended."""

    FILLED = "filled"
    FAILED = "failed"
    TIMEOUT = "timeout"


def exit_condition_from_reason(exit_reason: str) -> str:
    """Close condition for a stored exit reason (exit_conditions if unknown)."""
    return EXIT_REASON_CONDITIONS.get(exit_reason, CONDITION_EXIT_CONDITIONS)


def timeout_condition_for_state(state: PositionState) -> str:
    """Close condition for an exit order that timed out in state."""
    return TIMEOUT_STATE_CONDITIONS.get(state, CONDITION_FORCE_CLOSE)


def is_order_completely_filled(order: OrderResponse | None) -> bool:
    """Decide whether an order is fully filled.

    A "filled" status is trusted. Otherwise the executed quantity must
    cover the requested quantity, or nothing may remain with something
    executed (a rejected order has zero remaining but nothing executed).
    """
    if order is None:
        return False
    if order.normalized_status == ORDER_STATUS_FILLED:
        return True
    if order.quantity <= FILL_EPSILON:
        return False
    complete = order.exec_quantity >= order.quantity - FILL_EPSILON
    zero_remaining = order.remaining_quantity <= FILL_EPSILON
    nothing_executed = order.exec_quantity <= FILL_EPSILON
    return complete or (zero_remaining and not nothing_executed)


class OrderStatusPoller:
    """Watch submitted orders and apply their outcome to the ledger.

    Example:
        >>> poller = OrderStatusPoller(broker, ledger)
        >>> poller.start(position.id, order.id, is_entry_order=True)
        >>> await poller.stop()  # on shutdown
    """

    def __init__(self, broker: Broker, ledger: Ledger, settings: PollerSettings | None = None):
        self.broker = broker
        self.ledger = ledger
        self.settings = settings or get_config().poller
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def active_orders(self) -> list[str]:
        """Order ids with a polling task still running."""
        return [oid for oid, task in self._tasks.items() if not task.done()]

    def start(self, position_id: str, order_id: str, is_entry_order: bool) -> asyncio.Task:
        """Spawn a background task polling one order.

        Must be called from a running event loop.
        """
        existing = self._tasks.get(order_id)
        if existing is not None and not existing.done():
            logger.debug(f"Order {order_id} already being polled")
            return existing

        task = asyncio.create_task(
            self.poll_order_status(position_id, order_id, is_entry_order),
            name=f"poll-order-{order_id}",
        )
        self._tasks[order_id] = task
        task.add_done_callback(lambda t, oid=order_id: self._forget(oid, t))
        return task

    def _forget(self, order_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(order_id) is task:
            del self._tasks[order_id]

    async def stop(self) -> None:
        """Cancel every polling task and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} order polling task(s)")

    async def wait_all(self) -> None:
        """Wait for every polling task to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def poll_order_status(
        self, position_id: str, order_id: str, is_entry_order: bool
    ) -> PollOutcome:
        """Poll one order until it is terminal or the polling window ends."""
        pid = short_id(position_id)
        kind = "entry" if is_entry_order else "exit"
        logger.info(f"Polling {kind} order {order_id} for position {pid}")
        deadline = time.monotonic() + self.settings.timeout_seconds

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.settings.poll_interval_seconds, remaining))
            if time.monotonic() >= deadline:
                break

            order = await self._fetch_status(order_id, pid)
            if order is None:
                continue

            status = order.normalized_status
            logger.debug(
                f"Order {order_id} status={status} qty={order.quantity:g} "
                f"exec={order.exec_quantity:g} remaining={order.remaining_quantity:g}"
            )

            if is_order_completely_filled(order):
                logger.info(f"{kind.capitalize()} order {order_id} filled for position {pid}")
                self.handle_order_filled(position_id, is_entry_order)
                return PollOutcome.FILLED

            if status in FAILED_ORDER_STATUSES:
                logger.warning(
                    f"{kind.capitalize()} order {order_id} for position {pid} ended: {status}"
                )
                self.handle_order_failed(position_id, order_id, status, is_entry_order)
                return PollOutcome.FAILED

        logger.warning(f"Order polling timed out for position {pid}, order {order_id}")
        await self.handle_order_timeout(position_id, is_entry_order)
        return PollOutcome.TIMEOUT

    async def _fetch_status(self, order_id: str, pid: str) -> OrderResponse | None:
        try:
            order = await asyncio.wait_for(
                self.broker.get_order_status(order_id),
                timeout=self.settings.call_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Order status call timed out for order {order_id} (position {pid})")
            return None
        except Exception as e:
            logger.warning(f"Error checking order {order_id} for position {pid}: {e}")
            return None

        if order is None or not order.id:
            logger.warning(f"Order status payload missing for order {order_id}")
            return None
        if not order.normalized_status:
            logger.warning(f"Order {order_id} has empty status, cannot determine outcome")
            return None
        return order

    def _load(self, position_id: str) -> Position | None:
        try:
            position = self.ledger.get_position_by_id(position_id)
        except Exception as e:
            logger.error(f"Failed to load position {short_id(position_id)}: {e}")
            return None
        if position is None:
            logger.warning(f"Position {short_id(position_id)} not found")
        return position

    def _close(self, position_id: str, final_pnl: float, reason: str) -> bool:
        try:
            self.ledger.close_position_by_id(position_id, final_pnl, reason)
        except Exception as e:
            logger.error(f"Failed to close position {short_id(position_id)}: {e}")
            return False
        return True

    def _save(self, position: Position, action: str) -> bool:
        try:
            self.ledger.update_position(position)
        except Exception as e:
            logger.error(f"Failed to save position {short_id(position.id)} after {action}: {e}")
            return False
        return True

    def handle_order_filled(self, position_id: str, is_entry_order: bool) -> None:
        position = self._load(position_id)
        if position is None:
            return
        pid = short_id(position_id)

        if is_entry_order:
            try:
                position.transition_state(PositionState.OPEN, CONDITION_ORDER_FILLED)
            except InvalidTransitionError as e:
                logger.warning(f"Failed to open position {pid} after fill: {e}")
                return
            if self._save(position, "fill"):
                log_position_event(
                    f"Entry filled for position {pid} ({position.key})",
                    position_id=position_id,
                    reason=CONDITION_ORDER_FILLED,
                )
            return

        if position.is_closed():
            logger.info(f"Position {pid} already closed, ignoring exit fill")
            return
        reason = exit_condition_from_reason(position.exit_reason)
        final_pnl = fallback_close_pnl(
            position.current_pnl, position.credit_received, position.quantity
        )
        if self._close(position_id, final_pnl, reason):
            logger.info(f"Position {pid} closed on exit fill, final P&L ${final_pnl:.2f}")

    def handle_order_failed(
        self, position_id: str, order_id: str, status: str, is_entry_order: bool
    ) -> None:
        position = self._load(position_id)
        if position is None:
            return
        pid = short_id(position_id)

        if is_entry_order:
            try:
                position.transition_state(PositionState.ERROR, CONDITION_ORDER_FAILED)
            except InvalidTransitionError as e:
                logger.warning(f"Failed to mark position {pid} as error: {e}")
                return
            if self._save(position, "order failure"):
                log_position_event(
                    f"Entry order {order_id} {status}, position {pid} marked error",
                    position_id=position_id,
                    reason=CONDITION_ORDER_FAILED,
                )
            return

        if position.exit_order_id != order_id:
            logger.info(
                f"Exit order {order_id} no longer tracked by position {pid} "
                f"(current: {position.exit_order_id or 'none'})"
            )
            return
        position.exit_order_id = ""
        position.exit_reason = ""
        if self._save(position, "exit order failure"):
            logger.warning(f"Exit order {order_id} {status}, position {pid} kept active")

    async def handle_order_timeout(self, position_id: str, is_entry_order: bool) -> None:
        position = self._load(position_id)
        if position is None:
            return
        pid = short_id(position_id)
        state = position.get_current_state()

        if is_entry_order and state != PositionState.SUBMITTED:
            logger.info(f"Position {pid} left submitted state ({state.value}), nothing to time out")
            return
        if position.is_closed():
            logger.info(f"Position {pid} already closed, ignoring exit timeout")
            return

        logger.info(f"Verifying broker state for position {pid} before timing out")
        try:
            legs = await asyncio.wait_for(
                self.broker.get_positions(), timeout=self.settings.call_timeout_seconds
            )
        except Exception as e:
            logger.warning(f"Failed to get broker positions during timeout handling: {e}")
            legs = None

        if legs is not None and is_position_open_in_broker(position, legs, min_contracts=1):
            if is_entry_order:
                try:
                    position.transition_state(PositionState.OPEN, CONDITION_ORDER_FILLED)
                except InvalidTransitionError as e:
                    logger.warning(f"Failed to open timed-out position {pid}: {e}")
                else:
                    if self._save(position, "timeout recovery"):
                        log_position_event(
                            f"Entry order timed out but position {pid} is held at broker, "
                            f"marked open",
                            position_id=position_id,
                            reason=CONDITION_ORDER_FILLED,
                        )
                        return
            else:
                position.exit_order_id = ""
                position.exit_reason = ""
                if self._save(position, "exit timeout"):
                    logger.warning(
                        f"Exit order for position {pid} timed out but legs are still held, "
                        f"kept active"
                    )
                    return

        if is_entry_order:
            if self._close(position_id, 0.0, CONDITION_ORDER_TIMEOUT):
                logger.warning(f"Position {pid} closed on entry order timeout")
            return

        reason = timeout_condition_for_state(state)
        final_pnl = fallback_close_pnl(
            position.current_pnl, position.credit_received, position.quantity
        )
        if self._close(position_id, final_pnl, reason):
            logger.warning(
                f"Position {pid} closed on exit order timeout ({reason}), "
                f"final P&L ${final_pnl:.2f}"
            )

    async def is_order_terminal(self, order_id: str) -> bool:
        """Check once whether an order is filled, canceled, rejected or expired.

        Raises:
            OrderStatusError: If the status call fails or returns no order
        """
        try:
            order = await asyncio.wait_for(
                self.broker.get_order_status(order_id),
                timeout=self.settings.call_timeout_seconds,
            )
        except Exception as e:
            raise OrderStatusError(f"failed to get order status for {order_id}: {e}") from e

        if order is None or not order.id:
            raise OrderStatusError(f"invalid order status response for {order_id}")
        return order.is_terminal()
