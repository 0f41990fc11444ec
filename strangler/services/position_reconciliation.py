"""Position reconciliation between the local ledger and the broker.

The ledger (what we think we hold) and the broker's position list (what we
actually hold) drift apart: orders time out locally but fill, positions are
closed by hand at the broker, the process restarts mid-order. Each pass of
PositionReconciler:

1. Fetches broker legs under a deadline. If that fails the stored positions
   are returned unchanged.
2. Walks the stored positions:
   - zero-quantity, zero-credit records (phantoms) are left alone while
     young and deleted once past the grace period;
   - positions no longer held at the broker are closed as manual closes;
   - positions still held get their last-checked timestamp refreshed.
3. Pairs the broker legs into strangles and recovers any quantity the ledger
   does not cover, adopting a matching phantom when there is one.

Ledger write failures never drop a record from the returned set.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger

from strangler.config.base import ReconciliationSettings, get_config
from strangler.config.logging import log_position_event
from strangler.models.position import Position
from strangler.models.state_machine import (
    CONDITION_MANUAL_CLOSE,
    CONDITION_ORDER_FILLED,
    CONDITION_RECOVERED_POSITION,
    InvalidTransitionError,
    PositionState,
)
from strangler.services.broker import Broker, PositionItem
from strangler.services.ledger import Ledger
from strangler.services.strangle_grouper import (
    OrphanedStrangle,
    group_legs_by_expiration,
    identify_strangles,
)
from strangler.utils.option_symbol import (
    OPTION_TYPE_CALL,
    OPTION_TYPE_PUT,
    InvalidSymbolError,
    extract_expiration,
    extract_underlying,
    parse_expiration_date,
    parse_option_symbol,
)
from strangler.utils.position_key import (
    matches_strangle,
    normalize_expiration,
    short_id,
    strikes_match,
)
from strangler.utils.timezone import ensure_utc, utc_now


def is_position_open_in_broker(
    position: Position, broker_legs: list[PositionItem], min_contracts: int = 0
) -> bool:
    """Check the broker holds the position's quantity on both legs.

    Signed leg quantities are netted per strike, so a long and a short leg
    on the same strike cancel out.

    Args:
        position: Ledger position
        broker_legs: Legs reported by the broker
        min_contracts: Require at least this many contracts per leg even
            when the position's own quantity is smaller (e.g. zero)
    """
    expected = max(abs(position.quantity), min_contracts)
    expiration = normalize_expiration(position.expiration)
    call_net = 0
    put_net = 0

    for leg in broker_legs:
        try:
            strike, option_type = parse_option_symbol(leg.symbol)
        except InvalidSymbolError:
            continue
        if extract_underlying(leg.symbol) != position.symbol:
            continue
        if extract_expiration(leg.symbol) != expiration:
            continue

        qty = int(round(leg.quantity))
        if option_type == OPTION_TYPE_CALL and strikes_match(strike, position.call_strike):
            call_net += qty
        elif option_type == OPTION_TYPE_PUT and strikes_match(strike, position.put_strike):
            put_net += qty

    return abs(call_net) >= expected and abs(put_net) >= expected


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass.

    Attributes:
        broker_available: False when the broker fetch failed (nothing changed)
        stored_count: Positions passed in
        broker_leg_count: Legs reported by the broker
        retained: Ids of positions kept as active
        manual_closes: Ids closed because the broker no longer holds them
        phantoms_deleted: Ids of phantom records removed
        phantoms_adopted: Ids of phantoms filled in from broker data
        recovered: Ids of positions created for untracked broker strangles
        extended: Ids of tracked positions whose quantity grew to cover broker legs
        failures: Readable descriptions of ledger/transition failures
    """

    broker_available: bool = True
    stored_count: int = 0
    broker_leg_count: int = 0
    retained: list[str] = field(default_factory=list)
    manual_closes: list[str] = field(default_factory=list)
    phantoms_deleted: list[str] = field(default_factory=list)
    phantoms_adopted: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    extended: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        """True if the pass closed, deleted, adopted, or created anything."""
        return bool(
            self.manual_closes
            or self.phantoms_deleted
            or self.phantoms_adopted
            or self.recovered
            or self.extended
        )

    def summary(self) -> str:
        return (
            f"retained={len(self.retained)} manual_closes={len(self.manual_closes)} "
            f"phantoms_deleted={len(self.phantoms_deleted)} "
            f"phantoms_adopted={len(self.phantoms_adopted)} recovered={len(self.recovered)} "
            f"extended={len(self.extended)} "
            f"failures={len(self.failures)}"
        )


class PositionReconciler:
    """Keep the ledger consistent with the broker's positions.

    Example:
        >>> reconciler = PositionReconciler(broker, ledger)
        >>> active = await reconciler.reconcile(ledger.get_current_positions())
        >>> reconciler.last_report.has_changes
        False
    """

    def __init__(
        self,
        broker: Broker,
        ledger: Ledger,
        settings: ReconciliationSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the reconciler.

        Args:
            broker: Source of truth for held legs
            ledger: Local position store
            settings: Thresholds (from the global config when None)
            clock: Current UTC time, injectable for tests
        """
        self.broker = broker
        self.ledger = ledger
        self.settings = settings or get_config().reconciliation
        self._clock = clock
        self._cold_start_logged = False
        self.last_report: ReconciliationReport | None = None

        logger.debug(
            f"PositionReconciler initialized: grace={self.grace_period}, "
            f"stale={self.stale_period}, underlying={self.settings.underlying}"
        )

    @property
    def grace_period(self) -> timedelta:
        return timedelta(minutes=self.settings.phantom_grace_minutes)

    @property
    def stale_period(self) -> timedelta:
        return timedelta(hours=self.settings.stale_phantom_hours)

    async def reconcile(self, stored_positions: list[Position]) -> list[Position]:
        """Run one reconciliation pass.

        Never raises for broker or ledger failures.

        Args:
            stored_positions: Positions currently in the ledger

        Returns:
            Active positions after the pass (order not significant)
        """
        report = ReconciliationReport(stored_count=len(stored_positions))
        self.last_report = report

        try:
            broker_legs = await asyncio.wait_for(
                self.broker.get_positions(),
                timeout=self.settings.positions_fetch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Broker positions fetch timed out after "
                f"{self.settings.positions_fetch_timeout_seconds}s, skipping reconciliation"
            )
            report.broker_available = False
            return stored_positions
        except Exception as e:
            logger.warning(f"Failed to get broker positions for reconciliation: {e}")
            report.broker_available = False
            return stored_positions

        broker_legs = list(broker_legs or [])
        report.broker_leg_count = len(broker_legs)
        logger.info(
            f"Reconciling {len(stored_positions)} stored positions with "
            f"{len(broker_legs)} broker legs"
        )

        if not stored_positions and broker_legs and not self._cold_start_logged:
            self._cold_start_logged = True
            logger.warning(
                f"Cold start detected: no stored positions but {len(broker_legs)} broker legs; "
                f"recovering through orphan detection"
            )

        active: list[Position] = []
        for stored in stored_positions:
            if stored.get_current_state() == PositionState.CLOSED:
                continue
            position = stored.copy()
            if position.is_phantom():
                if self._handle_phantom(position, report):
                    active.append(position)
                continue
            self._check_broker_presence(position, broker_legs, active, report)

        for orphan in self.find_orphaned_strangles(broker_legs, active):
            self._recover_orphan(orphan, active, report)

        report.retained = [p.id for p in active]
        if report.has_changes or report.failures:
            logger.info(f"Reconciliation complete: {report.summary()}")
        else:
            logger.debug(f"Reconciliation complete: {report.summary()}")
        return active

    # Stored positions

    def phantom_age(self, position: Position) -> timedelta:
        """How long a phantom has existed, from the best timestamp available."""
        now = self._clock()
        if position.entry_date is not None:
            return now - ensure_utc(position.entry_date)
        if position.last_checked is not None:
            return now - ensure_utc(position.last_checked)
        if position.adjustments:
            # History without timestamps means the record is old
            return self.grace_period * 2
        return timedelta(0)

    def _handle_phantom(self, position: Position, report: ReconciliationReport) -> bool:
        """Delete or keep a phantom. Returns True if it stays active."""
        age = self.phantom_age(position)
        pid = short_id(position.id)

        if age < self.grace_period:
            logger.debug(
                f"Phantom position {pid} is {age.total_seconds() / 60:.1f} minutes old, "
                f"waiting for fill confirmation"
            )
            return True

        if age >= self.stale_period:
            logger.warning(
                f"Stale phantom position {pid}: quantity=0 and credit=0 after "
                f"{age.total_seconds() / 3600:.1f} hours, cleaning up"
            )
        else:
            logger.warning(
                f"Phantom position {pid}: quantity=0 and credit=0 after "
                f"{age.total_seconds() / 60:.0f} minutes, cleaning up"
            )

        try:
            self.ledger.delete_position(position.id)
        except Exception as e:
            logger.error(f"Failed to clean up phantom position {pid}: {e}")
            report.failures.append(f"delete phantom {pid}: {e}")
            return True

        report.phantoms_deleted.append(position.id)
        log_position_event(
            f"Deleted phantom position {pid} ({position.key})",
            position_id=position.id,
            reason="phantom_cleanup",
        )
        return False

    def _check_broker_presence(
        self,
        position: Position,
        broker_legs: list[PositionItem],
        active: list[Position],
        report: ReconciliationReport,
    ) -> None:
        pid = short_id(position.id)
        position.last_checked = self._clock()

        if is_position_open_in_broker(position, broker_legs):
            try:
                self.ledger.update_position(position)
            except Exception as e:
                logger.warning(f"Failed to update last-checked time for position {pid}: {e}")
            active.append(position)
            return

        final_pnl = position.current_pnl or 0.0
        logger.warning(f"Position {pid} no longer held at broker, closing as manual close")
        try:
            self.ledger.close_position_by_id(position.id, final_pnl, CONDITION_MANUAL_CLOSE)
        except Exception as e:
            logger.error(f"Failed to close manually closed position {pid}: {e}")
            report.failures.append(f"manual close {pid}: {e}")
            active.append(position)
            return

        report.manual_closes.append(position.id)
        logger.info(f"Position {pid} closed due to manual intervention, final P&L ${final_pnl:.2f}")

    # Broker strangles

    def find_orphaned_strangles(
        self, broker_legs: list[PositionItem], active: list[Position]
    ) -> list[OrphanedStrangle]:
        """Broker strangle quantity not covered by active positions."""
        underlying = self.settings.underlying
        if underlying is not None:
            underlyings = [underlying]
        else:
            underlyings = sorted(
                {extract_underlying(leg.symbol) for leg in broker_legs if extract_expiration(leg.symbol)}
            )

        orphaned: list[OrphanedStrangle] = []
        for ticker in underlyings:
            groups = group_legs_by_expiration(broker_legs, ticker)
            for expiration in sorted(groups):
                for strangle in identify_strangles(groups[expiration], expiration):
                    tracked = sum(
                        abs(p.quantity)
                        for p in active
                        if matches_strangle(
                            p,
                            strangle.symbol,
                            strangle.put_strike,
                            strangle.call_strike,
                            strangle.expiration,
                        )
                    )
                    missing = strangle.quantity - tracked
                    if missing > 0:
                        if tracked:
                            # Scale cost bases to the untracked share
                            fraction = missing / strangle.quantity
                            strangle.put_cost_basis *= fraction
                            strangle.call_cost_basis *= fraction
                        strangle.quantity = missing
                        orphaned.append(strangle)
        return orphaned

    def _recover_orphan(
        self, orphan: OrphanedStrangle, active: list[Position], report: ReconciliationReport
    ) -> None:
        logger.warning(
            f"Untracked strangle at broker: {orphan.symbol} put {orphan.put_strike:g} / "
            f"call {orphan.call_strike:g} exp {orphan.expiration} x{orphan.quantity}"
        )

        phantom = self.find_matching_phantom(active, orphan)
        if phantom is not None:
            self._adopt_phantom(phantom, orphan, report)
            return

        tracked = next(
            (
                p
                for p in active
                if not p.is_phantom()
                and matches_strangle(
                    p, orphan.symbol, orphan.put_strike, orphan.call_strike, orphan.expiration
                )
            ),
            None,
        )
        if tracked is not None:
            self._extend_tracked(tracked, orphan, report)
            return

        position = self.create_recovery_position(orphan)
        if position is None:
            report.failures.append(f"recovery {orphan.symbol} {orphan.expiration}: bad expiration")
            return
        try:
            self.ledger.add_position(position)
        except Exception as e:
            logger.error(f"Failed to add recovery position {short_id(position.id)}: {e}")
            report.failures.append(f"add recovery {short_id(position.id)}: {e}")
            return

        active.append(position)
        report.recovered.append(position.id)
        log_position_event(
            f"Recovered untracked position {short_id(position.id)} ({position.key}) "
            f"x{position.quantity}",
            position_id=position.id,
            reason=CONDITION_RECOVERED_POSITION,
        )

    @staticmethod
    def find_matching_phantom(
        positions: list[Position], orphan: OrphanedStrangle
    ) -> Position | None:
        """First phantom describing the same strangle, or None."""
        for position in positions:
            if not position.is_phantom():
                continue
            if matches_strangle(
                position, orphan.symbol, orphan.put_strike, orphan.call_strike, orphan.expiration
            ):
                return position
        return None

    def _extend_tracked(
        self, position: Position, orphan: OrphanedStrangle, report: ReconciliationReport
    ) -> None:
        """Grow a tracked position by the broker quantity it does not cover.

        The ledger holds one open record per strangle key, so the shortfall
        lands on the existing record.
        """
        pid = short_id(position.id)
        old_quantity = position.quantity
        if old_quantity < 0:
            position.quantity = old_quantity - orphan.quantity
        else:
            position.quantity = old_quantity + orphan.quantity

        try:
            self.ledger.update_position(position)
        except Exception as e:
            position.quantity = old_quantity
            logger.error(f"Failed to extend position {pid}: {e}")
            report.failures.append(f"extend {pid}: {e}")
            return

        report.extended.append(position.id)
        log_position_event(
            f"Extended position {pid} ({position.key}) from x{abs(old_quantity)} "
            f"to x{abs(position.quantity)} to match broker legs",
            position_id=position.id,
            reason=CONDITION_RECOVERED_POSITION,
        )

    def _adopt_phantom(
        self, phantom: Position, orphan: OrphanedStrangle, report: ReconciliationReport
    ) -> None:
        pid = short_id(phantom.id)
        logger.info(f"Matched untracked strangle to phantom position {pid}, filling in broker data")
        phantom.quantity = orphan.quantity
        phantom.credit_received = orphan.credit

        try:
            phantom.transition_state(PositionState.OPEN, CONDITION_ORDER_FILLED)
        except InvalidTransitionError as e:
            logger.warning(f"Failed to transition phantom {pid} to open: {e}")
            report.failures.append(f"transition phantom {pid}: {e}")

        try:
            self.ledger.update_position(phantom)
        except Exception as e:
            logger.error(f"Failed to update phantom position {pid}: {e}")
            report.failures.append(f"update phantom {pid}: {e}")
            return

        report.phantoms_adopted.append(phantom.id)
        log_position_event(
            f"Adopted phantom position {pid} ({phantom.key}) x{phantom.quantity} "
            f"credit {phantom.credit_received:.2f}",
            position_id=phantom.id,
            reason=CONDITION_ORDER_FILLED,
        )

    def create_recovery_position(self, orphan: OrphanedStrangle) -> Position | None:
        """Build an Open position for an untracked strangle.

        Entry economics (credit, spot, IV) are unknown and left at zero.
        """
        try:
            expiration = parse_expiration_date(orphan.expiration)
        except InvalidSymbolError as e:
            logger.error(f"Failed to parse expiration for recovery position: {e}")
            return None

        position = Position.new(
            symbol=orphan.symbol,
            put_strike=orphan.put_strike,
            call_strike=orphan.call_strike,
            expiration=expiration,
            quantity=orphan.quantity,
            position_id=str(uuid.uuid4()),
        )
        position.entry_date = self._clock()
        position.dte = position.calculate_dte()
        position.transition_state(PositionState.OPEN, CONDITION_RECOVERED_POSITION)
        return position
