"""Pair broker option legs into strangles.

The broker reports individual legs. To compare them with the ledger the legs
are grouped by expiration and each group's calls are paired with its puts.

Pairing is a deterministic greedy walk: distinct strikes are sorted
ascending on each side, and the lowest remaining call is matched against the
lowest remaining puts until its quantity is used up. This does not try to
find the economically "right" pairing; with several strikes per side it can
pair a call with a put it was never traded against.
"""

from collections import defaultdict
from dataclasses import dataclass

from loguru import logger

from strangler.services.broker import PositionItem
from strangler.utils.option_symbol import (
    OPTION_TYPE_CALL,
    OPTION_TYPE_PUT,
    InvalidSymbolError,
    extract_expiration,
    extract_underlying,
    parse_option_symbol,
)


@dataclass
class OrphanedStrangle:
    """A strangle derived from broker legs.

    Attributes:
        symbol: Underlying ticker
        put_strike: Put leg strike
        call_strike: Call leg strike
        expiration: ISO expiration (YYYY-MM-DD)
        quantity: Contracts in the pair (positive)
        put_cost_basis: Put leg cost basis for this quantity
        call_cost_basis: Call leg cost basis for this quantity
    """

    symbol: str
    put_strike: float
    call_strike: float
    expiration: str
    quantity: int
    put_cost_basis: float = 0.0
    call_cost_basis: float = 0.0

    @property
    def credit(self) -> float:
        """Credit implied by the cost bases (short legs carry negative basis)."""
        return -(self.put_cost_basis + self.call_cost_basis)


def group_legs_by_expiration(
    legs: list[PositionItem], underlying_filter: str | None = "SPY"
) -> dict[str, list[PositionItem]]:
    """Group broker legs by the expiration encoded in their symbol.

    Args:
        legs: Broker legs
        underlying_filter: Keep only this underlying (None keeps all)

    Returns:
        Mapping of ISO expiration to legs; legs without an expiration are dropped
    """
    groups: dict[str, list[PositionItem]] = defaultdict(list)
    for leg in legs:
        if underlying_filter is not None and extract_underlying(leg.symbol) != underlying_filter:
            continue
        expiration = extract_expiration(leg.symbol)
        if expiration:
            groups[expiration].append(leg)
    return dict(groups)


def identify_strangles(legs: list[PositionItem], expiration: str) -> list[OrphanedStrangle]:
    """Pair calls with puts for one expiration.

    Args:
        legs: Legs sharing one expiration
        expiration: ISO expiration to tag the results with

    Returns:
        Strangles in pairing order (ascending call strike, then put strike)

    Example:
        >>> legs = [
        ...     PositionItem("SPY240315C00610000", -2),
        ...     PositionItem("SPY240315P00560000", -2),
        ... ]
        >>> identify_strangles(legs, "2024-03-15")[0].quantity
        2
    """
    call_qty: dict[float, int] = defaultdict(int)
    put_qty: dict[float, int] = defaultdict(int)
    call_basis: dict[float, float] = defaultdict(float)
    put_basis: dict[float, float] = defaultdict(float)
    underlying = ""

    for leg in legs:
        try:
            strike, option_type = parse_option_symbol(leg.symbol)
        except InvalidSymbolError:
            logger.debug(f"Skipping non-option leg {leg.symbol}")
            continue
        if not underlying:
            underlying = extract_underlying(leg.symbol)
        qty = int(abs(leg.quantity))
        if qty <= 0:
            continue
        if option_type == OPTION_TYPE_CALL:
            call_qty[strike] += qty
            call_basis[strike] += leg.cost_basis
        elif option_type == OPTION_TYPE_PUT:
            put_qty[strike] += qty
            put_basis[strike] += leg.cost_basis

    # Per-contract averages use the totals before pairing consumes quantity
    call_avg = {k: call_basis[k] / call_qty[k] for k in call_qty}
    put_avg = {k: put_basis[k] / put_qty[k] for k in put_qty}
    put_remaining = dict(put_qty)
    put_keys = sorted(put_qty)

    strangles: list[OrphanedStrangle] = []
    for call_strike in sorted(call_qty):
        call_remaining = call_qty[call_strike]
        for put_strike in put_keys:
            if call_remaining <= 0:
                break
            available = put_remaining[put_strike]
            if available <= 0:
                continue
            n = min(call_remaining, available)
            strangles.append(
                OrphanedStrangle(
                    symbol=underlying,
                    put_strike=put_strike,
                    call_strike=call_strike,
                    expiration=expiration,
                    quantity=n,
                    put_cost_basis=put_avg[put_strike] * n,
                    call_cost_basis=call_avg[call_strike] * n,
                )
            )
            call_remaining -= n
            put_remaining[put_strike] = available - n

    return strangles
