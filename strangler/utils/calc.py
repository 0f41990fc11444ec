"""Safe P&L calculation helpers for strangle positions.

Guards against None values in credit, current P&L, and quantity that can
arise from recovered positions with unknown entry economics.
"""

import math

CONTRACT_MULTIPLIER = 100


def fallback_close_pnl(current_pnl, credit_received, quantity) -> float:
    """P&L to record when an exit order completes or times out.

    Uses the tracked current P&L when it is non-zero, otherwise the full
    credit on all contracts.

    Args:
        current_pnl: Last recorded P&L (may be None)
        credit_received: Net credit per share at entry (may be None)
        quantity: Signed contract count (may be None)

    Returns:
        Profit/loss in dollars
    """
    if current_pnl:
        return float(current_pnl)
    return (credit_received or 0.0) * abs(quantity or 0) * CONTRACT_MULTIPLIER


def profit_percent(current_pnl, net_credit, quantity) -> float:
    """P&L as a percentage of the dollar credit at risk.

    The denominator is |net credit x quantity x 100|, so the sign of the
    result follows the P&L only.

    Args:
        current_pnl: Dollar P&L (may be None)
        net_credit: Net credit per share (may be None)
        quantity: Signed contract count (may be None)

    Returns:
        Percentage (50.0 = half the credit captured), 0.0 when undefined
    """
    denom = abs((net_credit or 0.0) * (quantity or 0) * CONTRACT_MULTIPLIER)
    if denom == 0:
        return 0.0
    return ((current_pnl or 0.0) / denom) * 100


def ceil_to_tick(price: float, tick: float = 0.01) -> float:
    """Round a price up to the next tick.

    Args:
        price: Price to round
        tick: Tick size (must be positive)

    Returns:
        Smallest multiple of tick that is >= price
    """
    if tick <= 0:
        raise ValueError(f"tick size must be positive, got {tick}")
    # Rounding first absorbs float noise like 123.00000000000001
    steps = math.ceil(round(price / tick, 9))
    return round(steps * tick, 10)
