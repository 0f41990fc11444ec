"""Canonical strangle keys and matching helpers.

Single source of truth for comparing ledger positions against broker-derived
strangles: strike equality within a tolerance, ISO expiration formatting,
and the truncated identifiers used in log lines.
"""

from datetime import date, datetime

STRIKE_EPSILON = 0.01


def strikes_match(a: float, b: float) -> bool:
    """Compare two strikes within STRIKE_EPSILON."""
    return abs(a - b) < STRIKE_EPSILON


def normalize_expiration(exp) -> str:
    """Normalize date/datetime/str to a YYYY-MM-DD string.

    Args:
        exp: Expiration as date, datetime, or string (YYYY-MM-DD or YYYYMMDD)

    Returns:
        ISO date string, or empty string when exp is None
    """
    if exp is None:
        return ""
    if isinstance(exp, datetime):
        return exp.date().isoformat()
    if isinstance(exp, date):
        return exp.isoformat()
    s = str(exp).strip()
    if len(s) == 8 and s.isdigit():
        return f"{s[:4]}-{s[4:6]}-{s[6:8]}"
    return s[:10]


def strangle_key(symbol: str, put_strike: float, call_strike: float, expiration) -> str:
    """Build canonical strangle key: SYMBOL_PUT_CALL_YYYY-MM-DD.

    Two records with the same key describe the same strangle; at most one
    non-closed ledger record may carry a given key.
    """
    return (
        f"{symbol}_{round(float(put_strike), 2)}_{round(float(call_strike), 2)}_"
        f"{normalize_expiration(expiration)}"
    )


def matches_strangle(
    position, symbol: str, put_strike: float, call_strike: float, expiration
) -> bool:
    """Check whether a ledger position describes the given strangle.

    Args:
        position: Object with symbol, put_strike, call_strike, expiration
        symbol: Underlying ticker
        put_strike: Put leg strike
        call_strike: Call leg strike
        expiration: Expiration (any form accepted by normalize_expiration)
    """
    return (
        position.symbol == symbol
        and strikes_match(position.put_strike, put_strike)
        and strikes_match(position.call_strike, call_strike)
        and normalize_expiration(position.expiration) == normalize_expiration(expiration)
    )


def short_id(position_id: str | None) -> str:
    """Truncate an identifier to 8 characters for log lines."""
    if not position_id:
        return ""
    return position_id[:8]
