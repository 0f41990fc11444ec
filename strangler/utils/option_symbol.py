"""OCC/OPRA option symbol parsing.

Option identifiers on the wire look like ``SPY240315C00610000``:

    TICKER + YYMMDD + C|P + 8-digit strike (strike x 1000)

All helpers locate the expiration by scanning left-to-right for the first
run of six consecutive digits, so tickers may be of any length.
"""

from datetime import date

OPTION_TYPE_CALL = "C"
OPTION_TYPE_PUT = "P"

_DATE_LEN = 6
_STRIKE_LEN = 8
_MIN_SYMBOL_LEN = 15


class InvalidSymbolError(ValueError):
    """Raised when an option symbol cannot be decoded."""

    pass


def _is_all_digits(s: str) -> bool:
    # str.isdigit() accepts unicode digits; the wire format is ASCII only
    return bool(s) and all("0" <= ch <= "9" for ch in s)


def _find_date_run(symbol: str, require_type_marker: bool = False) -> int:
    """Index of the first six-digit run, or -1.

    Args:
        symbol: Option or equity symbol
        require_type_marker: Skip runs not followed by C/P (when a
            character follows at all)
    """
    for i in range(len(symbol) - _DATE_LEN + 1):
        if not _is_all_digits(symbol[i : i + _DATE_LEN]):
            continue
        if require_type_marker and i + _DATE_LEN < len(symbol):
            if symbol[i + _DATE_LEN] not in (OPTION_TYPE_CALL, OPTION_TYPE_PUT):
                continue
        return i
    return -1


def parse_option_symbol(symbol: str) -> tuple[float, str]:
    """Parse an option symbol into strike and option type.

    Args:
        symbol: Option symbol, e.g. ``SPY240315C00610000``

    Returns:
        Tuple of (strike, "C" or "P")

    Raises:
        InvalidSymbolError: If the symbol is not a well-formed option symbol

    Example:
        >>> parse_option_symbol("SPY240315C00610000")
        (610.0, 'C')
    """
    if len(symbol) < _MIN_SYMBOL_LEN:
        raise InvalidSymbolError(f"option symbol too short: {symbol}")

    date_pos = _find_date_run(symbol)
    if date_pos == -1:
        raise InvalidSymbolError(
            f"no 6-digit expiration date (YYMMDD) found in symbol: {symbol}"
        )

    type_pos = date_pos + _DATE_LEN
    if type_pos >= len(symbol):
        raise InvalidSymbolError(f"symbol too short after expiration date: {symbol}")

    option_type = symbol[type_pos]
    if option_type not in (OPTION_TYPE_CALL, OPTION_TYPE_PUT):
        raise InvalidSymbolError(
            f"invalid option type '{option_type}' at position {type_pos}, "
            f"expected 'C' or 'P' in symbol: {symbol}"
        )

    strike_start = type_pos + 1
    strike_end = strike_start + _STRIKE_LEN
    if strike_end > len(symbol):
        raise InvalidSymbolError(
            f"symbol too short for 8-digit strike, need {strike_end} characters "
            f"but only have {len(symbol)}: {symbol}"
        )

    strike_str = symbol[strike_start:strike_end]
    if not _is_all_digits(strike_str):
        raise InvalidSymbolError(
            f"invalid strike format, expected 8 digits but got '{strike_str}' "
            f"in symbol: {symbol}"
        )

    return int(strike_str) / 1000.0, option_type


def extract_underlying(symbol: str) -> str:
    """Extract the underlying ticker from an option symbol.

    Plain equity symbols (no six-digit run) and symbols whose digit run
    starts at position 0 are returned unchanged.

    Example:
        >>> extract_underlying("SPY240315C00610000")
        'SPY'
        >>> extract_underlying("SPY")
        'SPY'
    """
    for i in range(len(symbol) - _DATE_LEN + 1):
        if _is_all_digits(symbol[i : i + _DATE_LEN]) and i > 0:
            return symbol[:i]
    return symbol


def extract_expiration(symbol: str) -> str:
    """Extract the expiration as an ISO date string.

    Returns:
        ``YYYY-MM-DD``, or an empty string if no expiration is found

    Example:
        >>> extract_expiration("SPY240315P00560000")
        '2024-03-15'
    """
    if len(symbol) < _DATE_LEN:
        return ""

    pos = _find_date_run(symbol, require_type_marker=True)
    if pos == -1:
        return ""

    yymmdd = symbol[pos : pos + _DATE_LEN]
    return f"20{yymmdd[0:2]}-{yymmdd[2:4]}-{yymmdd[4:6]}"


def parse_expiration_date(expiration: str) -> date:
    """Convert an ISO expiration string to a date.

    Raises:
        InvalidSymbolError: If the string is not a valid ISO date
    """
    try:
        return date.fromisoformat(expiration)
    except (TypeError, ValueError) as e:
        raise InvalidSymbolError(f"invalid expiration '{expiration}': {e}") from e


def build_option_symbol(
    underlying: str, expiration: date | str, option_type: str, strike: float
) -> str:
    """Build an option symbol in wire format.

    Args:
        underlying: Ticker, e.g. "SPY"
        expiration: Expiration date or ISO string
        option_type: "C"/"P" (or "CALL"/"PUT")
        strike: Strike price

    Returns:
        Option symbol, e.g. ``SPY240315C00610000``
    """
    if isinstance(expiration, str):
        expiration = parse_expiration_date(expiration)

    right = str(option_type).upper().strip()[:1]
    if right not in (OPTION_TYPE_CALL, OPTION_TYPE_PUT):
        raise InvalidSymbolError(f"invalid option type: {option_type}")

    scaled = int(round(strike * 1000))
    if scaled < 0 or scaled > 99_999_999:
        raise InvalidSymbolError(f"strike out of range: {strike}")

    return f"{underlying}{expiration.strftime('%y%m%d')}{right}{scaled:08d}"
