"""Clock utilities.

Ledger timestamps (entry, last-checked, transitions) are stored in UTC.
Market-day logic such as DTE uses US Eastern dates.

Usage:
    from strangler.utils.timezone import utc_now, us_trading_date

    now = utc_now()                    # aware datetime in UTC
    today = us_trading_date()          # date object in US Eastern
"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

_ET = ZoneInfo("America/New_York")


def utc_now() -> datetime:
    """Current aware datetime in UTC."""
    return datetime.now(timezone.utc)


def us_trading_date() -> date:
    """Current date in US Eastern time.

    Use this for all market-day logic: DTE calculations, expiration
    comparisons, daily counter resets.
    """
    return datetime.now(_ET).date()


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
