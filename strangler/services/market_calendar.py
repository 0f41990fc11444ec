"""Market calendar cache.

The broker's market calendar changes at most once a month, so each (month,
year) payload is fetched once and kept. Pass one MarketCalendarCache to
whatever needs the calendar; there is no module-level instance.
"""

import asyncio
from datetime import date
from typing import Any, Awaitable, Callable

from loguru import logger

from strangler.utils.timezone import us_trading_date

CALENDAR_FETCH_TIMEOUT_SECONDS = 10.0

CalendarFetcher = Callable[[int, int], Awaitable[dict[str, Any] | None]]


def calendar_days(payload: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Day entries from a calendar payload.

    Accepts ``{"calendar": {"days": {"day": [...]}}}`` as returned by the
    broker, a bare ``{"days": [...]}``, or ``{"days": {"day": {...}}}``
    for a single day.
    """
    if not payload:
        return []
    calendar = payload.get("calendar", payload)
    days = calendar.get("days") or []
    if isinstance(days, dict):
        days = days.get("day") or []
    if isinstance(days, dict):
        days = [days]
    return list(days)


class MarketCalendarCache:
    """Cache of market calendar payloads keyed by (month, year).

    Example:
        >>> cache = MarketCalendarCache(broker.get_market_calendar)
        >>> calendar = await cache.get(3, 2024)
        >>> today = await cache.get_day_schedule()
    """

    def __init__(self, fetcher: CalendarFetcher, timeout: float = CALENDAR_FETCH_TIMEOUT_SECONDS):
        """Initialize the cache.

        Args:
            fetcher: Async callable (month, year) -> payload, usually
                Broker.get_market_calendar
            timeout: Deadline for one fetch
        """
        self._fetcher = fetcher
        self._timeout = timeout
        self._entries: dict[tuple[int, int], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, month: int | None = None, year: int | None = None) -> dict[str, Any] | None:
        """Calendar payload for a month, fetched on first use.

        Defaults to the current US Eastern month. Empty payloads are returned
        but not cached.

        Raises:
            Exception: Whatever the fetcher raises (nothing is cached)
        """
        today = us_trading_date()
        key = (month or today.month, year or today.year)

        async with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                return cached

            logger.info(f"Fetching market calendar for {key[0]}/{key[1]}")
            payload = await asyncio.wait_for(self._fetcher(*key), timeout=self._timeout)
            if payload:
                self._entries[key] = payload
                logger.info(
                    f"Cached market calendar: {len(calendar_days(payload))} days for {key[0]}/{key[1]}"
                )
            return payload

    def invalidate(self, month: int | None = None, year: int | None = None) -> None:
        """Drop one cached month, or everything when no month is given."""
        if month is None and year is None:
            self._entries.clear()
            return
        today = us_trading_date()
        self._entries.pop((month or today.month, year or today.year), None)

    async def get_day_schedule(self, day: date | None = None) -> dict[str, Any] | None:
        """Calendar entry for one day (today in US Eastern by default).

        A cached month missing the day is refreshed once before giving up.
        """
        day = day or us_trading_date()
        iso = day.isoformat()

        for attempt in range(2):
            payload = await self.get(day.month, day.year)
            for entry in calendar_days(payload):
                if entry.get("date") == iso:
                    return entry
            if attempt == 0:
                logger.info(f"Date {iso} not found in cached calendar, forcing refresh")
                self.invalidate(day.month, day.year)

        logger.warning(f"No market calendar entry for {iso}")
        return None
