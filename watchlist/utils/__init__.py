"""Utilities package initialization."""
from watchlist.utils.time import utc_now, local_today, next_local_midnight, years_before
from watchlist.utils.market_hours import is_market_open

__all__ = [
    "utc_now",
    "local_today",
    "next_local_midnight",
    "years_before",
    "is_market_open"
]
