"""Freshness-window cache for provider responses."""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from watchlist.core.storage import KeyValueStore
from watchlist.providers.models import DataKind
from watchlist.utils.market_hours import is_market_open
from watchlist.utils.time import parse_timestamp, utc_now


logger = logging.getLogger(__name__)

QUOTE_MAX_AGE = timedelta(minutes=30)
HISTORY_MAX_AGE = timedelta(hours=24)
CLOSED_MARKET_MAX_AGE = timedelta(hours=4)


class QuoteCache:
    """Cache entries `{data, timestamp, type}` keyed by (provider, kind, symbol).

    Quotes stay fresh for 30 minutes, or 4 hours while the exchange is closed.
    History stays fresh for 24 hours.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.clock = clock

    def _make_key(self, provider: str, kind: DataKind, symbol: str) -> str:
        return f"cache:{provider}:{DataKind(kind).value}:{symbol.upper()}"

    def max_age(self, kind: DataKind, exchange: Optional[str] = None) -> timedelta:
        """Freshness window for an entry of the given kind."""
        if DataKind(kind) == DataKind.HISTORY:
            return HISTORY_MAX_AGE
        if not is_market_open(exchange, self.clock()):
            return CLOSED_MARKET_MAX_AGE
        return QUOTE_MAX_AGE

    async def get(
        self,
        provider: str,
        kind: DataKind,
        symbol: str,
        exchange: Optional[str] = None
    ) -> Optional[Any]:
        """Return cached data if still fresh, else None."""
        try:
            entry = await self.store.get(self._make_key(provider, kind, symbol))
        except Exception as e:
            logger.warning(f"Cache read failed for {provider}/{symbol}: {e}")
            return None

        if not entry:
            return None

        timestamp = parse_timestamp(entry.get("timestamp"))
        if timestamp is None:
            return None

        age = self.clock() - timestamp
        if age > self.max_age(kind, exchange):
            return None

        logger.debug(f"Cache hit {provider}/{kind}/{symbol} (age {age.total_seconds():.0f}s)")
        return entry.get("data")

    async def set(self, provider: str, kind: DataKind, symbol: str, data: Any) -> None:
        """Store data with the current timestamp; failures are logged only."""
        entry = {
            "data": data,
            "timestamp": self.clock().isoformat(),
            "type": DataKind(kind).value
        }
        try:
            await self.store.set(self._make_key(provider, kind, symbol), entry)
        except Exception as e:
            logger.error(f"Cache write failed for {provider}/{symbol}: {e}", exc_info=True)

    async def invalidate(self, provider: str, kind: DataKind, symbol: str) -> None:
        await self.store.delete(self._make_key(provider, kind, symbol))
