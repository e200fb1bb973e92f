"""Shared pytest fixtures for watchlist refresh tests."""
import pytest
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

from watchlist.core.storage import MemoryKeyValueStore
from watchlist.models.stock import TrackedStock
from watchlist.providers import ProviderError, QuoteProvider
from watchlist.providers.models import FailureKind, HistoryPoint, Quote
from watchlist.services.rate_governor import ProviderLimits


# Wednesday, markets open in New York
NOW = datetime(2025, 6, 18, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Mutable clock for time-dependent services."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeProvider(QuoteProvider):
    """Scripted provider: per ticker either a price or a FailureKind."""

    def __init__(self, name: str, responses: Optional[Dict[str, object]] = None, history=None):
        self.name = name
        self.responses = responses or {}
        self.history = history
        self.quote_calls: List[str] = []
        self.history_calls: List[str] = []

    def _outcome(self, ticker: str):
        outcome = self.responses.get(ticker, self.responses.get("*", FailureKind.NOT_FOUND))
        if isinstance(outcome, FailureKind):
            raise ProviderError(f"{self.name}: {outcome.value}", kind=outcome, provider=self.name)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fetch_quote(self, ticker: str, exchange: Optional[str] = None) -> Quote:
        self.quote_calls.append(ticker)
        price = self._outcome(ticker)
        return Quote(price=price, previous_close=price - 1, change=1.0, change_percent=1.0 / (price - 1) * 100)

    async def fetch_history(self, ticker: str, exchange: Optional[str] = None, range_: str = "5y") -> List[HistoryPoint]:
        self.history_calls.append(ticker)
        self._outcome(ticker)
        return list(self.history or [])


def make_stock(
    ticker: str = "AAPL",
    stock_id: Optional[str] = None,
    price: float = 0.0,
    quoted_minutes_ago: Optional[float] = None,
    buy_limit: Optional[float] = None,
    day_change_percent: Optional[float] = None,
    exchange: Optional[str] = "NASDAQ",
    now: datetime = NOW,
    **fields
) -> TrackedStock:
    """Factory function to create TrackedStock instances for testing."""
    last_quote_at = None
    if quoted_minutes_ago is not None:
        last_quote_at = now - timedelta(minutes=quoted_minutes_ago)
    return TrackedStock(
        id=stock_id or ticker.lower(),
        ticker=ticker,
        exchange=exchange,
        current_price=price,
        last_quote_at=last_quote_at,
        buy_limit=buy_limit,
        day_change_percent=day_change_percent,
        **fields
    )


def make_history(
    start: date,
    days: int,
    close: float = 100.0,
    step: float = 0.0
) -> List[HistoryPoint]:
    """Daily closes from `start`, one point per day."""
    return [
        HistoryPoint(date=start + timedelta(days=i), close=close + i * step)
        for i in range(days)
    ]


# No spacing or caps in the way of unit tests
UNLIMITED = ProviderLimits(per_minute=1000, per_day=100000, min_delay_seconds=0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store():
    """In-memory key-value store."""
    return MemoryKeyValueStore(namespace="test")
