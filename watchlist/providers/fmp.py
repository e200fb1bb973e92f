"""Financial Modeling Prep quote provider."""
import logging
from datetime import date
from typing import Any, List, Optional

from watchlist.providers.http import HttpQuoteProvider, classify_message, range_to_years, to_float, to_int
from watchlist.providers.models import FailureKind, HistoryPoint, Quote
from watchlist.providers.symbols import fmp_symbol
from watchlist.utils.time import utc_now, years_before


logger = logging.getLogger(__name__)


class FmpProvider(HttpQuoteProvider):
    """Financial Modeling Prep implementation of the quote provider."""

    name = "fmp"
    BASE_URL = "https://financialmodelingprep.com/api/v3"

    def map_symbol(self, ticker: str, exchange: Optional[str] = None) -> str:
        return fmp_symbol(ticker, exchange)

    def _check_error(self, data: Any, symbol: str):
        """FMP answers quota and plan errors with an 'Error Message' object."""
        if isinstance(data, dict) and data.get("Error Message"):
            message = data["Error Message"]
            kind, server_count = classify_message(message)
            raise self._error(message, kind, server_count)

    async def fetch_quote(self, ticker: str, exchange: Optional[str] = None) -> Quote:
        """Fetch quote from /quote/{symbol}."""
        symbol = self.map_symbol(ticker, exchange)
        data = await self._make_request(f"{self.BASE_URL}/quote/{symbol}", {"apikey": self.api_key})
        self._check_error(data, symbol)

        if not isinstance(data, list) or not data:
            raise self._error(f"No quote data for {symbol}", FailureKind.NOT_FOUND)

        item = data[0]
        price = to_float(item.get("price"))
        if not price:
            raise self._error(f"No price data for {symbol}", FailureKind.NOT_FOUND)

        return Quote(
            price=price,
            previous_close=to_float(item.get("previousClose")),
            change=to_float(item.get("change")),
            change_percent=to_float(item.get("changesPercentage")),
            week52_high=to_float(item.get("yearHigh")),
            week52_low=to_float(item.get("yearLow")),
            currency=None,
            exchange=item.get("exchange") or exchange,
            name=item.get("name")
        )

    async def fetch_history(
        self,
        ticker: str,
        exchange: Optional[str] = None,
        range_: str = "5y"
    ) -> List[HistoryPoint]:
        """Fetch daily bars from /historical-price-full, oldest first."""
        symbol = self.map_symbol(ticker, exchange)
        start = years_before(utc_now(), range_to_years(range_)).date()
        params = {"from": start.isoformat(), "apikey": self.api_key}

        data = await self._make_request(f"{self.BASE_URL}/historical-price-full/{symbol}", params)
        self._check_error(data, symbol)

        historical = (data or {}).get("historical") if isinstance(data, dict) else None
        if not historical:
            raise self._error(f"No historical data for {symbol}", FailureKind.NOT_FOUND)

        points = []
        for item in historical:
            close = to_float(item.get("close"))
            if not close:
                continue
            points.append(HistoryPoint(
                date=date.fromisoformat(item["date"][:10]),
                close=close,
                open=to_float(item.get("open")),
                high=to_float(item.get("high")),
                low=to_float(item.get("low")),
                volume=to_int(item.get("volume"))
            ))

        points.sort(key=lambda p: p.date)
        return points
