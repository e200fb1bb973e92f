"""Yahoo Finance chart API provider (free, no API key)."""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from watchlist.providers.http import HttpQuoteProvider, range_to_years, to_float, to_int
from watchlist.providers.models import FailureKind, HistoryPoint, Quote
from watchlist.providers.symbols import yahoo_symbol


logger = logging.getLogger(__name__)


class YahooProvider(HttpQuoteProvider):
    """Yahoo Finance implementation of the quote provider."""

    name = "yahoo"
    BASE_URL = "https://query1.finance.yahoo.com"

    def map_symbol(self, ticker: str, exchange: Optional[str] = None) -> str:
        return yahoo_symbol(ticker, exchange)

    async def _get_chart(self, symbol: str, range_: str) -> dict:
        """Fetch the chart payload and return its first result."""
        url = f"{self.BASE_URL}/v8/finance/chart/{symbol}"
        params = {"interval": "1d", "range": range_}

        data = await self._make_request(url, params)

        chart = (data or {}).get("chart") or {}
        results = chart.get("result") or []
        if not results:
            error = chart.get("error") or {}
            description = error.get("description") or error.get("code") or "no chart result"
            raise self._error(f"No data for {symbol}: {description}", FailureKind.NOT_FOUND)
        return results[0]

    async def fetch_quote(self, ticker: str, exchange: Optional[str] = None) -> Quote:
        """Fetch quote from the chart meta block (5 day range)."""
        symbol = self.map_symbol(ticker, exchange)
        result = await self._get_chart(symbol, "5d")
        return self._parse_quote(result.get("meta") or {}, symbol, exchange)

    async def fetch_history(
        self,
        ticker: str,
        exchange: Optional[str] = None,
        range_: str = "5y"
    ) -> List[HistoryPoint]:
        """Fetch daily bars for the requested range, oldest first."""
        symbol = self.map_symbol(ticker, exchange)
        result = await self._get_chart(symbol, f"{range_to_years(range_)}y")
        history = self._parse_history(result)
        logger.debug(f"[Yahoo] Got {len(history)} historical points for {symbol}")
        return history

    def _parse_quote(self, meta: dict, symbol: str, exchange: Optional[str]) -> Quote:
        """Parse chart meta into a Quote."""
        price = to_float(meta.get("regularMarketPrice"))
        if not price:
            raise self._error(f"No price data for {symbol}", FailureKind.NOT_FOUND)

        previous_close = to_float(meta.get("previousClose")) or to_float(meta.get("chartPreviousClose"))
        change = price - previous_close if previous_close else None
        change_percent = (change / previous_close * 100) if previous_close else None

        return Quote(
            price=price,
            previous_close=previous_close,
            change=change,
            change_percent=change_percent,
            week52_high=to_float(meta.get("fiftyTwoWeekHigh")),
            week52_low=to_float(meta.get("fiftyTwoWeekLow")),
            currency=meta.get("currency"),
            exchange=meta.get("exchangeName") or exchange,
            name=meta.get("shortName") or meta.get("longName")
        )

    def _parse_history(self, result: dict) -> List[HistoryPoint]:
        """Parse parallel timestamp/OHLCV arrays into HistoryPoints."""
        timestamps = result.get("timestamp") or []
        quotes = ((result.get("indicators") or {}).get("quote") or [{}])[0]

        def column(name: str) -> list:
            return quotes.get(name) or []

        closes, opens, highs, lows, volumes = (
            column("close"), column("open"), column("high"), column("low"), column("volume")
        )

        def at(values: list, i: int):
            return values[i] if i < len(values) else None

        points = []
        for i, ts in enumerate(timestamps):
            close = to_float(at(closes, i))
            if not close or close <= 0:
                continue
            points.append(HistoryPoint(
                date=datetime.fromtimestamp(ts, tz=timezone.utc).date(),
                close=close,
                open=to_float(at(opens, i)),
                high=to_float(at(highs, i)),
                low=to_float(at(lows, i)),
                volume=to_int(at(volumes, i))
            ))

        points.sort(key=lambda p: p.date)
        return points
