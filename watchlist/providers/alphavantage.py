"""Alpha Vantage quote provider."""
import logging
from datetime import date
from typing import List, Optional

from watchlist.providers.http import HttpQuoteProvider, classify_message, to_float, to_int
from watchlist.providers.models import FailureKind, HistoryPoint, Quote
from watchlist.providers.symbols import alphavantage_symbol


logger = logging.getLogger(__name__)


class AlphaVantageProvider(HttpQuoteProvider):
    """Alpha Vantage implementation of the quote provider."""

    name = "alphavantage"
    BASE_URL = "https://www.alphavantage.co/query"

    def map_symbol(self, ticker: str, exchange: Optional[str] = None) -> str:
        return alphavantage_symbol(ticker, exchange)

    def _check_notes(self, data: dict, symbol: str):
        """Alpha Vantage reports throttling and errors with HTTP 200."""
        if "Error Message" in data:
            raise self._error(f"{symbol}: {data['Error Message']}", FailureKind.NOT_FOUND)

        note = data.get("Note") or data.get("Information")
        if note:
            kind, _ = classify_message(note)
            if kind not in (FailureKind.PRO_REQUIRED,):
                # Notes are quota messages unless they mention a premium endpoint
                kind = FailureKind.RATE_LIMITED
            raise self._error(note, kind)

    async def fetch_quote(self, ticker: str, exchange: Optional[str] = None) -> Quote:
        """Fetch quote from GLOBAL_QUOTE."""
        symbol = self.map_symbol(ticker, exchange)
        params = {"function": "GLOBAL_QUOTE", "symbol": symbol, "apikey": self.api_key}

        data = await self._make_request(self.BASE_URL, params) or {}
        self._check_notes(data, symbol)

        quote = data.get("Global Quote") or {}
        price = to_float(quote.get("05. price"))
        if not price:
            raise self._error(f"No quote data for {symbol}", FailureKind.NOT_FOUND)

        return Quote(
            price=price,
            previous_close=to_float(quote.get("08. previous close")),
            change=to_float(quote.get("09. change")),
            change_percent=to_float(quote.get("10. change percent")),
            # GLOBAL_QUOTE carries no 52-week band
            week52_high=None,
            week52_low=None,
            currency=None,
            exchange=exchange,
            name=None
        )

    async def fetch_history(
        self,
        ticker: str,
        exchange: Optional[str] = None,
        range_: str = "5y"
    ) -> List[HistoryPoint]:
        """Fetch daily bars from TIME_SERIES_DAILY, oldest first."""
        symbol = self.map_symbol(ticker, exchange)
        params = {
            "function": "TIME_SERIES_DAILY",
            "symbol": symbol,
            "outputsize": "full",
            "apikey": self.api_key
        }

        data = await self._make_request(self.BASE_URL, params) or {}
        self._check_notes(data, symbol)

        series = data.get("Time Series (Daily)")
        if not series:
            raise self._error(f"No time series for {symbol}", FailureKind.NOT_FOUND)

        points = []
        for day, values in series.items():
            close = to_float(values.get("4. close"))
            if not close:
                continue
            points.append(HistoryPoint(
                date=date.fromisoformat(day),
                close=close,
                open=to_float(values.get("1. open")),
                high=to_float(values.get("2. high")),
                low=to_float(values.get("3. low")),
                volume=to_int(values.get("5. volume"))
            ))

        points.sort(key=lambda p: p.date)
        return points
