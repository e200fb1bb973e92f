"""Twelve Data quote provider."""
import logging
from datetime import date
from typing import List, Optional

from watchlist.providers.http import HttpQuoteProvider, classify_message, range_to_years, to_float, to_int
from watchlist.providers.models import FailureKind, HistoryPoint, Quote
from watchlist.providers.symbols import twelvedata_symbol


logger = logging.getLogger(__name__)

TRADING_DAYS_PER_YEAR = 252


class TwelveDataProvider(HttpQuoteProvider):
    """Twelve Data implementation of the quote provider."""

    name = "twelvedata"
    BASE_URL = "https://api.twelvedata.com"

    def map_symbol(self, ticker: str, exchange: Optional[str] = None) -> str:
        symbol, _ = twelvedata_symbol(ticker, exchange)
        return symbol

    def _params(self, ticker: str, exchange: Optional[str]) -> dict:
        symbol, td_exchange = twelvedata_symbol(ticker, exchange)
        params = {"symbol": symbol, "apikey": self.api_key}
        if td_exchange:
            params["exchange"] = td_exchange
        return params

    def _check_error(self, data: dict, symbol: str):
        """Raise a typed ProviderError for an in-body error status."""
        if data.get("status") != "error":
            return

        message = data.get("message") or "Unknown error"
        kind, server_count = classify_message(message)
        if kind == FailureKind.UNKNOWN and data.get("code") == 429:
            kind = FailureKind.RATE_LIMITED
        if kind == FailureKind.UNKNOWN and data.get("code") == 404:
            kind = FailureKind.NOT_FOUND

        if kind == FailureKind.PRO_REQUIRED:
            logger.warning(f"[TwelveData] Symbol {symbol} requires a paid plan")

        raise self._error(message, kind, server_count)

    async def fetch_quote(self, ticker: str, exchange: Optional[str] = None) -> Quote:
        """Fetch quote from the /quote endpoint."""
        params = self._params(ticker, exchange)
        data = await self._make_request(f"{self.BASE_URL}/quote", params) or {}
        self._check_error(data, params["symbol"])

        price = to_float(data.get("close"))
        if not price:
            raise self._error(f"No price data for {params['symbol']}", FailureKind.NOT_FOUND)

        fifty_two_week = data.get("fifty_two_week") or {}
        return Quote(
            price=price,
            previous_close=to_float(data.get("previous_close")),
            change=to_float(data.get("change")),
            change_percent=to_float(data.get("percent_change")),
            week52_high=to_float(fifty_two_week.get("high")),
            week52_low=to_float(fifty_two_week.get("low")),
            currency=data.get("currency"),
            exchange=data.get("exchange") or exchange,
            name=data.get("name")
        )

    async def fetch_history(
        self,
        ticker: str,
        exchange: Optional[str] = None,
        range_: str = "5y"
    ) -> List[HistoryPoint]:
        """Fetch daily bars from /time_series, oldest first."""
        params = self._params(ticker, exchange)
        params.update({
            "interval": "1day",
            "outputsize": range_to_years(range_) * TRADING_DAYS_PER_YEAR
        })

        data = await self._make_request(f"{self.BASE_URL}/time_series", params) or {}
        self._check_error(data, params["symbol"])

        values = data.get("values")
        if not values:
            raise self._error(f"No values for {params['symbol']}", FailureKind.NOT_FOUND)

        points = []
        for item in values:
            close = to_float(item.get("close"))
            if not close:
                continue
            points.append(HistoryPoint(
                date=date.fromisoformat(item["datetime"][:10]),
                close=close,
                open=to_float(item.get("open")),
                high=to_float(item.get("high")),
                low=to_float(item.get("low")),
                volume=to_int(item.get("volume"))
            ))

        points.sort(key=lambda p: p.date)
        return points
