"""Provider dispatch: symbol mapping, caching and rate governance."""
import logging
from typing import Dict, Iterable, List, Optional

from watchlist.providers import ProviderError, QuoteProvider, SymbolMappingError
from watchlist.providers.models import DataKind, FailureKind, HistoryPoint, Quote, QuoteResult
from watchlist.services.quote_cache import QuoteCache
from watchlist.services.rate_governor import RateGovernor


logger = logging.getLogger(__name__)

# Highest first; used to pick the failure reported when every provider fails
FAILURE_SEVERITY = {
    FailureKind.NETWORK: 4,
    FailureKind.UNKNOWN: 4,
    FailureKind.RATE_LIMITED: 3,
    FailureKind.PRO_REQUIRED: 2,
    FailureKind.NOT_FOUND: 1,
}


class ProviderSet:
    """Uniform access to the configured providers.

    A call maps the symbol, serves from cache when fresh, otherwise books the
    needed slots with the rate governor and asks the adapter once per item.
    A daily quota breach reported by the server exhausts the provider for
    the day; a plain throttle only fills the current minute.
    """

    def __init__(
        self,
        providers: Iterable[QuoteProvider],
        governor: RateGovernor,
        cache: Optional[QuoteCache] = None
    ):
        self.providers: Dict[str, QuoteProvider] = {p.name: p for p in providers}
        self.governor = governor
        self.cache = cache

    @property
    def names(self) -> List[str]:
        return list(self.providers)

    def get(self, name: str) -> Optional[QuoteProvider]:
        return self.providers.get(name)

    async def _acquire(self, name: str, count: int = 1):
        decision = await self.governor.try_acquire(name, count)
        if not decision.allowed:
            raise ProviderError(
                f"{name}: {decision.reason} (retry in {decision.wait_seconds:.0f}s)",
                kind=FailureKind.RATE_LIMITED,
                provider=name
            )

    async def _call(self, name: str, coro):
        """Await an adapter call, normalising failures to ProviderError."""
        try:
            return await coro
        except ProviderError as e:
            if e.kind == FailureKind.RATE_LIMITED:
                if e.quota_exhausted:
                    await self.governor.mark_exhausted(name, e.server_count)
                else:
                    await self.governor.mark_throttled(name)
            raise
        except SymbolMappingError as e:
            raise ProviderError(f"{name}: {e}", kind=FailureKind.NOT_FOUND, provider=name)
        except Exception as e:
            logger.error(f"Unexpected error from {name}: {e}", exc_info=True)
            raise ProviderError(f"{name}: {e}", kind=FailureKind.UNKNOWN, provider=name)

    async def fetch(
        self,
        name: str,
        ticker: str,
        exchange: Optional[str] = None,
        need_history: bool = False
    ) -> QuoteResult:
        """
        Fetch a quote (and optionally 5 years of history) from one provider.

        Raises:
            ProviderError: typed failure; mapping errors surface as not_found
                and a denied rate check as rate_limited
        """
        provider = self.providers.get(name)
        if provider is None:
            raise ProviderError(f"Provider {name} is not configured", kind=FailureKind.UNKNOWN, provider=name)

        try:
            symbol = provider.map_symbol(ticker, exchange)
        except SymbolMappingError as e:
            raise ProviderError(f"{name}: {e}", kind=FailureKind.NOT_FOUND, provider=name)

        quote = await self._cached_quote(name, symbol, exchange)
        history = await self._cached_history(name, symbol) if need_history else None
        fetch_history = need_history and history is None

        # Quote and history go out back to back, so they are booked as one unit
        pending = int(quote is None) + int(fetch_history)
        if pending:
            await self._acquire(name, pending)

        if quote is None:
            try:
                quote = await self._call(name, provider.fetch_quote(ticker, exchange))
            except ProviderError as e:
                if fetch_history and e.kind != FailureKind.RATE_LIMITED:
                    await self.governor.release(name)
                raise
            if self.cache is not None:
                await self.cache.set(name, DataKind.QUOTE, symbol, quote.to_dict())

        if fetch_history:
            history = await self._call(name, provider.fetch_history(ticker, exchange, "5y"))
            if self.cache is not None and history:
                await self.cache.set(
                    name, DataKind.HISTORY, symbol, [point.to_dict() for point in history]
                )

        return QuoteResult(provider=name, symbol=symbol, quote=quote, history=history)

    async def _cached_quote(self, name: str, symbol: str, exchange: Optional[str]) -> Optional[Quote]:
        if self.cache is None:
            return None
        data = await self.cache.get(name, DataKind.QUOTE, symbol, exchange)
        return Quote.from_dict(data) if data else None

    async def _cached_history(self, name: str, symbol: str) -> Optional[List[HistoryPoint]]:
        if self.cache is None:
            return None
        data = await self.cache.get(name, DataKind.HISTORY, symbol)
        return [HistoryPoint.from_dict(item) for item in data] if data else None

    async def fetch_first(
        self,
        ticker: str,
        exchange: Optional[str] = None,
        order: Optional[Iterable[str]] = None,
        need_history: bool = True
    ) -> QuoteResult:
        """
        Try providers in order and return the first success.

        Raises:
            ProviderError: the most severe failure seen when every provider
                fails (network/unknown over rate_limited over pro_required
                over not_found)
        """
        failures: List[ProviderError] = []

        for name in (order or self.names):
            if name not in self.providers:
                continue
            try:
                return await self.fetch(name, ticker, exchange, need_history=need_history)
            except ProviderError as e:
                logger.debug(f"{name} failed for {ticker}: {e}")
                failures.append(e)

        if not failures:
            raise ProviderError(f"No providers configured for {ticker}", kind=FailureKind.UNKNOWN)

        raise max(failures, key=lambda e: FAILURE_SEVERITY.get(e.kind, 0))

    async def close(self):
        """Close every provider's HTTP client."""
        for provider in self.providers.values():
            await provider.close()
