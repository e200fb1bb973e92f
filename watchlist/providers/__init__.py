"""Abstract interface for quote and history providers."""
from abc import ABC, abstractmethod
from typing import List, Optional
from watchlist.providers.models import FailureKind, HistoryPoint, Quote


class ProviderError(Exception):
    """Exception raised when a provider call fails.

    Attributes:
        kind: Typed failure classification
        provider: Name of the provider that failed
        server_count: Usage count reported by the provider on a quota breach
        quota_exhausted: True when the provider says the daily quota is spent,
            as opposed to a per-minute throttle or a bare HTTP 429
    """

    def __init__(
        self,
        message: str,
        kind: FailureKind = FailureKind.UNKNOWN,
        provider: Optional[str] = None,
        server_count: Optional[int] = None,
        quota_exhausted: bool = False
    ):
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.server_count = server_count
        self.quota_exhausted = quota_exhausted


class SymbolMappingError(ValueError):
    """Raised when a canonical ticker cannot be expressed for a provider."""
    pass


class QuoteProvider(ABC):
    """Abstract base class for quote/history data providers.

    Adapters never retry: one call is one upstream request, and fallback
    across providers is the caller's job.
    """

    name: str = ""

    def map_symbol(self, ticker: str, exchange: Optional[str] = None) -> str:
        """Express a canonical ticker in this provider's format."""
        ticker = (ticker or "").strip().upper()
        if not ticker:
            raise SymbolMappingError("Ticker symbol cannot be empty")
        return ticker

    @abstractmethod
    async def fetch_quote(self, ticker: str, exchange: Optional[str] = None) -> Quote:
        """
        Fetch the current quote for a ticker.

        Args:
            ticker: Canonical ticker symbol
            exchange: Exchange hint

        Returns:
            Normalized Quote

        Raises:
            ProviderError: If the call fails, with a typed `kind`
        """
        pass

    @abstractmethod
    async def fetch_history(
        self,
        ticker: str,
        exchange: Optional[str] = None,
        range_: str = "5y"
    ) -> List[HistoryPoint]:
        """
        Fetch daily history for a ticker, oldest first.

        Raises:
            ProviderError: If the call fails, with a typed `kind`
        """
        pass

    async def close(self):
        """Release network resources."""
        pass


__all__ = [
    "FailureKind",
    "ProviderError",
    "QuoteProvider",
    "SymbolMappingError",
]
