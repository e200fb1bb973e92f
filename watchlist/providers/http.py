"""Shared httpx plumbing and failure classification for HTTP providers."""
import logging
import re
from typing import Any, Optional, Tuple

import httpx

from watchlist.providers import ProviderError, QuoteProvider
from watchlist.providers.models import FailureKind


logger = logging.getLogger(__name__)

# Upstream usage count embedded in quota messages, e.g. "1279 API credits were used"
SERVER_COUNT_PATTERN = re.compile(r'(\d+)\s*API credits were used', re.IGNORECASE)

# Quota messages that mean the day is spent, unless they talk about a minute window
DAILY_QUOTA_MARKERS = (
    "run out of api credits",
    "api credits were used",
    "limit reach",
    "per day",
    "daily limit",
)

RANGE_YEARS = {
    "1y": 1,
    "3y": 3,
    "5y": 5,
}


def classify_status(status_code: int) -> FailureKind:
    """Map an HTTP status code to a failure kind."""
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if status_code in (401, 402, 403):
        return FailureKind.PRO_REQUIRED
    if status_code == 404:
        return FailureKind.NOT_FOUND
    return FailureKind.UNKNOWN


def classify_message(message: str) -> Tuple[FailureKind, Optional[int]]:
    """
    Map a provider error message to a failure kind.

    Returns:
        (kind, server_count) where server_count is the usage reported by the
        provider on a quota breach, if it could be parsed
    """
    text = (message or "").lower()

    if (
        "run out of api credits" in text
        or "api credits were used" in text
        or "limit reach" in text
        or "rate limit" in text
        or "call frequency" in text
    ):
        match = SERVER_COUNT_PATTERN.search(message or "")
        return FailureKind.RATE_LIMITED, int(match.group(1)) if match else None

    if (
        "pro plan" in text
        or "available starting with" in text
        or "premium" in text
        or "subscription" in text
        or "upgrade" in text
    ):
        return FailureKind.PRO_REQUIRED, None

    if (
        "not found" in text
        or "unknown symbol" in text
        or "invalid api call" in text
        or "no data" in text
    ):
        return FailureKind.NOT_FOUND, None

    return FailureKind.UNKNOWN, None


def is_daily_quota(message: str) -> bool:
    """True when a rate-limit message reports the daily quota as used up."""
    text = (message or "").lower()
    if "minute" in text:
        return False
    return any(marker in text for marker in DAILY_QUOTA_MARKERS)


def range_to_years(range_: str) -> int:
    """Years covered by a history range label; unknown labels mean 5 years."""
    return RANGE_YEARS.get(range_.lower(), 5)


def to_float(value: Any) -> Optional[float]:
    """Parse numbers that providers send as strings; blanks become None."""
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace("%", "").strip())
    except (TypeError, ValueError):
        return None


def to_int(value: Any) -> Optional[int]:
    number = to_float(value)
    return int(number) if number is not None else None


class HttpQuoteProvider(QuoteProvider):
    """Base for providers reached over HTTP with httpx."""

    BASE_URL = ""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 15.0):
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": "Mozilla/5.0"}
        )

    def _error(
        self,
        message: str,
        kind: FailureKind,
        server_count: Optional[int] = None
    ) -> ProviderError:
        return ProviderError(
            f"{self.name}: {message}",
            kind=kind,
            provider=self.name,
            server_count=server_count,
            quota_exhausted=kind == FailureKind.RATE_LIMITED and is_daily_quota(message)
        )

    async def _make_request(self, url: str, params: Optional[dict] = None) -> Any:
        """Make a single HTTP request and decode JSON.

        No retry here: a failed call surfaces as a typed ProviderError and the
        refresh engine decides whether to fall back to another provider.
        """
        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise self._error(f"HTTP {status_code}", classify_status(status_code))
        except httpx.TimeoutException as e:
            raise self._error(f"timeout: {e}", FailureKind.NETWORK)
        except httpx.HTTPError as e:
            raise self._error(f"connection error: {e}", FailureKind.NETWORK)
        except ValueError as e:
            raise self._error(f"invalid JSON: {e}", FailureKind.UNKNOWN)

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
