"""Per-stock provider memory: learned success history, blocking and cooldown."""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from watchlist.core.storage import KeyValueStore
from watchlist.utils.time import parse_timestamp, utc_now


logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_ORDER = ["yahoo", "twelvedata", "alphavantage", "fmp"]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class ProviderRecord:
    """Outcome history of one provider for one ticker."""
    successes: int = 0
    failures: int = 0
    last_tried_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    blocked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successes": self.successes,
            "failures": self.failures,
            "last_tried_at": _iso(self.last_tried_at),
            "last_success_at": _iso(self.last_success_at),
            "blocked": self.blocked,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderRecord":
        return cls(
            successes=int(data.get("successes") or 0),
            failures=int(data.get("failures") or 0),
            last_tried_at=parse_timestamp(data.get("last_tried_at")),
            last_success_at=parse_timestamp(data.get("last_success_at")),
            blocked=bool(data.get("blocked")),
        )


@dataclass
class StockProviderMemory:
    """Learned refresh state for one ticker."""
    ticker: str
    providers: Dict[str, ProviderRecord] = field(default_factory=dict)
    preferred_provider: Optional[str] = None
    consecutive_failures: int = 0
    cooldown_until: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None

    def is_cooling_down(self, now: datetime) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > now

    def record(self, provider: str) -> ProviderRecord:
        if provider not in self.providers:
            self.providers[provider] = ProviderRecord()
        return self.providers[provider]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "providers": {name: rec.to_dict() for name, rec in self.providers.items()},
            "preferred_provider": self.preferred_provider,
            "consecutive_failures": self.consecutive_failures,
            "cooldown_until": _iso(self.cooldown_until),
            "last_refreshed_at": _iso(self.last_refreshed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StockProviderMemory":
        return cls(
            ticker=data["ticker"],
            providers={
                name: ProviderRecord.from_dict(rec)
                for name, rec in (data.get("providers") or {}).items()
            },
            preferred_provider=data.get("preferred_provider"),
            consecutive_failures=int(data.get("consecutive_failures") or 0),
            cooldown_until=parse_timestamp(data.get("cooldown_until")),
            last_refreshed_at=parse_timestamp(data.get("last_refreshed_at")),
        )


def compute_cooldown(consecutive_failures: int, base: timedelta, maximum: timedelta) -> timedelta:
    """Exponential backoff: base, 2x base, 4x base ... capped at maximum."""
    if consecutive_failures <= 0:
        return timedelta(0)
    # cap the exponent so huge failure counts cannot overflow
    exponent = min(consecutive_failures - 1, 32)
    return min(base * (2 ** exponent), maximum)


class ProviderMemory:
    """Per-ticker provider learning persisted under `refresh-meta`.

    A provider is blocked for a ticker once it has failed `block_threshold`
    times without a single success. When every provider is blocked the one
    with the fewest failures is unblocked again so no ticker is stuck for good.
    """

    STORAGE_KEY = "refresh-meta"

    def __init__(
        self,
        store: KeyValueStore,
        provider_order: Optional[Sequence[str]] = None,
        block_threshold: int = 3,
        cooldown_base: timedelta = timedelta(minutes=5),
        cooldown_max: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.provider_order = list(provider_order or DEFAULT_PROVIDER_ORDER)
        self.block_threshold = block_threshold
        self.cooldown_base = cooldown_base
        self.cooldown_max = cooldown_max
        self.clock = clock
        self._entries: Dict[str, StockProviderMemory] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    def _key(self, ticker: str) -> str:
        return ticker.strip().upper()

    async def _ensure_loaded(self):
        if self._loaded:
            return
        self._loaded = True
        try:
            data = await self.store.get(self.STORAGE_KEY)
        except Exception as e:
            logger.error(f"Failed to load refresh metadata, starting fresh: {e}", exc_info=True)
            return

        for ticker, raw in (data or {}).items():
            try:
                self._entries[ticker] = StockProviderMemory.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable refresh metadata for {ticker}: {e}")

    async def _persist(self):
        payload = {ticker: entry.to_dict() for ticker, entry in self._entries.items()}
        try:
            await self.store.set(self.STORAGE_KEY, payload)
        except Exception as e:
            logger.error(f"Failed to persist refresh metadata: {e}", exc_info=True)

    def _get_or_create(self, ticker: str) -> StockProviderMemory:
        key = self._key(ticker)
        entry = self._entries.get(key)
        if entry is None:
            entry = StockProviderMemory(ticker=key)
            self._entries[key] = entry
        return entry

    def _self_heal(self, entry: StockProviderMemory):
        """Unblock the least-failed provider when all are blocked."""
        known = [name for name in self.provider_order if name in entry.providers]
        if len(known) < len(self.provider_order):
            # at least one provider was never tried, so it is not blocked
            return
        if not all(entry.providers[name].blocked for name in known):
            return

        # min() keeps the first of equals, i.e. the global priority order
        name = min(known, key=lambda n: entry.providers[n].failures)
        record = entry.providers[name]
        record.blocked = False
        record.failures = 0
        logger.info(f"All providers blocked for {entry.ticker}; unblocked {name}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, ticker: str) -> Optional[StockProviderMemory]:
        """Learned state for a ticker, or None if never attempted."""
        async with self._lock:
            await self._ensure_loaded()
            return self._entries.get(self._key(ticker))

    async def all_entries(self) -> Dict[str, StockProviderMemory]:
        async with self._lock:
            await self._ensure_loaded()
            return dict(self._entries)

    async def pick_order(self, ticker: str, preferred: Optional[str] = None) -> List[str]:
        """
        Providers to try for a ticker, in order.

        The preferred provider comes first when it is not blocked, then the
        remaining unblocked providers in global priority order.

        Args:
            ticker: Ticker symbol
            preferred: Fallback preference when nothing has been learned yet
        """
        async with self._lock:
            await self._ensure_loaded()
            entry = self._entries.get(self._key(ticker))

            def blocked(name: str) -> bool:
                if entry is None or name not in entry.providers:
                    return False
                return entry.providers[name].blocked

            order = [name for name in self.provider_order if not blocked(name)]

            first = (entry.preferred_provider if entry else None) or preferred
            if first in order:
                order.remove(first)
                order.insert(0, first)
            return order

    async def record_outcome(self, ticker: str, provider: str, success: bool) -> StockProviderMemory:
        """
        Record one provider attempt for a ticker.

        Success makes the provider preferred and clears the ticker's failure
        streak and cooldown. Failure may block the provider for this ticker.
        """
        async with self._lock:
            await self._ensure_loaded()
            now = self.clock()
            entry = self._get_or_create(ticker)
            record = entry.record(provider)
            record.last_tried_at = now

            if success:
                record.successes += 1
                record.last_success_at = now
                record.blocked = False
                entry.preferred_provider = provider
                entry.consecutive_failures = 0
                entry.cooldown_until = None
                entry.last_refreshed_at = now
            else:
                record.failures += 1
                if record.failures >= self.block_threshold and record.successes == 0 and not record.blocked:
                    record.blocked = True
                    logger.warning(
                        f"Blocked {provider} for {entry.ticker} after {record.failures} failures"
                    )
                    if entry.preferred_provider == provider:
                        entry.preferred_provider = None
                self._self_heal(entry)

            await self._persist()
            return entry

    async def record_pass_failure(self, ticker: str) -> StockProviderMemory:
        """Every provider failed for a ticker: extend its backoff."""
        async with self._lock:
            await self._ensure_loaded()
            entry = self._get_or_create(ticker)
            entry.consecutive_failures += 1
            cooldown = self.compute_cooldown(entry.consecutive_failures)
            entry.cooldown_until = self.clock() + cooldown
            logger.info(
                f"{entry.ticker} failed on all providers ({entry.consecutive_failures}x), "
                f"cooling down for {cooldown.total_seconds() / 60:.0f} min"
            )
            await self._persist()
            return entry

    def compute_cooldown(self, consecutive_failures: int) -> timedelta:
        return compute_cooldown(consecutive_failures, self.cooldown_base, self.cooldown_max)

    async def reset_stock(self, ticker: str) -> bool:
        """Forget everything learned about a ticker."""
        async with self._lock:
            await self._ensure_loaded()
            removed = self._entries.pop(self._key(ticker), None) is not None
            if removed:
                await self._persist()
                logger.info(f"Reset refresh metadata for {self._key(ticker)}")
            return removed

    async def reset_all(self) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._entries.clear()
            await self._persist()
            logger.info("Reset refresh metadata for all stocks")
