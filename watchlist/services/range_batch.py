"""Range fetch batch job: long-range history, 1/3/5 year bands and buy limits."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from watchlist.models.stock import TrackedStock
from watchlist.providers import ProviderError
from watchlist.providers.models import FailureKind, QuoteResult
from watchlist.providers.registry import ProviderSet
from watchlist.services.ranges import calculate_buy_limit, calculate_ranges
from watchlist.services.stock_store import StockStore
from watchlist.utils.time import ensure_aware, utc_now


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
NO_DATA_KINDS = (FailureKind.NOT_FOUND, FailureKind.PRO_REQUIRED)
# a range fetch is a quote plus its history
REQUESTS_PER_STOCK = 2
# fetched without a timestamp counts as oldest
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _fetched_at(stock: TrackedStock) -> datetime:
    return ensure_aware(stock.range_fetched_at) if stock.range_fetched_at else EPOCH


@dataclass
class BatchResult:
    """Counts from one batch run."""
    processed: int = 0
    updated: int = 0
    errors: int = 0
    remaining: int = 0
    rate_limited: int = 0


class RangeBatchJob:
    """Bounded batch over stocks that need range data.

    Stocks never fetched come first, then fetched stocks whose data is older
    than `stale_after`, oldest first. Stocks flagged with a fetch error are
    skipped until the flag is cleared.
    """

    def __init__(
        self,
        store: StockStore,
        providers: ProviderSet,
        provider_order: Optional[Sequence[str]] = None,
        stale_after: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.providers = providers
        self.provider_order = list(provider_order or providers.names)
        self.stale_after = stale_after
        self.clock = clock
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def rank_eligible(
        self,
        stocks: Sequence[TrackedStock],
        now: Optional[datetime] = None
    ) -> List[TrackedStock]:
        """Eligible stocks in processing order."""
        now = now or self.clock()
        never_fetched = []
        stale = []

        for stock in stocks:
            if stock.range_fetch_error:
                continue
            if not stock.range_fetched:
                never_fetched.append(stock)
            elif stock.range_fetched_at is None:
                stale.append(stock)
            elif now - ensure_aware(stock.range_fetched_at) >= self.stale_after:
                stale.append(stock)

        stale.sort(key=_fetched_at)
        return never_fetched + stale

    def count_eligible(self, stocks: Sequence[TrackedStock], now: Optional[datetime] = None) -> int:
        return len(self.rank_eligible(stocks, now))

    def _order_for(self, stock: TrackedStock) -> List[str]:
        order = list(self.provider_order)
        if stock.preferred_provider in order:
            order.remove(stock.preferred_provider)
            order.insert(0, stock.preferred_provider)
        return order

    async def _sleep(self, seconds: float) -> bool:
        """Wait unless stopped. Returns False if the wait was cut short."""
        if seconds <= 0:
            return not self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return False
        except asyncio.TimeoutError:
            return True

    def stop(self):
        """Abort the running batch, waking any delay immediately."""
        self._stop_event.set()

    async def _update(self, stock: TrackedStock, updates: Dict) -> bool:
        try:
            await self.store.update_stock(stock.id, updates)
            return True
        except Exception as e:
            logger.error(f"Failed to store range update for {stock.ticker}: {e}", exc_info=True)
            return False

    def _success_updates(self, stock: TrackedStock, result: QuoteResult, now: datetime) -> Optional[Dict]:
        """Field updates for a successful fetch, or None if it carried no usable range."""
        bands = calculate_ranges(result.history or [], now)
        if not bands.has_data:
            return None

        quote = result.quote
        updates = {
            "week52_low": bands.week52_low,
            "week52_high": bands.week52_high,
            "year3_low": bands.year3_low,
            "year3_high": bands.year3_high,
            "year5_low": bands.year5_low,
            "year5_high": bands.year5_high,
            "history": result.history,
            "current_price": quote.price,
            "previous_close": quote.previous_close,
            "day_change": quote.change,
            "day_change_percent": quote.change_percent,
            "last_quote_at": now,
            "range_fetched": True,
            "range_fetched_at": now,
            "range_fetch_error": False,
        }
        if quote.currency and not stock.currency:
            updates["currency"] = quote.currency
        if quote.name and not stock.name:
            updates["name"] = quote.name

        buy_limit = calculate_buy_limit(bands.year5_low, bands.year3_low, bands.week52_low)
        if buy_limit is not None:
            updates["buy_limit"] = buy_limit
        return updates

    async def run_batch(
        self,
        stocks: Optional[Sequence[TrackedStock]] = None,
        max_batch_size: int = DEFAULT_BATCH_SIZE
    ) -> BatchResult:
        """
        Fetch ranges for up to `max_batch_size` eligible stocks.

        Args:
            stocks: Stocks to consider (defaults to every tracked stock)
            max_batch_size: Upper bound on stocks attempted

        Returns:
            BatchResult; `remaining` counts eligible stocks left afterwards
        """
        if self._running:
            logger.warning("Range batch already running, skipping")
            return BatchResult()

        self._running = True
        self._stop_event.clear()
        result = BatchResult()

        try:
            if stocks is None:
                stocks = await self.store.get_tracked_stocks()

            eligible = self.rank_eligible(stocks)
            batch = eligible[:max_batch_size]

            governor = self.providers.governor
            # stocks that today's remaining quota can still cover
            capacity = 0
            for name in self.provider_order:
                capacity += await governor.available_requests(name) // REQUESTS_PER_STOCK
            if batch and capacity == 0:
                logger.warning("Range batch: no provider has requests left today, skipping")
                result.remaining = len(eligible)
                return result

            eta = governor.estimate_seconds(self.provider_order[0], REQUESTS_PER_STOCK * len(batch)) if batch else 0.0
            logger.info(
                f"Range batch: {len(batch)} of {len(eligible)} eligible stocks, "
                f"quota left for {capacity}, ~{eta:.0f}s"
            )

            for i, stock in enumerate(batch):
                if self._stop_event.is_set():
                    logger.info("Range batch stopped")
                    break

                served_by = await self._process(stock, result)

                if i < len(batch) - 1:
                    delay_provider = served_by or (self._order_for(stock) or [None])[0]
                    delay = self.providers.governor.min_delay(delay_provider) if delay_provider else 0.0
                    if not await self._sleep(delay):
                        logger.info("Range batch stopped")
                        break

            result.remaining = max(len(eligible) - result.processed, 0)
            logger.info(
                f"Range batch done: processed={result.processed} updated={result.updated} "
                f"errors={result.errors} rate_limited={result.rate_limited} remaining={result.remaining}"
            )
            return result
        finally:
            self._running = False

    async def _process(self, stock: TrackedStock, result: BatchResult) -> Optional[str]:
        """Fetch and store one stock. Returns the provider that served it, if any."""
        now = self.clock()

        try:
            fetched = await self.providers.fetch_first(
                stock.ticker,
                stock.exchange,
                order=self._order_for(stock),
                need_history=True
            )
        except ProviderError as e:
            if e.kind == FailureKind.RATE_LIMITED:
                logger.info(f"Range fetch for {stock.ticker} rate limited, leaving for later")
                result.rate_limited += 1
                return None

            result.processed += 1
            if e.kind in NO_DATA_KINDS:
                logger.info(f"No range data for {stock.ticker} ({e.kind.value}), marking fetched")
                await self._update(stock, {"range_fetched": True, "range_fetched_at": now})
            else:
                logger.warning(f"Range fetch failed for {stock.ticker}: {e}")
                result.errors += 1
                await self._update(stock, {"range_fetch_error": True})
            return e.provider
        except Exception as e:
            logger.error(f"Unexpected error fetching range for {stock.ticker}: {e}", exc_info=True)
            result.processed += 1
            result.errors += 1
            await self._update(stock, {"range_fetch_error": True})
            return None

        result.processed += 1
        updates = self._success_updates(stock, fetched, now)
        if updates is None:
            logger.info(f"{fetched.provider} returned no usable history for {stock.ticker}, marking fetched")
            await self._update(stock, {"range_fetched": True, "range_fetched_at": now})
            return fetched.provider

        if await self._update(stock, updates):
            result.updated += 1
            logger.debug(
                f"Ranges for {stock.ticker} via {fetched.provider}: "
                f"5Y low {updates['year5_low']}, buy limit {updates.get('buy_limit')}"
            )
        return fetched.provider

    async def clear_error_flags(self, stocks: Optional[Sequence[TrackedStock]] = None) -> int:
        """Clear fetch error flags so those stocks become eligible again."""
        if stocks is None:
            stocks = await self.store.get_tracked_stocks()

        cleared = 0
        for stock in stocks:
            if stock.range_fetch_error and await self._update(stock, {"range_fetch_error": False}):
                cleared += 1

        logger.info(f"Cleared range fetch error flag on {cleared} stocks")
        return cleared

    async def recalculate_buy_limits(self, stocks: Optional[Sequence[TrackedStock]] = None) -> int:
        """Re-derive buy limits from stored bands; stocks without a positive low are left alone."""
        if stocks is None:
            stocks = await self.store.get_tracked_stocks()

        changed = 0
        for stock in stocks:
            limit = calculate_buy_limit(stock.year5_low, stock.year3_low, stock.week52_low)
            if limit is None or limit == stock.buy_limit:
                continue
            if await self._update(stock, {"buy_limit": limit}):
                changed += 1

        logger.info(f"Recalculated buy limits for {changed} stocks")
        return changed
