"""Adaptive multi-provider refresh engine.

A single cooperative loop: rebuild the priority queue, refresh each ready
stock through the providers its memory suggests, pause between stocks, and
sleep between cycles. All sleeps wait on the stop event so `stop()` takes
effect immediately. Provider failures feed the provider memory and the
stats; they never end the loop.
"""
import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from watchlist.models.stock import TrackedStock
from watchlist.providers import ProviderError
from watchlist.providers.models import FailureKind, QuoteResult
from watchlist.providers.registry import ProviderSet
from watchlist.services.priority import ScanWeights, build_queue
from watchlist.services.provider_memory import ProviderMemory, StockProviderMemory
from watchlist.services.stock_store import StockStore
from watchlist.utils.time import utc_now


logger = logging.getLogger(__name__)


class RefreshOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    # every provider was rate limited; the stock was left untouched
    SKIPPED = "skipped"


@dataclass
class RefreshStats:
    """Running statistics for display."""
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    rate_limited: int = 0
    cycles: int = 0
    current_index: int = 0
    queue_length: int = 0
    is_running: bool = False
    is_paused: bool = False
    last_refreshed_ticker: Optional[str] = None
    last_refreshed_provider: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    provider_stats: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def provider(self, name: str) -> Dict[str, int]:
        if name not in self.provider_stats:
            self.provider_stats[name] = {"successes": 0, "failures": 0}
        return self.provider_stats[name]


class RefreshEngine:
    """Continuously refresh tracked stocks under provider rate limits.

    States: stopped -> running -> (paused <-> running) -> stopped.
    """

    def __init__(
        self,
        store: StockStore,
        providers: ProviderSet,
        memory: ProviderMemory,
        weights: Optional[ScanWeights] = None,
        failure_penalty: float = 30.0,
        delay_between_stocks: float = 1.5,
        delay_after_failure: float = 3.0,
        cycle_delay: float = 30.0,
        paused_poll_interval: float = 1.0,
        empty_queue_delay: float = 5.0,
        need_history: bool = False,
        only_open_markets: bool = False,
        on_update: Optional[Callable[[TrackedStock], Any]] = None,
        on_stats: Optional[Callable[[RefreshStats], Any]] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.providers = providers
        self.memory = memory
        self.weights = weights or ScanWeights()
        self.failure_penalty = failure_penalty
        self.delay_between_stocks = delay_between_stocks
        self.delay_after_failure = delay_after_failure
        self.cycle_delay = cycle_delay
        self.paused_poll_interval = paused_poll_interval
        self.empty_queue_delay = empty_queue_delay
        self.need_history = need_history
        self.only_open_markets = only_open_markets
        self.on_update = on_update
        self.on_stats = on_stats
        self.clock = clock

        self._stats = RefreshStats()
        self._running = False
        self._paused = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    def start(self) -> Optional[asyncio.Task]:
        """Start the loop in a background task. No-op if already running."""
        if self._running:
            logger.debug("Refresh engine already running")
            return self._task

        if self._task is not None and not self._task.done():
            # a stopped loop still finishing its in-flight request
            self._task.cancel()

        self._running = True
        self._paused = False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(), name="refresh-engine")
        logger.info("Refresh engine started")
        return self._task

    def stop(self):
        """Stop the loop; any pending sleep wakes immediately."""
        was_running = self._running
        self._running = False
        self._paused = False
        self._stop_event.set()
        self._stats.is_running = False
        self._stats.is_paused = False
        if was_running:
            logger.info("Refresh engine stopping")

    def pause(self):
        """Keep running but stop dequeuing stocks."""
        if self._running and not self._paused:
            self._paused = True
            self._stats.is_paused = True
            logger.info("Refresh engine paused")

    def resume(self):
        if self._paused:
            self._paused = False
            self._stats.is_paused = False
            logger.info("Refresh engine resumed")

    async def wait_stopped(self):
        """Wait for the background loop to exit."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def stats(self) -> RefreshStats:
        """Snapshot of the running statistics."""
        return copy.deepcopy(self._stats)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def get_stock_meta(self, ticker: str) -> Optional[StockProviderMemory]:
        """Learned provider state for a ticker."""
        return await self.memory.get(ticker)

    async def reset_stock(self, ticker: str) -> bool:
        return await self.memory.reset_stock(ticker)

    async def reset_all(self):
        """Forget all learned provider state and statistics."""
        await self.memory.reset_all()
        self._stats = RefreshStats(is_running=self._running, is_paused=self._paused)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _sleep(self, seconds: float) -> bool:
        """Abortable sleep. Returns False if woken by stop()."""
        if self._stop_event.is_set():
            return False
        if seconds <= 0:
            await asyncio.sleep(0)
            return not self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return False
        except asyncio.TimeoutError:
            return True

    async def run(self):
        """Run until stop() is called."""
        if not self._running:
            self._stop_event = asyncio.Event()
        self._running = True
        self._stats.is_running = True
        stop_event = self._stop_event

        try:
            while not stop_event.is_set():
                if self._paused:
                    await self._sleep(self.paused_poll_interval)
                    continue

                try:
                    refreshed = await self.run_cycle()
                except Exception as e:
                    logger.error(f"Refresh cycle failed: {e}", exc_info=True)
                    self._stats.last_error = str(e)
                    refreshed = 0

                delay = self.cycle_delay if refreshed else self.empty_queue_delay
                logger.debug(f"Cycle done ({refreshed} stocks), sleeping {delay}s")
                await self._sleep(delay)
        finally:
            # a restarted engine owns a new event; leave its state alone
            if self._stop_event is stop_event:
                self._running = False
                self._stats.is_running = False
            logger.info("Refresh engine stopped")

    async def run_cycle(self) -> int:
        """
        One pass over the priority queue.

        Returns:
            Number of stocks attempted
        """
        stocks = await self.store.get_tracked_stocks()
        memories = await self.memory.all_entries()
        queue = build_queue(
            stocks,
            memories,
            now=self.clock(),
            weights=self.weights,
            failure_penalty=self.failure_penalty,
            only_open_markets=self.only_open_markets
        )
        ready = [entry for entry in queue if entry.is_ready]

        self._stats.cycles += 1
        self._stats.queue_length = len(ready)
        self._stats.current_index = 0
        logger.info(f"Refresh cycle: {len(ready)} ready, {len(queue) - len(ready)} cooling down")

        attempted = 0
        for index, entry in enumerate(ready):
            while self._paused and not self._stop_event.is_set():
                await self._sleep(self.paused_poll_interval)
            if self._stop_event.is_set():
                break

            self._stats.current_index = index
            outcome = await self.refresh_stock(entry.stock)
            attempted += 1
            await self._emit_stats()

            if index < len(ready) - 1:
                delay = self.delay_between_stocks if outcome == RefreshOutcome.SUCCESS else self.delay_after_failure
                if not await self._sleep(delay):
                    break

        return attempted

    async def refresh_stock(self, stock: TrackedStock) -> RefreshOutcome:
        """Try providers for one stock in learned order until one succeeds."""
        ticker = stock.ticker
        order = await self.memory.pick_order(ticker, preferred=stock.preferred_provider)
        # a stock without stored history gets it on its next successful quote
        need_history = self.need_history or not stock.history
        self._stats.attempts += 1

        tried = 0
        for name in order:
            if self.providers.get(name) is None:
                continue

            try:
                result = await self.providers.fetch(
                    name, ticker, stock.exchange, need_history=need_history
                )
            except ProviderError as e:
                self._stats.last_error = str(e)
                if e.kind == FailureKind.RATE_LIMITED:
                    # quota says nothing about this ticker, so it is not held against the provider
                    self._stats.rate_limited += 1
                    logger.debug(f"{name} rate limited for {ticker}: {e}")
                    continue

                tried += 1
                self._stats.provider(name)["failures"] += 1
                logger.warning(f"{name} failed for {ticker} ({e.kind.value}): {e}")
                await self.memory.record_outcome(ticker, name, False)
                continue

            await self.memory.record_outcome(ticker, name, True)
            await self._apply(stock, result)
            self._stats.successes += 1
            self._stats.provider(name)["successes"] += 1
            self._stats.last_refreshed_ticker = ticker
            self._stats.last_refreshed_provider = name
            self._stats.last_refreshed_at = self.clock()
            return RefreshOutcome.SUCCESS

        if tried == 0:
            logger.info(f"No provider available for {ticker} right now, leaving it for later")
            return RefreshOutcome.SKIPPED

        self._stats.failures += 1
        await self.memory.record_pass_failure(ticker)
        return RefreshOutcome.FAILED

    async def _apply(self, stock: TrackedStock, result: QuoteResult):
        """Write quote fields back to the store and notify the host."""
        quote = result.quote
        updates: Dict[str, Any] = {
            "current_price": quote.price,
            "previous_close": quote.previous_close,
            "day_change": quote.change,
            "day_change_percent": quote.change_percent,
            "last_quote_at": self.clock(),
            "preferred_provider": result.provider,
        }
        if quote.name and not stock.name:
            updates["name"] = quote.name
        if quote.currency and not stock.currency:
            updates["currency"] = quote.currency
        if quote.week52_high is not None and stock.week52_high is None:
            updates["week52_high"] = quote.week52_high
        if quote.week52_low is not None and stock.week52_low is None:
            updates["week52_low"] = quote.week52_low
        if result.history:
            updates["history"] = result.history

        try:
            updated = await self.store.update_stock(stock.id, updates)
        except Exception as e:
            logger.error(f"Failed to store quote for {stock.ticker}: {e}", exc_info=True)
            self._stats.last_error = str(e)
            return

        if updated is not None and self.on_update is not None:
            await self._notify(self.on_update, updated)

    async def _emit_stats(self):
        if self.on_stats is not None:
            await self._notify(self.on_stats, self.stats())

    async def _notify(self, callback: Callable, payload: Any):
        try:
            result = callback(payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Host callback failed: {e}", exc_info=True)
