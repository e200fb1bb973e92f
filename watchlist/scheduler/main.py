"""Watchlist scheduler: continuous refresh engine plus periodic range batch."""
import logging
import asyncio
from datetime import timedelta
from typing import List, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from watchlist.core.config import Settings, settings
from watchlist.core.database import AsyncSessionLocal, init_db
from watchlist.core.redis import close_redis, get_kv_store
from watchlist.core.storage import KeyValueStore
from watchlist.providers import QuoteProvider
from watchlist.providers.alphavantage import AlphaVantageProvider
from watchlist.providers.fmp import FmpProvider
from watchlist.providers.registry import ProviderSet
from watchlist.providers.twelvedata import TwelveDataProvider
from watchlist.providers.yahoo import YahooProvider
from watchlist.services.priority import ScanWeights
from watchlist.services.provider_memory import ProviderMemory
from watchlist.services.quote_cache import QuoteCache
from watchlist.services.range_batch import RangeBatchJob
from watchlist.services.rate_governor import RateGovernor
from watchlist.services.refresh_engine import RefreshEngine
from watchlist.services.stock_store import SqlStockStore, StockStore

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_providers(config: Settings) -> List[QuoteProvider]:
    """Instantiate the providers named in the configured order that have credentials."""
    factories = {
        "yahoo": lambda: YahooProvider(),
        "twelvedata": lambda: TwelveDataProvider(config.twelvedata_api_key) if config.twelvedata_api_key else None,
        "alphavantage": lambda: AlphaVantageProvider(config.alphavantage_api_key) if config.alphavantage_api_key else None,
        "fmp": lambda: FmpProvider(config.fmp_api_key) if config.fmp_api_key else None,
    }

    providers = []
    for name in config.provider_order_list:
        factory = factories.get(name)
        if factory is None:
            logger.warning(f"Unknown provider '{name}' in provider_order, ignoring")
            continue
        provider = factory()
        if provider is None:
            logger.info(f"No API key for {name}, provider disabled")
            continue
        providers.append(provider)
    return providers


class WatchlistScheduler:
    """Wires storage, providers and engines, and runs them until stopped."""

    def __init__(
        self,
        config: Settings = settings,
        store: Optional[StockStore] = None,
        kv_store: Optional[KeyValueStore] = None,
        providers: Optional[List[QuoteProvider]] = None
    ):
        logger.info("Initializing WatchlistScheduler...")
        self.config = config
        self.scheduler = AsyncIOScheduler()
        self.store = store
        self.kv_store = kv_store
        self._providers = providers
        self.provider_set: Optional[ProviderSet] = None
        self.engine: Optional[RefreshEngine] = None
        self.range_job: Optional[RangeBatchJob] = None
        self._shutdown = asyncio.Event()

    async def setup(self):
        """Create collaborators. Separate from __init__ because Redis is async."""
        if self.kv_store is None:
            logger.debug("Connecting to Redis...")
            self.kv_store = await get_kv_store(self.config.storage_namespace)
            logger.info("Redis connection established")

        if self.store is None:
            await init_db()
            self.store = SqlStockStore(AsyncSessionLocal)

        providers = self._providers if self._providers is not None else build_providers(self.config)
        names = [p.name for p in providers]
        logger.info(f"Providers enabled: {', '.join(names) or 'none'}")

        governor = RateGovernor(self.kv_store, timezone_str=self.config.timezone)
        self.provider_set = ProviderSet(providers, governor, QuoteCache(self.kv_store))

        memory = ProviderMemory(
            self.kv_store,
            provider_order=names,
            block_threshold=self.config.block_failure_threshold,
            cooldown_base=timedelta(seconds=self.config.cooldown_base_seconds),
            cooldown_max=timedelta(seconds=self.config.cooldown_max_seconds)
        )

        self.engine = RefreshEngine(
            self.store,
            self.provider_set,
            memory,
            weights=ScanWeights.from_settings(self.config),
            failure_penalty=self.config.failure_penalty_minutes,
            delay_between_stocks=self.config.delay_between_stocks,
            delay_after_failure=self.config.delay_after_failure,
            cycle_delay=self.config.cycle_delay,
            paused_poll_interval=self.config.paused_poll_interval,
            empty_queue_delay=self.config.empty_queue_delay
        )

        self.range_job = RangeBatchJob(
            self.store,
            self.provider_set,
            provider_order=names,
            stale_after=timedelta(hours=self.config.range_stale_after_hours)
        )

    async def run_range_batch(self):
        """Scheduled range batch, sharing the governor with the refresh engine."""
        try:
            result = await self.range_job.run_batch(max_batch_size=self.config.range_batch_size)
            logger.info(
                f"Range batch: processed={result.processed} updated={result.updated} "
                f"errors={result.errors} remaining={result.remaining}"
            )
        except Exception as e:
            logger.error(f"Error running range batch: {e}", exc_info=True)

    def start(self):
        """Start the refresh engine and register the range batch job."""
        logger.info("=" * 60)
        logger.info("Starting watchlist scheduler...")
        logger.info(f"Log level: {self.config.log_level}")
        logger.info(f"Day boundary timezone: {self.config.timezone}")
        logger.info(f"Range batch: every {self.config.range_batch_interval_minutes} minutes, "
                    f"up to {self.config.range_batch_size} stocks")
        logger.info("=" * 60)

        self.scheduler.add_job(
            self.run_range_batch,
            trigger=IntervalTrigger(minutes=self.config.range_batch_interval_minutes),
            id="range_batch",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        self.engine.start()
        logger.info("Scheduler started successfully")

    def request_shutdown(self):
        self._shutdown.set()

    async def shutdown(self):
        """Stop engines, the scheduler and network clients."""
        logger.info("Shutting down scheduler...")
        if self.range_job is not None:
            self.range_job.stop()
        if self.engine is not None:
            self.engine.stop()
            await self.engine.wait_stopped()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self.provider_set is not None:
            await self.provider_set.close()
        await close_redis()

    async def run(self):
        """Run until interrupted."""
        await self.setup()
        self.start()

        try:
            await self._shutdown.wait()
        finally:
            await self.shutdown()


async def main():
    """Main entry point for scheduler."""
    scheduler = WatchlistScheduler()
    await scheduler.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
