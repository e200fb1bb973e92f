"""Unit tests for the range fetch batch job."""
import asyncio
import pytest
from datetime import date, timedelta

from watchlist.providers.models import FailureKind
from watchlist.providers.registry import ProviderSet
from watchlist.services.range_batch import RangeBatchJob
from watchlist.services.rate_governor import DEFAULT_LIMITS, ProviderLimits, RateGovernor
from watchlist.services.stock_store import InMemoryStockStore
from tests.conftest import NOW, UNLIMITED, FakeProvider, make_history, make_stock


HISTORY = make_history(date(2025, 1, 1), 100, close=20.0)


def make_job(kv_store, clock, stocks, providers, limits=None):
    store = InMemoryStockStore(stocks)
    governor = RateGovernor(
        kv_store,
        limits=limits or {p.name: UNLIMITED for p in providers},
        clock=clock
    )
    job = RangeBatchJob(store, ProviderSet(providers, governor), clock=clock)
    return job, store


def fetched(ticker, days_ago, **fields):
    return make_stock(ticker, range_fetched=True, range_fetched_at=NOW - timedelta(days=days_ago), **fields)


# ============================================================================
# Tests for eligibility ranking
# ============================================================================

@pytest.mark.unit
class TestRankEligible:
    """Test which stocks a batch considers and in what order."""

    def test_order_and_exclusions(self, kv_store, clock):
        """✅ Never fetched first, then stale oldest first; errored and fresh excluded."""
        stocks = [
            fetched("STALE8", 8),
            make_stock("NEW1"),
            fetched("FRESH", 1),
            make_stock("BROKEN", range_fetch_error=True),
            fetched("STALE30", 30),
            make_stock("NEW2"),
        ]
        job, _ = make_job(kv_store, clock, stocks, [FakeProvider("yahoo")])

        ranked = job.rank_eligible(stocks)

        assert [s.ticker for s in ranked] == ["NEW1", "NEW2", "STALE30", "STALE8"]
        assert job.count_eligible(stocks) == 4

    def test_fetched_without_timestamp_is_oldest(self, kv_store, clock):
        """✅ Fetched flag without a timestamp sorts before dated stale stocks."""
        stocks = [fetched("STALE", 10), make_stock("NODATE", range_fetched=True)]
        job, _ = make_job(kv_store, clock, stocks, [FakeProvider("yahoo")])

        assert [s.ticker for s in job.rank_eligible(stocks)] == ["NODATE", "STALE"]


# ============================================================================
# Tests for run_batch outcomes
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestRunBatch:
    """Test per-item outcomes."""

    async def test_success_sets_bands_and_limit(self, kv_store, clock):
        """✅ Usable history → bands, buy limit, quote and fetched flags stored."""
        provider = FakeProvider("yahoo", {"*": 25.0}, history=HISTORY)
        job, store = make_job(kv_store, clock, [make_stock("ASML")], [provider])

        result = await job.run_batch()

        assert (result.processed, result.updated, result.errors, result.remaining) == (1, 1, 0, 0)
        stock = await store.get_stock("asml")
        assert stock.year5_low == 20.0
        assert stock.week52_high == 20.0
        assert stock.buy_limit == 21.0
        assert stock.current_price == 25.0
        assert stock.range_fetched is True
        assert stock.range_fetched_at == NOW
        assert stock.range_fetch_error is False
        assert len(stock.history) == 100

    @pytest.mark.critical
    async def test_second_run_fetches_nothing(self, kv_store, clock):
        """✅ Two runs back to back → the second processes nothing."""
        provider = FakeProvider("yahoo", {"*": 25.0}, history=HISTORY)
        job, store = make_job(kv_store, clock, [make_stock("A"), make_stock("B")], [provider])

        first = await job.run_batch()
        second = await job.run_batch()

        assert first.processed == 2
        assert second.processed == 0
        assert second.remaining == 0
        assert provider.history_calls == ["A", "B"]

    async def test_no_data_marks_fetched_only(self, kv_store, clock):
        """✅ not_found from every provider → fetched, limit untouched, no error."""
        providers = [
            FakeProvider("yahoo", {"*": FailureKind.NOT_FOUND}),
            FakeProvider("fmp", {"*": FailureKind.PRO_REQUIRED}),
        ]
        job, store = make_job(kv_store, clock, [make_stock("XX", buy_limit=7.5)], providers)

        result = await job.run_batch()

        assert (result.processed, result.updated, result.errors) == (1, 0, 0)
        stock = await store.get_stock("xx")
        assert stock.range_fetched is True
        assert stock.range_fetch_error is False
        assert stock.buy_limit == 7.5
        assert stock.year5_low is None

    async def test_empty_history_marks_fetched_only(self, kv_store, clock):
        """✅ Provider succeeds with no history → fetched, nothing else."""
        provider = FakeProvider("yahoo", {"*": 25.0}, history=[])
        job, store = make_job(kv_store, clock, [make_stock("A", buy_limit=3.0)], [provider])

        result = await job.run_batch()

        assert result.updated == 0
        stock = await store.get_stock("a")
        assert stock.range_fetched is True
        assert stock.buy_limit == 3.0

    async def test_network_failure_flags_error(self, kv_store, clock):
        """✅ Network failure → error flag set, fetched stays False, excluded next run."""
        provider = FakeProvider("yahoo", {"*": FailureKind.NETWORK})
        job, store = make_job(kv_store, clock, [make_stock("A")], [provider])

        result = await job.run_batch()

        assert (result.processed, result.errors) == (1, 1)
        stock = await store.get_stock("a")
        assert stock.range_fetch_error is True
        assert stock.range_fetched is False

        again = await job.run_batch()
        assert again.processed == 0

    async def test_unexpected_exception_flags_error(self, kv_store, clock):
        """✅ Arbitrary exception from an adapter → error flag."""
        provider = FakeProvider("yahoo", {"*": RuntimeError("boom")})
        job, store = make_job(kv_store, clock, [make_stock("A")], [provider])

        result = await job.run_batch()

        assert result.errors == 1
        assert (await store.get_stock("a")).range_fetch_error is True

    async def test_rate_limited_left_untouched(self, kv_store, clock):
        """✅ Every provider rate limited → stock untouched, not an error, still eligible."""
        provider = FakeProvider("yahoo", {"*": FailureKind.RATE_LIMITED})
        job, store = make_job(kv_store, clock, [make_stock("A")], [provider])

        result = await job.run_batch()

        assert (result.processed, result.errors, result.rate_limited, result.remaining) == (0, 0, 1, 1)
        stock = await store.get_stock("a")
        assert stock.range_fetched is False
        assert stock.range_fetch_error is False

    async def test_falls_back_to_next_provider(self, kv_store, clock):
        """✅ First provider fails, second succeeds."""
        providers = [
            FakeProvider("yahoo", {"*": FailureKind.NOT_FOUND}),
            FakeProvider("fmp", {"*": 30.0}, history=HISTORY),
        ]
        job, store = make_job(kv_store, clock, [make_stock("A")], providers)

        result = await job.run_batch()

        assert result.updated == 1
        assert (await store.get_stock("a")).current_price == 30.0

    async def test_batch_size_bounds_work(self, kv_store, clock):
        """✅ max_batch_size caps processed, remaining counts the rest."""
        provider = FakeProvider("yahoo", {"*": 25.0}, history=HISTORY)
        stocks = [make_stock(f"T{i}") for i in range(5)]
        job, _ = make_job(kv_store, clock, stocks, [provider])

        result = await job.run_batch(max_batch_size=2)

        assert result.processed == 2
        assert result.remaining == 3
        assert provider.history_calls == ["T0", "T1"]

    async def test_stop_cancels_delay(self, kv_store, clock):
        """✅ stop() during the inter-item delay ends the batch immediately."""
        provider = FakeProvider("yahoo", {"*": 25.0}, history=HISTORY)
        slow = {"yahoo": ProviderLimits(per_minute=1000, per_day=1000, min_delay_seconds=30)}
        job, _ = make_job(kv_store, clock, [make_stock("A"), make_stock("B")], [provider], limits=slow)

        task = asyncio.create_task(job.run_batch())
        while not provider.history_calls:
            await asyncio.sleep(0)
        job.stop()

        result = await asyncio.wait_for(task, timeout=1)

        assert result.processed == 1
        assert result.remaining == 1


# ============================================================================
# Tests under the default provider limits
# ============================================================================

@pytest.mark.unit
@pytest.mark.critical
@pytest.mark.asyncio
class TestDefaultLimits:
    """Test the batch against the real spacing and caps."""

    async def test_single_stock_completes(self, kv_store, clock):
        """✅ Never-fetched stock → bands and buy limit computed under default limits."""
        provider = FakeProvider("yahoo", {"*": 25.0}, history=HISTORY)
        job, store = make_job(kv_store, clock, [make_stock("ASML")], [provider], limits=DEFAULT_LIMITS)

        result = await job.run_batch()

        assert (result.processed, result.updated, result.rate_limited, result.remaining) == (1, 1, 0, 0)
        assert provider.history_calls == ["ASML"]
        assert (await store.get_stock("asml")).buy_limit == 21.0

    async def test_inter_item_delay_satisfies_spacing(self, kv_store, clock):
        """✅ Delay between stocks matches the provider's min delay, so every stock is served."""
        provider = FakeProvider("yahoo", {"*": 25.0}, history=HISTORY)
        stocks = [make_stock("A"), make_stock("B"), make_stock("C")]
        job, _ = make_job(kv_store, clock, stocks, [provider], limits=DEFAULT_LIMITS)
        waits = []

        async def advance(seconds):
            waits.append(seconds)
            clock.advance(seconds=seconds)
            return True

        job._sleep = advance

        result = await job.run_batch()

        assert (result.processed, result.updated, result.rate_limited) == (3, 3, 0)
        assert waits == [1.0, 1.0]
        assert provider.history_calls == ["A", "B", "C"]

    async def test_no_quota_left_skips_batch(self, kv_store, clock):
        """✅ Daily quota spent everywhere → nothing attempted, all remain eligible."""
        provider = FakeProvider("yahoo", {"*": 25.0}, history=HISTORY)
        job, _ = make_job(kv_store, clock, [make_stock("A"), make_stock("B")], [provider], limits=DEFAULT_LIMITS)
        await job.providers.governor.mark_exhausted("yahoo")

        result = await job.run_batch()

        assert (result.processed, result.rate_limited, result.remaining) == (0, 0, 2)
        assert provider.quote_calls == []


# ============================================================================
# Tests for maintenance operations
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestMaintenance:
    """Test error flag clearing and buy limit recalculation."""

    async def test_clear_error_flags(self, kv_store, clock):
        """✅ Cleared stocks become eligible again."""
        stocks = [make_stock("A", range_fetch_error=True), make_stock("B", range_fetch_error=True)]
        job, store = make_job(kv_store, clock, stocks, [FakeProvider("yahoo")])

        cleared = await job.clear_error_flags()

        assert cleared == 2
        assert job.count_eligible(await store.get_tracked_stocks()) == 2

    async def test_recalculate_buy_limits(self, kv_store, clock):
        """✅ Limits re-derived from stored bands; no low → untouched."""
        stocks = [
            make_stock("A", year5_low=10.0, year3_low=12.0, buy_limit=99.0),
            make_stock("B", buy_limit=5.0),
        ]
        job, store = make_job(kv_store, clock, stocks, [FakeProvider("yahoo")])

        changed = await job.recalculate_buy_limits()

        assert changed == 1
        assert (await store.get_stock("a")).buy_limit == 10.5
        assert (await store.get_stock("b")).buy_limit == 5.0
