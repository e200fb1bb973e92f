"""Unit tests for the HTTP provider adapters.

Each adapter gets a mocked httpx client; tests cover response parsing and
the mapping of HTTP and in-body errors to typed failures.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from datetime import date
import httpx

from watchlist.providers import ProviderError
from watchlist.providers.alphavantage import AlphaVantageProvider
from watchlist.providers.fmp import FmpProvider
from watchlist.providers.http import classify_message, classify_status, is_daily_quota, to_float
from watchlist.providers.models import FailureKind
from watchlist.providers.twelvedata import TwelveDataProvider
from watchlist.providers.yahoo import YahooProvider


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_client():
    """Mock httpx AsyncClient."""
    with patch("httpx.AsyncClient") as mock:
        client_instance = AsyncMock()
        mock.return_value = client_instance
        yield client_instance


def respond(mock_client, *payloads):
    responses = []
    for payload in payloads:
        resp = MagicMock()
        resp.status_code = 200
        resp.json.return_value = payload
        responses.append(resp)
    mock_client.get.side_effect = responses


def status_error(code):
    resp = MagicMock()
    resp.status_code = code
    return httpx.HTTPStatusError(f"{code}", request=None, response=resp)


# ============================================================================
# Tests for classification helpers
# ============================================================================

@pytest.mark.unit
class TestClassification:
    """Test status and message classification."""

    def test_status_codes(self):
        """✅ 429/401/402/403/404/500 mapped."""
        assert classify_status(429) == FailureKind.RATE_LIMITED
        assert classify_status(401) == FailureKind.PRO_REQUIRED
        assert classify_status(402) == FailureKind.PRO_REQUIRED
        assert classify_status(403) == FailureKind.PRO_REQUIRED
        assert classify_status(404) == FailureKind.NOT_FOUND
        assert classify_status(500) == FailureKind.UNKNOWN

    def test_credit_message_with_server_count(self):
        """✅ Quota message → rate_limited with the server's usage count."""
        kind, count = classify_message(
            "You have run out of API credits for the day. 812 API credits were used, "
            "with the current limit being 800."
        )

        assert kind == FailureKind.RATE_LIMITED
        assert count == 812

    @pytest.mark.parametrize("message,daily", [
        ("You have run out of API credits for the day. 812 API credits were used, with the current limit being 800.", True),
        ("You have run out of API credits for the current minute. 9 API credits were used", False),
        ("Limit Reach . Please upgrade your plan", True),
        ("Our standard API rate limit is 25 requests per day.", True),
        ("Our standard API call frequency is 5 calls per minute and 500 calls per day.", False),
        ("HTTP 429", False),
    ])
    def test_daily_quota_detection(self, message, daily):
        """✅ Only day-scoped quota messages count as exhausted."""
        assert is_daily_quota(message) is daily

    def test_plan_messages(self):
        """✅ Plan wording → pro_required."""
        assert classify_message("This symbol is available starting with the Grow plan")[0] == FailureKind.PRO_REQUIRED
        assert classify_message("Upgrade to a premium subscription")[0] == FailureKind.PRO_REQUIRED

    def test_not_found_and_unknown(self):
        """✅ Missing symbol → not_found; anything else → unknown."""
        assert classify_message("**symbol** not found: XYZ")[0] == FailureKind.NOT_FOUND
        assert classify_message("Something odd happened") == (FailureKind.UNKNOWN, None)

    def test_to_float(self):
        """✅ String numbers and percentages parsed, blanks ignored."""
        assert to_float("1.25%") == 1.25
        assert to_float("12") == 12.0
        assert to_float("") is None
        assert to_float("n/a") is None


# ============================================================================
# Tests for YahooProvider
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestYahooProvider:
    """Test the Yahoo chart adapter."""

    async def test_quote(self, mock_client):
        """✅ Chart meta → Quote with computed change."""
        respond(mock_client, {"chart": {"result": [{"meta": {
            "regularMarketPrice": 110.0,
            "chartPreviousClose": 100.0,
            "fiftyTwoWeekHigh": 120.0,
            "fiftyTwoWeekLow": 80.0,
            "currency": "EUR",
            "exchangeName": "AMS",
            "shortName": "ASML Holding"
        }}]}})
        provider = YahooProvider()

        quote = await provider.fetch_quote("ASML", "AMS")

        assert quote.price == 110.0
        assert quote.change == pytest.approx(10.0)
        assert quote.change_percent == pytest.approx(10.0)
        assert quote.week52_low == 80.0
        assert quote.currency == "EUR"
        url = mock_client.get.call_args[0][0]
        assert url.endswith("/v8/finance/chart/ASML.AS")

    async def test_history(self, mock_client):
        """✅ Timestamps and OHLC arrays → sorted points, empty closes skipped."""
        respond(mock_client, {"chart": {"result": [{
            "timestamp": [1718755200, 1718668800, 1718841600],
            "indicators": {"quote": [{
                "close": [11.0, 10.0, None],
                "low": [10.5, 9.5, None],
                "high": [11.5, 10.5, None],
                "volume": [100, 200, None]
            }]}
        }]}})
        provider = YahooProvider()

        history = await provider.fetch_history("AAPL")

        assert [p.date for p in history] == [date(2024, 6, 18), date(2024, 6, 19)]
        assert history[0].low == 9.5
        assert mock_client.get.call_args[1]["params"]["range"] == "5y"

    async def test_empty_result_not_found(self, mock_client):
        """✅ Empty chart result → not_found."""
        respond(mock_client, {"chart": {"result": None, "error": {"description": "No data found"}}})
        provider = YahooProvider()

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("NOPE")

        assert exc.value.kind == FailureKind.NOT_FOUND
        assert exc.value.provider == "yahoo"

    async def test_429(self, mock_client):
        """✅ HTTP 429 → rate_limited."""
        mock_client.get.side_effect = status_error(429)
        provider = YahooProvider()

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("AAPL")

        assert exc.value.kind == FailureKind.RATE_LIMITED
        assert exc.value.quota_exhausted is False

    async def test_timeout_is_network(self, mock_client):
        """✅ Timeout → network."""
        mock_client.get.side_effect = httpx.ReadTimeout("slow")
        provider = YahooProvider()

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("AAPL")

        assert exc.value.kind == FailureKind.NETWORK

    async def test_connection_error_is_network(self, mock_client):
        """✅ Connection failure → network, no retry."""
        mock_client.get.side_effect = httpx.ConnectError("refused")
        provider = YahooProvider()

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("AAPL")

        assert exc.value.kind == FailureKind.NETWORK
        assert mock_client.get.await_count == 1


# ============================================================================
# Tests for TwelveDataProvider
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestTwelveDataProvider:
    """Test the Twelve Data adapter."""

    async def test_quote(self, mock_client):
        """✅ /quote body → Quote; exchange passed separately."""
        respond(mock_client, {
            "symbol": "ASML",
            "name": "ASML Holding NV",
            "exchange": "Euronext",
            "currency": "EUR",
            "close": "612.50",
            "previous_close": "600.00",
            "change": "12.50",
            "percent_change": "2.08",
            "fifty_two_week": {"low": "500.0", "high": "700.0"}
        })
        provider = TwelveDataProvider(api_key="key")

        quote = await provider.fetch_quote("ASML", "AMS")

        assert quote.price == 612.5
        assert quote.change_percent == 2.08
        assert quote.week52_high == 700.0
        params = mock_client.get.call_args[1]["params"]
        assert params["symbol"] == "ASML"
        assert params["exchange"] == "Euronext"

    async def test_history(self, mock_client):
        """✅ /time_series values → points oldest first."""
        respond(mock_client, {"status": "ok", "values": [
            {"datetime": "2025-06-17", "close": "11.0", "low": "10.0", "high": "12.0"},
            {"datetime": "2025-06-16", "close": "10.0"},
        ]})
        provider = TwelveDataProvider(api_key="key")

        history = await provider.fetch_history("AAPL", range_="3y")

        assert [p.close for p in history] == [10.0, 11.0]
        assert mock_client.get.call_args[1]["params"]["outputsize"] == 756

    async def test_credit_error_carries_server_count(self, mock_client):
        """✅ Minute credits exhausted in body → rate_limited, not a daily quota."""
        respond(mock_client, {
            "status": "error",
            "code": 429,
            "message": "You have run out of API credits for the current minute. 9 API credits were used"
        })
        provider = TwelveDataProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("AAPL")

        assert exc.value.kind == FailureKind.RATE_LIMITED
        assert exc.value.server_count == 9
        assert exc.value.quota_exhausted is False

    async def test_daily_credit_error_is_quota_exhausted(self, mock_client):
        """✅ Daily credits used up → quota_exhausted with server count."""
        respond(mock_client, {
            "status": "error",
            "code": 429,
            "message": "You have run out of API credits for the day. 812 API credits were used, "
                       "with the current limit being 800."
        })
        provider = TwelveDataProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_history("AAPL")

        assert exc.value.kind == FailureKind.RATE_LIMITED
        assert exc.value.quota_exhausted is True
        assert exc.value.server_count == 812

    async def test_paid_plan_error(self, mock_client):
        """✅ Paid plan message → pro_required."""
        respond(mock_client, {
            "status": "error",
            "code": 403,
            "message": "This symbol is available starting with the Pro plan"
        })
        provider = TwelveDataProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_history("ASML", "AMS")

        assert exc.value.kind == FailureKind.PRO_REQUIRED


# ============================================================================
# Tests for AlphaVantageProvider
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestAlphaVantageProvider:
    """Test the Alpha Vantage adapter."""

    async def test_quote(self, mock_client):
        """✅ GLOBAL_QUOTE → Quote with percent parsed."""
        respond(mock_client, {"Global Quote": {
            "01. symbol": "TSCO.LON",
            "05. price": "310.5000",
            "08. previous close": "300.0000",
            "09. change": "10.5000",
            "10. change percent": "3.5000%"
        }})
        provider = AlphaVantageProvider(api_key="key")

        quote = await provider.fetch_quote("TSCO", "LSE")

        assert quote.price == 310.5
        assert quote.change_percent == 3.5
        assert mock_client.get.call_args[1]["params"]["symbol"] == "TSCO.LON"

    async def test_history(self, mock_client):
        """✅ TIME_SERIES_DAILY → sorted points."""
        respond(mock_client, {"Time Series (Daily)": {
            "2025-06-17": {"1. open": "1", "2. high": "3", "3. low": "0.5", "4. close": "2", "5. volume": "10"},
            "2025-06-16": {"4. close": "1.5"},
        }})
        provider = AlphaVantageProvider(api_key="key")

        history = await provider.fetch_history("IBM")

        assert [p.date for p in history] == [date(2025, 6, 16), date(2025, 6, 17)]
        assert history[1].volume == 10

    async def test_note_is_rate_limited(self, mock_client):
        """✅ Throttle note with HTTP 200 → rate_limited."""
        respond(mock_client, {"Note": "Thank you for using Alpha Vantage! Our standard API call frequency is 5 calls per minute"})
        provider = AlphaVantageProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("IBM")

        assert exc.value.kind == FailureKind.RATE_LIMITED
        assert exc.value.quota_exhausted is False

    async def test_daily_limit_information(self, mock_client):
        """✅ Daily limit note → rate_limited and quota_exhausted."""
        respond(mock_client, {"Information": (
            "Thank you for using Alpha Vantage! Our standard API rate limit is 25 requests per day. "
            "Please subscribe to any of the premium plans to instantly remove all daily rate limits."
        )})
        provider = AlphaVantageProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("IBM")

        assert exc.value.kind == FailureKind.RATE_LIMITED
        assert exc.value.quota_exhausted is True

    async def test_premium_information(self, mock_client):
        """✅ Premium endpoint note → pro_required."""
        respond(mock_client, {"Information": "This is a premium endpoint."})
        provider = AlphaVantageProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_history("IBM")

        assert exc.value.kind == FailureKind.PRO_REQUIRED

    async def test_error_message_not_found(self, mock_client):
        """✅ 'Error Message' body → not_found."""
        respond(mock_client, {"Error Message": "Invalid API call."})
        provider = AlphaVantageProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("NOPE")

        assert exc.value.kind == FailureKind.NOT_FOUND


# ============================================================================
# Tests for FmpProvider
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestFmpProvider:
    """Test the Financial Modeling Prep adapter."""

    async def test_quote(self, mock_client):
        """✅ /quote list → Quote."""
        respond(mock_client, [{
            "symbol": "AAPL",
            "name": "Apple Inc.",
            "price": 190.0,
            "previousClose": 188.0,
            "change": 2.0,
            "changesPercentage": 1.06,
            "yearHigh": 200.0,
            "yearLow": 150.0,
            "exchange": "NASDAQ"
        }])
        provider = FmpProvider(api_key="key")

        quote = await provider.fetch_quote("AAPL")

        assert quote.price == 190.0
        assert quote.week52_low == 150.0
        assert quote.name == "Apple Inc."

    async def test_empty_list_not_found(self, mock_client):
        """✅ Empty list → not_found."""
        respond(mock_client, [])
        provider = FmpProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("NOPE")

        assert exc.value.kind == FailureKind.NOT_FOUND

    async def test_history(self, mock_client):
        """✅ historical list (newest first) → points oldest first."""
        respond(mock_client, {"symbol": "AAPL", "historical": [
            {"date": "2025-06-17", "close": 190.0, "low": 188.0, "high": 191.0},
            {"date": "2025-06-16", "close": 189.0},
        ]})
        provider = FmpProvider(api_key="key")

        history = await provider.fetch_history("AAPL")

        assert [p.close for p in history] == [189.0, 190.0]

    async def test_limit_reach_message(self, mock_client):
        """✅ 'Limit Reach' error message → rate_limited."""
        respond(mock_client, {"Error Message": "Limit Reach . Please upgrade your plan"})
        provider = FmpProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_quote("AAPL")

        assert exc.value.kind == FailureKind.RATE_LIMITED
        assert exc.value.quota_exhausted is True

    async def test_402(self, mock_client):
        """✅ HTTP 402 → pro_required."""
        mock_client.get.side_effect = status_error(402)
        provider = FmpProvider(api_key="key")

        with pytest.raises(ProviderError) as exc:
            await provider.fetch_history("ASML", "AMS")

        assert exc.value.kind == FailureKind.PRO_REQUIRED
