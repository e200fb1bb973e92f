"""Unit tests for exchange session lookup."""
import pytest
from datetime import datetime, timezone

from watchlist.utils.market_hours import find_session, is_market_open


@pytest.mark.unit
class TestFindSession:
    """Test exchange hint resolution."""

    @pytest.mark.parametrize("hint,code", [
        ("NASDAQ", "NASDAQ"),
        ("NasdaqGS", "NASDAQ"),
        ("ams", "AMS"),
        ("XETRA", "XETRA"),
        (None, "NYSE"),
        ("Brussels", "NYSE"),
    ])
    def test_resolution(self, hint, code):
        """✅ Exact, substring and fallback matches."""
        assert find_session(hint)[0] == code


@pytest.mark.unit
class TestIsMarketOpen:
    """Test session checks."""

    def test_us_open_midday(self):
        """✅ 11:00 New York on a Wednesday → open."""
        assert is_market_open("NYSE", datetime(2025, 6, 18, 15, 0, tzinfo=timezone.utc))

    def test_us_closed_before_open(self):
        """✅ 09:00 New York → closed."""
        assert not is_market_open("NYSE", datetime(2025, 6, 18, 13, 0, tzinfo=timezone.utc))

    def test_close_is_exclusive(self):
        """✅ Exactly 16:00 New York → closed."""
        assert not is_market_open("NASDAQ", datetime(2025, 6, 18, 20, 0, tzinfo=timezone.utc))

    def test_weekend_closed(self):
        """✅ Saturday → closed."""
        assert not is_market_open("AMS", datetime(2025, 6, 21, 10, 0, tzinfo=timezone.utc))

    def test_tokyo(self):
        """✅ 10:00 Tokyo → open; 16:00 Tokyo → closed."""
        assert is_market_open("TYO", datetime(2025, 6, 18, 1, 0, tzinfo=timezone.utc))
        assert not is_market_open("TYO", datetime(2025, 6, 18, 7, 0, tzinfo=timezone.utc))
