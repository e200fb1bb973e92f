"""Exchange trading sessions used for cache freshness and queue filtering."""
import re
from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional, Tuple
import pytz

from watchlist.utils.time import utc_now


@dataclass(frozen=True)
class MarketSession:
    """Regular trading session in exchange-local time."""
    open: time
    close: time
    timezone: str
    weekend_closed: bool = True


_US = MarketSession(time(9, 30), time(16, 0), "America/New_York")
_EU = MarketSession(time(9, 0), time(17, 30), "Europe/Paris")

MARKET_SESSIONS = {
    # US
    "NYSE": _US,
    "NASDAQ": _US,
    "US": _US,
    "AMEX": _US,
    # Europe
    "LSE": MarketSession(time(8, 0), time(16, 30), "Europe/London"),
    "XETRA": MarketSession(time(9, 0), time(17, 30), "Europe/Berlin"),
    "FRA": MarketSession(time(9, 0), time(17, 30), "Europe/Berlin"),
    "EPA": _EU,
    "EURONEXT": _EU,
    "AMS": MarketSession(time(9, 0), time(17, 30), "Europe/Amsterdam"),
    "SWX": MarketSession(time(9, 0), time(17, 30), "Europe/Zurich"),
    "SIX": MarketSession(time(9, 0), time(17, 30), "Europe/Zurich"),
    "MIL": MarketSession(time(9, 0), time(17, 30), "Europe/Rome"),
    "BME": MarketSession(time(9, 0), time(17, 30), "Europe/Madrid"),
    # Asia / Pacific
    "TYO": MarketSession(time(9, 0), time(15, 0), "Asia/Tokyo"),
    "HKEX": MarketSession(time(9, 30), time(16, 0), "Asia/Hong_Kong"),
    "HKG": MarketSession(time(9, 30), time(16, 0), "Asia/Hong_Kong"),
    "SHA": MarketSession(time(9, 30), time(15, 0), "Asia/Shanghai"),
    "SHE": MarketSession(time(9, 30), time(15, 0), "Asia/Shanghai"),
    "SGX": MarketSession(time(9, 0), time(17, 0), "Asia/Singapore"),
    "KRX": MarketSession(time(9, 0), time(15, 30), "Asia/Seoul"),
    "NSE": MarketSession(time(9, 15), time(15, 30), "Asia/Kolkata"),
    "BSE": MarketSession(time(9, 15), time(15, 30), "Asia/Kolkata"),
    "ASX": MarketSession(time(10, 0), time(16, 0), "Australia/Sydney"),
    # Canada
    "TSE": MarketSession(time(9, 30), time(16, 0), "America/Toronto"),
    "TOR": MarketSession(time(9, 30), time(16, 0), "America/Toronto"),
}


def find_session(exchange: Optional[str]) -> Tuple[str, MarketSession]:
    """
    Resolve an exchange hint to its trading session.

    Exact code match first, then substring match either way; unknown
    exchanges fall back to NYSE hours.
    """
    normalized = re.sub(r"[^A-Z]", "", (exchange or "").upper())
    if normalized in MARKET_SESSIONS:
        return normalized, MARKET_SESSIONS[normalized]

    if normalized:
        for code, session in MARKET_SESSIONS.items():
            # two-letter codes only match exactly ("US" is inside "BRUSSELS")
            if len(code) < 3:
                continue
            if code in normalized or normalized in code:
                return code, session

    return "NYSE", MARKET_SESSIONS["NYSE"]


def is_market_open(exchange: Optional[str], now: Optional[datetime] = None) -> bool:
    """
    Check whether the exchange's regular session is open.

    Args:
        exchange: Exchange hint (e.g. "NASDAQ", "AMS", "Hong Kong")
        now: Reference moment (defaults to current time)

    Returns:
        True while the session is open, False otherwise
    """
    if now is None:
        now = utc_now()

    _, session = find_session(exchange)
    local = now.astimezone(pytz.timezone(session.timezone))

    if session.weekend_closed and local.weekday() >= 5:
        return False

    return session.open <= local.time() < session.close
