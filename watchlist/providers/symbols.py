"""Pure mapping from canonical tickers to provider-specific symbols."""
import re
from typing import Optional, Tuple

from watchlist.providers import SymbolMappingError


# Canonical ticker: letters/digits with optional dot/dash class suffix
TICKER_PATTERN = re.compile(r'^[A-Z0-9][A-Z0-9.\-]{0,14}$')

YAHOO_SUFFIXES = {
    # European
    "AMS": ".AS",
    "XAMS": ".AS",
    "EURONEXT": ".AS",
    "EPA": ".PA",
    "XPAR": ".PA",
    "ETR": ".DE",
    "XETR": ".DE",
    "XETRA": ".DE",
    "FRA": ".F",
    "LON": ".L",
    "XLON": ".L",
    "LSE": ".L",
    "SWX": ".SW",
    "SIX": ".SW",
    "BRU": ".BR",
    "MIL": ".MI",
    "MCE": ".MC",
    "BME": ".MC",
    "LIS": ".LS",
    # Asian
    "TYO": ".T",
    "JPX": ".T",
    "SGX": ".SI",
    "KRX": ".KS",
    "KOSPI": ".KS",
    "KOSDAQ": ".KQ",
    "TPE": ".TW",
    "TWSE": ".TW",
    "ASX": ".AX",
    # North America
    "TSX": ".TO",
    "TOR": ".TO",
    "CVE": ".V",
    "NASDAQ": "",
    "NYSE": "",
    "NYSEARCA": "",
    "AMEX": "",
    "US": "",
    "BATS": "",
    "NMS": "",
    "NGM": "",
}

# Name fragments for free-form exchange hints, checked in order
YAHOO_PATTERNS = [
    (("AMSTERDAM", "EURONEXT A"), ".AS"),
    (("LONDON",), ".L"),
    (("FRANKFURT", "XETRA", "DEUTSCHE"), ".DE"),
    (("PARIS", "EURONEXT P"), ".PA"),
    (("TOKYO", "JAPAN"), ".T"),
    (("BRUSSELS", "EURONEXT B"), ".BR"),
    (("TORONTO",), ".TO"),
]

HONG_KONG_CODES = {"HKG", "HKEX", "SEHK", "HKSE", "HK"}
SHANGHAI_CODES = {"SHA", "SSE"}
SHENZHEN_CODES = {"SHE", "SZSE"}

ALPHAVANTAGE_SUFFIXES = {
    "LSE": ".LON",
    "LON": ".LON",
    "XLON": ".LON",
    "XETRA": ".DEX",
    "XETR": ".DEX",
    "ETR": ".DEX",
    "FRA": ".FRK",
    "TSX": ".TRT",
    "TOR": ".TRT",
    "CVE": ".TRV",
    "AMS": ".AMS",
    "XAMS": ".AMS",
    "EPA": ".PAR",
    "XPAR": ".PAR",
    "SHA": ".SHH",
    "SSE": ".SHH",
    "SHE": ".SHZ",
    "SZSE": ".SHZ",
    "BSE": ".BSE",
}

TWELVEDATA_EXCHANGES = {
    "AMS": "Euronext",
    "XAMS": "Euronext",
    "EURONEXT": "Euronext",
    "EPA": "Euronext",
    "XPAR": "Euronext",
    "BRU": "Euronext",
    "LSE": "LSE",
    "LON": "LSE",
    "XETRA": "XETR",
    "XETR": "XETR",
    "ETR": "XETR",
    "FRA": "FSX",
    "TSX": "TSX",
    "TOR": "TSX",
    "SIX": "SIX",
    "SWX": "SIX",
}


def validate_ticker(ticker: str) -> str:
    """
    Validate and normalize a canonical ticker symbol.

    Args:
        ticker: Ticker symbol to validate

    Returns:
        Normalized (uppercase) ticker symbol

    Raises:
        SymbolMappingError: If ticker format is invalid
    """
    if not ticker:
        raise SymbolMappingError("Ticker symbol cannot be empty")

    normalized = ticker.upper().strip()

    if not TICKER_PATTERN.match(normalized):
        raise SymbolMappingError(f"Invalid ticker format: '{ticker}'")

    return normalized


def _normalize_exchange(exchange: Optional[str]) -> str:
    return (exchange or "").upper().strip()


def _pad_numeric(ticker: str, width: int) -> str:
    if ticker.isdigit():
        return ticker.zfill(width)
    return ticker


def _is_hong_kong(exchange: str) -> bool:
    return exchange in HONG_KONG_CODES or "HONG KONG" in exchange or "HONGKONG" in exchange


def yahoo_symbol(ticker: str, exchange: Optional[str] = None) -> str:
    """
    Map a canonical ticker to Yahoo Finance format.

    Hong Kong numeric codes are zero-padded to 4 digits (5 -> 0005.HK),
    Shanghai/Shenzhen numeric codes to 6 digits. Tickers that already carry a
    suffix are returned unchanged.
    """
    symbol = validate_ticker(ticker)
    exch = _normalize_exchange(exchange)

    if not exch or "." in symbol:
        return symbol

    if _is_hong_kong(exch):
        return f"{_pad_numeric(symbol, 4)}.HK"
    if exch in SHANGHAI_CODES or "SHANGHAI" in exch:
        return f"{_pad_numeric(symbol, 6)}.SS"
    if exch in SHENZHEN_CODES or "SHENZHEN" in exch:
        return f"{_pad_numeric(symbol, 6)}.SZ"

    suffix = YAHOO_SUFFIXES.get(exch)
    if suffix is not None:
        return f"{symbol}{suffix}"

    for fragments, pattern_suffix in YAHOO_PATTERNS:
        if any(fragment in exch for fragment in fragments):
            return f"{symbol}{pattern_suffix}"

    return symbol


def alphavantage_symbol(ticker: str, exchange: Optional[str] = None) -> str:
    """Map a canonical ticker to Alpha Vantage format (e.g. TSCO.LON)."""
    symbol = validate_ticker(ticker)
    exch = _normalize_exchange(exchange)

    if _is_hong_kong(exch):
        # Alpha Vantage has no Hong Kong coverage
        raise SymbolMappingError(f"Alpha Vantage does not list Hong Kong ticker {symbol}")

    if "." in symbol:
        return symbol

    suffix = ALPHAVANTAGE_SUFFIXES.get(exch, "")
    if exch in SHANGHAI_CODES or exch in SHENZHEN_CODES:
        symbol = _pad_numeric(symbol, 6)
    return f"{symbol}{suffix}"


def twelvedata_symbol(ticker: str, exchange: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """
    Map a canonical ticker to Twelve Data's (symbol, exchange) pair.

    Twelve Data takes the bare symbol plus an optional exchange parameter.
    """
    symbol = validate_ticker(ticker)
    if "." in symbol:
        symbol = symbol.split(".", 1)[0]
    return symbol, TWELVEDATA_EXCHANGES.get(_normalize_exchange(exchange))


def fmp_symbol(ticker: str, exchange: Optional[str] = None) -> str:
    """Financial Modeling Prep uses Yahoo-style suffixes."""
    return yahoo_symbol(ticker, exchange)
