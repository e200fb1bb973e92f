"""Normalized data models for quote and history responses."""
from dataclasses import dataclass, asdict
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional


class FailureKind(str, Enum):
    """Typed provider failure."""
    NOT_FOUND = "not_found"
    PRO_REQUIRED = "pro_required"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    UNKNOWN = "unknown"


class DataKind(str, Enum):
    """Kind of cached provider payload."""
    QUOTE = "quote"
    HISTORY = "history"


@dataclass
class HistoryPoint:
    """Single daily bar."""
    date: date
    close: float
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    volume: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryPoint":
        return cls(
            date=date.fromisoformat(data["date"]),
            close=data["close"],
            open=data.get("open"),
            high=data.get("high"),
            low=data.get("low"),
            volume=data.get("volume")
        )


@dataclass
class Quote:
    """Current quote for a ticker."""
    price: float
    previous_close: Optional[float] = None
    change: Optional[float] = None
    change_percent: Optional[float] = None
    week52_high: Optional[float] = None
    week52_low: Optional[float] = None
    currency: Optional[str] = None
    exchange: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Quote":
        return cls(**data)


@dataclass
class QuoteResult:
    """Normalized provider response: quote plus optional history."""
    provider: str
    symbol: str
    quote: Quote
    history: Optional[List[HistoryPoint]] = None

    @property
    def has_price(self) -> bool:
        return self.quote.price is not None and self.quote.price > 0
