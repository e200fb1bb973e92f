"""Tracked stock domain model shared by the refresh engine and batch job."""
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from watchlist.providers.models import HistoryPoint


@dataclass
class TrackedStock:
    """A ticker under watch in one of the host's groups."""
    id: str
    ticker: str
    group_id: str = "default"
    name: Optional[str] = None
    exchange: Optional[str] = None
    currency: Optional[str] = None

    # Quote fields (refresh engine)
    current_price: float = 0.0
    previous_close: Optional[float] = None
    day_change: Optional[float] = None
    day_change_percent: Optional[float] = None
    last_quote_at: Optional[datetime] = None
    preferred_provider: Optional[str] = None

    # Buy limit: None means not yet computed
    buy_limit: Optional[float] = None

    # Historical bands (range batch job)
    week52_high: Optional[float] = None
    week52_low: Optional[float] = None
    year3_high: Optional[float] = None
    year3_low: Optional[float] = None
    year5_high: Optional[float] = None
    year5_low: Optional[float] = None
    history: List[HistoryPoint] = field(default_factory=list)

    # Range fetch bookkeeping
    range_fetched: bool = False
    range_fetched_at: Optional[datetime] = None
    range_fetch_error: bool = False

    added_at: Optional[datetime] = None

    @property
    def has_quote(self) -> bool:
        """True once the stock has a usable quote."""
        return self.last_quote_at is not None and bool(self.current_price)

    @property
    def distance_to_limit_percent(self) -> Optional[float]:
        """Percent above (positive) or below (negative) the buy limit."""
        if not self.buy_limit or self.buy_limit <= 0 or not self.current_price or self.current_price <= 0:
            return None
        return (self.current_price - self.buy_limit) / self.buy_limit * 100

    def apply(self, updates: Dict[str, Any]) -> "TrackedStock":
        """Return a copy with the given field updates applied."""
        known = {f.name for f in fields(self)}
        unknown = set(updates) - known
        if unknown:
            raise ValueError(f"Unknown stock fields: {sorted(unknown)}")
        return replace(self, **updates)
