"""Historical low/high bands and buy limit calculation."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from watchlist.providers.models import HistoryPoint
from watchlist.utils.time import utc_now, years_before


BUY_LIMIT_MULTIPLIER = Decimal("1.05")


@dataclass
class RangeBands:
    """1, 3 and 5 year low/high bands; None when no data falls in a window."""
    week52_low: Optional[float] = None
    week52_high: Optional[float] = None
    year3_low: Optional[float] = None
    year3_high: Optional[float] = None
    year5_low: Optional[float] = None
    year5_high: Optional[float] = None

    @property
    def has_data(self) -> bool:
        return any(
            value is not None
            for value in (self.week52_low, self.year3_low, self.year5_low)
        )


def _band(points: Iterable[HistoryPoint], start) -> tuple:
    low = None
    high = None
    for point in points:
        if point.date < start:
            continue
        point_low = point.low if point.low else point.close
        point_high = point.high if point.high else point.close
        if point_low is not None and (low is None or point_low < low):
            low = point_low
        if point_high is not None and (high is None or point_high > high):
            high = point_high
    return low, high


def calculate_ranges(history: Iterable[HistoryPoint], now: Optional[datetime] = None) -> RangeBands:
    """
    Compute low/high within calendar windows ending at `now`.

    Each point contributes its low (or close when missing) to the low and its
    high (or close) to the high.
    """
    now = now or utc_now()
    points = list(history)

    week52_low, week52_high = _band(points, years_before(now, 1).date())
    year3_low, year3_high = _band(points, years_before(now, 3).date())
    year5_low, year5_high = _band(points, years_before(now, 5).date())

    return RangeBands(
        week52_low=week52_low,
        week52_high=week52_high,
        year3_low=year3_low,
        year3_high=year3_high,
        year5_low=year5_low,
        year5_high=year5_high,
    )


def calculate_buy_limit(
    year5_low: Optional[float] = None,
    year3_low: Optional[float] = None,
    week52_low: Optional[float] = None
) -> Optional[float]:
    """
    Buy limit = lowest positive low x 1.05, rounded half-up to cents.

    Returns:
        The limit, or None when no positive low is available (the caller
        must then leave any existing limit alone)
    """
    lows = [low for low in (year5_low, year3_low, week52_low) if low is not None and low > 0]
    if not lows:
        return None

    limit = Decimal(str(min(lows))) * BUY_LIMIT_MULTIPLIER
    return float(limit.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
