"""Priority queue builder for the refresh engine.

Lower score means refresh sooner. A stock that was never quoted scores 0.
A stock in cooldown is tagged COOLED_DOWN and sorts last. Every other stock
gets a raw score from staleness, failure streak and the weighted scan factors,
squashed into (1, 3) so it always ranks behind never-quoted stocks without
losing its relative order.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence

from watchlist.models.stock import TrackedStock
from watchlist.services.provider_memory import StockProviderMemory
from watchlist.utils.market_hours import is_market_open
from watchlist.utils.time import minutes_between, utc_now


logger = logging.getLogger(__name__)

NEVER_REFRESHED_SCORE = 0.0
SQUASH_SCALE = 1000.0

# Rainbow blocks: distance-to-limit thresholds (percent), 12 blocks at or
# below the first threshold down to 1 block at the last
RAINBOW_THRESHOLDS = [1, 2, 4, 8, 16, 32, 64, 128, 256, 512, 1024, 2048]


class EntryState(str, Enum):
    READY = "ready"
    COOLED_DOWN = "cooled_down"


@dataclass
class ScanWeights:
    """Scan factor multipliers in 0-1 (sliders are 0-100)."""
    last_scan: float = 0.6
    distance_to_limit: float = 0.5
    volatility: float = 0.3
    rainbow_blocks: float = 0.4

    @classmethod
    def from_sliders(
        cls,
        last_scan: int,
        distance_to_limit: int,
        volatility: int,
        rainbow_blocks: int
    ) -> "ScanWeights":
        return cls(
            last_scan=last_scan / 100,
            distance_to_limit=distance_to_limit / 100,
            volatility=volatility / 100,
            rainbow_blocks=rainbow_blocks / 100,
        )

    @classmethod
    def from_settings(cls, settings) -> "ScanWeights":
        return cls.from_sliders(
            settings.weight_last_scan,
            settings.weight_distance_to_limit,
            settings.weight_volatility,
            settings.weight_rainbow_blocks,
        )


@dataclass
class PriorityEntry:
    """One stock in the refresh order."""
    stock: TrackedStock
    score: float
    reasons: List[str] = field(default_factory=list)
    state: EntryState = EntryState.READY
    raw_score: Optional[float] = None

    @property
    def is_ready(self) -> bool:
        return self.state == EntryState.READY


def rainbow_blocks(distance_percent: Optional[float]) -> int:
    """Number of filled blocks (0-12) for a distance to the buy limit."""
    if distance_percent is None:
        return 0
    if distance_percent <= 0:
        return len(RAINBOW_THRESHOLDS)
    for i, threshold in enumerate(RAINBOW_THRESHOLDS):
        if distance_percent <= threshold:
            return len(RAINBOW_THRESHOLDS) - i
    return 0


def squash(raw: float) -> float:
    """Strictly increasing map of any real raw score into (1, 3)."""
    return 2.0 + raw / (abs(raw) + SQUASH_SCALE)


def _last_scan_adjustment(minutes: float) -> float:
    if minutes > 60:
        return -40
    if minutes > 30:
        return -25
    if minutes > 15:
        return -10
    return 20


def _distance_adjustment(distance: float) -> float:
    if distance <= 0:
        return -35
    if distance <= 5:
        return -30
    if distance <= 10:
        return -25
    if distance <= 15:
        return -20
    if distance <= 25:
        return -10
    return 0


def _rainbow_adjustment(blocks: int) -> float:
    if blocks >= 9:
        return -25
    if blocks >= 6:
        return -15
    if blocks >= 3:
        return -5
    return 0


def _volatility_adjustment(change_percent: float) -> float:
    move = abs(change_percent)
    if move > 5:
        return -20
    if move > 3:
        return -10
    if move > 1.5:
        return -5
    return 0


def compute_priority(
    stock: TrackedStock,
    memory: Optional[StockProviderMemory] = None,
    now: Optional[datetime] = None,
    weights: Optional[ScanWeights] = None,
    failure_penalty: float = 30.0
) -> PriorityEntry:
    """
    Score one stock.

    Args:
        stock: Tracked stock
        memory: Learned provider state for the stock's ticker
        now: Reference moment
        weights: Scan factor multipliers
        failure_penalty: Minutes added per consecutive failed pass

    Returns:
        PriorityEntry with score, reasons and state
    """
    now = now or utc_now()
    weights = weights or ScanWeights()

    if memory and memory.is_cooling_down(now):
        remaining = minutes_between(now, memory.cooldown_until)
        return PriorityEntry(
            stock=stock,
            score=math.inf,
            reasons=[f"cooldown {remaining:.0f} min"],
            state=EntryState.COOLED_DOWN,
        )

    if not stock.has_quote:
        return PriorityEntry(stock=stock, score=NEVER_REFRESHED_SCORE, reasons=["never refreshed"])

    reasons = []
    minutes = max(minutes_between(stock.last_quote_at, now), 0.0)
    raw = -minutes
    reasons.append(f"{minutes:.0f} min since refresh")

    failures = memory.consecutive_failures if memory else 0
    if failures:
        raw += failures * failure_penalty
        reasons.append(f"{failures} failed passes")

    raw += _last_scan_adjustment(minutes) * weights.last_scan

    distance = stock.distance_to_limit_percent
    if distance is None:
        raw += 20 * weights.rainbow_blocks
        reasons.append("no buy limit")
    else:
        adjustment = _distance_adjustment(distance)
        if adjustment:
            raw += adjustment * weights.distance_to_limit
            reasons.append("below buy limit" if distance <= 0 else f"{distance:.1f}% above limit")

        blocks = rainbow_blocks(distance)
        raw += _rainbow_adjustment(blocks) * weights.rainbow_blocks

    if stock.day_change_percent is not None:
        adjustment = _volatility_adjustment(stock.day_change_percent)
        if adjustment:
            raw += adjustment * weights.volatility
            reasons.append(f"moved {stock.day_change_percent:+.1f}% today")

    if not stock.history:
        raw -= 15
        reasons.append("no history")

    return PriorityEntry(stock=stock, score=squash(raw), reasons=reasons, raw_score=raw)


def build_queue(
    stocks: Sequence[TrackedStock],
    memories: Optional[Dict[str, StockProviderMemory]] = None,
    now: Optional[datetime] = None,
    weights: Optional[ScanWeights] = None,
    failure_penalty: float = 30.0,
    only_open_markets: bool = False,
    max_stocks: Optional[int] = None
) -> List[PriorityEntry]:
    """
    Build the refresh order, lowest score first.

    The sort is stable, so equal scores keep the input order. Cooled-down
    entries are kept at the end so callers can report them.

    Args:
        stocks: Tracked stocks across all groups
        memories: Provider memory keyed by upper-case ticker
        only_open_markets: Skip quoted stocks whose exchange is closed
        max_stocks: Truncate the queue
    """
    now = now or utc_now()
    memories = memories or {}

    entries = []
    for stock in stocks:
        if only_open_markets and stock.has_quote and not is_market_open(stock.exchange, now):
            continue
        memory = memories.get(stock.ticker.strip().upper())
        entries.append(compute_priority(stock, memory, now, weights, failure_penalty))

    entries.sort(key=lambda e: e.score)

    if max_stocks is not None:
        entries = entries[:max_stocks]

    logger.debug(f"Built refresh queue with {len(entries)} entries")
    return entries


def queue_stats(entries: Sequence[PriorityEntry], now: Optional[datetime] = None) -> Dict[str, object]:
    """Summary counts for display."""
    now = now or utc_now()
    stats = {
        "total": len(entries),
        "ready": 0,
        "cooled_down": 0,
        "never_refreshed": 0,
        "buy_signals": 0,
        "close_to_limit": 0,
        "high_volatility": 0,
        "oldest_refresh_minutes": None,
    }

    oldest = None
    for entry in entries:
        stock = entry.stock
        if entry.state == EntryState.COOLED_DOWN:
            stats["cooled_down"] += 1
        else:
            stats["ready"] += 1

        if not stock.has_quote:
            stats["never_refreshed"] += 1
        else:
            age = minutes_between(stock.last_quote_at, now)
            oldest = age if oldest is None else max(oldest, age)

        distance = stock.distance_to_limit_percent
        if distance is not None:
            if distance <= 0:
                stats["buy_signals"] += 1
            elif distance <= 5:
                stats["close_to_limit"] += 1

        if stock.day_change_percent is not None and abs(stock.day_change_percent) > 3:
            stats["high_volatility"] += 1

    stats["oldest_refresh_minutes"] = oldest
    return stats
