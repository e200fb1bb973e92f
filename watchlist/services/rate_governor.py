"""Per-provider rate governor with minute, day and spacing limits.

Usage is persisted write-through under the `api-usage` key so counters
survive restarts. Windows are rolled over at read time: the minute window
after 60 seconds, the day window at local midnight. A persisted state from a
previous local day is reset even if its stored reset time says otherwise.
"""
import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

from watchlist.core.storage import KeyValueStore
from watchlist.utils.time import local_today, next_local_midnight, parse_timestamp, utc_now


logger = logging.getLogger(__name__)

MINUTE_WINDOW = timedelta(seconds=60)


@dataclass(frozen=True)
class ProviderLimits:
    """Configured limits for one provider."""
    per_minute: int
    per_day: int
    min_delay_seconds: float


DEFAULT_LIMITS: Dict[str, ProviderLimits] = {
    "yahoo": ProviderLimits(per_minute=60, per_day=2000, min_delay_seconds=1.0),
    "twelvedata": ProviderLimits(per_minute=8, per_day=800, min_delay_seconds=8.0),
    "alphavantage": ProviderLimits(per_minute=5, per_day=25, min_delay_seconds=15.0),
    "fmp": ProviderLimits(per_minute=5, per_day=250, min_delay_seconds=12.0),
}


@dataclass
class ProviderUsage:
    """Usage counters for one provider."""
    minute_count: int = 0
    minute_reset_at: Optional[datetime] = None
    day_count: int = 0
    day_reset_at: Optional[datetime] = None
    day_start_date: Optional[date] = None
    last_request_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value is not None else None

        return {
            "minute_count": self.minute_count,
            "minute_reset_at": iso(self.minute_reset_at),
            "day_count": self.day_count,
            "day_reset_at": iso(self.day_reset_at),
            "day_start_date": iso(self.day_start_date),
            "last_request_at": iso(self.last_request_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderUsage":
        day_start = data.get("day_start_date")
        return cls(
            minute_count=int(data.get("minute_count") or 0),
            minute_reset_at=parse_timestamp(data.get("minute_reset_at")),
            day_count=int(data.get("day_count") or 0),
            day_reset_at=parse_timestamp(data.get("day_reset_at")),
            day_start_date=date.fromisoformat(day_start) if day_start else None,
            last_request_at=parse_timestamp(data.get("last_request_at")),
        )


@dataclass
class RateDecision:
    """Outcome of a rate check."""
    allowed: bool
    wait_seconds: float = 0.0
    reason: Optional[str] = None


class RateGovernor:
    """Gate requests per provider.

    Every check-and-increment runs inside one asyncio lock, so the refresh
    engine and the range batch job can share a governor without
    double-booking a slot.
    """

    STORAGE_KEY = "api-usage"

    def __init__(
        self,
        store: KeyValueStore,
        limits: Optional[Dict[str, ProviderLimits]] = None,
        timezone_str: str = "UTC",
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.limits = dict(limits or DEFAULT_LIMITS)
        self.timezone_str = timezone_str
        self.clock = clock
        self._usage: Dict[str, ProviderUsage] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _ensure_loaded(self):
        if self._loaded:
            return
        self._loaded = True
        try:
            data = await self.store.get(self.STORAGE_KEY)
        except Exception as e:
            logger.error(f"Failed to load API usage, starting fresh: {e}", exc_info=True)
            return

        for provider, raw in (data or {}).items():
            try:
                self._usage[provider] = ProviderUsage.from_dict(raw)
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable usage for {provider}: {e}")

    async def _persist(self):
        payload = {name: usage.to_dict() for name, usage in self._usage.items()}
        try:
            await self.store.set(self.STORAGE_KEY, payload)
        except Exception as e:
            logger.error(f"Failed to persist API usage: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Window bookkeeping
    # ------------------------------------------------------------------

    def _usage_for(self, provider: str, now: datetime) -> ProviderUsage:
        """Get usage for a provider with expired windows rolled over."""
        usage = self._usage.get(provider)
        if usage is None:
            usage = ProviderUsage(
                minute_reset_at=now + MINUTE_WINDOW,
                day_reset_at=next_local_midnight(self.timezone_str, now),
                day_start_date=local_today(self.timezone_str, now),
            )
            self._usage[provider] = usage
            return usage

        if usage.minute_reset_at is None or now >= usage.minute_reset_at:
            usage.minute_count = 0
            usage.minute_reset_at = now + MINUTE_WINDOW

        today = local_today(self.timezone_str, now)
        if (
            usage.day_start_date != today
            or usage.day_reset_at is None
            or now >= usage.day_reset_at
        ):
            if usage.day_count:
                logger.info(f"New day for {provider}: resetting daily count ({usage.day_count})")
            usage.day_count = 0
            usage.day_start_date = today
            usage.day_reset_at = next_local_midnight(self.timezone_str, now)

        return usage

    def _check(self, provider: str, now: datetime, count: int = 1) -> RateDecision:
        limits = self.limits.get(provider)
        if limits is None:
            return RateDecision(allowed=False, reason="Unknown provider")

        usage = self._usage_for(provider, now)

        if usage.day_count + count > limits.per_day:
            wait = (usage.day_reset_at - now).total_seconds()
            return RateDecision(
                allowed=False,
                wait_seconds=max(wait, 0.0),
                reason=f"Daily limit reached ({usage.day_count}/{limits.per_day})"
            )

        if usage.minute_count + count > limits.per_minute:
            wait = (usage.minute_reset_at - now).total_seconds()
            return RateDecision(
                allowed=False,
                wait_seconds=max(wait, 0.0),
                reason=f"Minute limit reached ({usage.minute_count}/{limits.per_minute})"
            )

        if usage.last_request_at is not None:
            elapsed = (now - usage.last_request_at).total_seconds()
            if elapsed < limits.min_delay_seconds:
                return RateDecision(
                    allowed=False,
                    wait_seconds=limits.min_delay_seconds - elapsed,
                    reason="Minimum delay between requests"
                )

        return RateDecision(allowed=True)

    def _record(self, provider: str, now: datetime, count: int = 1):
        usage = self._usage_for(provider, now)
        usage.minute_count += count
        usage.day_count += count
        usage.last_request_at = now

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def can_proceed(self, provider: str) -> RateDecision:
        """
        Check whether a request to `provider` may go out now.

        Checks the daily cap, then the minute cap, then the minimum delay
        since the last request. The first failing check wins.
        """
        async with self._lock:
            await self._ensure_loaded()
            return self._check(provider, self.clock())

    async def record_request(self, provider: str) -> None:
        """Count one request against the provider's windows."""
        async with self._lock:
            await self._ensure_loaded()
            if provider not in self.limits:
                logger.warning(f"Recording request for unknown provider {provider}")
            self._record(provider, self.clock())
            await self._persist()

    async def try_acquire(self, provider: str, count: int = 1) -> RateDecision:
        """
        Check and, if allowed, record requests in one critical section.

        `count` requests issued back to back (a quote and its history) are
        booked together: both must fit the minute and day windows, while the
        minimum delay applies once to the batch.
        """
        async with self._lock:
            await self._ensure_loaded()
            now = self.clock()
            decision = self._check(provider, now, count)
            if decision.allowed:
                self._record(provider, now, count)
                await self._persist()
            return decision

    async def release(self, provider: str, count: int = 1) -> None:
        """Give back slots booked by try_acquire but never sent upstream."""
        async with self._lock:
            await self._ensure_loaded()
            usage = self._usage.get(provider)
            if usage is None or count <= 0:
                return
            usage.minute_count = max(usage.minute_count - count, 0)
            usage.day_count = max(usage.day_count - count, 0)
            await self._persist()

    async def mark_exhausted(self, provider: str, server_count: Optional[int] = None) -> None:
        """
        Align local counters with a server-side quota breach.

        Args:
            provider: Provider name
            server_count: Usage reported by the provider, if any
        """
        async with self._lock:
            await self._ensure_loaded()
            limits = self.limits.get(provider)
            if limits is None:
                return

            usage = self._usage_for(provider, self.clock())
            usage.day_count = server_count if server_count and server_count > 0 else limits.per_day
            usage.minute_count = limits.per_minute
            logger.warning(
                f"{provider} reported quota exhausted, day count set to {usage.day_count}/{limits.per_day}"
            )
            await self._persist()

    async def mark_throttled(self, provider: str) -> None:
        """Fill the current minute window after a transient 429 or frequency note."""
        async with self._lock:
            await self._ensure_loaded()
            limits = self.limits.get(provider)
            if limits is None:
                return
            usage = self._usage_for(provider, self.clock())
            usage.minute_count = max(usage.minute_count, limits.per_minute)
            logger.warning(f"{provider} throttled, holding off until {usage.minute_reset_at.isoformat()}")
            await self._persist()

    async def usage_stats(self, provider: str) -> Dict[str, Any]:
        """Current counters and remaining capacity for a provider."""
        async with self._lock:
            await self._ensure_loaded()
            limits = self.limits.get(provider)
            if limits is None:
                return {}
            usage = self._usage_for(provider, self.clock())
            return {
                "minute_count": usage.minute_count,
                "per_minute": limits.per_minute,
                "minute_remaining": max(limits.per_minute - usage.minute_count, 0),
                "day_count": usage.day_count,
                "per_day": limits.per_day,
                "day_remaining": max(limits.per_day - usage.day_count, 0),
                "day_reset_at": usage.day_reset_at,
                "last_request_at": usage.last_request_at,
            }

    async def available_requests(self, provider: str) -> int:
        """Requests still allowed today."""
        stats = await self.usage_stats(provider)
        return stats.get("day_remaining", 0)

    def min_delay(self, provider: str) -> float:
        limits = self.limits.get(provider)
        return limits.min_delay_seconds if limits else 0.0

    def estimate_seconds(self, provider: str, count: int) -> float:
        """Rough time needed to issue `count` requests to a provider."""
        limits = self.limits.get(provider)
        if limits is None or count <= 0:
            return 0.0
        by_delay = count * limits.min_delay_seconds
        by_minute = math.ceil(count / limits.per_minute - 1) * 60 if count > limits.per_minute else 0
        return float(max(by_delay, by_minute))

    async def reset(self, provider: str) -> None:
        """Forget usage for one provider."""
        async with self._lock:
            await self._ensure_loaded()
            self._usage.pop(provider, None)
            await self._persist()

    async def reset_all(self) -> None:
        """Forget usage for every provider."""
        async with self._lock:
            await self._ensure_loaded()
            self._usage.clear()
            await self._persist()
