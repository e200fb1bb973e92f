"""Merge an upstream scanner listing into a tracked stock group.

An upstream hiccup can return a short or empty listing. If applying it would
remove more than `shrink_threshold` of the group, removals are skipped and
only additions and metadata refreshes are applied.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from watchlist.models.stock import TrackedStock
from watchlist.services.stock_store import StockStore
from watchlist.utils.time import utc_now


logger = logging.getLogger(__name__)


@dataclass
class ScannerEntry:
    """One row of an upstream scanner listing."""
    ticker: str
    name: Optional[str] = None
    exchange: Optional[str] = None
    currency: Optional[str] = None


@dataclass
class MergeResult:
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    skipped_removals: List[str] = field(default_factory=list)
    additive_only: bool = False


def _normalize(ticker: str) -> str:
    return ticker.strip().upper()


def _new_id() -> str:
    return uuid.uuid4().hex


async def merge_group(
    store: StockStore,
    group_id: str,
    incoming: Sequence[ScannerEntry],
    shrink_threshold: float = 0.2,
    id_factory: Callable[[], str] = _new_id
) -> MergeResult:
    """
    Apply a scanner listing to one group.

    New tickers are added unfetched so the range batch picks them up,
    names and exchanges of existing tickers are refreshed, and tickers
    missing from the listing are removed unless that would shrink the
    group by more than `shrink_threshold`.

    Args:
        store: Stock store
        group_id: Group to merge into
        incoming: Upstream listing
        shrink_threshold: Largest fraction of the group that may be removed

    Returns:
        MergeResult describing what changed
    """
    result = MergeResult()
    existing = await store.get_tracked_stocks(group_id)
    by_ticker: Dict[str, TrackedStock] = {_normalize(s.ticker): s for s in existing}

    listing: Dict[str, ScannerEntry] = {}
    for entry in incoming:
        ticker = _normalize(entry.ticker)
        if ticker:
            listing.setdefault(ticker, entry)

    missing = [ticker for ticker in by_ticker if ticker not in listing]
    if existing and len(missing) / len(existing) > shrink_threshold:
        logger.warning(
            f"Scanner sync for group {group_id} would remove {len(missing)} of "
            f"{len(existing)} stocks; applying additions only"
        )
        result.additive_only = True
        result.skipped_removals = missing
    else:
        for ticker in missing:
            if await store.remove_stock(by_ticker[ticker].id):
                result.removed.append(ticker)

    now = utc_now()
    for ticker, entry in listing.items():
        stock = by_ticker.get(ticker)
        if stock is None:
            await store.add_stock(TrackedStock(
                id=id_factory(),
                ticker=ticker,
                group_id=group_id,
                name=entry.name,
                exchange=entry.exchange,
                currency=entry.currency,
                added_at=now,
            ))
            result.added.append(ticker)
            continue

        updates = {}
        if entry.name and entry.name != stock.name:
            updates["name"] = entry.name
        if entry.exchange and entry.exchange != stock.exchange:
            updates["exchange"] = entry.exchange
        if entry.currency and entry.currency != stock.currency:
            updates["currency"] = entry.currency
        if updates:
            await store.update_stock(stock.id, updates)
            result.updated.append(ticker)

    logger.info(
        f"Scanner sync for group {group_id}: +{len(result.added)} "
        f"~{len(result.updated)} -{len(result.removed)}"
    )
    return result
