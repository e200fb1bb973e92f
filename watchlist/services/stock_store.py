"""Stock store: the host's tracked stocks, read and written by the core."""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import fields
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete

from watchlist.models.stock import TrackedStock
from watchlist.models.tracked_stock import TrackedStockRecord
from watchlist.providers.models import HistoryPoint
from watchlist.utils.time import ensure_aware


logger = logging.getLogger(__name__)

STOCK_FIELDS = {f.name for f in fields(TrackedStock)}
DATETIME_FIELDS = ("last_quote_at", "range_fetched_at", "added_at")


class StockStore(ABC):
    """Tracked stocks across groups."""

    @abstractmethod
    async def get_tracked_stocks(self, group_id: Optional[str] = None) -> List[TrackedStock]:
        """All tracked stocks, optionally limited to one group."""
        pass

    @abstractmethod
    async def get_stock(self, stock_id: str) -> Optional[TrackedStock]:
        pass

    @abstractmethod
    async def update_stock(self, stock_id: str, updates: Dict[str, Any]) -> Optional[TrackedStock]:
        """
        Apply partial field updates.

        Returns:
            The updated stock, or None if it no longer exists

        Raises:
            ValueError: If an update names an unknown field
        """
        pass

    @abstractmethod
    async def add_stock(self, stock: TrackedStock) -> TrackedStock:
        pass

    @abstractmethod
    async def remove_stock(self, stock_id: str) -> bool:
        pass


class InMemoryStockStore(StockStore):
    """Dict-backed store keeping insertion order."""

    def __init__(self, stocks: Optional[List[TrackedStock]] = None):
        self._stocks: Dict[str, TrackedStock] = {}
        self._lock = asyncio.Lock()
        for stock in stocks or []:
            self._stocks[stock.id] = stock

    async def get_tracked_stocks(self, group_id: Optional[str] = None) -> List[TrackedStock]:
        return [
            stock for stock in self._stocks.values()
            if group_id is None or stock.group_id == group_id
        ]

    async def get_stock(self, stock_id: str) -> Optional[TrackedStock]:
        return self._stocks.get(stock_id)

    async def update_stock(self, stock_id: str, updates: Dict[str, Any]) -> Optional[TrackedStock]:
        async with self._lock:
            stock = self._stocks.get(stock_id)
            if stock is None:
                logger.debug(f"Update for unknown stock {stock_id} ignored")
                return None
            updated = stock.apply(updates)
            self._stocks[stock_id] = updated
            return updated

    async def add_stock(self, stock: TrackedStock) -> TrackedStock:
        async with self._lock:
            self._stocks[stock.id] = stock
            return stock

    async def remove_stock(self, stock_id: str) -> bool:
        async with self._lock:
            return self._stocks.pop(stock_id, None) is not None


class SqlStockStore(StockStore):
    """Async SQLAlchemy store over the `tracked_stocks` table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    def _to_stock(record) -> TrackedStock:
        data = {name: getattr(record, name) for name in STOCK_FIELDS if name != "history"}
        for name in DATETIME_FIELDS:
            if data[name] is not None:
                data[name] = ensure_aware(data[name])
        data["history"] = [HistoryPoint.from_dict(item) for item in (record.history or [])]
        return TrackedStock(**data)

    @staticmethod
    def _to_columns(updates: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(updates) - STOCK_FIELDS
        if unknown:
            raise ValueError(f"Unknown stock fields: {sorted(unknown)}")
        columns = dict(updates)
        if "history" in columns:
            columns["history"] = [point.to_dict() for point in columns["history"] or []]
        return columns

    async def get_tracked_stocks(self, group_id: Optional[str] = None) -> List[TrackedStock]:
        async with self.session_factory() as session:
            query = select(TrackedStockRecord).order_by(TrackedStockRecord.added_at, TrackedStockRecord.id)
            if group_id is not None:
                query = query.where(TrackedStockRecord.group_id == group_id)
            result = await session.execute(query)
            return [self._to_stock(record) for record in result.scalars().all()]

    async def get_stock(self, stock_id: str) -> Optional[TrackedStock]:
        async with self.session_factory() as session:
            record = await session.get(TrackedStockRecord, stock_id)
            return self._to_stock(record) if record else None

    async def update_stock(self, stock_id: str, updates: Dict[str, Any]) -> Optional[TrackedStock]:
        columns = self._to_columns(updates)
        async with self.session_factory() as session:
            record = await session.get(TrackedStockRecord, stock_id)
            if record is None:
                logger.debug(f"Update for unknown stock {stock_id} ignored")
                return None
            for name, value in columns.items():
                setattr(record, name, value)
            await session.commit()
            await session.refresh(record)
            return self._to_stock(record)

    async def add_stock(self, stock: TrackedStock) -> TrackedStock:
        columns = {name: getattr(stock, name) for name in STOCK_FIELDS}
        columns = self._to_columns(columns)
        async with self.session_factory() as session:
            session.add(TrackedStockRecord(**columns))
            await session.commit()
        return stock

    async def remove_stock(self, stock_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(TrackedStockRecord).where(TrackedStockRecord.id == stock_id)
            )
            await session.commit()
            return result.rowcount > 0
