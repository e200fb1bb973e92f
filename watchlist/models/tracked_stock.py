"""Tracked stock table."""
from sqlalchemy import Column, String, Float, Boolean, DateTime, JSON, Index
from watchlist.core.database import Base


class TrackedStockRecord(Base):
    """Persisted tracked stock, one row per (group, ticker)."""

    __tablename__ = "tracked_stocks"

    id = Column(String, primary_key=True)
    ticker = Column(String, nullable=False, index=True)
    group_id = Column(String, nullable=False, default="default", index=True)
    name = Column(String, nullable=True)
    exchange = Column(String, nullable=True)
    currency = Column(String, nullable=True)

    current_price = Column(Float, nullable=False, default=0.0)
    previous_close = Column(Float, nullable=True)
    day_change = Column(Float, nullable=True)
    day_change_percent = Column(Float, nullable=True)
    last_quote_at = Column(DateTime(timezone=True), nullable=True)
    preferred_provider = Column(String, nullable=True)

    buy_limit = Column(Float, nullable=True)  # None until computed

    week52_high = Column(Float, nullable=True)
    week52_low = Column(Float, nullable=True)
    year3_high = Column(Float, nullable=True)
    year3_low = Column(Float, nullable=True)
    year5_high = Column(Float, nullable=True)
    year5_low = Column(Float, nullable=True)
    history = Column(JSON, nullable=False, default=list)  # list of HistoryPoint dicts

    range_fetched = Column(Boolean, nullable=False, default=False)
    range_fetched_at = Column(DateTime(timezone=True), nullable=True)
    range_fetch_error = Column(Boolean, nullable=False, default=False)

    added_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_tracked_stocks_group_ticker", "group_id", "ticker"),
    )
