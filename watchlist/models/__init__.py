"""Models package initialization."""
from watchlist.models.stock import TrackedStock

__all__ = [
    "TrackedStock",
]
