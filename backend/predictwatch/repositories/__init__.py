"""Repository abstractions for database interactions."""

from .cache_repository import CacheRepository
from .types import EventRecord, MarketRecord, SectionRecord

__all__ = [
    "CacheRepository",
    "EventRecord",
    "MarketRecord",
    "SectionRecord",
]
