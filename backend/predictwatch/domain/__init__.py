"""Domain models representing normalized platform data."""

from .models import (
    EventSnapshot,
    MarketLookup,
    MarketSnapshot,
    RawPayload,
    SectionSnapshot,
    SiteCredentials,
)

__all__ = [
    "EventSnapshot",
    "MarketLookup",
    "MarketSnapshot",
    "RawPayload",
    "SectionSnapshot",
    "SiteCredentials",
]
