"""Shared repository result types.

Records are plain copies of cache rows so they stay readable after the session that
produced them has been closed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from connectors.timestamps import as_utc

from predictwatch.models import CachedEvent, CachedMarket, Section


@dataclass(slots=True)
class SectionRecord:
    id: str
    site_id: str
    external_id: str
    name: str
    url_or_slug: str | None
    enabled: bool

    @classmethod
    def from_row(cls, row: Section) -> "SectionRecord":
        return cls(
            id=row.id,
            site_id=row.site_id,
            external_id=row.external_id,
            name=row.name,
            url_or_slug=row.url_or_slug,
            enabled=bool(row.enabled),
        )


@dataclass(slots=True)
class EventRecord:
    id: str
    site_id: str
    section_id: str
    external_id: str
    title: str
    description: str | None
    status: str | None
    next_trading_close_time: datetime | None
    end_date: datetime | None
    volume: float | None
    liquidity: float | None
    outcomes: dict[str, float] | None
    fetched_at: datetime | None

    @classmethod
    def from_row(cls, row: CachedEvent) -> "EventRecord":
        return cls(
            id=row.id,
            site_id=row.site_id,
            section_id=row.section_id,
            external_id=row.external_id,
            title=row.title,
            description=row.description,
            status=row.status,
            next_trading_close_time=as_utc(row.next_trading_close_time),
            end_date=as_utc(row.end_date),
            volume=row.volume,
            liquidity=row.liquidity,
            outcomes=dict(row.outcomes) if row.outcomes is not None else None,
            fetched_at=as_utc(row.fetched_at),
        )


@dataclass(slots=True)
class MarketRecord:
    id: str
    event_cache_id: str
    site_id: str
    section_id: str
    external_id: str
    title: str
    status: str | None
    close_time: datetime | None
    next_trading_close_time: datetime | None
    settlement_date: datetime | None
    volume: float | None
    liquidity: float | None
    outcomes: dict[str, float] | None
    fetched_at: datetime | None
    previous_outcomes: dict[str, Any] | None = None

    @classmethod
    def from_row(
        cls, row: CachedMarket, *, previous_outcomes: dict[str, Any] | None = None
    ) -> "MarketRecord":
        return cls(
            id=row.id,
            event_cache_id=row.event_cache_id,
            site_id=row.site_id,
            section_id=row.section_id,
            external_id=row.external_id,
            title=row.title,
            status=row.status,
            close_time=as_utc(row.close_time),
            next_trading_close_time=as_utc(row.next_trading_close_time),
            settlement_date=as_utc(row.settlement_date),
            volume=row.volume,
            liquidity=row.liquidity,
            outcomes=dict(row.outcomes) if row.outcomes is not None else None,
            fetched_at=as_utc(row.fetched_at),
            previous_outcomes=previous_outcomes,
        )


__all__ = ["EventRecord", "MarketRecord", "SectionRecord"]
