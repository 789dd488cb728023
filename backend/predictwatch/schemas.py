from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Section(BaseModel):
    id: str
    site_id: str
    external_id: str
    name: str
    url_or_slug: str | None = None
    enabled: bool = True

    model_config = {"from_attributes": True}


class CachedEventBase(BaseModel):
    id: str
    site_id: str
    section_id: str
    external_id: str
    title: str
    description: str | None = None
    status: str | None = None
    next_trading_close_time: datetime | None = None
    end_date: datetime | None = None
    volume: float | None = None
    liquidity: float | None = None
    outcomes: dict[str, float] | None = None
    fetched_at: datetime | None = None

    @field_validator("volume", "liquidity", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float | None:
        if value is None:
            return None
        return float(value)


class CachedEvent(CachedEventBase):
    model_config = {"from_attributes": True}


class CachedMarket(BaseModel):
    id: str
    event_cache_id: str
    site_id: str
    section_id: str
    external_id: str
    title: str
    status: str | None = None
    close_time: datetime | None = None
    next_trading_close_time: datetime | None = None
    settlement_date: datetime | None = None
    volume: float | None = None
    liquidity: float | None = None
    outcomes: dict[str, float] | None = None
    previous_outcomes: dict[str, float] | None = None
    fetched_at: datetime | None = None

    model_config = {"from_attributes": True}


class EventSyncResult(BaseModel):
    new_records: list[CachedEvent] = Field(default_factory=list)
    changed_records: list[CachedEvent] = Field(default_factory=list)
    removed_count: int = 0

    model_config = {"from_attributes": True}


class MarketSyncResult(BaseModel):
    new_records: list[CachedMarket] = Field(default_factory=list)
    changed_records: list[CachedMarket] = Field(default_factory=list)
    removed_count: int = 0

    model_config = {"from_attributes": True}


class SectionSyncResult(BaseModel):
    sections: list[Section] = Field(default_factory=list)
    created: int = 0
    removed: int = 0

    model_config = {"from_attributes": True}


class BatchMarketSyncRequest(BaseModel):
    event_ids: list[str] = Field(min_length=1)


class BatchMarketSyncResult(BaseModel):
    succeeded: int
    failed: int
    results: dict[str, MarketSyncResult] = Field(default_factory=dict)
    failures: dict[str, str] = Field(default_factory=dict)

    model_config = {"from_attributes": True}


class EventSyncRequest(BaseModel):
    section_external_ids: list[str] = Field(default_factory=list)


class TickerRequest(BaseModel):
    ticker: str = Field(min_length=1)

    @field_validator("ticker")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("ticker must not be blank")
        return stripped


class EventAssociation(BaseModel):
    event: CachedEvent
    created: bool
    changed: bool = False

    model_config = {"from_attributes": True}


class MarketAssociation(BaseModel):
    event: CachedEvent
    market: CachedMarket
    created: bool
    changed: bool = False

    model_config = {"from_attributes": True}


class PriceRefreshRequest(BaseModel):
    market_ids: list[str] = Field(min_length=1)


class PriceRefreshResult(BaseModel):
    updated: list[CachedMarket] = Field(default_factory=list)
    unchanged: int = 0
    failures: dict[str, str] = Field(default_factory=dict)

    model_config = {"from_attributes": True}
