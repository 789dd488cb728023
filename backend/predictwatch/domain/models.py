"""Typed snapshots exchanged between platform adapters and the reconciliation engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

RawPayload = dict[str, Any]
"""Opaque upstream JSON kept for audit; never inspected by the reconciliation engine."""


@dataclass(slots=True, frozen=True)
class SiteCredentials:
    """Already-decrypted connection details for one configured site."""

    site_id: str
    base_url: str
    platform_key: str
    api_key_id: str | None = None
    private_key_pem: str | None = None

    @property
    def has_signing_key(self) -> bool:
        return bool(self.api_key_id and self.private_key_pem)


@dataclass(slots=True)
class SectionSnapshot:
    """Section (category or series) as offered by a platform."""

    external_id: str
    name: str
    url_or_slug: str | None = None


@dataclass(slots=True)
class EventSnapshot:
    """Event plus its primary-market figures, ready for comparison against the cache."""

    external_id: str
    section_external_id: str
    title: str
    description: str | None = None
    status: str | None = None
    next_trading_close_time: datetime | None = None
    end_date: datetime | None = None
    volume: float | None = None
    liquidity: float | None = None
    outcomes: dict[str, float] | None = None
    raw: RawPayload | None = None


@dataclass(slots=True)
class MarketSnapshot:
    """Single yes/no contract snapshot."""

    external_id: str
    title: str
    status: str | None = None
    close_time: datetime | None = None
    next_trading_close_time: datetime | None = None
    settlement_date: datetime | None = None
    volume: float | None = None
    liquidity: float | None = None
    outcomes: dict[str, float] | None = None
    raw: RawPayload | None = None


@dataclass(slots=True)
class MarketLookup:
    """Result of a single-market lookup: the market and the ticker of its parent event."""

    market: MarketSnapshot
    event_external_id: str
