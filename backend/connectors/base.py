"""Capability contracts implemented by platform adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Protocol, Sequence, runtime_checkable

from predictwatch.domain import (
    EventSnapshot,
    MarketLookup,
    MarketSnapshot,
    SectionSnapshot,
    SiteCredentials,
)


class UnsupportedCapabilityError(LookupError):
    """Raised when a caller needs an optional capability the platform does not offer."""


@runtime_checkable
class TickerLookup(Protocol):
    """Optional single-record lookup by external ticker."""

    def get_event_by_external_id(
        self, site: SiteCredentials, external_id: str
    ) -> EventSnapshot | None:
        """Return the event, or ``None`` when the platform does not know the ticker."""

    def get_market_by_external_id(
        self, site: SiteCredentials, external_id: str
    ) -> MarketLookup | None:
        """Return the market with its parent event ticker, or ``None`` when unknown."""


class PlatformAdapter(ABC):
    """Read-only queries against one external market platform.

    Implementations never touch local state; persistence belongs to the
    reconciliation engine.
    """

    key: str

    @abstractmethod
    def list_sections(self, site: SiteCredentials) -> list[SectionSnapshot]:
        """Return the categories or series offered by the platform."""

    @abstractmethod
    def list_events_and_markets(
        self,
        site: SiteCredentials,
        section_external_ids: Sequence[str],
        *,
        today: date | None = None,
    ) -> list[EventSnapshot]:
        """Return open events in the given sections together with their primary market."""

    @abstractmethod
    def list_markets_for_event(
        self,
        site: SiteCredentials,
        event_external_id: str,
        known_trading_close: datetime | None,
    ) -> list[MarketSnapshot]:
        """Return every market of one event."""

    def ticker_lookup(self) -> TickerLookup | None:
        """Return the lookup capability, or ``None`` when the platform lacks it."""

        return None

    def require_ticker_lookup(self) -> TickerLookup:
        lookup = self.ticker_lookup()
        if lookup is None:
            raise UnsupportedCapabilityError(
                f"Platform '{self.key}' does not support lookup by ticker"
            )
        return lookup

    def close(self) -> None:
        """Release network resources held by the adapter."""


__all__ = ["PlatformAdapter", "TickerLookup", "UnsupportedCapabilityError"]
