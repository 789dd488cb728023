"""Kalshi adapter: series categories, open events with nested markets, ticker lookups.

Public market data needs no authentication. The authenticated portfolio API lives in
:mod:`connectors.portfolio`.
"""

from __future__ import annotations

import threading
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence
from urllib.parse import quote, urlparse

from loguru import logger

from predictwatch.core.config import Settings, get_settings
from predictwatch.domain import (
    EventSnapshot,
    MarketLookup,
    MarketSnapshot,
    SectionSnapshot,
    SiteCredentials,
)

from .base import PlatformAdapter, TickerLookup
from .fetcher import PaginatedFetcher, UpstreamFetchError
from .timestamps import deadline_sort_key, derive_settlement, derive_trading_close, parse_instant

PLATFORM_KEY = "kalshi"

# Kalshi reports open markets as "active"; older payloads still use "open".
OPEN_MARKET_STATUSES = frozenset({"open", "active"})

DEFAULT_CATEGORY = "World"

KALSHI_SECTIONS: tuple[SectionSnapshot, ...] = (
    SectionSnapshot(external_id="Sports", name="Sports"),
    SectionSnapshot(external_id="Politics", name="Politics"),
    SectionSnapshot(external_id="Entertainment", name="Culture"),
    SectionSnapshot(external_id="Crypto", name="Crypto"),
    SectionSnapshot(external_id="Climate and Weather", name="Climate"),
    SectionSnapshot(external_id="Economics", name="Economics"),
    SectionSnapshot(external_id="Mentions", name="Mentions"),
    SectionSnapshot(external_id="Companies", name="Companies"),
    SectionSnapshot(external_id="Financials", name="Financials"),
    SectionSnapshot(external_id="Science and Technology", name="Tech & Science"),
    SectionSnapshot(external_id="Elections", name="Elections"),
    SectionSnapshot(external_id="World", name="World"),
    SectionSnapshot(external_id="Health", name="Health"),
)

FetcherFactory = Callable[[str], PaginatedFetcher]


def resolve_api_base(base_url: str | None, settings: Settings | None = None) -> str:
    """Map a site's configured URL to the trade API it should talk to."""

    cfg = settings or get_settings()
    host = (urlparse(base_url or "").hostname or "").lower()
    if "demo" in host:
        return cfg.kalshi_demo_api_base.rstrip("/")
    return cfg.kalshi_api_base.rstrip("/")


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _volume(raw: Mapping[str, Any]) -> float | None:
    volume = _parse_float(raw.get("volume"))
    if volume is None:
        volume = _parse_float(raw.get("volume_fp"))
    return volume


def _liquidity(raw: Mapping[str, Any]) -> float | None:
    dollars = raw.get("liquidity_dollars")
    if isinstance(dollars, str) and dollars.strip():
        return _parse_float(dollars)
    cents = raw.get("liquidity")
    if isinstance(cents, (int, float)) and not isinstance(cents, bool):
        return cents / 100
    return None


def _yes_price(raw: Mapping[str, Any]) -> float | None:
    for key in ("last_price_dollars", "yes_ask_dollars", "yes_bid_dollars"):
        value = raw.get(key)
        if value not in (None, ""):
            parsed = _parse_float(value)
            if parsed is not None:
                return parsed
    for key in ("last_price", "yes_ask", "yes_bid"):
        cents = raw.get(key)
        if isinstance(cents, (int, float)) and not isinstance(cents, bool):
            return cents / 100
    return None


def build_outcomes(raw: Mapping[str, Any]) -> dict[str, float] | None:
    yes = _yes_price(raw)
    if yes is None:
        return None
    return {"Yes": yes, "No": 1 - yes}


def _is_open(raw: Mapping[str, Any]) -> bool:
    return str(raw.get("status") or "").lower() in OPEN_MARKET_STATUSES


def _sorted_by_trading_close(markets: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    # sorted() is stable, so equal deadlines keep upstream list order.
    return sorted(markets, key=lambda m: deadline_sort_key(derive_trading_close(m)))


def _end_date(last_market: Mapping[str, Any] | None, event: Mapping[str, Any]) -> datetime | None:
    if last_market is not None:
        for key in ("close_time", "expiration_time"):
            parsed = parse_instant(last_market.get(key))
            if parsed is not None:
                return parsed
    return parse_instant(event.get("strike_date"))


def normalize_market(
    raw: Mapping[str, Any],
    *,
    event: Mapping[str, Any] | None = None,
    fallback_trading_close: datetime | None = None,
) -> MarketSnapshot:
    ticker = _text(raw.get("ticker")) or ""
    trading_close = derive_trading_close(raw) or fallback_trading_close
    close_time = parse_instant(raw.get("close_time")) or parse_instant(raw.get("expiration_time"))
    return MarketSnapshot(
        external_id=ticker,
        title=_text(raw.get("title")) or ticker,
        status=_text(raw.get("status")),
        close_time=close_time,
        next_trading_close_time=trading_close,
        settlement_date=derive_settlement(raw, trading_close),
        volume=_volume(raw),
        liquidity=_liquidity(raw),
        outcomes=build_outcomes(raw),
        raw={"market": dict(raw), "event": dict(event) if event else None},
    )


def build_event_snapshot(
    event: Mapping[str, Any],
    markets: Sequence[Mapping[str, Any]],
    *,
    category: str,
    cutoff: datetime | None,
) -> EventSnapshot | None:
    """Collapse an event and its markets into one snapshot keyed on the primary market.

    With a ``cutoff`` only open markets whose deadline is open-ended or at/after the
    cutoff can be primary, and events without such a market are dropped. Without a
    cutoff (single-ticker lookups) the soonest open market wins, falling back to any
    market when none is open.
    """

    ticker = _text(event.get("event_ticker"))
    if ticker is None:
        logger.warning("Skipping event without a usable ticker: {!r}", event.get("title"))
        return None

    open_markets = [m for m in markets if _is_open(m)]
    if cutoff is None and not open_markets:
        open_markets = list(markets)
    ordered = _sorted_by_trading_close(open_markets)

    if cutoff is None:
        primary = ordered[0] if ordered else None
    else:
        primary = next(
            (
                m
                for m in ordered
                if (deadline := derive_trading_close(m)) is None or deadline >= cutoff
            ),
            None,
        )
        if primary is None:
            return None

    last_market = ordered[-1] if ordered else None
    status = "open" if cutoff is not None else (_text((primary or {}).get("status")) or "open")

    return EventSnapshot(
        external_id=ticker,
        section_external_id=category,
        title=_text(event.get("title")) or ticker,
        description=_text(event.get("sub_title")),
        status=status,
        next_trading_close_time=derive_trading_close(primary) if primary else None,
        end_date=_end_date(last_market, event),
        volume=_volume(primary) if primary else None,
        liquidity=_liquidity(primary) if primary else None,
        outcomes=build_outcomes(primary) if primary else None,
        raw={"event": dict(event), "market": dict(primary) if primary else None},
    )


def trading_cutoff(today: date) -> datetime:
    """Deadlines must fall on or after the start of the day following ``today`` (UTC)."""

    return datetime.combine(today + timedelta(days=1), time.min, tzinfo=timezone.utc)


class KalshiAdapter(PlatformAdapter, TickerLookup):
    key = PLATFORM_KEY

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        fetcher_factory: FetcherFactory | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._fetcher_factory = fetcher_factory or (
            lambda base: PaginatedFetcher(base_url=base, settings=self._settings)
        )
        self._fetchers: dict[str, PaginatedFetcher] = {}
        self._lock = threading.Lock()

    def _fetcher(self, site: SiteCredentials) -> PaginatedFetcher:
        api_base = resolve_api_base(site.base_url, self._settings)
        with self._lock:
            fetcher = self._fetchers.get(api_base)
            if fetcher is None:
                fetcher = self._fetcher_factory(api_base)
                self._fetchers[api_base] = fetcher
        return fetcher

    # ------------------------------------------------------------------
    # Required capability

    def list_sections(self, site: SiteCredentials) -> list[SectionSnapshot]:
        return [
            SectionSnapshot(s.external_id, s.name, s.url_or_slug) for s in KALSHI_SECTIONS
        ]

    def list_events_and_markets(
        self,
        site: SiteCredentials,
        section_external_ids: Sequence[str],
        *,
        today: date | None = None,
    ) -> list[EventSnapshot]:
        categories = set(section_external_ids)
        if not categories:
            return []

        cutoff = trading_cutoff(today or datetime.now(timezone.utc).date())
        fetcher = self._fetcher(site)
        results: list[EventSnapshot] = []
        scanned = 0
        for event in fetcher.iter_items(
            "/events",
            items_key="events",
            params={"status": "open", "with_nested_markets": "true"},
        ):
            scanned += 1
            category = event.get("category")
            if not isinstance(category, str) or category not in categories:
                continue
            markets = [m for m in event.get("markets") or [] if isinstance(m, dict)]
            snapshot = build_event_snapshot(event, markets, category=category, cutoff=cutoff)
            if snapshot is not None:
                results.append(snapshot)

        logger.info(
            "Kalshi returned {} events in {} section(s) ({} scanned)",
            len(results),
            len(categories),
            scanned,
        )
        return results

    def _event_with_markets(
        self, fetcher: PaginatedFetcher, event_external_id: str
    ) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
        payload = fetcher.get_json(
            f"/events/{quote(event_external_id, safe='')}",
            {"with_nested_markets": "true"},
        )
        event = payload.get("event") if isinstance(payload.get("event"), dict) else None
        markets = payload.get("markets") or (event or {}).get("markets") or []
        markets = [m for m in markets if isinstance(m, dict)]
        if not markets:
            markets = fetcher.collect(
                "/markets", items_key="markets", params={"event_ticker": event_external_id}
            )
        return event, markets

    def list_markets_for_event(
        self,
        site: SiteCredentials,
        event_external_id: str,
        known_trading_close: datetime | None,
    ) -> list[MarketSnapshot]:
        fetcher = self._fetcher(site)
        event, markets = self._event_with_markets(fetcher, event_external_id)
        return [
            normalize_market(m, event=event, fallback_trading_close=known_trading_close)
            for m in markets
            if _text(m.get("ticker"))
        ]

    # ------------------------------------------------------------------
    # Optional capability

    def ticker_lookup(self) -> TickerLookup | None:
        return self

    def get_event_by_external_id(
        self, site: SiteCredentials, external_id: str
    ) -> EventSnapshot | None:
        fetcher = self._fetcher(site)
        try:
            event, markets = self._event_with_markets(fetcher, external_id)
        except UpstreamFetchError as exc:
            if exc.is_not_found:
                return None
            raise
        if event is None:
            return None
        category = _text(event.get("category")) or DEFAULT_CATEGORY
        return build_event_snapshot(event, markets, category=category, cutoff=None)

    def get_market_by_external_id(
        self, site: SiteCredentials, external_id: str
    ) -> MarketLookup | None:
        fetcher = self._fetcher(site)
        try:
            payload = fetcher.get_json(f"/markets/{quote(external_id, safe='')}")
        except UpstreamFetchError as exc:
            if exc.is_not_found:
                return None
            raise
        market = payload.get("market")
        if not isinstance(market, dict) or _text(market.get("ticker")) is None:
            return None
        return MarketLookup(
            market=normalize_market(market),
            event_external_id=_text(market.get("event_ticker")) or "",
        )

    def close(self) -> None:
        with self._lock:
            fetchers = list(self._fetchers.values())
            self._fetchers.clear()
        for fetcher in fetchers:
            fetcher.close()


__all__ = [
    "KALSHI_SECTIONS",
    "KalshiAdapter",
    "PLATFORM_KEY",
    "build_event_snapshot",
    "build_outcomes",
    "normalize_market",
    "resolve_api_base",
    "trading_cutoff",
]
