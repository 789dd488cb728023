"""Caller-facing synchronization entry points.

Each public method resolves the platform adapter before touching the network, then
runs its fetch-compare-persist cycle in a single budgeted transaction.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Sequence

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from connectors.base import PlatformAdapter
from connectors.registry import AdapterRegistry
from connectors.timestamps import as_utc

from predictwatch.core.config import Settings, get_settings
from predictwatch.db import SessionLocal, session_scope
from predictwatch.domain import EventSnapshot, MarketLookup, SiteCredentials
from predictwatch.models import CachedEvent, Site, utcnow
from predictwatch.repositories import CacheRepository, EventRecord, MarketRecord, SectionRecord

from .compare import event_has_semantic_changes, market_has_semantic_changes
from .reconciliation import EventReconciler, MarketReconciler, SyncResult


class SiteNotFoundError(LookupError):
    """Raised when a sync references a site that is not stored locally."""


class CachedEventNotFoundError(LookupError):
    """Raised when a market sync references an event that is not cached."""


class CachedMarketNotFoundError(LookupError):
    """Raised when a price refresh references a market that is not cached."""


@dataclass(slots=True)
class SectionSyncResult:
    sections: list[SectionRecord] = field(default_factory=list)
    created: int = 0
    removed: int = 0


@dataclass(slots=True)
class BatchSyncResult:
    results: dict[str, SyncResult[MarketRecord]] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.failures)


@dataclass(slots=True)
class EventAssociation:
    event: EventRecord
    created: bool
    changed: bool = False


@dataclass(slots=True)
class MarketAssociation:
    event: EventRecord
    market: MarketRecord
    created: bool
    changed: bool = False


@dataclass(slots=True)
class PriceRefreshResult:
    updated: list[MarketRecord] = field(default_factory=list)
    unchanged: int = 0
    failures: dict[str, str] = field(default_factory=dict)


def credentials_for(site: Site) -> SiteCredentials:
    """Public-data credentials for a stored site; signing keys are supplied by callers."""

    return SiteCredentials(site_id=site.id, base_url=site.base_url, platform_key=site.platform_key)


class SyncService:
    """Coordinate adapters, the cache repository and the reconcilers."""

    def __init__(
        self,
        registry: AdapterRegistry,
        session_factory: sessionmaker[Session] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()

    def _adapter(self, site: SiteCredentials) -> PlatformAdapter:
        return self._registry.resolve(site.platform_key)

    def site_credentials(self, site_id: str) -> SiteCredentials:
        with session_scope(self._session_factory) as session:
            site = CacheRepository(session).get_site(site_id)
            if site is None:
                raise SiteNotFoundError(f"Site '{site_id}' not found")
            return credentials_for(site)

    # ------------------------------------------------------------------
    # Sections

    def sync_sections(self, site: SiteCredentials) -> SectionSyncResult:
        """Upsert the platform's sections and drop the ones it no longer offers."""

        adapter = self._adapter(site)
        with session_scope(
            self._session_factory, timeout_seconds=self._settings.section_sync_timeout_seconds
        ) as session:
            repo = CacheRepository(session)
            snapshots = adapter.list_sections(site)
            result = SectionSyncResult()
            for snapshot in snapshots:
                _, created = repo.upsert_section(site.site_id, snapshot)
                result.created += int(created)
            result.removed = repo.delete_sections_except(
                site.site_id, (s.external_id for s in snapshots)
            )
            repo.flush()
            result.sections = [SectionRecord.from_row(s) for s in repo.list_sections(site.site_id)]
        logger.info(
            "Synced {} sections for site {} ({} new, {} removed)",
            len(result.sections),
            site.site_id,
            result.created,
            result.removed,
        )
        return result

    # ------------------------------------------------------------------
    # Events

    def sync_events(
        self,
        site: SiteCredentials,
        section_external_ids: Sequence[str],
        *,
        today: date | None = None,
    ) -> SyncResult[EventRecord]:
        adapter = self._adapter(site)
        with session_scope(
            self._session_factory, timeout_seconds=self._settings.event_sync_timeout_seconds
        ) as session:
            repo = CacheRepository(session)
            sections = repo.lock_sections(site.site_id, section_external_ids)
            missing = [sid for sid in section_external_ids if sid not in sections]
            if missing:
                logger.warning("Ignoring unknown sections for site {}: {}", site.site_id, missing)
            snapshots = adapter.list_events_and_markets(site, list(sections), today=today)
            return EventReconciler(repo, self._settings).reconcile(site.site_id, sections, snapshots)

    # ------------------------------------------------------------------
    # Markets

    def sync_markets_for_event(
        self, event_id: str, *, site: SiteCredentials | None = None
    ) -> SyncResult[MarketRecord]:
        with session_scope(
            self._session_factory, timeout_seconds=self._settings.market_sync_timeout_seconds
        ) as session:
            repo = CacheRepository(session)
            event = repo.get_event(event_id, lock=True)
            if event is None:
                raise CachedEventNotFoundError(f"Cached event '{event_id}' not found")
            credentials = site or self._stored_credentials(repo, event.site_id)
            adapter = self._adapter(credentials)
            snapshots = adapter.list_markets_for_event(
                credentials, event.external_id, as_utc(event.next_trading_close_time)
            )
            return MarketReconciler(repo, self._settings).reconcile(event, snapshots)

    def sync_markets_for_events(
        self, event_ids: Sequence[str], *, site: SiteCredentials | None = None
    ) -> BatchSyncResult:
        """Sync several events concurrently; one failing event does not abort the others."""

        unique_ids = list(dict.fromkeys(event_ids))
        if len(unique_ids) > self._settings.max_batch_size:
            raise ValueError(
                f"At most {self._settings.max_batch_size} events can be synced per batch "
                f"({len(unique_ids)} requested)"
            )

        batch = BatchSyncResult()
        if not unique_ids:
            return batch

        def _run(event_id: str) -> tuple[str, SyncResult[MarketRecord] | None, str | None]:
            try:
                return event_id, self.sync_markets_for_event(event_id, site=site), None
            except Exception as exc:
                logger.warning("Market sync failed for event {}: {}", event_id, exc)
                return event_id, None, str(exc) or exc.__class__.__name__

        workers = max(1, min(self._settings.sync_batch_concurrency, len(unique_ids)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            for event_id, result, error in pool.map(_run, unique_ids):
                if error is not None:
                    batch.failures[event_id] = error
                else:
                    batch.results[event_id] = result
        logger.info(
            "Batch market sync finished: {} succeeded, {} failed", batch.succeeded, batch.failed
        )
        return batch

    # ------------------------------------------------------------------
    # Ticker lookups

    def get_event_by_ticker(self, site: SiteCredentials, ticker: str) -> EventSnapshot | None:
        return self._adapter(site).require_ticker_lookup().get_event_by_external_id(site, ticker)

    def get_market_by_ticker(self, site: SiteCredentials, ticker: str) -> MarketLookup | None:
        return self._adapter(site).require_ticker_lookup().get_market_by_external_id(site, ticker)

    def associate_event(self, site: SiteCredentials, ticker: str) -> EventAssociation | None:
        """Cache a single event by ticker, creating its section if needed."""

        adapter = self._adapter(site)
        snapshot = adapter.require_ticker_lookup().get_event_by_external_id(site, ticker)
        if snapshot is None:
            return None
        with session_scope(
            self._session_factory, timeout_seconds=self._settings.event_sync_timeout_seconds
        ) as session:
            repo = CacheRepository(session)
            row, created, changed = self._upsert_event(repo, adapter, site, snapshot)
            return EventAssociation(event=EventRecord.from_row(row), created=created, changed=changed)

    def associate_market(self, site: SiteCredentials, ticker: str) -> MarketAssociation | None:
        """Cache a single market and its parent event by market ticker."""

        adapter = self._adapter(site)
        lookup = adapter.require_ticker_lookup()
        found = lookup.get_market_by_external_id(site, ticker)
        if found is None:
            return None
        event_snapshot = lookup.get_event_by_external_id(site, found.event_external_id)
        if event_snapshot is None:
            logger.warning("Market {} references unknown event {}", ticker, found.event_external_id)
            return None

        with session_scope(
            self._session_factory, timeout_seconds=self._settings.market_sync_timeout_seconds
        ) as session:
            repo = CacheRepository(session)
            event_row, _, _ = self._upsert_event(repo, adapter, site, event_snapshot)
            existing = repo.find_market(event_row, found.market.external_id)
            if existing is None:
                market_row = repo.insert_market(event_row, found.market)
                repo.flush()
                record = MarketRecord.from_row(market_row)
                created, changed = True, False
            elif market_has_semantic_changes(existing, found.market):
                record = MarketReconciler(repo, self._settings).apply_change(existing, found.market)
                created, changed = False, True
            else:
                record = MarketRecord.from_row(existing)
                created, changed = False, False
            return MarketAssociation(
                event=EventRecord.from_row(event_row),
                market=record,
                created=created,
                changed=changed,
            )

    def _upsert_event(
        self,
        repo: CacheRepository,
        adapter: PlatformAdapter,
        site: SiteCredentials,
        snapshot: EventSnapshot,
    ) -> tuple[CachedEvent, bool, bool]:
        names = {s.external_id: s.name for s in adapter.list_sections(site)}
        section = repo.get_or_create_section(
            site.site_id,
            snapshot.section_external_id,
            names.get(snapshot.section_external_id, snapshot.section_external_id),
        )
        repo.flush()
        existing = repo.find_event(site.site_id, section.id, snapshot.external_id)
        if existing is None:
            row = repo.insert_event(site.site_id, section, snapshot)
            repo.flush()
            return row, True, False
        if event_has_semantic_changes(existing, snapshot):
            repo.apply_event(existing, snapshot)
            return existing, False, True
        return existing, False, False

    # ------------------------------------------------------------------
    # Prices

    def refresh_market_prices(
        self, market_ids: Sequence[str], *, site: SiteCredentials | None = None
    ) -> PriceRefreshResult:
        """Best-effort refresh of cached market prices; failures are reported per market."""

        result = PriceRefreshResult()
        for market_id in dict.fromkeys(market_ids):
            try:
                record = self._refresh_one(market_id, site)
            except Exception as exc:
                logger.warning("Price refresh failed for market {}: {}", market_id, exc)
                result.failures[market_id] = str(exc) or exc.__class__.__name__
                continue
            if record is None:
                result.unchanged += 1
            else:
                result.updated.append(record)
        return result

    def _refresh_one(self, market_id: str, site: SiteCredentials | None) -> MarketRecord | None:
        with session_scope(
            self._session_factory, timeout_seconds=self._settings.market_sync_timeout_seconds
        ) as session:
            repo = CacheRepository(session)
            row = repo.get_market(market_id)
            if row is None:
                raise CachedMarketNotFoundError(f"Cached market '{market_id}' not found")
            credentials = site or self._stored_credentials(repo, row.site_id)
            lookup = self._adapter(credentials).require_ticker_lookup()
            found = lookup.get_market_by_external_id(credentials, row.external_id)
            if found is None:
                raise CachedMarketNotFoundError(
                    f"Market '{row.external_id}' is no longer offered upstream"
                )
            if not market_has_semantic_changes(row, found.market):
                return None
            return MarketReconciler(repo, self._settings).apply_change(row, found.market, utcnow())

    # ------------------------------------------------------------------
    # Cache reads

    def list_cached_events(
        self, site_id: str, section_external_ids: Sequence[str] | None = None
    ) -> list[EventRecord]:
        with session_scope(self._session_factory) as session:
            repo = CacheRepository(session)
            section_ids = None
            if section_external_ids:
                sections = repo.lock_sections(site_id, section_external_ids, lock=False)
                section_ids = [s.id for s in sections.values()]
                if not section_ids:
                    return []
            records = [EventRecord.from_row(row) for row in repo.list_events(site_id, section_ids)]
        return SyncResult(new_records=records).sort().new_records

    def _stored_credentials(self, repo: CacheRepository, site_id: str) -> SiteCredentials:
        site = repo.get_site(site_id)
        if site is None:
            raise SiteNotFoundError(f"Site '{site_id}' not found")
        return credentials_for(site)


__all__ = [
    "BatchSyncResult",
    "CachedEventNotFoundError",
    "CachedMarketNotFoundError",
    "EventAssociation",
    "MarketAssociation",
    "PriceRefreshResult",
    "SectionSyncResult",
    "SiteNotFoundError",
    "SyncService",
    "credentials_for",
]
