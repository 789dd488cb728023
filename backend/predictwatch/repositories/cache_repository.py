"""Data access for sites, sections and the event/market cache."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from predictwatch.domain import EventSnapshot, MarketSnapshot, SectionSnapshot
from predictwatch.models import CachedEvent, CachedMarket, Section, Site, utcnow


class CacheRepository:
    """Encapsulate cache persistence for one session."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # ------------------------------------------------------------------
    # Sites and sections

    def get_site(self, site_id: str) -> Site | None:
        return self._session.get(Site, site_id)

    def list_sections(self, site_id: str) -> list[Section]:
        stmt = select(Section).where(Section.site_id == site_id).order_by(Section.name)
        return list(self._session.scalars(stmt))

    def lock_sections(
        self, site_id: str, external_ids: Iterable[str], *, lock: bool = True
    ) -> dict[str, Section]:
        """Return sections keyed by external id, row-locked for the rest of the transaction."""

        ids = list(dict.fromkeys(external_ids))
        if not ids:
            return {}
        stmt = select(Section).where(Section.site_id == site_id, Section.external_id.in_(ids))
        if lock:
            stmt = stmt.with_for_update()
        return {section.external_id: section for section in self._session.scalars(stmt)}

    def upsert_section(self, site_id: str, snapshot: SectionSnapshot) -> tuple[Section, bool]:
        stmt = select(Section).where(
            Section.site_id == site_id, Section.external_id == snapshot.external_id
        )
        existing = self._session.scalars(stmt).first()
        created = existing is None
        if existing is None:
            existing = Section(site_id=site_id, external_id=snapshot.external_id)
            self._session.add(existing)
        existing.name = snapshot.name
        existing.url_or_slug = snapshot.url_or_slug
        if existing.enabled is None:
            existing.enabled = True
        return existing, created

    def delete_sections_except(self, site_id: str, keep_external_ids: Iterable[str]) -> int:
        keep = set(keep_external_ids)
        removed = 0
        for section in self.list_sections(site_id):
            if section.external_id not in keep:
                self._session.delete(section)
                removed += 1
        return removed

    def get_or_create_section(self, site_id: str, external_id: str, name: str) -> Section:
        section, _ = self.upsert_section(site_id, SectionSnapshot(external_id=external_id, name=name))
        return section

    # ------------------------------------------------------------------
    # Events

    def get_event(self, event_id: str, *, lock: bool = False) -> CachedEvent | None:
        stmt = select(CachedEvent).where(CachedEvent.id == event_id)
        if lock:
            stmt = stmt.with_for_update()
        return self._session.scalars(stmt).first()

    def events_in_sections(self, section_ids: Sequence[str]) -> list[CachedEvent]:
        if not section_ids:
            return []
        stmt = select(CachedEvent).where(CachedEvent.section_id.in_(list(section_ids)))
        return list(self._session.scalars(stmt))

    def find_event(self, site_id: str, section_id: str, external_id: str) -> CachedEvent | None:
        stmt = select(CachedEvent).where(
            CachedEvent.site_id == site_id,
            CachedEvent.section_id == section_id,
            CachedEvent.external_id == external_id,
        )
        return self._session.scalars(stmt).first()

    def list_events(self, site_id: str, section_ids: Sequence[str] | None = None) -> list[CachedEvent]:
        stmt = select(CachedEvent).where(CachedEvent.site_id == site_id)
        if section_ids:
            stmt = stmt.where(CachedEvent.section_id.in_(list(section_ids)))
        return list(self._session.scalars(stmt))

    def insert_event(
        self,
        site_id: str,
        section: Section,
        snapshot: EventSnapshot,
        fetched_at: datetime | None = None,
    ) -> CachedEvent:
        row = CachedEvent(site_id=site_id, section_id=section.id, external_id=snapshot.external_id)
        self.apply_event(row, snapshot, fetched_at)
        self._session.add(row)
        return row

    def apply_event(
        self, row: CachedEvent, snapshot: EventSnapshot, fetched_at: datetime | None = None
    ) -> CachedEvent:
        row.title = snapshot.title
        row.description = snapshot.description
        row.status = snapshot.status
        row.next_trading_close_time = snapshot.next_trading_close_time
        row.end_date = snapshot.end_date
        row.volume = snapshot.volume
        row.liquidity = snapshot.liquidity
        row.outcomes = dict(snapshot.outcomes) if snapshot.outcomes is not None else None
        row.raw = snapshot.raw
        row.fetched_at = fetched_at or utcnow()
        return row

    # ------------------------------------------------------------------
    # Markets

    def get_market(self, market_id: str) -> CachedMarket | None:
        return self._session.get(CachedMarket, market_id)

    def markets_for_event(self, event_id: str) -> list[CachedMarket]:
        stmt = select(CachedMarket).where(CachedMarket.event_cache_id == event_id)
        return list(self._session.scalars(stmt))

    def find_market(self, event: CachedEvent, external_id: str) -> CachedMarket | None:
        stmt = select(CachedMarket).where(
            CachedMarket.event_cache_id == event.id,
            CachedMarket.external_id == external_id,
        )
        return self._session.scalars(stmt).first()

    def insert_market(
        self,
        event: CachedEvent,
        snapshot: MarketSnapshot,
        fetched_at: datetime | None = None,
    ) -> CachedMarket:
        row = CachedMarket(
            event_cache_id=event.id,
            site_id=event.site_id,
            section_id=event.section_id,
            external_id=snapshot.external_id,
        )
        self.apply_market(row, snapshot, fetched_at)
        self._session.add(row)
        return row

    def apply_market(
        self, row: CachedMarket, snapshot: MarketSnapshot, fetched_at: datetime | None = None
    ) -> CachedMarket:
        row.title = snapshot.title
        row.status = snapshot.status
        row.close_time = snapshot.close_time
        row.next_trading_close_time = snapshot.next_trading_close_time
        row.settlement_date = snapshot.settlement_date
        row.volume = snapshot.volume
        row.liquidity = snapshot.liquidity
        row.outcomes = dict(snapshot.outcomes) if snapshot.outcomes is not None else None
        row.raw = snapshot.raw
        row.fetched_at = fetched_at or utcnow()
        return row

    # ------------------------------------------------------------------

    def delete(self, row: CachedEvent | CachedMarket | Section) -> None:
        self._session.delete(row)

    def flush(self) -> None:
        self._session.flush()


__all__ = ["CacheRepository"]
