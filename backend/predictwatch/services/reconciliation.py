"""Diff fetched snapshots against the cache and persist the differences.

Every fetched record is classified as new (inserted), changed (updated, ``fetched_at``
refreshed) or unchanged (left alone and not reported). Cache rows in the processed
scope whose external id was not fetched are removed. Callers run a pass inside
``session_scope`` so the whole pass commits or rolls back as one unit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, Mapping, Sequence, TypeVar

from loguru import logger

from connectors.timestamps import deadline_sort_key

from predictwatch.core.config import Settings, get_settings
from predictwatch.db import check_budget
from predictwatch.domain import EventSnapshot, MarketSnapshot
from predictwatch.models import CachedEvent, CachedMarket, Section, utcnow
from predictwatch.repositories import CacheRepository, EventRecord, MarketRecord

from .compare import event_has_semantic_changes, has_outcomes_change, market_has_semantic_changes

RecordT = TypeVar("RecordT", EventRecord, MarketRecord)


def _by_trading_close(record: EventRecord | MarketRecord) -> datetime:
    return deadline_sort_key(record.next_trading_close_time)


@dataclass(slots=True)
class SyncResult(Generic[RecordT]):
    new_records: list[RecordT] = field(default_factory=list)
    changed_records: list[RecordT] = field(default_factory=list)
    removed_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.new_records and not self.changed_records and not self.removed_count

    def sort(self) -> "SyncResult[RecordT]":
        """Order both lists by trading close, undated records last."""

        self.new_records.sort(key=_by_trading_close)
        self.changed_records.sort(key=_by_trading_close)
        return self


class EventReconciler:
    """Reconcile an event listing for a set of sections."""

    def __init__(self, repository: CacheRepository, settings: Settings | None = None) -> None:
        self._repo = repository
        self._settings = settings or get_settings()

    def reconcile(
        self,
        site_id: str,
        sections: Mapping[str, Section],
        snapshots: Sequence[EventSnapshot],
        *,
        now: datetime | None = None,
    ) -> SyncResult[EventRecord]:
        fetched_at = now or utcnow()
        session = self._repo.session
        result: SyncResult[EventRecord] = SyncResult()

        section_ids = [section.id for section in sections.values()]
        cached = {
            (row.section_id, row.external_id): row
            for row in self._repo.events_in_sections(section_ids)
        }
        seen: set[tuple[str, str]] = set()
        fetched_per_section = {section.id: 0 for section in sections.values()}

        for snapshot in snapshots:
            check_budget(session)
            section = sections.get(snapshot.section_external_id)
            if section is None:
                logger.warning(
                    "Skipping event {} from unrequested section '{}'",
                    snapshot.external_id,
                    snapshot.section_external_id,
                )
                continue
            key = (section.id, snapshot.external_id)
            if key in seen:
                logger.debug("Ignoring duplicate event {} in section {}", snapshot.external_id, section.external_id)
                continue
            seen.add(key)
            fetched_per_section[section.id] += 1

            existing = cached.get(key)
            if existing is None:
                row = self._repo.insert_event(site_id, section, snapshot, fetched_at)
                self._repo.flush()
                result.new_records.append(EventRecord.from_row(row))
            elif event_has_semantic_changes(existing, snapshot):
                self._repo.apply_event(existing, snapshot, fetched_at)
                result.changed_records.append(EventRecord.from_row(existing))

        result.removed_count = self._remove_stale(
            sections, cached, seen, fetched_per_section
        )
        self._repo.flush()
        logger.info(
            "Reconciled {} fetched events: {} new, {} changed, {} removed",
            len(seen),
            len(result.new_records),
            len(result.changed_records),
            result.removed_count,
        )
        return result.sort()

    def _remove_stale(
        self,
        sections: Mapping[str, Section],
        cached: Mapping[tuple[str, str], CachedEvent],
        seen: set[tuple[str, str]],
        fetched_per_section: Mapping[str, int],
    ) -> int:
        by_id = {section.id: section for section in sections.values()}
        removed = 0
        warned: set[str] = set()
        for key, row in cached.items():
            if key in seen:
                continue
            section_id = key[0]
            if fetched_per_section.get(section_id, 0) == 0:
                section = by_id[section_id]
                if not self._settings.sync_purge_empty_sections:
                    if section_id not in warned:
                        logger.warning(
                            "Section '{}' returned no events; keeping cached rows",
                            section.external_id,
                        )
                        warned.add(section_id)
                    continue
                if section_id not in warned:
                    logger.warning(
                        "Section '{}' returned no events; clearing its cache",
                        section.external_id,
                    )
                    warned.add(section_id)
            self._repo.delete(row)
            removed += 1
        return removed


class MarketReconciler:
    """Reconcile the markets of a single cached event."""

    def __init__(self, repository: CacheRepository, settings: Settings | None = None) -> None:
        self._repo = repository
        self._settings = settings or get_settings()

    def reconcile(
        self,
        event: CachedEvent,
        snapshots: Sequence[MarketSnapshot],
        *,
        now: datetime | None = None,
    ) -> SyncResult[MarketRecord]:
        fetched_at = now or utcnow()
        session = self._repo.session
        result: SyncResult[MarketRecord] = SyncResult()

        cached = {row.external_id: row for row in self._repo.markets_for_event(event.id)}
        seen: set[str] = set()

        for snapshot in snapshots:
            check_budget(session)
            if snapshot.external_id in seen:
                continue
            seen.add(snapshot.external_id)

            existing = cached.get(snapshot.external_id)
            if existing is None:
                row = self._repo.insert_market(event, snapshot, fetched_at)
                self._repo.flush()
                result.new_records.append(MarketRecord.from_row(row))
            elif market_has_semantic_changes(existing, snapshot):
                result.changed_records.append(self.apply_change(existing, snapshot, fetched_at))

        result.removed_count = self._remove_stale(event, cached, seen)
        self._repo.flush()
        logger.info(
            "Reconciled {} markets of event {}: {} new, {} changed, {} removed",
            len(seen),
            event.external_id,
            len(result.new_records),
            len(result.changed_records),
            result.removed_count,
        )
        return result.sort()

    def apply_change(
        self, existing: CachedMarket, snapshot: MarketSnapshot, fetched_at: datetime | None = None
    ) -> MarketRecord:
        """Update a cached market and report the prices it had before, when they moved."""

        previous = dict(existing.outcomes) if existing.outcomes is not None else None
        moved = has_outcomes_change(previous, snapshot.outcomes)
        self._repo.apply_market(existing, snapshot, fetched_at)
        return MarketRecord.from_row(existing, previous_outcomes=previous if moved else None)

    def _remove_stale(
        self, event: CachedEvent, cached: Mapping[str, CachedMarket], seen: set[str]
    ) -> int:
        stale = [row for external_id, row in cached.items() if external_id not in seen]
        if not stale:
            return 0
        if not seen:
            if not self._settings.sync_purge_empty_sections:
                logger.warning("Event {} returned no markets; keeping cached rows", event.external_id)
                return 0
            logger.warning("Event {} returned no markets; clearing its cache", event.external_id)
        for row in stale:
            self._repo.delete(row)
        return len(stale)


__all__ = ["EventReconciler", "MarketReconciler", "SyncResult"]
