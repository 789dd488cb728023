from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from connectors.fetcher import UpstreamFetchError
from connectors.registry import UnknownPlatformError
from predictwatch.db import TransactionTimeoutError
from predictwatch.domain import SiteCredentials
from predictwatch.models import CachedEvent, CachedMarket
from predictwatch.services.sync_service import SyncService


@pytest.fixture
def service(registry, session_factory, test_settings) -> SyncService:
    return SyncService(registry, session_factory, test_settings)


def _cached_ids(session_factory) -> list[str]:
    with session_factory() as session:
        return sorted(session.scalars(select(CachedEvent.external_id)))


def test_new_event_then_empty_section_clears_cache(service, site, fake_adapter, make_event, session_factory):
    fake_adapter.events = [make_event("EVT1")]

    first = service.sync_events(site, ["Politics"])
    assert [record.external_id for record in first.new_records] == ["EVT1"]
    assert first.changed_records == []
    assert _cached_ids(session_factory) == ["EVT1"]

    repeat = service.sync_events(site, ["Politics"])
    assert repeat.new_records == []
    assert repeat.changed_records == []

    fake_adapter.events = []
    emptied = service.sync_events(site, ["Politics"])
    assert emptied.new_records == []
    assert emptied.changed_records == []
    assert emptied.removed_count == 1
    assert _cached_ids(session_factory) == []


def test_repeated_sync_is_idempotent(service, site, fake_adapter, make_event, session_factory):
    fake_adapter.events = [make_event("EVT1"), make_event("EVT2")]

    service.sync_events(site, ["Politics"])
    repeat = service.sync_events(site, ["Politics"])

    assert repeat.is_empty
    assert _cached_ids(session_factory) == ["EVT1", "EVT2"]


def test_changed_event_is_reported_and_refreshed(service, site, fake_adapter, make_event, session_factory):
    original = make_event("EVT1")
    fake_adapter.events = [original]
    created = service.sync_events(site, ["Politics"]).new_records[0]

    fake_adapter.events = [replace(original, description="Only the wording moved")]
    assert service.sync_events(site, ["Politics"]).is_empty

    moved = datetime(2026, 12, 1, 18, 0, tzinfo=timezone.utc)
    fake_adapter.events = [replace(original, next_trading_close_time=moved, title="Retitled")]
    result = service.sync_events(site, ["Politics"])

    assert result.new_records == []
    assert len(result.changed_records) == 1
    changed = result.changed_records[0]
    assert changed.id == created.id
    assert changed.next_trading_close_time == moved
    assert changed.title == "Retitled"
    assert changed.fetched_at >= created.fetched_at


def test_stale_events_and_their_markets_are_removed(
    service, site, fake_adapter, make_event, make_market, session_factory
):
    fake_adapter.events = [make_event("EVT1"), make_event("EVT2")]
    records = {r.external_id: r for r in service.sync_events(site, ["Politics"]).new_records}

    fake_adapter.markets["EVT1"] = [make_market("EVT1-M1"), make_market("EVT1-M2")]
    service.sync_markets_for_event(records["EVT1"].id)

    fake_adapter.events = [make_event("EVT2")]
    result = service.sync_events(site, ["Politics"])

    assert result.removed_count == 1
    assert _cached_ids(session_factory) == ["EVT2"]
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(CachedMarket)) == 0


def test_other_sections_are_untouched(service, site, fake_adapter, make_event, session_factory):
    fake_adapter.events = [make_event("POL1"), make_event("SPT1", section="Sports")]
    service.sync_events(site, ["Politics", "Sports"])

    fake_adapter.events = [make_event("POL1")]
    result = service.sync_events(site, ["Politics"])

    assert result.removed_count == 0
    assert _cached_ids(session_factory) == ["POL1", "SPT1"]


def test_empty_section_kept_when_purge_disabled(
    registry, session_factory, test_settings, site, fake_adapter, make_event
):
    settings = test_settings.model_copy(update={"sync_purge_empty_sections": False})
    service = SyncService(registry, session_factory, settings)
    fake_adapter.events = [make_event("EVT1")]
    service.sync_events(site, ["Politics"])

    fake_adapter.events = []
    result = service.sync_events(site, ["Politics"])

    assert result.removed_count == 0
    assert _cached_ids(session_factory) == ["EVT1"]


def test_results_sorted_by_trading_close_with_undated_last(service, site, fake_adapter, make_event):
    fake_adapter.events = [
        make_event("UNDATED", next_trading_close_time=None),
        make_event("LATE", next_trading_close_time=datetime(2026, 12, 1, tzinfo=timezone.utc)),
        make_event("SOON", next_trading_close_time=datetime(2026, 10, 20, tzinfo=timezone.utc)),
    ]

    result = service.sync_events(site, ["Politics"])
    assert [r.external_id for r in result.new_records] == ["SOON", "LATE", "UNDATED"]


def test_adapter_failure_rolls_back_and_keeps_cache(service, site, fake_adapter, make_event, session_factory):
    fake_adapter.events = [make_event("EVT1")]
    service.sync_events(site, ["Politics"])

    fake_adapter.errors["events"] = UpstreamFetchError("GET /events failed", url="https://fake.test/events")
    with pytest.raises(UpstreamFetchError):
        service.sync_events(site, ["Politics"])

    assert _cached_ids(session_factory) == ["EVT1"]


def test_exhausted_budget_rolls_back(registry, session_factory, test_settings, site, fake_adapter, make_event):
    settings = test_settings.model_copy(update={"event_sync_timeout_seconds": 1e-9})
    service = SyncService(registry, session_factory, settings)
    fake_adapter.events = [make_event("EVT1")]

    with pytest.raises(TransactionTimeoutError):
        service.sync_events(site, ["Politics"])

    assert _cached_ids(session_factory) == []


def test_unknown_platform_fails_before_any_fetch(service, site, fake_adapter):
    stray = SiteCredentials(site_id=site.site_id, base_url=site.base_url, platform_key="manifold")
    with pytest.raises(UnknownPlatformError):
        service.sync_events(stray, ["Politics"])
    assert fake_adapter.calls == []


def test_unknown_sections_are_not_requested(service, site, fake_adapter, make_event):
    fake_adapter.events = [make_event("EVT1")]
    result = service.sync_events(site, ["Politics", "Nonexistent"])

    assert [r.external_id for r in result.new_records] == ["EVT1"]
    assert fake_adapter.calls[-1] == ("list_events_and_markets", ("Politics",))


def test_sync_sections_upserts_and_prunes(service, site, fake_adapter):
    from predictwatch.domain import SectionSnapshot

    fake_adapter.sections = [
        SectionSnapshot("Politics", "Politics & Government"),
        SectionSnapshot("Crypto", "Crypto"),
    ]
    result = service.sync_sections(site)

    assert result.created == 1
    assert result.removed == 1
    names = {s.external_id: s.name for s in result.sections}
    assert names == {"Crypto": "Crypto", "Politics": "Politics & Government"}
